"""
AgentState — single source of truth for the app's runtime flags and counters.

All mutations happen on the main loop thread. No locks needed.
"""

import time
from dataclasses import dataclass

from .models import Coordinate


@dataclass
class AgentState:
    # ── Tracking ──────────────────────────────────────────────
    tracking: bool = False
    last_sample: Coordinate | None = None
    last_sample_ts: float = 0.0
    samples_seen: int = 0
    samples_dropped: int = 0
    events_emitted: int = 0

    # ── Connectivity ──────────────────────────────────────────
    online: bool = True
    offline_since: float = 0.0

    # ── Dead letters surfaced to the user ─────────────────────
    rejections_shown: int = 0

    def record_sample(self, sample):
        self.last_sample = sample
        self.last_sample_ts = time.time()
        self.samples_seen += 1

    def mark_offline(self):
        if self.online:
            self.online = False
            self.offline_since = time.time()

    def mark_online(self):
        self.online = True
        self.offline_since = 0.0

    @property
    def offline_seconds(self) -> float:
        if self.online:
            return 0.0
        return time.time() - self.offline_since
