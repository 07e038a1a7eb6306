"""
ZoneRegistry — the active-zone snapshot read by the detector.

The snapshot is an immutable tuple replaced in a single assignment, so a
reader always sees either the old set or the new one, never a mix. A failed
refresh keeps the previous snapshot (stale-but-available).
"""

import threading
import time

from .config import log
from .exceptions import FetchError, ValidationError
from .models import Zone


class ZoneRegistry:
    """Holds the latest zone snapshot fetched from the backend."""

    def __init__(self, fetch):
        self._fetch = fetch
        self._lock = threading.Lock()
        self._snapshot = ((), {})      # (ordered zones, zones by id)
        self.version = 0
        self.last_refresh_at = 0.0

    # ── Refresh ──────────────────────────────────────────────

    def refresh(self) -> bool:
        """Fetch and swap in a new snapshot. Returns False if the fetch failed."""
        try:
            raw_zones = self._fetch()
        except FetchError as e:
            log.warning("Zone refresh failed: %s — keeping %d cached zones", e, len(self))
            return False

        zones = self.ingest(raw_zones)
        with self._lock:
            self._snapshot = (tuple(zones), {z.zone_id: z for z in zones})
            self.version += 1
            self.last_refresh_at = time.time()

        log.info("Loaded %d geofence zones (snapshot v%d)", len(zones), self.version)
        return True

    @staticmethod
    def ingest(raw_zones):
        """
        Validate backend zones. Malformed or inactive zones are dropped here
        so they never reach the detector. Duplicate ids: the last one wins.
        """
        accepted = {}
        for raw in raw_zones or []:
            try:
                zone = Zone.from_dict(raw) if not isinstance(raw, Zone) else raw
            except ValidationError as e:
                log.warning("Rejected zone %r: %s", _raw_id(raw), e)
                continue
            if not zone.active:
                log.info("Skipping inactive zone %s", zone.zone_id)
                continue
            if zone.zone_id in accepted:
                log.warning("Duplicate zone id %s — keeping the later definition", zone.zone_id)
                del accepted[zone.zone_id]
            accepted[zone.zone_id] = zone
        return list(accepted.values())

    # ── Readers ──────────────────────────────────────────────

    def current_zones(self):
        """The latest snapshot, in backend order."""
        return self._snapshot[0]

    def get(self, zone_id):
        return self._snapshot[1].get(zone_id)

    def __len__(self):
        return len(self._snapshot[0])


def _raw_id(raw):
    if isinstance(raw, dict):
        return raw.get("regionId") or raw.get("zoneId") or raw.get("id")
    return None
