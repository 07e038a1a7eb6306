"""
DeliveryWorker — the single consumer of the outbox.

Each pass drains the oldest deliverable entries and submits them in order:
  accepted (or server duplicate) → acknowledge
  retryable failure              → record_failure (backoff); the rest of that
                                   zone's entries wait for the next pass
  terminal rejection             → dead-letter + on_terminal(entry, reason) once

The background thread sleeps until the outbox's next wakeup time, or until
wake() is called (new event queued, network back). It is independent of
location tracking: stopping tracking never stops delivery.
"""

import threading
import time
from dataclasses import dataclass

from .api import SubmitResult
from .config import log
from .constants import DELIVERY_BATCH_SIZE, WORKER_IDLE_SEC
from .exceptions import DeliveryError


@dataclass
class DeliveryReport:
    delivered: int = 0
    retried: int = 0
    dead: int = 0
    skipped: int = 0

    @property
    def attempted(self):
        return self.delivered + self.retried + self.dead


def _log_terminal(entry, reason):
    log.error("Attendance %s for zone %s was rejected: %s",
              entry.event.type.value, entry.event.zone_id or "-", reason)


class DeliveryWorker:
    """Drains an EventOutbox through a submit(event) -> SubmitResult callable."""

    def __init__(self, outbox, submit, on_terminal=None,
                 batch_size=DELIVERY_BATCH_SIZE, clock=time.time):
        self._outbox = outbox
        self._submit = submit
        self._on_terminal = on_terminal or _log_terminal
        self._batch_size = batch_size
        self._clock = clock
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread = None

    # ── One pass ─────────────────────────────────────────────

    def run_once(self, now=None):
        now = self._clock() if now is None else now
        report = DeliveryReport()
        failed_lanes = set()

        for entry in self._outbox.drain_oldest(self._batch_size, now=now):
            if entry.lane in failed_lanes:
                report.skipped += 1
                continue

            try:
                result = self._submit(entry.event)
            except DeliveryError as e:
                result = (SubmitResult.retry(str(e), e.status) if e.retryable
                          else SubmitResult.reject(str(e), e.status))
            except Exception as e:
                log.warning("Submit raised for %s: %s", entry.local_id[:8], e, exc_info=True)
                result = SubmitResult.retry(str(e))

            if result.accepted:
                self._outbox.acknowledge(entry.local_id)
                report.delivered += 1
            elif result.retryable:
                self._outbox.record_failure(entry.local_id, result.reason, now=now)
                failed_lanes.add(entry.lane)
                report.retried += 1
            else:
                self._outbox.record_failure(entry.local_id, result.reason, terminal=True, now=now)
                report.dead += 1
                try:
                    self._on_terminal(entry, result.reason)
                except Exception as e:
                    log.error("on_terminal callback failed: %s", e)

        if report.attempted:
            log.info("Delivery pass: %d delivered, %d retrying, %d dead-lettered (%d pending)",
                     report.delivered, report.retried, report.dead, self._outbox.pending_count())
        return report

    # ── Background thread ────────────────────────────────────

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="delivery", daemon=True)
        self._thread.start()
        log.info("Delivery worker started")

    def stop(self, timeout=5):
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def wake(self):
        """Ask the worker for an immediate pass. Entries still in backoff stay put."""
        self._wake.set()

    @property
    def running(self):
        return self._thread is not None and self._thread.is_alive()

    def _next_timeout(self):
        wakeup = self._outbox.next_wakeup()
        if wakeup is None:
            return WORKER_IDLE_SEC
        return max(0.0, min(wakeup - self._clock(), WORKER_IDLE_SEC))

    def _loop(self):
        while not self._stop.is_set():
            self._wake.clear()
            try:
                self.run_once()
                timeout = self._next_timeout()
            except Exception as e:
                log.error("Delivery worker error: %s", e, exc_info=True)
                timeout = 10
            if timeout > 0:
                self._wake.wait(timeout)
        log.info("Delivery worker stopped")
