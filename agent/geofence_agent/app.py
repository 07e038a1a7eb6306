"""
AgentApp — wires the pipeline and owns the main loop.

    listeners ──queue──▶ detector ──▶ outbox ◀── delivery worker ──▶ backend
                            ▲
                      zone registry

The main loop is a single-threaded sched.scheduler. Everything that touches
the detector runs on it:
  _poll_samples()       — drains the sample queue                 (every 200ms)
  _refresh_zones()      — re-fetches the zone snapshot            (every 300s)
  _check_connectivity() — offline/online transitions              (every 15s)
  _check_listeners()    — restarts a dead feed tailer             (every 30s)

Background threads: the feed tailer (only pushes to the queue) and the
delivery worker (only talks to the outbox, which has its own lock).
"""

import platform
import queue
import sched
import time
from dataclasses import replace

from .constants import (
    AGENT_VERSION, SAMPLE_POLL_MS, SAMPLE_BATCH_MAX, ZONE_REFRESH_SEC,
    CONNECTIVITY_CHECK_SEC, LISTENER_CHECK_SEC,
)
from .config import log, safe_print, OUTBOX_FILE, SAMPLE_FEED_FILE
from .detector import TransitionDetector
from .delivery import DeliveryWorker
from .exceptions import ValidationError
from .listeners import LocationListeners
from .models import AttendanceEvent, Coordinate, EventType, parse_iso
from .outbox import EventOutbox
from .state import AgentState
from .zones import ZoneRegistry
from . import api
from . import network


class AgentApp:
    """
    backend: optional object with fetch_active_zones(), submit_attendance_event(event)
    and current_user_identity() (e.g. policy.LocalBackend). Without one the
    HTTP API described by config["serverUrl"] is used.
    """

    def __init__(self, config, backend=None, outbox=None, feed_path=None):
        self._config = config
        self.state = AgentState()

        if backend is None:
            fetch = lambda: api.fetch_active_zones(config)
            submit = lambda event: api.submit_attendance_event(config, event)
            user_id = api.current_user_identity(config)
        else:
            fetch = backend.fetch_active_zones
            submit = backend.submit_attendance_event
            user_id = backend.current_user_identity()
        self._backend = backend
        self.user_id = user_id

        self.registry = ZoneRegistry(fetch)
        self.outbox = outbox if outbox is not None else EventOutbox(OUTBOX_FILE)
        self.worker = DeliveryWorker(self.outbox, submit, on_terminal=self._on_terminal)
        self.detector = TransitionDetector(
            self.registry,
            emit=self._emit,
            user_id=user_id,
            dwell_samples=int(config.get("dwellSamples", 1)),
        )

        self._sample_queue = queue.Queue()
        self.listeners = LocationListeners(
            self._sample_queue, feed_path or config.get("sampleFeedFile") or SAMPLE_FEED_FILE,
        )
        self._scheduler = sched.scheduler(time.monotonic, time.sleep)
        self._running = False
        self._device_info = {
            "platform": platform.system().lower() or "desktop",
            "version": AGENT_VERSION,
        }

    # ─── Lifecycle ───────────────────────────────────────────

    def run(self):
        """Start the agent. Blocks until stop() or Ctrl+C. Call from main thread."""
        self._running = True
        try:
            self.registry.refresh()
        except Exception as e:
            # Start on an empty snapshot; the scheduled refresh tries again.
            log.error("Initial zone refresh failed: %s", e, exc_info=True)
        self.worker.start()
        self.start_tracking()

        self._after(SAMPLE_POLL_MS / 1000, self._poll_samples)
        self._after(self._refresh_interval(), self._refresh_zones)
        self._after(CONNECTIVITY_CHECK_SEC, self._check_connectivity)
        self._after(LISTENER_CHECK_SEC, self._check_listeners)

        log.info(
            "v%s started (user=%s, zones=%d, pending=%d, dwell=%d)",
            AGENT_VERSION, self.user_id, len(self.registry),
            self.outbox.pending_count(), int(self._config.get("dwellSamples", 1)),
        )
        safe_print("Agent running.\n")

        try:
            self._scheduler.run()
        finally:
            self._running = False
            self.stop_tracking()
            self.worker.stop()
            log.info("AgentApp shut down (%d events still pending).", self.outbox.pending_count())

    def stop(self):
        self._running = False
        for event in list(self._scheduler.queue):
            try:
                self._scheduler.cancel(event)
            except ValueError:
                pass

    def _after(self, delay_sec, func):
        if self._running:
            self._scheduler.enter(delay_sec, 0, func)

    def _refresh_interval(self):
        return int(self._config.get("zoneRefreshSec", ZONE_REFRESH_SEC))

    # ─── Tracking ────────────────────────────────────────────

    def start_tracking(self):
        if self.state.tracking:
            return
        self.listeners.start()
        self.state.tracking = True

    def stop_tracking(self):
        """Stop producing samples. Queued events keep being delivered."""
        if not self.state.tracking:
            return
        self.listeners.stop()
        self.state.tracking = False
        self.detector.reset()
        dropped = 0
        try:
            while True:
                self._sample_queue.get_nowait()
                dropped += 1
        except queue.Empty:
            pass
        log.info("Tracking stopped (%d unprocessed samples discarded, %d events pending)",
                 dropped, self.outbox.pending_count())

    def push_sample(self, raw):
        """Programmatic producer entry point (thread-safe)."""
        return self.listeners.push(raw)

    # ─── Sample polling (every 200ms) ────────────────────────

    def _poll_samples(self):
        try:
            self._drain_queue()
        except Exception as e:
            log.error("_poll_samples error: %s", e, exc_info=True)
        self._after(SAMPLE_POLL_MS / 1000, self._poll_samples)

    def _drain_queue(self):
        batch = 0
        while batch < SAMPLE_BATCH_MAX:
            try:
                kind, payload = self._sample_queue.get_nowait()
            except queue.Empty:
                break
            batch += 1
            if kind == "sample":
                self.process_sample(payload)

    def process_sample(self, raw):
        """Validate and classify one sample. A bad sample is dropped, never fatal."""
        try:
            sample = raw if isinstance(raw, Coordinate) else Coordinate.from_dict(raw)
            observed_at = None
            if isinstance(raw, dict) and raw.get("timestamp"):
                observed_at = parse_iso(raw["timestamp"])
        except ValidationError as e:
            self.state.samples_dropped += 1
            log.warning("Dropped invalid sample: %s", e)
            return []

        try:
            events = self.detector.on_sample(sample, observed_at=observed_at)
        except Exception as e:
            self.state.samples_dropped += 1
            log.error("Detector failed on sample (%.6f, %.6f): %s",
                      sample.latitude, sample.longitude, e, exc_info=True)
            return []

        self.state.record_sample(sample)
        return events

    def _emit(self, event):
        if not event.device_info:
            event = replace(event, device_info=self._device_info)
        self.outbox.enqueue(event)
        self.state.events_emitted += 1
        self.worker.wake()

    # ─── Manual check-in / check-out ─────────────────────────

    def manual_login(self, location=None, notes=None):
        return self._manual(EventType.LOGIN, location, notes)

    def manual_logout(self, location=None, notes=None):
        return self._manual(EventType.LOGOUT, location, notes)

    def _manual(self, kind, location, notes):
        location = location or self.state.last_sample
        if location is None:
            raise ValidationError("No location available for manual check-in/out")
        if not isinstance(location, Coordinate):
            location = Coordinate.from_dict(location)
        event = AttendanceEvent(type=kind, location=location, notes=notes,
                                device_info=self._device_info)
        event = self.outbox.enqueue(event)
        self.state.events_emitted += 1
        self.worker.wake()
        log.info("Manual %s queued (%s)", kind.value, event.local_id[:8])
        return event

    # ─── Zone refresh (every 300s) ───────────────────────────

    def _refresh_zones(self):
        try:
            self.registry.refresh()
        except Exception as e:
            log.error("_refresh_zones error: %s", e, exc_info=True)
        self._after(self._refresh_interval(), self._refresh_zones)

    # ─── Connectivity monitoring (every 15s) ──────────────────

    def _check_connectivity(self):
        try:
            self._do_connectivity_check()
        except Exception as e:
            log.error("_check_connectivity error: %s", e)
        self._after(CONNECTIVITY_CHECK_SEC, self._check_connectivity)

    def _do_connectivity_check(self):
        server_url = self._config.get("serverUrl", "")
        if self._backend is not None or not server_url:
            return

        # Only probe while something is waiting out a backoff.
        wakeup = self.outbox.next_wakeup()
        if wakeup is None or wakeup <= time.time():
            return

        online_now = network.is_online(server_url)
        if not online_now and self.state.online:
            self.state.mark_offline()
            log.warning("Network OFFLINE — events will be kept in the outbox")
        elif online_now and not self.state.online:
            offline_for = self.state.offline_seconds
            self.state.mark_online()
            expedited = self.outbox.expedite()
            log.info("Network ONLINE after %.0fs — retrying %d queued events now",
                     offline_for, expedited)
            self.worker.wake()

    # ─── Listener watchdog (every 30s) ───────────────────────

    def _check_listeners(self):
        try:
            if self.state.tracking:
                self.listeners.check_and_restart()
        except Exception as e:
            log.error("Listener watchdog error: %s", e)
        self._after(LISTENER_CHECK_SEC, self._check_listeners)

    # ─── Terminal rejections ─────────────────────────────────

    def _on_terminal(self, entry, reason):
        """Surface a dead-lettered event once. Runs on the delivery thread."""
        event = entry.event
        log.error("Attendance %s (%s, zone=%s) rejected by server: %s — kept for review",
                  event.type.value, event.local_id[:8], event.zone_id or "-", reason)
        safe_print(f"[!] Attendance {event.type.value} was rejected: {reason}")
        self.state.rejections_shown += 1
