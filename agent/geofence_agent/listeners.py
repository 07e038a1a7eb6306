"""
Location sample producers.

Producers run on their own daemon threads and ONLY push onto the shared queue
as ("sample", dict) tuples. The main loop drains the queue and hands samples
to the detector, so the detector logic is the same whichever producer a
sample came from.

  - push(): programmatic producer (platform callbacks, tests, the CLI)
  - feed file: a JSON-lines file appended to by a GPS bridge, tailed from its
    current end (stale samples from before startup are ignored)
"""

import json
import threading
from pathlib import Path

from .config import log
from .constants import FEED_POLL_SEC


class LocationListeners:
    """Owns the producer threads feeding one sample queue."""

    def __init__(self, sample_queue, feed_path=None, poll_sec=FEED_POLL_SEC):
        self._queue = sample_queue
        self._feed_path = Path(feed_path) if feed_path else None
        self._poll_sec = poll_sec
        self._stop = threading.Event()
        self._feed_thread = None
        self._running = False

    # ── Lifecycle ────────────────────────────────────────────

    def start(self):
        self._stop.clear()
        self._running = True
        if self._feed_path is not None:
            self._start_feed()
        log.info("Location listeners started (feed=%s)", self._feed_path or "none")

    def stop(self):
        """Cancel the subscriptions. Samples already queued are left to the caller."""
        self._running = False
        self._stop.set()
        if self._feed_thread is not None:
            self._feed_thread.join(timeout=self._poll_sec * 3)
            self._feed_thread = None
        log.info("Location listeners stopped")

    def check_and_restart(self):
        """Watchdog: restart the feed tailer if it died."""
        if not self._running or self._feed_path is None:
            return
        if self._feed_thread is None or not self._feed_thread.is_alive():
            log.warning("Sample feed listener died — restarting")
            self._start_feed()

    @property
    def running(self):
        return self._running

    # ── Producers ────────────────────────────────────────────

    def push(self, sample):
        """Queue one raw sample dict. Ignored when tracking is stopped."""
        if not self._running:
            return False
        self._queue.put(("sample", sample))
        return True

    def _start_feed(self):
        # Tail from the current end.
        path = self._feed_path
        position = path.stat().st_size if path.exists() else 0
        self._feed_thread = threading.Thread(target=self._tail_feed, args=(position,),
                                             name="sample-feed", daemon=True)
        self._feed_thread.start()

    def _tail_feed(self, position):
        path = self._feed_path
        buffered = b""

        while not self._stop.is_set():
            try:
                if not path.exists():
                    position = 0
                    self._stop.wait(self._poll_sec)
                    continue
                size = path.stat().st_size
                if size < position:
                    log.info("Sample feed truncated — reading from start")
                    position = 0
                    buffered = b""
                if size == position:
                    self._stop.wait(self._poll_sec)
                    continue

                with open(path, "rb") as f:
                    f.seek(position)
                    chunk = f.read()
                    position = f.tell()

                buffered += chunk
                *lines, buffered = buffered.split(b"\n")
                for line in lines:
                    if line.strip():
                        self._queue_line(line.decode("utf-8", errors="replace"))
            except OSError as e:
                log.warning("Sample feed read error: %s", e)
                self._stop.wait(self._poll_sec)

    def _queue_line(self, line):
        try:
            data = json.loads(line)
        except ValueError:
            log.warning("Dropping unreadable feed line: %.80s", line)
            return
        self._queue.put(("sample", data))
