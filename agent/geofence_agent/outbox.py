"""
EventOutbox — durable queue of attendance events awaiting server confirmation.

Storage is a dedicated JSON-lines journal (one record per mutation):

    {"op": "enqueue", "seq": 7, "event": {...}}
    {"op": "fail",    "id": "...", "attempts": 2, "next": 1700000000.0, "error": "..."}
    {"op": "dead",    "id": "...", "attempts": 1, "error": "..."}
    {"op": "ack",     "id": "..."}
    {"op": "requeue", "id": "..."} / {"op": "purge", "id": "..."}

Every record is flushed + fsynced before the call returns, and the journal is
replayed on startup, so an entry survives a crash anywhere between enqueue and
acknowledge. A torn last line (crash mid-write) is skipped on reload. Once the
journal grows past OUTBOX_COMPACT_LINES it is rewritten with only live entries
(temp file + os.replace).

Several processes may hold an EventOutbox on the same journal (the running
agent plus a CLI login/retry). Every public method takes an exclusive file
lock (<journal>.lock) and first catches up on records the others appended,
or reloads from scratch if another process rewrote the file. A compaction
therefore always includes every live entry, whoever wrote it.

Ordering: drain_oldest() hands out eligible entries oldest first and stops at
a lane whose head is waiting out a backoff, so nothing overtakes a pending
retry of the same zone (manual login/logout share one lane). Within a batch
several entries of one lane can be returned; DeliveryWorker stops a lane at
its first failure. Dead-lettered entries do not block.
"""

import json
import os
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path

from filelock import FileLock

from .config import log, OUTBOX_FILE
from .constants import (
    BACKOFF_BASE_SEC, BACKOFF_MAX_SEC, OUTBOX_COMPACT_LINES, OUTBOX_LOCK_TIMEOUT_SEC,
)
from .exceptions import ValidationError
from .models import AttendanceEvent, OutboxEntry


def backoff_delay(attempt_count, base=BACKOFF_BASE_SEC, cap=BACKOFF_MAX_SEC):
    """Exponential backoff: base, 2*base, 4*base, ... capped."""
    if attempt_count <= 0:
        return 0.0
    return float(min(base * (2 ** (attempt_count - 1)), cap))


class EventOutbox:
    """Durable FIFO of OutboxEntry keyed by the event's local id."""

    def __init__(self, path=None, compact_after=OUTBOX_COMPACT_LINES, clock=time.time):
        self._path = Path(path) if path else OUTBOX_FILE
        self._compact_after = compact_after
        self._clock = clock
        self._lock = threading.Lock()
        self._file_lock = FileLock(str(self._path) + ".lock", timeout=OUTBOX_LOCK_TIMEOUT_SEC)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._reset()
        with self._exclusive():
            pass

    def _reset(self):
        self._entries = {}        # local_id -> OutboxEntry, in seq order
        self._next_seq = 1
        self._journal_lines = 0
        self._offset = 0          # bytes of the journal already replayed
        self._head = None         # first line of the journal we replayed

    @contextmanager
    def _exclusive(self):
        with self._lock, self._file_lock:
            self._sync()
            yield

    # ─── Core operations ─────────────────────────────────────

    def enqueue(self, event):
        """Persist a new event. Assigns a local id if missing. Never blocks on network."""
        event = event.with_local_id()
        with self._exclusive():
            if event.local_id in self._entries:
                log.info("Outbox already holds %s — ignoring duplicate enqueue", event.local_id)
                return event
            entry = OutboxEntry(seq=self._next_seq, event=event)
            self._append({"op": "enqueue", "seq": entry.seq, "event": event.to_dict()})
            self._entries[event.local_id] = entry
            self._next_seq += 1
            log.info("Queued %s event %s (zone=%s, pending=%d)",
                     event.type.value, event.local_id[:8], event.zone_id or "-",
                     len(self._entries))
            self._maybe_compact()
        return event

    def drain_oldest(self, max_n, now=None):
        """Up to max_n deliverable entries, oldest first. Nothing is removed."""
        now = self._clock() if now is None else now
        ready = []
        blocked = set()
        with self._exclusive():
            for entry in self._entries.values():
                if len(ready) >= max_n:
                    break
                if entry.dead or entry.lane in blocked:
                    continue
                if entry.is_eligible(now):
                    ready.append(entry)
                else:
                    # Waiting on backoff: later entries of this zone must wait too.
                    blocked.add(entry.lane)
        return ready

    def acknowledge(self, local_id):
        """Remove an entry the server has confirmed."""
        with self._exclusive():
            entry = self._entries.get(local_id)
            if entry is None:
                return False
            self._append({"op": "ack", "id": local_id})
            del self._entries[local_id]
            self._maybe_compact()
        return True

    def record_failure(self, local_id, error, terminal=False, now=None):
        """
        Count a failed attempt. Retryable failures get the next backoff slot;
        terminal ones move the entry to the dead-letter set with the error kept.
        Returns the updated entry, or None if the id is unknown.
        """
        now = self._clock() if now is None else now
        error = str(error)
        with self._exclusive():
            entry = self._entries.get(local_id)
            if entry is None or entry.dead:
                return entry
            attempts = entry.attempt_count + 1
            if terminal:
                self._append({"op": "dead", "id": local_id, "attempts": attempts, "error": error})
                entry.dead = True
                log.info("Event %s moved to dead letters after %d attempt(s)", local_id[:8], attempts)
            else:
                next_at = now + backoff_delay(attempts)
                self._append({"op": "fail", "id": local_id, "attempts": attempts,
                              "next": next_at, "error": error})
                entry.next_attempt_at = next_at
                log.warning("Event %s attempt %d failed (%s) — retry in %.0fs",
                            local_id[:8], attempts, error, next_at - now)
            entry.attempt_count = attempts
            entry.last_error = error
            entry.event = _with_attempts(entry.event, attempts)
            self._maybe_compact()
        return entry

    # ─── Dead letters / inspection ───────────────────────────

    def dead_letters(self):
        with self._exclusive():
            return [e for e in self._entries.values() if e.dead]

    def requeue_dead(self, local_id):
        """Operator retry: put a dead-lettered entry back in its original place."""
        with self._exclusive():
            entry = self._entries.get(local_id)
            if entry is None or not entry.dead:
                return False
            self._append({"op": "requeue", "id": local_id})
            entry.dead = False
            entry.next_attempt_at = 0.0
        log.info("Dead-lettered event %s re-queued by operator", local_id[:8])
        return True

    def purge_dead(self, local_id):
        with self._exclusive():
            entry = self._entries.get(local_id)
            if entry is None or not entry.dead:
                return False
            self._append({"op": "purge", "id": local_id})
            del self._entries[local_id]
        return True

    def expedite(self):
        """Make every pending entry eligible now (network just came back)."""
        with self._exclusive():
            count = 0
            for entry in self._entries.values():
                if not entry.dead and entry.next_attempt_at:
                    entry.next_attempt_at = 0.0
                    count += 1
        return count

    def pending_count(self):
        with self._exclusive():
            return sum(1 for e in self._entries.values() if not e.dead)

    def entries(self):
        with self._exclusive():
            return list(self._entries.values())

    def next_wakeup(self):
        """Earliest time any lane head becomes eligible, or None if nothing is pending."""
        heads = {}
        with self._exclusive():
            for entry in self._entries.values():
                if not entry.dead and entry.lane not in heads:
                    heads[entry.lane] = entry.next_attempt_at
        return min(heads.values()) if heads else None

    # ─── Journal ─────────────────────────────────────────────

    def _append(self, record):
        line = (json.dumps(record, separators=(",", ":")) + "\n").encode("utf-8")
        with open(self._path, "ab") as f:
            empty = os.fstat(f.fileno()).st_size == 0
            f.write(line)
            f.flush()
            os.fsync(f.fileno())
            self._offset = f.tell()
        if empty:
            self._head = line
        self._journal_lines += 1

    def _sync(self):
        """Catch up with the journal on disk. Caller holds both locks."""
        try:
            f = open(self._path, "rb")
        except FileNotFoundError:
            if self._entries:
                log.warning("Outbox journal %s disappeared — rewriting %d entries",
                            self._path, len(self._entries))
                self._rewrite()
            return

        with f:
            head = f.readline()
            size = os.fstat(f.fileno()).st_size
            if head != self._head or size < self._offset:
                # First load, or another process compacted the journal.
                f.close()
                self._reset()
                self._load()
                return
            if size == self._offset:
                return
            f.seek(self._offset)
            chunk = f.read()

        end = chunk.rfind(b"\n") + 1
        lines = chunk[:end].splitlines()
        self._replay_lines(lines, first_lineno=self._journal_lines + 1)
        self._offset += end
        self._journal_lines += len(lines)
        if end < len(chunk):
            log.warning("Outbox journal ends mid-record — rewriting")
            self._rewrite()

    def _load(self):
        try:
            raw = self._path.read_bytes()
        except FileNotFoundError:
            return
        except OSError as e:
            log.error("Cannot read outbox journal %s: %s", self._path, e)
            raise

        lines = raw.splitlines()
        self._replay_lines(lines)
        self._journal_lines = len(lines)
        self._offset = len(raw)
        newline = raw.find(b"\n")
        self._head = raw[:newline + 1] if newline >= 0 else raw

        # A torn final line would swallow the next appended record: rewrite now.
        if raw and not raw.endswith(b"\n"):
            log.warning("Outbox journal ends mid-record — rewriting")
            self._rewrite()

        if self._entries:
            log.info("Outbox restored %d entries (%d dead-lettered)",
                     len(self._entries), sum(1 for e in self._entries.values() if e.dead))

    def _replay_lines(self, lines, first_lineno=1):
        for lineno, line in enumerate(lines, first_lineno):
            if not line.strip():
                continue
            try:
                self._replay(json.loads(line.decode("utf-8")))
            except (ValueError, KeyError, TypeError, ValidationError) as e:
                log.warning("Skipping unreadable outbox record at line %d: %s", lineno, e)

    def _replay(self, record):
        op = record["op"]
        if op == "epoch":
            return
        if op == "enqueue":
            event = AttendanceEvent.from_dict(record["event"])
            entry = OutboxEntry(
                seq=int(record["seq"]),
                event=event,
                attempt_count=int(record.get("attempts", event.delivery_attempts)),
                next_attempt_at=float(record.get("next", 0.0)),
                last_error=record.get("error"),
                dead=bool(record.get("dead", False)),
            )
            self._entries[event.local_id] = entry
            self._next_seq = max(self._next_seq, entry.seq + 1)
            return

        entry = self._entries.get(record["id"])
        if entry is None:
            return
        if op == "ack" or op == "purge":
            del self._entries[record["id"]]
        elif op == "fail":
            entry.attempt_count = int(record["attempts"])
            entry.next_attempt_at = float(record["next"])
            entry.last_error = record.get("error")
        elif op == "dead":
            entry.attempt_count = int(record["attempts"])
            entry.last_error = record.get("error")
            entry.dead = True
        elif op == "requeue":
            entry.dead = False
            entry.next_attempt_at = 0.0
        else:
            raise ValueError(f"unknown op {op!r}")
        entry.event = _with_attempts(entry.event, entry.attempt_count)

    def _maybe_compact(self):
        if (self._journal_lines < self._compact_after
                or self._journal_lines < 2 * len(self._entries)):
            return
        self._rewrite()
        log.info("Outbox journal compacted (%d live entries)", len(self._entries))

    def _rewrite(self):
        # A fresh epoch line tells other processes the file was replaced.
        head = (json.dumps({"op": "epoch", "id": uuid.uuid4().hex},
                           separators=(",", ":")) + "\n").encode("utf-8")
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        with open(tmp, "wb") as f:
            f.write(head)
            for entry in self._entries.values():
                f.write(json.dumps({
                    "op": "enqueue",
                    "seq": entry.seq,
                    "event": entry.event.to_dict(),
                    "attempts": entry.attempt_count,
                    "next": entry.next_attempt_at,
                    "error": entry.last_error,
                    "dead": entry.dead,
                }, separators=(",", ":")).encode("utf-8") + b"\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self._path)
        self._head = head
        self._offset = os.path.getsize(self._path)
        self._journal_lines = len(self._entries) + 1


def _with_attempts(event, attempts):
    if event.delivery_attempts == attempts:
        return event
    return replace(event, delivery_attempts=attempts)
