"""
Server-side zone policy — re-checks every submitted attendance event before it
becomes a record. Client-reported containment is never trusted.

For geofence events:
  1. zone must exist and be active                 → else zone_not_found
  2. user must be a member (empty list = everyone) → else user_not_allowed
  3. geofence_enter coordinates must be inside the zone (same haversine as the
     client)                                       → else outside_zone
Exit events skip the containment re-check: by the time an exit is reported the
device has already left, so requiring the reported point to be inside would
contradict the event itself.

All rejections are terminal. Resubmitting a localId the ledger already holds
returns the stored record instead of creating another one.

LocalBackend wires the validator and ledger behind the same three calls the
agent makes against the real backend (fetch zones, submit, identity).
"""

import itertools
import threading
from dataclasses import dataclass
from datetime import datetime

from .api import SubmitResult
from .config import log
from .exceptions import PolicyRejection, ValidationError
from .geo import is_inside
from .models import AttendanceEvent, Coordinate, EventType, Zone, utc_now

ZONE_NOT_FOUND = "zone_not_found"
USER_NOT_ALLOWED = "user_not_allowed"
OUTSIDE_ZONE = "outside_zone"

# HTTP status the backend answers with for each rejection.
REJECTION_STATUS = {
    ZONE_NOT_FOUND: 400,
    USER_NOT_ALLOWED: 403,
    OUTSIDE_ZONE: 400,
}


@dataclass(frozen=True)
class AttendanceRecord:
    record_id: int
    local_id: str
    user_id: str
    type: EventType
    location: Coordinate
    zone_id: str | None
    observed_at: datetime
    received_at: datetime
    within_working_hours: bool | None = None
    notes: str | None = None


class AttendanceLedger:
    """In-memory system of record, idempotent on (user_id, local_id)."""

    def __init__(self):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._records = {}

    def find(self, user_id, local_id):
        return self._records.get((str(user_id), local_id))

    def persist(self, user_id, event, within_working_hours=None):
        """Store the event. Returns (record, duplicate)."""
        key = (str(user_id), event.local_id)
        with self._lock:
            existing = self._records.get(key)
            if existing is not None:
                return existing, True
            record = AttendanceRecord(
                record_id=next(self._ids),
                local_id=event.local_id,
                user_id=str(user_id),
                type=event.type,
                location=event.location,
                zone_id=event.zone_id,
                observed_at=event.observed_at,
                received_at=utc_now(),
                within_working_hours=within_working_hours,
                notes=event.notes,
            )
            self._records[key] = record
        return record, False

    def records(self, user_id=None):
        recs = sorted(self._records.values(), key=lambda r: r.record_id)
        if user_id is None:
            return recs
        return [r for r in recs if r.user_id == str(user_id)]

    def summary(self, user_id, start=None, end=None):
        """Counts per event type in [start, end] (observed time)."""
        recs = [
            r for r in self.records(user_id)
            if (start is None or r.observed_at >= start) and (end is None or r.observed_at <= end)
        ]
        return {
            "totalLogs": len(recs),
            "loginCount": sum(1 for r in recs if r.type is EventType.LOGIN),
            "logoutCount": sum(1 for r in recs if r.type is EventType.LOGOUT),
            "geofenceEnterCount": sum(1 for r in recs if r.type is EventType.GEOFENCE_ENTER),
            "geofenceExitCount": sum(1 for r in recs if r.type is EventType.GEOFENCE_EXIT),
        }

    def __len__(self):
        return len(self._records)


class ZonePolicyValidator:
    """
    zones: anything with .get(zone_id) -> Zone | None (a dict, a ZoneRegistry,
    or a database-backed lookup). Inactive zones may be returned; they are
    rejected here.
    """

    def __init__(self, zones, ledger=None):
        self._zones = zones
        self.ledger = ledger if ledger is not None else AttendanceLedger()

    def validate(self, user_id, event):
        """Raise PolicyRejection if the event must not be recorded. Returns the zone or None."""
        if not event.type.is_geofence:
            return None

        zone = self._zones.get(event.zone_id)
        if zone is None or not zone.active:
            raise PolicyRejection(ZONE_NOT_FOUND, "Invalid or inactive geofence region")

        if not zone.is_member(user_id):
            raise PolicyRejection(USER_NOT_ALLOWED, "User not allowed in this geofence region")

        if event.type is EventType.GEOFENCE_ENTER and not is_inside(event.location, zone):
            raise PolicyRejection(OUTSIDE_ZONE, "Location is not within the geofence region")

        return zone

    def submit(self, user_id, submission):
        """
        Validate and persist one submission (AttendanceEvent or wire dict).
        Returns (record, duplicate). Raises ValidationError or PolicyRejection.
        """
        event = submission if isinstance(submission, AttendanceEvent) \
            else AttendanceEvent.from_dict(submission)
        if not event.local_id:
            raise ValidationError("localId is required")

        existing = self.ledger.find(user_id, event.local_id)
        if existing is not None:
            log.info("Duplicate submission %s from %s — returning record %d",
                     event.local_id[:8], user_id, existing.record_id)
            return existing, True

        zone = self.validate(user_id, event)
        within = zone.is_working_time(event.observed_at) if zone is not None else None
        return self.ledger.persist(user_id, event, within_working_hours=within)


class LocalBackend:
    """In-process stand-in for the attendance backend (demo mode and tests)."""

    def __init__(self, zones=(), user_id="local-user"):
        self._zones = {}
        for zone in zones:
            self.put_zone(zone)
        self.user_id = str(user_id)
        self.validator = ZonePolicyValidator(self._zones)
        self.submissions = []

    # ── Admin side ───────────────────────────────────────────

    def put_zone(self, zone):
        if not isinstance(zone, Zone):
            zone = Zone.from_dict(zone)
        self._zones[zone.zone_id] = zone
        return zone

    def remove_zone(self, zone_id):
        self._zones.pop(zone_id, None)

    @property
    def ledger(self):
        return self.validator.ledger

    # ── Agent-facing contract ────────────────────────────────

    def fetch_active_zones(self):
        return [z for z in self._zones.values() if z.active]

    def current_user_identity(self):
        return self.user_id

    def submit_attendance_event(self, event):
        self.submissions.append(event.local_id)
        try:
            _, duplicate = self.validator.submit(self.user_id, event)
        except PolicyRejection as e:
            return SubmitResult.reject(e.message, REJECTION_STATUS.get(e.reason, 400))
        except ValidationError as e:
            return SubmitResult.reject(str(e), 400)
        return SubmitResult.ok(409 if duplicate else 201, duplicate=duplicate)
