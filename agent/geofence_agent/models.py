"""
Value types shared by the pipeline: Coordinate, Zone, AttendanceEvent, OutboxEntry.

Everything that crosses a boundary (backend JSON, the outbox journal, the
sample feed) enters through a from_dict() constructor that validates it, so
nothing malformed ever reaches the detector or the outbox.
"""

from __future__ import annotations

import math
import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, time, timedelta, timezone
from enum import Enum

from .constants import (
    MAX_RADIUS_M, MAX_NOTES_LEN, WEEKDAYS, DEFAULT_WORKING_DAYS,
    DEFAULT_WORK_START, DEFAULT_WORK_END, MAX_UTC_OFFSET_MIN,
)
from .exceptions import ValidationError

_HHMM = re.compile(r"^([0-1]?[0-9]|2[0-3]):([0-5][0-9])$")
MANUAL_LANE = "__manual__"


class ContainmentState(str, Enum):
    INSIDE = "INSIDE"
    OUTSIDE = "OUTSIDE"


class EventType(str, Enum):
    LOGIN = "login"
    LOGOUT = "logout"
    GEOFENCE_ENTER = "geofence_enter"
    GEOFENCE_EXIT = "geofence_exit"

    @property
    def is_geofence(self) -> bool:
        return self in (EventType.GEOFENCE_ENTER, EventType.GEOFENCE_EXIT)


# ─── Helpers ─────────────────────────────────────────────────────

def _number(value, name, *, optional=False):
    if value is None:
        if optional:
            return None
        raise ValidationError(f"{name} is required")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{name} must be a number")
    value = float(value)
    if not math.isfinite(value):
        raise ValidationError(f"{name} must be finite")
    return value


def parse_hhmm(value) -> time:
    match = _HHMM.match(str(value or "").strip())
    if not match:
        raise ValidationError(f"Invalid time of day {value!r} (expected HH:MM)")
    return time(int(match.group(1)), int(match.group(2)))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(instant: datetime) -> str:
    return instant.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso(value) -> datetime:
    """
    Parse an ISO 8601 instant or a numeric epoch (seconds, or milliseconds as
    sent by mobile location APIs). Naive values are taken as UTC.
    """
    if isinstance(value, datetime):
        instant = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000.0 if value > 1e11 else float(value)
        try:
            instant = datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise ValidationError(f"Invalid timestamp {value!r}") from None
    else:
        try:
            instant = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Invalid timestamp {value!r}") from None
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


# ─── Coordinate ──────────────────────────────────────────────────

@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float
    accuracy: float | None = None
    altitude: float | None = None
    heading: float | None = None
    speed: float | None = None

    @classmethod
    def from_dict(cls, data) -> "Coordinate":
        if not isinstance(data, dict):
            raise ValidationError("Location must be an object")
        lat = _number(data.get("latitude"), "latitude")
        lon = _number(data.get("longitude"), "longitude")
        if not -90.0 <= lat <= 90.0:
            raise ValidationError("Latitude must be between -90 and 90")
        if not -180.0 <= lon <= 180.0:
            raise ValidationError("Longitude must be between -180 and 180")
        accuracy = _number(data.get("accuracy"), "accuracy", optional=True)
        if accuracy is not None and accuracy < 0:
            raise ValidationError("Accuracy must be a positive number")
        return cls(
            latitude=lat,
            longitude=lon,
            accuracy=accuracy,
            altitude=_number(data.get("altitude"), "altitude", optional=True),
            heading=_number(data.get("heading"), "heading", optional=True),
            speed=_number(data.get("speed"), "speed", optional=True),
        )

    def to_dict(self) -> dict:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy": self.accuracy,
            "altitude": self.altitude,
            "heading": self.heading,
            "speed": self.speed,
        }


# ─── Zone ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class WorkingHours:
    start: time = field(default_factory=lambda: parse_hhmm(DEFAULT_WORK_START))
    end: time = field(default_factory=lambda: parse_hhmm(DEFAULT_WORK_END))

    @property
    def crosses_midnight(self) -> bool:
        return self.end <= self.start

    def contains(self, t: time) -> bool:
        if self.crosses_midnight:
            return t >= self.start or t < self.end
        return self.start <= t < self.end


@dataclass(frozen=True)
class Zone:
    zone_id: str
    name: str
    center: Coordinate
    radius: float
    active: bool = True
    allowed_members: frozenset = frozenset()
    working_hours: WorkingHours = field(default_factory=WorkingHours)
    working_days: frozenset = frozenset(DEFAULT_WORKING_DAYS)
    utc_offset_minutes: int = 0
    address: str = ""
    description: str = ""

    def __post_init__(self):
        if not self.zone_id:
            raise ValidationError("Zone id is required")
        if not (0 < self.radius <= MAX_RADIUS_M):
            raise ValidationError(
                f"Zone {self.zone_id}: radius must be between 0 and {MAX_RADIUS_M} meters"
            )

    @classmethod
    def from_dict(cls, data) -> "Zone":
        """Build a Zone from the backend region shape. Raises ValidationError."""
        if not isinstance(data, dict):
            raise ValidationError("Zone must be an object")

        zone_id = str(data.get("regionId") or data.get("zoneId") or data.get("id") or "").strip()
        if not zone_id:
            raise ValidationError("Zone id is required")

        center = Coordinate.from_dict(data.get("center"))
        radius = _number(data.get("radius"), "radius")

        hours = data.get("workingHours") or {}
        if not isinstance(hours, dict):
            raise ValidationError(f"Zone {zone_id}: workingHours must be an object")
        working_hours = WorkingHours(
            start=parse_hhmm(hours.get("start", DEFAULT_WORK_START)),
            end=parse_hhmm(hours.get("end", DEFAULT_WORK_END)),
        )

        days = data.get("workingDays")
        if days is None:
            days = DEFAULT_WORKING_DAYS
        if not isinstance(days, (list, tuple)):
            raise ValidationError(f"Zone {zone_id}: workingDays must be a list")
        days = [str(d).strip().lower() for d in days]
        unknown = [d for d in days if d not in WEEKDAYS]
        if unknown:
            raise ValidationError(f"Zone {zone_id}: unknown working days {unknown}")

        raw_members = data.get("allowedUsers") or data.get("allowedMembers") or []
        if not isinstance(raw_members, (list, tuple)):
            raise ValidationError(f"Zone {zone_id}: allowedUsers must be a list")
        members = []
        for m in raw_members:
            # Populated user documents carry their id under _id.
            if isinstance(m, dict):
                m = m.get("_id") or m.get("id")
            if m is None or isinstance(m, (dict, list)) or not str(m).strip():
                raise ValidationError(f"Zone {zone_id}: allowedUsers entry without an id")
            members.append(str(m).strip())

        offset = _number(data.get("utcOffsetMinutes"), "utcOffsetMinutes", optional=True) or 0
        if offset != int(offset) or abs(offset) > MAX_UTC_OFFSET_MIN:
            raise ValidationError(
                f"Zone {zone_id}: utcOffsetMinutes must be whole minutes within ±{MAX_UTC_OFFSET_MIN}"
            )

        return cls(
            zone_id=zone_id,
            name=str(data.get("name") or zone_id),
            center=Coordinate(center.latitude, center.longitude),
            radius=radius,
            active=bool(data.get("isActive", data.get("active", True))),
            allowed_members=frozenset(members),
            working_hours=working_hours,
            working_days=frozenset(days),
            utc_offset_minutes=int(offset),
            address=str(data.get("address") or ""),
            description=str(data.get("description") or ""),
        )

    def is_member(self, user_id) -> bool:
        """Empty membership means every user is allowed."""
        return not self.allowed_members or str(user_id) in self.allowed_members

    def local_time(self, instant: datetime) -> datetime:
        return parse_iso(instant) + timedelta(minutes=self.utc_offset_minutes)

    def is_working_time(self, instant: datetime) -> bool:
        """
        Whether `instant` falls inside the zone's working window.
        For overnight windows the early-morning part belongs to the
        previous day's shift, so the weekday check uses that day.
        """
        local = self.local_time(instant)
        t = local.time().replace(tzinfo=None)
        hours = self.working_hours
        if not hours.contains(t):
            return False
        shift_day = local
        if hours.crosses_midnight and t < hours.end:
            shift_day = local - timedelta(days=1)
        return WEEKDAYS[shift_day.weekday()] in self.working_days


# ─── AttendanceEvent ─────────────────────────────────────────────

@dataclass(frozen=True)
class AttendanceEvent:
    type: EventType
    location: Coordinate
    zone_id: str | None = None
    observed_at: datetime = field(default_factory=utc_now)
    local_id: str | None = None
    delivery_attempts: int = 0
    notes: str | None = None
    device_info: dict | None = None

    def __post_init__(self):
        if not isinstance(self.type, EventType):
            object.__setattr__(self, "type", _event_type(self.type))
        if self.type.is_geofence and not self.zone_id:
            raise ValidationError(f"{self.type.value} event requires a zone id")
        if not self.type.is_geofence and self.zone_id:
            raise ValidationError(f"{self.type.value} event must not carry a zone id")
        if self.notes and len(self.notes) > MAX_NOTES_LEN:
            raise ValidationError(f"Notes must not exceed {MAX_NOTES_LEN} characters")
        object.__setattr__(self, "observed_at", parse_iso(self.observed_at))

    @property
    def lane(self) -> str:
        """Ordering lane: one per zone, one shared by manual events."""
        return self.zone_id or MANUAL_LANE

    def with_local_id(self) -> "AttendanceEvent":
        if self.local_id:
            return self
        return replace(self, local_id=uuid.uuid4().hex)

    def to_payload(self) -> dict:
        """Body for POST /api/attendance/log."""
        payload = {
            "localId": self.local_id,
            "type": self.type.value,
            "location": self.location.to_dict(),
            "regionId": self.zone_id,
            "timestamp": to_iso(self.observed_at),
        }
        if self.device_info:
            payload["deviceInfo"] = dict(self.device_info)
        if self.notes:
            payload["notes"] = self.notes
        return payload

    def to_dict(self) -> dict:
        data = self.to_payload()
        data["deliveryAttempts"] = self.delivery_attempts
        return data

    @classmethod
    def from_dict(cls, data) -> "AttendanceEvent":
        if not isinstance(data, dict):
            raise ValidationError("Event must be an object")
        return cls(
            type=_event_type(data.get("type")),
            location=Coordinate.from_dict(data.get("location")),
            zone_id=data.get("regionId") or None,
            observed_at=parse_iso(data["timestamp"]) if data.get("timestamp") else utc_now(),
            local_id=data.get("localId") or None,
            delivery_attempts=int(data.get("deliveryAttempts") or 0),
            notes=data.get("notes") or None,
            device_info=data.get("deviceInfo") or None,
        )


def _event_type(value) -> EventType:
    try:
        return EventType(value)
    except ValueError:
        raise ValidationError(
            "Type must be login, logout, geofence_enter, or geofence_exit"
        ) from None


# ─── OutboxEntry ─────────────────────────────────────────────────

@dataclass
class OutboxEntry:
    seq: int
    event: AttendanceEvent
    attempt_count: int = 0
    next_attempt_at: float = 0.0
    last_error: str | None = None
    dead: bool = False

    @property
    def local_id(self) -> str:
        return self.event.local_id

    @property
    def lane(self) -> str:
        return self.event.lane

    def is_eligible(self, now: float) -> bool:
        return not self.dead and self.next_attempt_at <= now
