import math
import os
import tempfile

# Paths are resolved when geofence_agent.config is imported: point them at a
# scratch directory before any test module imports the package.
os.environ.setdefault("GEOFENCE_AGENT_HOME", tempfile.mkdtemp(prefix="geofence-agent-tests-"))

import pytest

from geofence_agent.models import AttendanceEvent, Coordinate, EventType, Zone

HQ = (24.8600, 67.0000)
METERS_PER_DEG_LAT = 6_371_000 * math.pi / 180


def _north_of(meters, origin=HQ):
    return Coordinate(origin[0] + meters / METERS_PER_DEG_LAT, origin[1])


@pytest.fixture
def north():
    """north(meters, origin=HQ) -> Coordinate that many meters due north."""
    return _north_of


@pytest.fixture
def make_zone():
    def factory(zone_id="hq", radius=100.0, center=HQ, members=(), **kwargs):
        return Zone(
            zone_id=zone_id,
            name=kwargs.pop("name", zone_id.upper()),
            center=Coordinate(*center),
            radius=radius,
            allowed_members=frozenset(members),
            **kwargs,
        )
    return factory


@pytest.fixture
def make_event():
    def factory(kind="geofence_enter", zone_id="hq", location=None, **kwargs):
        kind = EventType(kind)
        return AttendanceEvent(
            type=kind,
            location=location or Coordinate(*HQ),
            zone_id=zone_id if kind.is_geofence else None,
            **kwargs,
        )
    return factory


@pytest.fixture
def zone_dict():
    """Region document as served by GET /api/geofence/regions."""
    return {
        "regionId": "hq",
        "name": "Head Office",
        "center": {"latitude": HQ[0], "longitude": HQ[1]},
        "radius": 100,
        "isActive": True,
        "allowedUsers": [{"_id": "u1", "name": "Ayesha"}, "u2"],
        "workingHours": {"start": "09:00", "end": "18:00"},
        "workingDays": ["monday", "tuesday", "wednesday", "thursday", "friday"],
    }
