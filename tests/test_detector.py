import random

import pytest

from geofence_agent.detector import TransitionDetector
from geofence_agent.models import ContainmentState, EventType
from geofence_agent.zones import ZoneRegistry


class FakeRegistry:
    """Zone snapshot the test can edit between samples."""

    def __init__(self, *zones):
        self.zones = list(zones)

    def current_zones(self):
        return tuple(self.zones)


def _detector(*zones, **kwargs):
    registry = FakeRegistry(*zones)
    emitted = []
    detector = TransitionDetector(registry, emit=emitted.append, **kwargs)
    return detector, registry, emitted


def _types(events):
    return [(e.type, e.zone_id) for e in events]


def test_first_sample_seeds_silently(make_zone, north):
    detector, _, emitted = _detector(make_zone())

    assert detector.on_sample(north(0)) == []
    assert emitted == []
    assert detector.seeded
    assert detector.states() == {"hq": ContainmentState.INSIDE}


def test_enter_then_exit(make_zone, north):
    detector, _, emitted = _detector(make_zone())

    detector.on_sample(north(1000))
    detector.on_sample(north(10))
    detector.on_sample(north(20))
    detector.on_sample(north(1000))
    detector.on_sample(north(2000))

    assert _types(emitted) == [
        (EventType.GEOFENCE_ENTER, "hq"),
        (EventType.GEOFENCE_EXIT, "hq"),
    ]
    assert emitted[0].location == north(10)


def test_enter_exit_alternate_per_zone(make_zone, north):
    detector, _, emitted = _detector(make_zone(radius=50))
    for meters in (0, 200, 10, 300, 5, 40, 60, 500, 0):
        detector.on_sample(north(meters))

    assert [e.type for e in emitted] == [EventType.GEOFENCE_EXIT, EventType.GEOFENCE_ENTER] * 3


def test_one_sample_can_enter_two_zones(make_zone, north):
    detector, _, emitted = _detector(make_zone("a", radius=100), make_zone("b", radius=300))

    detector.on_sample(north(5000))
    events = detector.on_sample(north(0))

    assert sorted(_types(events)) == [
        (EventType.GEOFENCE_ENTER, "a"),
        (EventType.GEOFENCE_ENTER, "b"),
    ]
    assert len(emitted) == 2


def test_deleted_zone_exits_once(make_zone, north):
    detector, registry, emitted = _detector(make_zone())
    detector.on_sample(north(0))

    registry.zones = []
    events = detector.on_sample(north(0))
    later = detector.on_sample(north(0))

    assert _types(events) == [(EventType.GEOFENCE_EXIT, "hq")]
    assert later == []
    assert detector.states() == {}


def test_deleted_zone_while_outside_is_silent(make_zone, north):
    detector, registry, emitted = _detector(make_zone())
    detector.on_sample(north(1000))

    registry.zones = []
    detector.on_sample(north(1000))

    assert emitted == []


def test_zone_added_after_seeding_starts_outside(make_zone, north):
    detector, registry, emitted = _detector(make_zone("hq"))
    detector.on_sample(north(0))

    registry.zones.append(make_zone("annex", radius=500))
    events = detector.on_sample(north(0))

    assert _types(events) == [(EventType.GEOFENCE_ENTER, "annex")]


def test_non_member_zones_are_not_tracked(make_zone, north):
    detector, _, emitted = _detector(
        make_zone("hq", members={"u1"}), make_zone("lab", members={"u2"}), user_id="u1",
    )
    detector.on_sample(north(1000))
    detector.on_sample(north(0))

    assert _types(emitted) == [(EventType.GEOFENCE_ENTER, "hq")]


def test_dwell_filters_single_sample_flicker(make_zone, north):
    detector, _, emitted = _detector(make_zone(radius=50), dwell_samples=2)
    detector.on_sample(north(0))

    detector.on_sample(north(60))       # one sample outside
    detector.on_sample(north(0))        # back inside: counter resets
    assert emitted == []

    detector.on_sample(north(60))
    detector.on_sample(north(70))
    assert _types(emitted) == [(EventType.GEOFENCE_EXIT, "hq")]
    assert emitted[0].location == north(70)


def test_dwell_must_be_positive(make_zone):
    with pytest.raises(ValueError):
        TransitionDetector(FakeRegistry(make_zone()), dwell_samples=0)


def test_failed_emit_is_retried_on_next_sample(make_zone, north):
    failures = [RuntimeError("disk full")]
    emitted = []

    def emit(event):
        if failures:
            raise failures.pop()
        emitted.append(event)

    detector = TransitionDetector(FakeRegistry(make_zone()), emit=emit)
    detector.on_sample(north(1000))

    with pytest.raises(RuntimeError):
        detector.on_sample(north(0))
    assert detector.states() == {"hq": ContainmentState.OUTSIDE}

    detector.on_sample(north(0))
    assert _types(emitted) == [(EventType.GEOFENCE_ENTER, "hq")]


def test_reset_reseeds(make_zone, north):
    detector, _, emitted = _detector(make_zone())
    detector.on_sample(north(1000))
    detector.reset()

    assert not detector.seeded
    detector.on_sample(north(0))
    assert emitted == []


def test_works_against_zone_registry(zone_dict, north):
    registry = ZoneRegistry(lambda: [zone_dict])
    registry.refresh()
    emitted = []
    detector = TransitionDetector(registry, emit=emitted.append, user_id="u1")

    detector.on_sample(north(0))
    detector.on_sample(north(150))

    assert _types(emitted) == [(EventType.GEOFENCE_EXIT, "hq")]
    assert emitted[0].local_id is None


def test_random_walk_keeps_enter_exit_balanced(make_zone, north):
    rng = random.Random(7)
    detector, _, emitted = _detector(make_zone("a", radius=80), make_zone("b", radius=200))
    for _ in range(500):
        detector.on_sample(north(rng.uniform(0, 400)))

    for zone_id in ("a", "b"):
        kinds = [e.type for e in emitted if e.zone_id == zone_id]
        assert kinds
        assert all(x != y for x, y in zip(kinds, kinds[1:]))
        enters = kinds.count(EventType.GEOFENCE_ENTER)
        assert abs(enters - kinds.count(EventType.GEOFENCE_EXIT)) <= 1
