from geofence_agent.exceptions import FetchError
from geofence_agent.zones import ZoneRegistry


def test_ingest_drops_invalid_and_inactive(zone_dict):
    raw = [
        zone_dict,
        dict(zone_dict, regionId="zero", radius=0),
        dict(zone_dict, regionId="nocenter", center=None),
        dict(zone_dict, regionId="off", isActive=False),
        {"name": "no id"},
        "garbage",
    ]
    zones = ZoneRegistry.ingest(raw)
    assert [z.zone_id for z in zones] == ["hq"]


def test_ingest_duplicate_id_keeps_last(zone_dict):
    zones = ZoneRegistry.ingest([zone_dict, dict(zone_dict, radius=250)])
    assert len(zones) == 1
    assert zones[0].radius == 250


def test_malformed_zone_does_not_abort_refresh(zone_dict):
    served = [
        zone_dict,
        dict(zone_dict, regionId="bad-offset", utcOffsetMinutes="+05:00"),
        dict(zone_dict, regionId="bad-hours", workingHours="all day"),
        dict(zone_dict, regionId="bad-members", allowedUsers="u1"),
    ]
    registry = ZoneRegistry(lambda: served)

    assert registry.refresh()
    assert [z.zone_id for z in registry.current_zones()] == ["hq"]


def test_refresh_swaps_snapshot(zone_dict):
    served = [[zone_dict], [zone_dict, dict(zone_dict, regionId="branch")]]
    registry = ZoneRegistry(lambda: served.pop(0))

    assert registry.refresh()
    first = registry.current_zones()
    assert registry.refresh()

    assert [z.zone_id for z in first] == ["hq"]
    assert [z.zone_id for z in registry.current_zones()] == ["hq", "branch"]
    assert registry.get("branch").zone_id == "branch"
    assert registry.version == 2


def test_failed_refresh_keeps_previous_snapshot(zone_dict):
    calls = []

    def fetch():
        calls.append(1)
        if len(calls) > 1:
            raise FetchError("HTTP 503")
        return [zone_dict]

    registry = ZoneRegistry(fetch)
    registry.refresh()

    assert registry.refresh() is False
    assert len(registry) == 1
    assert registry.get("hq") is not None
    assert registry.version == 1


def test_registry_empty_before_first_refresh():
    registry = ZoneRegistry(lambda: [])
    assert registry.current_zones() == ()
    assert registry.get("hq") is None
