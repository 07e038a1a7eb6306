import pytest

from geofence_agent.geo import distance_meters, distance_from_center, is_inside, zones_containing
from geofence_agent.models import Coordinate


def test_distance_same_point_is_zero():
    p = Coordinate(24.86, 67.0)
    assert distance_meters(p, p) == 0.0


def test_one_degree_of_latitude():
    d = distance_meters(Coordinate(0.0, 0.0), Coordinate(1.0, 0.0))
    assert d == pytest.approx(111_195, abs=1)


def test_distance_is_symmetric():
    a, b = Coordinate(24.86, 67.0), Coordinate(31.52, 74.35)
    assert distance_meters(a, b) == pytest.approx(distance_meters(b, a))


def test_distance_across_antimeridian():
    d = distance_meters(Coordinate(0.0, 179.9995), Coordinate(0.0, -179.9995))
    assert d == pytest.approx(111.2, abs=0.5)


def test_boundary_is_inside(make_zone, north):
    edge = north(100)
    zone = make_zone(radius=distance_from_center(edge, make_zone()))
    assert is_inside(edge, zone)


def test_point_500m_away_is_outside_50m_zone(make_zone, north):
    zone = make_zone(radius=50)
    assert distance_from_center(north(500), zone) == pytest.approx(500, abs=0.5)
    assert not is_inside(north(500), zone)
    assert is_inside(north(20), zone)


def test_zones_containing_overlapping(make_zone, north):
    small = make_zone("small", radius=30)
    large = make_zone("large", radius=300)
    far = make_zone("far", center=(25.5, 67.0), radius=300)

    hits = zones_containing(north(100), [small, large, far])

    assert [z.zone_id for z in hits] == ["large"]
    assert [z.zone_id for z in zones_containing(north(0), [large, small, far])] == ["large", "small"]


def test_containment_near_null_island(make_zone):
    zone = make_zone(center=(0.0, 0.0), radius=100)
    assert is_inside(Coordinate(0.0, 0.0), zone)
    assert not is_inside(Coordinate(0.01, 0.01), zone)
    assert distance_meters(Coordinate(0.0, 0.0), Coordinate(0.0, 0.0)) == 0
