"""
Great-circle math for circular zones.

Haversine on a spherical Earth is accurate to well under a meter at
office-scale radii (<= 10 km); poles and antipodes need no special casing.
"""

import math

from .constants import EARTH_RADIUS_M


def distance_meters(a, b):
    """Haversine distance between two coordinates, in meters. Does not validate."""
    phi1 = math.radians(a.latitude)
    phi2 = math.radians(b.latitude)
    d_phi = math.radians(b.latitude - a.latitude)
    d_lambda = math.radians(b.longitude - a.longitude)

    h = (math.sin(d_phi / 2) ** 2
         + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return EARTH_RADIUS_M * c


def distance_from_center(point, zone):
    return distance_meters(point, zone.center)


def is_inside(point, zone):
    """True when the point lies within the zone's radius (boundary inclusive)."""
    return distance_meters(point, zone.center) <= zone.radius


def zones_containing(point, zones):
    """All zones whose circle contains the point, in input order."""
    return [z for z in zones if is_inside(point, z)]
