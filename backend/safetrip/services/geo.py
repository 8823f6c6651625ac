"""Great-circle distance and coordinate helpers.

All distances are in meters on a spherical Earth (radius 6,371,000 m).
"""
from __future__ import annotations

import math
from dataclasses import dataclass

EARTH_RADIUS_M = 6_371_000.0


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float
    address: str | None = None
    name: str | None = None

    def as_dict(self) -> dict:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "address": self.address,
            "name": self.name,
        }


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine distance between two lat/lon points in meters."""
    la1, lo1, la2, lo2 = map(math.radians, [lat1, lon1, lat2, lon2])
    dlat = la2 - la1
    dlon = lo2 - lo1
    a = math.sin(dlat / 2) ** 2 + math.cos(la1) * math.cos(la2) * math.sin(dlon / 2) ** 2
    # Clamp rounding noise so antipodal points do not push asin out of its domain
    c = 2 * math.asin(math.sqrt(min(1.0, a)))
    return EARTH_RADIUS_M * c


def distance_between(a: Location, b: Location) -> float:
    return haversine_m(a.latitude, a.longitude, b.latitude, b.longitude)


def is_valid_coordinate(lat: float | None, lon: float | None) -> bool:
    if lat is None or lon is None:
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0


def make_location(lat: float | None, lon: float | None, address: str | None = None,
                  name: str | None = None) -> Location | None:
    """Build a Location from nullable columns; None when either coordinate is missing."""
    if lat is None or lon is None:
        return None
    return Location(latitude=lat, longitude=lon, address=address, name=name)


def map_link(lat: float | None, lon: float | None, base: str = "https://www.google.com/maps?q=") -> str | None:
    if lat is None or lon is None:
        return None
    return f"{base}{lat},{lon}"
