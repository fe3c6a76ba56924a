"""Geo primitives shared by the duration estimator and the stop-progress resolver."""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional

R_EARTH = 6371000.0


@dataclass(frozen=True)
class Coordinate:
    """A latitude/longitude pair in degrees. No altitude."""
    lat: float
    lon: float

    def __post_init__(self) -> None:
        if not -90.0 <= self.lat <= 90.0:
            raise ValueError(f"latitude out of range: {self.lat}")
        if not -180.0 <= self.lon <= 180.0:
            raise ValueError(f"longitude out of range: {self.lon}")

    def to_dict(self) -> dict:
        return {"latitude": self.lat, "longitude": self.lon}


def distance(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance in meters between two coordinates."""
    dlat = math.radians(b.lat - a.lat)
    dlon = math.radians(b.lon - a.lon)
    s = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(a.lat))
        * math.cos(math.radians(b.lat))
        * math.sin(dlon / 2) ** 2
    )
    return 2 * R_EARTH * math.asin(min(1.0, math.sqrt(s)))


def _parse_float(value: Optional[object]) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def coordinate_from_mapping(raw: Optional[Mapping[str, Any]]) -> Optional[Coordinate]:
    """Build a Coordinate from a loosely keyed record.

    Accepts ``lat``/``latitude`` and ``lon``/``lng``/``longitude``; numeric
    strings are fine (the database stores decimals as text). Returns None when
    either half is missing, so "not reported yet" stays distinct from (0, 0).
    """
    if not raw:
        return None
    lat = raw.get("lat")
    if lat is None:
        lat = raw.get("latitude")
    lon = raw.get("lon")
    if lon is None:
        lon = raw.get("lng")
    if lon is None:
        lon = raw.get("longitude")
    lat_f = _parse_float(lat)
    lon_f = _parse_float(lon)
    if lat_f is None or lon_f is None:
        return None
    return Coordinate(lat=lat_f, lon=lon_f)


__all__ = [
    "R_EARTH",
    "Coordinate",
    "distance",
    "coordinate_from_mapping",
]
