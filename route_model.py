"""
Route, stop and bus records.

A Route owns an ordered list of Stops. Each stop on a route is one school and
the stop order is the school visiting order. Sequence numbers are 1-based and
stay contiguous after every mutation in this module:

- ``move_stop`` swaps a stop with its neighbour (the admin "move up/down"
  buttons)
- ``add_stop`` appends a stop at the end
- ``remove_stop`` drops a stop and closes the gap

A Bus holds only its most recent position sample.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from geo import Coordinate, coordinate_from_mapping


def _to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _isoformat(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return _to_utc(dt).isoformat().replace("+00:00", "Z")


def parse_iso8601_utc(value: str) -> datetime:
    text = value.strip()
    if text.lower().endswith("z"):
        text = text[:-1] + "+00:00"
    return _to_utc(datetime.fromisoformat(text))


@dataclass
class Stop:
    id: str
    sequence: int
    name: str
    address: str = ""
    coordinate: Optional[Coordinate] = None
    school_id: Optional[str] = None
    scheduled_time: Optional[str] = None  # HH:MM

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sequence": self.sequence,
            "name": self.name,
            "address": self.address,
            "coordinate": self.coordinate.to_dict() if self.coordinate else None,
            "school_id": self.school_id,
            "scheduled_time": self.scheduled_time,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Stop":
        coordinate = raw.get("coordinate")
        if isinstance(coordinate, Coordinate):
            coord = coordinate
        elif isinstance(coordinate, dict):
            coord = coordinate_from_mapping(coordinate)
        else:
            coord = coordinate_from_mapping(raw)
        return cls(
            id=str(raw["id"]),
            sequence=int(raw.get("sequence") or raw.get("order") or 0),
            name=str(raw.get("name") or ""),
            address=str(raw.get("address") or ""),
            coordinate=coord,
            school_id=raw.get("school_id"),
            scheduled_time=raw.get("scheduled_time"),
        )


@dataclass
class Route:
    id: str
    stops: List[Stop] = field(default_factory=list)
    name: Optional[str] = None
    bus_id: Optional[str] = None
    estimated_duration_minutes: Optional[int] = None
    is_active: bool = True

    def ordered_stops(self) -> List[Stop]:
        return sorted(self.stops, key=lambda s: s.sequence)

    def find_stop(self, stop_id: Optional[str]) -> Optional[Stop]:
        if stop_id is None:
            return None
        for stop in self.stops:
            if stop.id == stop_id:
                return stop
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "bus_id": self.bus_id,
            "estimated_duration_minutes": self.estimated_duration_minutes,
            "is_active": self.is_active,
            "stops": [stop.to_dict() for stop in self.ordered_stops()],
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Route":
        stops = [Stop.from_dict(s) for s in raw.get("stops") or [] if isinstance(s, dict)]
        duration = raw.get("estimated_duration_minutes")
        route = cls(
            id=str(raw["id"]),
            stops=stops,
            name=raw.get("name"),
            bus_id=raw.get("bus_id"),
            estimated_duration_minutes=int(duration) if duration is not None else None,
            is_active=bool(raw.get("is_active", True)),
        )
        normalize_sequences(route)
        return route


@dataclass
class BusSnapshot:
    """The latest position sample for a bus."""
    id: str
    coordinate: Optional[Coordinate] = None
    speed: Optional[float] = None
    last_updated: Optional[datetime] = None
    bus_number: Optional[str] = None

    def __post_init__(self) -> None:
        if self.speed is not None and self.speed < 0:
            raise ValueError(f"speed must be non-negative: {self.speed}")
        if self.last_updated is not None:
            self.last_updated = _to_utc(self.last_updated)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bus_number": self.bus_number,
            "coordinate": self.coordinate.to_dict() if self.coordinate else None,
            "speed": self.speed,
            "last_updated": _isoformat(self.last_updated),
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "BusSnapshot":
        coordinate = raw.get("coordinate")
        coord = coordinate_from_mapping(coordinate if isinstance(coordinate, dict) else raw)
        speed = raw.get("speed")
        last_updated = raw.get("last_updated")
        return cls(
            id=str(raw["id"]),
            coordinate=coord,
            speed=float(speed) if speed not in (None, "") else None,
            last_updated=parse_iso8601_utc(last_updated) if last_updated else None,
            bus_number=raw.get("bus_number"),
        )


def normalize_sequences(route: Route) -> None:
    """Renumber stops 1..N keeping their current relative order."""
    ordered = route.ordered_stops()
    for index, stop in enumerate(ordered, start=1):
        stop.sequence = index
    route.stops = ordered


def move_stop(route: Route, stop_id: str, direction: str) -> List[Stop]:
    """Swap a stop with its neighbour. ``direction`` is "up" or "down"."""
    if direction not in {"up", "down"}:
        raise ValueError(f"invalid direction: {direction!r}")
    normalize_sequences(route)
    ordered = route.stops
    index = next((i for i, s in enumerate(ordered) if s.id == stop_id), None)
    if index is None:
        raise ValueError("Stop not found in route")
    if direction == "up":
        if index == 0:
            raise ValueError("Stop is already at the top")
        target = index - 1
    else:
        if index == len(ordered) - 1:
            raise ValueError("Stop is already at the bottom")
        target = index + 1

    current, other = ordered[index], ordered[target]
    current.sequence, other.sequence = other.sequence, current.sequence
    route.stops = route.ordered_stops()
    return route.stops


def add_stop(route: Route, stop: Stop) -> Stop:
    if route.find_stop(stop.id) is not None:
        raise ValueError(f"stop {stop.id} already on route {route.id}")
    normalize_sequences(route)
    stop.sequence = len(route.stops) + 1
    route.stops.append(stop)
    return stop


def remove_stop(route: Route, stop_id: str) -> bool:
    before = len(route.stops)
    route.stops = [s for s in route.stops if s.id != stop_id]
    if len(route.stops) == before:
        return False
    normalize_sequences(route)
    return True


__all__ = [
    "Stop",
    "Route",
    "BusSnapshot",
    "parse_iso8601_utc",
    "normalize_sequences",
    "move_stop",
    "add_stop",
    "remove_stop",
]
