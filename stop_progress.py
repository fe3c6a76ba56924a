from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, Tuple
import json
import os

from geo import distance
from route_model import BusSnapshot, Route, Stop
from route_duration import AVERAGE_SPEED_KMH
from service_day import get_service_date


# Configuration constants
DEFAULT_TRACKING_CONFIG_PATH = Path("config/tracking_config.json")

# A bus nearest to a stop and within this distance is "at" the stop (meters)
ARRIVAL_RADIUS_M = float(os.getenv("ARRIVAL_RADIUS_M", "150.0"))

# Stops whose distances differ by less than this are treated as equidistant (meters)
TIE_TOLERANCE_M = 1.0

# Position samples older than this are reported as stale to the display layer
STALE_FIX_S = int(os.getenv("STALE_FIX_S", "90"))


@dataclass
class StopProgress:
    """How far a bus is from one particular stop, computed fresh per poll."""
    has_route: bool
    has_stop: bool = False
    student_stop_id: Optional[str] = None
    student_stop_address: Optional[str] = None
    student_stop_sequence: Optional[int] = None
    total_stops: int = 0
    completed_stops_count: int = 0
    stops_away: int = 0
    has_arrived: bool = False
    last_completed_stop_id: Optional[str] = None
    message: Optional[str] = None
    nearest_stop_id: Optional[str] = None
    nearest_stop_distance_m: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"hasRoute": self.has_route}
        if not self.has_route:
            result["message"] = self.message
            return result
        result["hasStop"] = self.has_stop
        if not self.has_stop:
            result["message"] = self.message
            return result
        result.update({
            "studentStopId": self.student_stop_id,
            "studentStopAddress": self.student_stop_address,
            "studentStopSequence": self.student_stop_sequence,
            "totalStops": self.total_stops,
            "completedStopsCount": self.completed_stops_count,
            "stopsAway": self.stops_away,
            "hasArrived": self.has_arrived,
            "lastCompletedStopId": self.last_completed_stop_id,
            "nearestStopId": self.nearest_stop_id,
            "nearestStopDistanceMeters": (
                round(self.nearest_stop_distance_m, 1)
                if self.nearest_stop_distance_m is not None
                else None
            ),
        })
        if self.message:
            result["message"] = self.message
        return result


def _pick_nearest(
    candidates: List[Tuple[Stop, float]],
    completed_floor: int,
) -> Tuple[Stop, float]:
    """Nearest stop, breaking ties toward forward progress.

    Among equidistant stops prefer the lowest sequence still ahead of the
    completed floor; if every tied stop is behind it, take the highest.
    """
    min_d = min(d for _, d in candidates)
    tied = [(s, d) for s, d in candidates if d - min_d <= TIE_TOLERANCE_M]
    ahead = [(s, d) for s, d in tied if s.sequence > completed_floor]
    if ahead:
        return min(ahead, key=lambda item: item[0].sequence)
    return max(tied, key=lambda item: item[0].sequence)


def resolve_progress(
    route: Optional[Route],
    target_stop_id: Optional[str],
    bus: Optional[BusSnapshot],
    *,
    arrival_radius_m: float = ARRIVAL_RADIUS_M,
    completed_floor: int = 0,
) -> StopProgress:
    """
    Work out where a bus is along a route relative to a target stop.

    The stop nearest the bus is its inferred position in the stop sequence.
    ``completed_floor`` is the highest completed sequence already observed for
    this bus and route (0 when unknown); the result never reports less
    progress than that, so GPS jitter around a stop cannot move the bus
    backward. Off-route buses still resolve to whichever stop is nearest.

    Missing route/stop associations come back as ``has_route``/``has_stop``
    False with a message rather than an exception.
    """
    if route is None or not route.stops:
        return StopProgress(has_route=False, message="Student not assigned to a route with stops")

    ordered = route.ordered_stops()
    target = route.find_stop(target_stop_id)
    if target is None:
        return StopProgress(has_route=True, has_stop=False, message="Student not assigned to a stop on this route")

    total = len(ordered)
    progress = StopProgress(
        has_route=True,
        has_stop=True,
        student_stop_id=target.id,
        student_stop_address=target.address,
        student_stop_sequence=target.sequence,
        total_stops=total,
    )

    floor = max(0, min(int(completed_floor), total))
    if bus is None or bus.coordinate is None:
        progress.message = "Bus has not reported a position yet"
        if floor == 0:
            # Never reported: treat as not yet departed.
            progress.stops_away = target.sequence
            return progress
        # Driver-recorded completions still count without a position.
        return _apply_floor(progress, ordered, target, floor)

    candidates = [
        (stop, distance(bus.coordinate, stop.coordinate))
        for stop in ordered
        if stop.coordinate is not None
    ]
    if not candidates:
        progress.message = "No stop on this route has coordinates"
        print(f"[progress] route={route.id} has no geocoded stops; using floor={floor}")
        return _apply_floor(progress, ordered, target, floor)

    nearest, nearest_d = _pick_nearest(candidates, floor)
    within_radius = nearest_d <= arrival_radius_m

    raw_completed = nearest.sequence if within_radius else nearest.sequence - 1
    completed = max(raw_completed, floor)
    position_seq = max(nearest.sequence, floor)

    has_arrived = (nearest.id == target.id and within_radius) or completed >= target.sequence

    progress.completed_stops_count = completed
    progress.has_arrived = has_arrived
    progress.stops_away = 0 if has_arrived else max(0, target.sequence - position_seq)
    progress.last_completed_stop_id = _stop_id_at(ordered, completed)
    progress.nearest_stop_id = nearest.id
    progress.nearest_stop_distance_m = nearest_d
    return progress


def _apply_floor(progress: StopProgress, ordered: List[Stop], target: Stop, floor: int) -> StopProgress:
    progress.completed_stops_count = floor
    progress.has_arrived = floor >= target.sequence
    progress.stops_away = 0 if progress.has_arrived else max(0, target.sequence - floor)
    progress.last_completed_stop_id = _stop_id_at(ordered, floor)
    return progress


def _stop_id_at(ordered: List[Stop], sequence: int) -> Optional[str]:
    if sequence <= 0:
        return None
    for stop in ordered:
        if stop.sequence == sequence:
            return stop.id
    return None


def describe_staleness(
    bus: Optional[BusSnapshot],
    now: Optional[datetime] = None,
    *,
    stale_after_s: int = STALE_FIX_S,
) -> Dict[str, Any]:
    """How old the bus's last position is, for the "last updated" caption."""
    if bus is None or bus.last_updated is None:
        return {"last_updated": None, "age_seconds": None, "is_stale": True, "label": "never"}
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    age_s = max((now - bus.last_updated).total_seconds(), 0.0)
    if age_s < 60:
        label = "just now"
    elif age_s < 3600:
        minutes = int(age_s // 60)
        label = f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    else:
        hours = int(age_s // 3600)
        label = f"{hours} hour{'s' if hours != 1 else ''} ago"
    return {
        "last_updated": bus.last_updated.isoformat().replace("+00:00", "Z"),
        "age_seconds": age_s,
        "is_stale": age_s > stale_after_s,
        "label": label,
    }


@dataclass
class ProgressMark:
    """Highest completed sequence seen for a bus on a route during one service day."""
    route_id: str
    bus_id: str
    service_date: date
    completed_sequence: int
    updated_at: datetime


@dataclass
class StopCompletion:
    """A stop the driver marked as reached."""
    route_id: str
    stop_id: str
    stop_sequence: int
    bus_id: str
    service_date: date
    arrived_at: datetime
    driver_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "route_id": self.route_id,
            "stop_id": self.stop_id,
            "stop_sequence": self.stop_sequence,
            "bus_id": self.bus_id,
            "driver_id": self.driver_id,
            "service_date": self.service_date.isoformat(),
            "arrived_at": self.arrived_at.isoformat().replace("+00:00", "Z"),
        }


class StopProgressTracker:
    """
    Keeps per-(route, bus) progress across polls so the completed count only
    moves forward during a service day.

    Each poll still calls ``resolve_progress`` from scratch; the tracker only
    supplies the completed floor and records the new high-water mark. The
    floor is raised either by GPS inference or by a driver marking a stop as
    reached (``mark_completed``). Everything from an earlier service day is
    pruned, and ``reset_route`` clears a route when the driver starts a new
    run or the stops are reordered.
    """

    def __init__(self, *, arrival_radius_m: float = ARRIVAL_RADIUS_M):
        self.arrival_radius_m = arrival_radius_m
        self.marks: Dict[Tuple[str, str], ProgressMark] = {}
        self.completions: Dict[str, List[StopCompletion]] = {}
        self.recent_resolutions: Deque[Dict[str, Any]] = deque(maxlen=50)

    def _prune(self, service_date: date) -> None:
        stale = [key for key, mark in self.marks.items() if mark.service_date != service_date]
        for key in stale:
            del self.marks[key]
        for route_id in list(self.completions):
            kept = [c for c in self.completions[route_id] if c.service_date == service_date]
            if kept:
                self.completions[route_id] = kept
            else:
                del self.completions[route_id]
        if stale:
            print(f"[progress] pruned {len(stale)} mark(s) from earlier service days")

    def completed_floor(self, route_id: str, bus_id: str, service_date: date) -> int:
        mark = self.marks.get((route_id, bus_id))
        if mark is None or mark.service_date != service_date:
            return 0
        return mark.completed_sequence

    def _raise_floor(self, route_id: str, bus_id: str, service_date: date, sequence: int, now: datetime) -> bool:
        floor = self.completed_floor(route_id, bus_id, service_date)
        if sequence <= floor:
            return False
        self.marks[(route_id, bus_id)] = ProgressMark(
            route_id=route_id,
            bus_id=bus_id,
            service_date=service_date,
            completed_sequence=sequence,
            updated_at=now,
        )
        print(f"[progress] route={route_id} bus={bus_id} completed {floor} -> {sequence}")
        return True

    def resolve(
        self,
        route: Optional[Route],
        target_stop_id: Optional[str],
        bus: Optional[BusSnapshot],
        *,
        bus_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> StopProgress:
        """Resolve progress for one poll. ``bus_id`` names the bus when it has no sample yet."""
        if now is None:
            now = datetime.now(timezone.utc)
        service_date = get_service_date(now)
        self._prune(service_date)

        key_bus = bus.id if bus is not None else bus_id
        floor = 0
        if route is not None and key_bus:
            floor = self.completed_floor(route.id, key_bus, service_date)

        progress = resolve_progress(
            route,
            target_stop_id,
            bus,
            arrival_radius_m=self.arrival_radius_m,
            completed_floor=floor,
        )

        if route is not None and key_bus and progress.has_stop:
            self._raise_floor(route.id, key_bus, service_date, progress.completed_stops_count, now)

        self.recent_resolutions.append({
            "timestamp": now.isoformat(),
            "route_id": route.id if route is not None else None,
            "bus_id": key_bus,
            "target_stop_id": target_stop_id,
            "floor": floor,
            "completed": progress.completed_stops_count,
            "stops_away": progress.stops_away,
            "nearest_stop_id": progress.nearest_stop_id,
            "nearest_stop_distance_m": progress.nearest_stop_distance_m,
        })
        return progress

    def mark_completed(
        self,
        route: Route,
        stop_id: str,
        bus_id: str,
        *,
        driver_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> StopCompletion:
        """Record a driver-reported stop arrival and raise the bus's floor to it.

        Raises ValueError when the stop is not on the route.
        """
        stop = route.find_stop(stop_id)
        if stop is None:
            raise ValueError("Stop not found in route")
        if now is None:
            now = datetime.now(timezone.utc)
        elif now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        service_date = get_service_date(now)
        self._prune(service_date)

        completion = StopCompletion(
            route_id=route.id,
            stop_id=stop.id,
            stop_sequence=stop.sequence,
            bus_id=bus_id,
            service_date=service_date,
            arrived_at=now,
            driver_id=driver_id,
        )
        self.completions.setdefault(route.id, []).append(completion)
        self._raise_floor(route.id, bus_id, service_date, stop.sequence, now)
        return completion

    def completed_stops(self, route_id: str, now: Optional[datetime] = None) -> List[StopCompletion]:
        """Today's driver-reported completions for a route, in stop order."""
        service_date = get_service_date(now)
        self._prune(service_date)
        return sorted(self.completions.get(route_id, []), key=lambda c: (c.stop_sequence, c.arrived_at))

    def reset_route(self, route_id: str) -> int:
        """Drop every mark and completion for a route; returns how many marks were removed."""
        keys = [key for key in self.marks if key[0] == route_id]
        for key in keys:
            del self.marks[key]
        self.completions.pop(route_id, None)
        if keys:
            print(f"[progress] reset {len(keys)} mark(s) for route={route_id}")
        return len(keys)

    def get_marks(self) -> List[Dict[str, Any]]:
        return [
            {
                "route_id": mark.route_id,
                "bus_id": mark.bus_id,
                "service_date": mark.service_date.isoformat(),
                "completed_sequence": mark.completed_sequence,
                "updated_at": mark.updated_at.isoformat(),
            }
            for mark in self.marks.values()
        ]


@dataclass
class TrackingConfig:
    arrival_radius_m: float = ARRIVAL_RADIUS_M
    average_speed_kmh: float = AVERAGE_SPEED_KMH


def load_tracking_config(path: Path = DEFAULT_TRACKING_CONFIG_PATH) -> TrackingConfig:
    """Load tunables from a JSON file, keeping defaults for anything missing or invalid."""
    config = TrackingConfig()
    if not path.exists():
        return config
    try:
        raw = json.loads(path.read_text())
    except (OSError, ValueError) as exc:
        print(f"[progress] failed to load config {path}: {exc}")
        return config
    if not isinstance(raw, dict):
        print(f"[progress] ignoring config {path}: expected an object")
        return config
    for key in ("arrival_radius_m", "average_speed_kmh"):
        value = raw.get(key)
        if value is None:
            continue
        try:
            number = float(value)
        except (TypeError, ValueError):
            print(f"[progress] ignoring {key}={value!r} in {path}")
            continue
        if number <= 0:
            print(f"[progress] ignoring non-positive {key}={number} in {path}")
            continue
        setattr(config, key, number)
    return config


__all__ = [
    "ARRIVAL_RADIUS_M",
    "TIE_TOLERANCE_M",
    "STALE_FIX_S",
    "StopProgress",
    "resolve_progress",
    "describe_staleness",
    "ProgressMark",
    "StopCompletion",
    "StopProgressTracker",
    "TrackingConfig",
    "load_tracking_config",
]
