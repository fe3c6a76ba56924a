"""
Journey and shift duration aggregation.

A journey is one bus's daily cycle of checkpoints:

    depart_homebase -> arrive_school -> depart_school -> arrive_homebase

Each checkpoint is optional and may be logged out of wall-clock order (a
client retry can record a depart before the matching arrive). Legs whose
endpoints are both present are computed in whole minutes; a leg that would be
negative is reported as unavailable rather than surfaced.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

DEPART_HOMEBASE = "depart_homebase"
ARRIVE_SCHOOL = "arrive_school"
DEPART_SCHOOL = "depart_school"
ARRIVE_HOMEBASE = "arrive_homebase"

CHECKPOINTS: Tuple[str, ...] = (DEPART_HOMEBASE, ARRIVE_SCHOOL, DEPART_SCHOOL, ARRIVE_HOMEBASE)

# leg name -> (start checkpoint, end checkpoint)
LEGS: Tuple[Tuple[str, str, str], ...] = (
    ("homebase_to_school", DEPART_HOMEBASE, ARRIVE_SCHOOL),
    ("at_school", ARRIVE_SCHOOL, DEPART_SCHOOL),
    ("school_to_homebase", DEPART_SCHOOL, ARRIVE_HOMEBASE),
)

UNAVAILABLE = "-"


def _to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass
class CheckpointEvent:
    name: str
    timestamp: datetime
    bus_id: Optional[str] = None
    route_id: Optional[str] = None
    driver_id: Optional[str] = None
    school_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.name not in CHECKPOINTS:
            raise ValueError(f"unknown checkpoint: {self.name!r}")
        self.timestamp = _to_utc(self.timestamp)


@dataclass
class JourneyAggregate:
    checkpoints: Dict[str, Optional[datetime]] = field(default_factory=dict)
    legs: Dict[str, Optional[int]] = field(default_factory=dict)
    total_duration_minutes: Optional[int] = None
    bus_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bus_id": self.bus_id,
            "checkpoints": {
                name: (ts.isoformat().replace("+00:00", "Z") if ts else None)
                for name, ts in self.checkpoints.items()
            },
            "legs": {
                name: (minutes if minutes is not None else UNAVAILABLE)
                for name, minutes in self.legs.items()
            },
            "total_duration_minutes": (
                self.total_duration_minutes
                if self.total_duration_minutes is not None
                else UNAVAILABLE
            ),
            "status": journey_status(self),
        }


def leg_minutes(start: Optional[datetime], end: Optional[datetime]) -> Optional[int]:
    """Minutes from start to end rounded to nearest, or None if missing or negative."""
    if start is None or end is None:
        return None
    minutes = int(round((_to_utc(end) - _to_utc(start)).total_seconds() / 60.0))
    if minutes < 0:
        return None
    return minutes


def aggregate(events: Iterable[CheckpointEvent]) -> JourneyAggregate:
    """Compute leg and total durations for one journey's checkpoint events.

    Duplicate checkpoints keep the earliest timestamp.
    """
    checkpoints: Dict[str, Optional[datetime]] = {name: None for name in CHECKPOINTS}
    bus_id: Optional[str] = None
    for event in events:
        current = checkpoints.get(event.name)
        if current is None or event.timestamp < current:
            checkpoints[event.name] = event.timestamp
        if bus_id is None and event.bus_id:
            bus_id = event.bus_id

    legs: Dict[str, Optional[int]] = {}
    for leg_name, start_name, end_name in LEGS:
        minutes = leg_minutes(checkpoints[start_name], checkpoints[end_name])
        if minutes is None and checkpoints[start_name] and checkpoints[end_name]:
            print(
                f"[journey] bus={bus_id} leg {leg_name} unavailable: "
                f"{end_name} precedes {start_name}"
            )
        legs[leg_name] = minutes

    total = leg_minutes(checkpoints[DEPART_HOMEBASE], checkpoints[ARRIVE_HOMEBASE])
    return JourneyAggregate(
        checkpoints=checkpoints,
        legs=legs,
        total_duration_minutes=total,
        bus_id=bus_id,
    )


def journey_status(journey: JourneyAggregate) -> str:
    """Label for the latest checkpoint reached."""
    checkpoints = journey.checkpoints
    if checkpoints.get(ARRIVE_HOMEBASE):
        return "Completed"
    if checkpoints.get(DEPART_SCHOOL):
        return "Returning"
    if checkpoints.get(ARRIVE_SCHOOL):
        return "At School"
    if checkpoints.get(DEPART_HOMEBASE):
        return "En Route"
    return "Pending"


def format_duration(minutes: Optional[int]) -> str:
    """Render minutes as "25m" or "1h 5m"; missing values render as "-"."""
    if minutes is None or minutes < 0:
        return UNAVAILABLE
    hours, mins = divmod(minutes, 60)
    if hours == 0:
        return f"{mins}m"
    return f"{hours}h {mins}m"


def group_by_journey(events: Iterable[CheckpointEvent], service_date_fn) -> Dict[Tuple[str, Any], List[CheckpointEvent]]:
    """Bucket events into journeys keyed by (bus_id, service date)."""
    grouped: Dict[Tuple[str, Any], List[CheckpointEvent]] = {}
    for event in events:
        key = (event.bus_id or "", service_date_fn(event.timestamp))
        grouped.setdefault(key, []).append(event)
    return grouped


def summarize_journeys(journeys: Sequence[JourneyAggregate]) -> Dict[str, Any]:
    """Report summary: counts, average total duration and unique buses."""
    totals = [j.total_duration_minutes for j in journeys if j.total_duration_minutes is not None]
    average = int(round(sum(totals) / len(totals))) if totals else None
    return {
        "total_journeys": len(journeys),
        "completed": sum(1 for j in journeys if j.checkpoints.get(ARRIVE_HOMEBASE)),
        "average_journey_minutes": average,
        "average_journey_label": format_duration(average),
        "unique_buses": len({j.bus_id for j in journeys if j.bus_id}),
    }


def shift_duration_minutes(start: Optional[datetime], end: Optional[datetime]) -> Optional[int]:
    """Whole minutes a driver was on duty (floored), or None if unavailable."""
    if start is None or end is None:
        return None
    seconds = (_to_utc(end) - _to_utc(start)).total_seconds()
    if seconds < 0:
        print(f"[journey] shift end {end} precedes start {start}; duration unavailable")
        return None
    return int(seconds // 60)


__all__ = [
    "DEPART_HOMEBASE",
    "ARRIVE_SCHOOL",
    "DEPART_SCHOOL",
    "ARRIVE_HOMEBASE",
    "CHECKPOINTS",
    "LEGS",
    "UNAVAILABLE",
    "CheckpointEvent",
    "JourneyAggregate",
    "leg_minutes",
    "aggregate",
    "journey_status",
    "format_duration",
    "group_by_journey",
    "summarize_journeys",
    "shift_duration_minutes",
]
