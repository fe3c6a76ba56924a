from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence, Tuple

from geo import Coordinate, distance
from route_model import Route, Stop


# Assumed average road speed for school buses (km/h); roughly 25 mph
AVERAGE_SPEED_KMH = float(os.getenv("AVERAGE_SPEED_KMH", "40.0"))

# Minimum number of geocoded stops needed to form at least one leg
MIN_GEOCODED_STOPS = 2

Geocoder = Callable[[str], Awaitable[Optional[Coordinate]]]


@dataclass(frozen=True)
class DurationEstimate:
    """Estimated drive time for a route.

    ``minutes`` is None exactly when ``computable`` is False; a computed zero
    (all stops at one spot) is a real value.
    """
    computable: bool
    minutes: Optional[int] = None
    distance_m: float = 0.0
    legs_counted: int = 0
    skipped_stop_ids: Tuple[str, ...] = ()
    reason: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return bool(self.skipped_stop_ids)

    def to_dict(self) -> dict:
        return {
            "computable": self.computable,
            "estimated_duration_minutes": self.minutes,
            "distance_m": round(self.distance_m, 1),
            "legs_counted": self.legs_counted,
            "skipped_stop_ids": list(self.skipped_stop_ids),
            "degraded": self.degraded,
            "reason": self.reason,
        }


NOT_COMPUTABLE = DurationEstimate(computable=False, reason="fewer than 2 geocoded stops")


def estimate_duration(
    stops: Sequence[Stop],
    *,
    average_speed_kmh: float = AVERAGE_SPEED_KMH,
) -> DurationEstimate:
    """Sum haversine legs between consecutive geocoded stops and convert to minutes.

    Stops without a coordinate are skipped: the legs touching them are not
    counted, and the skipped ids are reported so callers can flag the value as
    approximate.
    """
    if average_speed_kmh <= 0:
        raise ValueError(f"average speed must be positive: {average_speed_kmh}")

    ordered = sorted(stops, key=lambda s: s.sequence)
    skipped = tuple(s.id for s in ordered if s.coordinate is None)
    geocoded = [s for s in ordered if s.coordinate is not None]
    if len(geocoded) < MIN_GEOCODED_STOPS:
        return NOT_COMPUTABLE

    # Only pairs adjacent in the stop sequence form a leg.
    total_m = 0.0
    legs = 0
    for prev, cur in zip(ordered[:-1], ordered[1:]):
        if prev.coordinate is None or cur.coordinate is None:
            continue
        total_m += distance(prev.coordinate, cur.coordinate)
        legs += 1

    if legs == 0:
        print(f"[duration] no adjacent geocoded stops; skipped={list(skipped)}")
        return DurationEstimate(
            computable=False,
            skipped_stop_ids=skipped,
            reason="no adjacent geocoded stops",
        )

    meters_per_minute = average_speed_kmh * 1000.0 / 60.0
    minutes = int(round(total_m / meters_per_minute))
    if skipped:
        print(
            f"[duration] estimate degraded: skipped {len(skipped)} stop(s) without coordinates "
            f"ids={list(skipped)} legs={legs} distance_m={total_m:.0f}"
        )
    return DurationEstimate(
        computable=True,
        minutes=minutes,
        distance_m=total_m,
        legs_counted=legs,
        skipped_stop_ids=skipped,
    )


async def geocode_missing_stops(stops: Sequence[Stop], geocoder: Geocoder) -> int:
    """Resolve coordinates for stops that have an address but no coordinate.

    Returns the number of stops that gained a coordinate. Failed lookups leave
    the stop un-geocoded.
    """
    resolved = 0
    for stop in stops:
        if stop.coordinate is not None or not stop.address.strip():
            continue
        coord = await geocoder(stop.address)
        if coord is None:
            print(f"[duration] geocode failed stop={stop.id} address={stop.address!r}")
            continue
        stop.coordinate = coord
        resolved += 1
    return resolved


async def estimate_route_duration(
    route: Route,
    geocoder: Optional[Geocoder] = None,
    *,
    average_speed_kmh: float = AVERAGE_SPEED_KMH,
) -> DurationEstimate:
    """Geocode the route's stops where needed, then estimate its duration.

    Writing the result onto the route record is left to the caller.
    """
    if geocoder is not None:
        await geocode_missing_stops(route.stops, geocoder)
    estimate = estimate_duration(route.stops, average_speed_kmh=average_speed_kmh)
    print(
        f"[duration] route={route.id} computable={estimate.computable} "
        f"minutes={estimate.minutes} legs={estimate.legs_counted}"
    )
    return estimate


__all__ = [
    "AVERAGE_SPEED_KMH",
    "DurationEstimate",
    "NOT_COMPUTABLE",
    "estimate_duration",
    "geocode_missing_stops",
    "estimate_route_duration",
]
