"""
School Bus Stop-Progress Service (FastAPI)

Purpose
=======
Serve the derived tracking data behind the parent, driver and admin views of
a school-bus tracking app:

- stop progress for a child's stop ("3 stops away", "bus has arrived")
- estimated route durations from geocoded stops
- journey checkpoints (homebase -> school -> homebase) and journey reports
- driver-recorded stop completions and duty shifts

The UI polls these endpoints; every poll recomputes from the stored route and
the bus's latest position sample.

Run
---
$ uvicorn app:app --reload --port 8080

Environment
-----------
- PYTHON >= 3.10
- pip install -e .
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional, Set, Tuple
from collections import deque
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
import os

import httpx
from fastapi import Body, FastAPI, HTTPException, Query

from geo import coordinate_from_mapping
from geocoding_client import GeocodingClient
from journey_aggregator import (
    ARRIVE_HOMEBASE,
    CHECKPOINTS,
    DEPART_HOMEBASE,
    CheckpointEvent,
    JourneyAggregate,
    aggregate,
    format_duration,
    group_by_journey,
    shift_duration_minutes,
    summarize_journeys,
)
from journey_storage import JourneyStorage
from route_duration import estimate_route_duration
from route_model import BusSnapshot, parse_iso8601_utc
from route_store import RouteStore
from service_day import get_service_date
from stop_progress import (
    DEFAULT_TRACKING_CONFIG_PATH,
    StopProgressTracker,
    describe_staleness,
    load_tracking_config,
)

# ---------------------------
# Config
# ---------------------------
DATA_DIR = Path(os.getenv("DATA_DIR", "data"))
ROUTES_PATH = Path(os.getenv("ROUTES_PATH", str(DATA_DIR / "routes.json")))
JOURNEY_DIR = DATA_DIR / "journeys"
TRACKING_CONFIG_PATH = Path(os.getenv("TRACKING_CONFIG_PATH", str(DEFAULT_TRACKING_CONFIG_PATH)))
SHIFT_REPORT_HISTORY = int(os.getenv("SHIFT_REPORT_HISTORY", "500"))

TRACKING_CONFIG = load_tracking_config(TRACKING_CONFIG_PATH)

app = FastAPI(title="School Bus Stop Progress")


@dataclass
class DutyShift:
    driver_id: str
    started_at: datetime
    bus_id: Optional[str] = None


class State:
    def __init__(self):
        # driver_id -> open duty shift
        self.duty_shifts: Dict[str, DutyShift] = {}
        # Most recent completed shifts, newest last
        self.shift_reports: deque = deque(maxlen=SHIFT_REPORT_HISTORY)


state = State()
app.state.route_store = RouteStore(ROUTES_PATH)
app.state.journey_storage = JourneyStorage(JOURNEY_DIR)
app.state.progress_tracker = StopProgressTracker(arrival_radius_m=TRACKING_CONFIG.arrival_radius_m)
try:
    app.state.geocoder = GeocodingClient.from_env()
except RuntimeError as exc:
    print(f"[geocode] client not configured: {exc}")
    app.state.geocoder = None


@app.on_event("shutdown")
async def shutdown_geocoder() -> None:
    client = getattr(app.state, "geocoder", None)
    if client is not None and hasattr(client, "aclose"):
        await client.aclose()


def _get_route_store() -> RouteStore:
    store = getattr(app.state, "route_store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="route store unavailable")
    return store


def _get_journey_storage() -> JourneyStorage:
    storage = getattr(app.state, "journey_storage", None)
    if storage is None:
        raise HTTPException(status_code=503, detail="journey storage unavailable")
    return storage


def _get_tracker() -> StopProgressTracker:
    tracker = getattr(app.state, "progress_tracker", None)
    if tracker is None:
        raise HTTPException(status_code=503, detail="progress tracker unavailable")
    return tracker


def _iso_or_none(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)
    return dt.isoformat().replace("+00:00", "Z")


def _parse_timestamp_field(value: Any, label: str) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return parse_iso8601_utc(str(value))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {label} timestamp")


def _parse_date_param(value: Optional[str], label: str) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {label} date (expected YYYY-MM-DD)")


def _parse_ids(value: Optional[str]) -> Set[str]:
    if not value:
        return set()
    return {part.strip() for part in value.split(",") if part.strip()}


def _clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@app.get("/v1/health")
async def health():
    return {
        "ok": True,
        "arrival_radius_m": _get_tracker().arrival_radius_m,
        "average_speed_kmh": TRACKING_CONFIG.average_speed_kmh,
        "geocoder_configured": getattr(app.state, "geocoder", None) is not None,
    }


# ---------------------------
# REST: Routes
# ---------------------------


@app.get("/api/routes")
async def list_routes(include_inactive: int = 1):
    routes = await _get_route_store().list_routes(include_inactive=bool(include_inactive))
    return [route.to_dict() for route in routes]


@app.get("/api/routes/{route_id}")
async def route_info(route_id: str):
    route = await _get_route_store().get_route(route_id)
    if route is None:
        raise HTTPException(status_code=404, detail="Route not found")
    return route.to_dict()


@app.put("/api/routes/{route_id}/stops/reorder")
async def reorder_route_stop(route_id: str, payload: Dict[str, Any] = Body(...)):
    stop_id = _clean_text(payload.get("stop_id") or payload.get("stopId"))
    direction = _clean_text(payload.get("direction"))
    if not stop_id or direction not in {"up", "down"}:
        raise HTTPException(status_code=400, detail="stop_id and direction ('up' or 'down') are required")

    try:
        stops = await _get_route_store().reorder_stop(route_id, stop_id, direction)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    if stops is None:
        raise HTTPException(status_code=404, detail="Route not found")

    # Sequence numbers changed, so any recorded progress for this route is meaningless.
    _get_tracker().reset_route(route_id)
    return {"route_id": route_id, "stops": [stop.to_dict() for stop in stops]}


@app.post("/api/routes/{route_id}/estimate-duration")
async def estimate_duration_for_route(route_id: str):
    store = _get_route_store()
    route = await store.get_route(route_id)
    if route is None:
        raise HTTPException(status_code=404, detail="Route not found")

    geocoder = getattr(app.state, "geocoder", None)
    needs_geocoding = any(stop.coordinate is None and stop.address.strip() for stop in route.stops)
    if needs_geocoding and geocoder is None:
        raise HTTPException(status_code=503, detail="geocoder not configured")

    try:
        estimate = await estimate_route_duration(
            route,
            geocoder if needs_geocoding else None,
            average_speed_kmh=TRACKING_CONFIG.average_speed_kmh,
        )
    except httpx.HTTPError as exc:
        print(f"[duration] geocoding failed for route={route_id}: {exc}")
        raise HTTPException(status_code=502, detail="geocoding failed") from exc

    # Newly geocoded coordinates are kept whether or not an estimate came out.
    if estimate.computable:
        route.estimated_duration_minutes = estimate.minutes
    await store.save_route(route)
    return {"route_id": route_id, **estimate.to_dict()}


@app.get("/api/routes/{route_id}/stops/{stop_id}/progress")
async def stop_progress(
    route_id: str,
    stop_id: str,
    bus_id: Optional[str] = Query(None, description="Bus to track; defaults to the route's assigned bus"),
):
    store = _get_route_store()
    route = await store.get_route(route_id)
    bus: Optional[BusSnapshot] = None
    target_bus_id: Optional[str] = None
    if route is not None:
        target_bus_id = bus_id or route.bus_id
        if target_bus_id:
            bus = await store.get_bus(target_bus_id)

    now = datetime.now(timezone.utc)
    progress = _get_tracker().resolve(route, stop_id, bus, bus_id=target_bus_id, now=now)
    payload = progress.to_dict()
    if progress.has_stop:
        payload["busId"] = target_bus_id
        payload["busPosition"] = describe_staleness(bus, now)
    return payload


@app.post("/api/routes/{route_id}/progress/reset")
async def reset_route_progress(route_id: str):
    route = await _get_route_store().get_route(route_id)
    if route is None:
        raise HTTPException(status_code=404, detail="Route not found")
    cleared = _get_tracker().reset_route(route_id)
    return {"route_id": route_id, "cleared": cleared}


@app.get("/api/progress/marks")
async def progress_marks():
    tracker = _get_tracker()
    return {"marks": tracker.get_marks(), "recent": list(tracker.recent_resolutions)}


@app.post("/api/driver/mark-stop-completed")
async def mark_stop_completed(payload: Dict[str, Any] = Body(...)):
    route_id = _clean_text(payload.get("route_id") or payload.get("routeId"))
    stop_id = _clean_text(
        payload.get("route_stop_id") or payload.get("routeStopId") or payload.get("stop_id") or payload.get("stopId")
    )
    if not route_id or not stop_id:
        raise HTTPException(status_code=400, detail="Route stop ID and route ID are required")

    route = await _get_route_store().get_route(route_id)
    if route is None:
        raise HTTPException(status_code=404, detail="Route not found")
    bus_id = _clean_text(payload.get("bus_id") or payload.get("busId")) or route.bus_id
    if not bus_id:
        raise HTTPException(status_code=400, detail="No bus assigned to this route")

    timestamp = _parse_timestamp_field(payload.get("timestamp"), "completion")
    try:
        completion = _get_tracker().mark_completed(
            route,
            stop_id,
            bus_id,
            driver_id=_clean_text(payload.get("driver_id") or payload.get("driverId")),
            now=timestamp,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    print(f"[progress] driver marked stop={stop_id} route={route_id} bus={bus_id}")
    return {"success": True, "completion": completion.to_dict()}


@app.get("/api/routes/{route_id}/completed-stops")
async def completed_stops(route_id: str):
    return [c.to_dict() for c in _get_tracker().completed_stops(route_id)]


# ---------------------------
# REST: Buses
# ---------------------------


@app.get("/api/buses")
async def list_buses():
    now = datetime.now(timezone.utc)
    buses = await _get_route_store().list_buses()
    result = []
    for bus in buses:
        entry = bus.to_dict()
        entry["position"] = describe_staleness(bus, now)
        result.append(entry)
    return result


@app.post("/api/buses/{bus_id}/location")
async def update_bus_location(bus_id: str, payload: Dict[str, Any] = Body(...)):
    try:
        coordinate = coordinate_from_mapping(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    if coordinate is None:
        raise HTTPException(status_code=400, detail="Latitude and longitude are required")

    speed_raw = payload.get("speed")
    speed: Optional[float] = None
    if speed_raw not in (None, ""):
        try:
            speed = float(speed_raw)
        except (TypeError, ValueError):
            raise HTTPException(status_code=400, detail="Invalid speed")
    timestamp = _parse_timestamp_field(payload.get("timestamp"), "location")

    try:
        bus = await _get_route_store().update_bus_location(bus_id, coordinate, speed, timestamp)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"success": True, "bus": bus.to_dict()}


# ---------------------------
# REST: Journeys
# ---------------------------


def _journeys_for(events: List[CheckpointEvent]) -> Tuple[List[Dict[str, Any]], List[JourneyAggregate]]:
    """Report rows (newest first) and their aggregates."""
    rows: List[Dict[str, Any]] = []
    journeys: List[JourneyAggregate] = []
    grouped = group_by_journey(events, get_service_date)
    for (bus_id, service_date), bucket in sorted(grouped.items(), key=lambda item: (item[0][1], item[0][0]), reverse=True):
        journey = aggregate(bucket)
        journeys.append(journey)
        row = journey.to_dict()
        row["service_date"] = service_date.isoformat()
        row["route_id"] = next((e.route_id for e in bucket if e.route_id), None)
        row["total_duration_label"] = format_duration(journey.total_duration_minutes)
        rows.append(row)
    return rows, journeys


@app.post("/api/journey/start")
async def start_journey(payload: Dict[str, Any] = Body(...)):
    bus_id = _clean_text(payload.get("bus_id") or payload.get("busId"))
    if not bus_id:
        raise HTTPException(status_code=400, detail="Bus ID is required")
    route_id = _clean_text(payload.get("route_id") or payload.get("routeId"))
    if not route_id:
        route = await _get_route_store().route_for_bus(bus_id)
        if route is None:
            raise HTTPException(status_code=400, detail="Route ID is required for a bus without an assigned route")
        route_id = route.id

    timestamp = _parse_timestamp_field(payload.get("timestamp"), "journey") or datetime.now(timezone.utc)
    service_date = get_service_date(timestamp)
    storage = _get_journey_storage()
    existing = storage.query_events(service_date, service_date, bus_ids={bus_id})
    if existing:
        return {"journey": aggregate(existing).to_dict(), "message": "Journey already started today"}

    storage.write_events([
        CheckpointEvent(
            name=DEPART_HOMEBASE,
            timestamp=timestamp,
            bus_id=bus_id,
            route_id=route_id,
            driver_id=_clean_text(payload.get("driver_id") or payload.get("driverId")),
        )
    ])
    print(f"[journey] bus={bus_id} route={route_id} journey started at={_iso_or_none(timestamp)}")
    journey = aggregate(storage.query_events(service_date, service_date, bus_ids={bus_id}))
    return {"journey": journey.to_dict(), "message": "Journey started"}


@app.post("/api/journey/event")
async def record_journey_event(payload: Dict[str, Any] = Body(...)):
    bus_id = _clean_text(payload.get("bus_id") or payload.get("busId"))
    event_type = _clean_text(payload.get("event_type") or payload.get("eventType"))
    if not bus_id or not event_type:
        raise HTTPException(status_code=400, detail="Bus ID and event type are required")
    if event_type not in CHECKPOINTS:
        raise HTTPException(status_code=400, detail="Invalid event type")

    timestamp = _parse_timestamp_field(payload.get("timestamp"), "event") or datetime.now(timezone.utc)
    event = CheckpointEvent(
        name=event_type,
        timestamp=timestamp,
        bus_id=bus_id,
        route_id=_clean_text(payload.get("route_id") or payload.get("routeId")),
        driver_id=_clean_text(payload.get("driver_id") or payload.get("driverId")),
        school_id=_clean_text(payload.get("school_id") or payload.get("schoolId")),
    )
    storage = _get_journey_storage()
    storage.write_events([event])
    print(f"[journey] bus={bus_id} event={event_type} at={_iso_or_none(timestamp)}")

    service_date = get_service_date(timestamp)
    journey = aggregate(storage.query_events(service_date, service_date, bus_ids={bus_id}))
    return {"journey": journey.to_dict(), "message": f"Journey event '{event_type}' recorded"}


@app.get("/api/journey/today/{bus_id}")
async def journey_today(bus_id: str):
    service_date = get_service_date()
    events = _get_journey_storage().query_events(service_date, service_date, bus_ids={bus_id})
    if not events:
        return None
    row = aggregate(events).to_dict()
    row["service_date"] = service_date.isoformat()
    return row


@app.get("/api/reports/journeys")
async def journey_reports(
    start: str = Query(..., description="First service date (YYYY-MM-DD)"),
    end: Optional[str] = Query(None, description="Last service date (YYYY-MM-DD); defaults to start"),
    bus_ids: Optional[str] = Query(None, description="Comma-separated bus IDs"),
):
    start_date = _parse_date_param(start, "start")
    end_date = _parse_date_param(end, "end") or start_date
    if end_date < start_date:
        raise HTTPException(status_code=400, detail="end must not precede start")
    buses = _parse_ids(bus_ids)
    events = _get_journey_storage().query_events(start_date, end_date, bus_ids=buses or None)
    rows, journeys = _journeys_for(events)
    return {"journeys": rows, "summary": summarize_journeys(journeys)}


# ---------------------------
# REST: Driver duty shifts
# ---------------------------


@app.patch("/api/driver/{driver_id}/duty-status")
async def driver_duty_status(driver_id: str, payload: Dict[str, Any] = Body(...)):
    on_duty = payload.get("is_on_duty", payload.get("isOnDuty"))
    if not isinstance(on_duty, bool):
        raise HTTPException(status_code=400, detail="is_on_duty must be true or false")
    now = _parse_timestamp_field(payload.get("timestamp"), "duty") or datetime.now(timezone.utc)
    bus_id = _clean_text(payload.get("bus_id") or payload.get("busId"))

    if on_duty:
        shift = state.duty_shifts.get(driver_id)
        if shift is None:
            shift = DutyShift(driver_id=driver_id, started_at=now, bus_id=bus_id)
            state.duty_shifts[driver_id] = shift
        return {"driver_id": driver_id, "is_on_duty": True, "duty_start_time": _iso_or_none(shift.started_at)}

    shift = state.duty_shifts.pop(driver_id, None)
    if shift is None:
        return {"driver_id": driver_id, "is_on_duty": False, "shift_report": None}

    minutes = shift_duration_minutes(shift.started_at, now)
    report = {
        "driver_id": driver_id,
        "bus_id": shift.bus_id or bus_id,
        "shift_start_time": _iso_or_none(shift.started_at),
        "shift_end_time": _iso_or_none(now),
        "total_duration_minutes": minutes,
        "total_duration_label": format_duration(minutes),
    }
    state.shift_reports.append(report)
    print(f"[journey] shift closed driver={driver_id} duration={format_duration(minutes)}")

    # Going off duty means the bus is back at the homebase.
    journey_bus = shift.bus_id or bus_id
    if journey_bus:
        storage = _get_journey_storage()
        service_date = get_service_date(now)
        if storage.query_events(service_date, service_date, bus_ids={journey_bus}):
            storage.write_events([
                CheckpointEvent(name=ARRIVE_HOMEBASE, timestamp=now, bus_id=journey_bus, driver_id=driver_id)
            ])
    return {"driver_id": driver_id, "is_on_duty": False, "shift_report": report}


@app.get("/api/reports/shifts")
async def shift_reports(driver_id: Optional[str] = None):
    reports = list(state.shift_reports)
    if driver_id:
        reports = [r for r in reports if r["driver_id"] == driver_id]
    reports.reverse()
    return reports
