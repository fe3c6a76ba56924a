import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from geo import Coordinate
from route_model import BusSnapshot, Route, Stop
from stop_progress import (
    StopProgressTracker,
    TrackingConfig,
    describe_staleness,
    load_tracking_config,
    resolve_progress,
)

# Stops 0.01 degree of longitude apart on the equator (~1112 m).
STEP = 0.01
DAY_ONE = datetime(2024, 9, 3, 15, 0, tzinfo=timezone.utc)


def _route(n: int = 3, route_id: str = "r1") -> Route:
    return Route(
        id=route_id,
        stops=[
            Stop(
                id=f"s{i}",
                sequence=i,
                name=f"Stop {i}",
                address=f"{i} Main St",
                coordinate=Coordinate(0.0, (i - 1) * STEP),
            )
            for i in range(1, n + 1)
        ],
        bus_id="b1",
    )


def _bus(lon=None, lat: float = 0.0, bus_id: str = "b1") -> BusSnapshot:
    coord = Coordinate(lat, lon) if lon is not None else None
    return BusSnapshot(id=bus_id, coordinate=coord, last_updated=DAY_ONE)


class TestResolveProgress:
    def test_bus_at_middle_stop(self):
        """A bus sitting on stop 2 of 3 is one stop away from stop 3."""
        progress = resolve_progress(_route(), "s3", _bus(lon=STEP))
        assert progress.completed_stops_count == 2
        assert progress.stops_away == 1
        assert progress.has_arrived is False
        assert progress.last_completed_stop_id == "s2"
        assert progress.nearest_stop_id == "s2"

    def test_bus_at_target_stop_has_arrived(self):
        progress = resolve_progress(_route(), "s2", _bus(lon=STEP + 0.0005))
        assert progress.has_arrived is True
        assert progress.stops_away == 0
        assert progress.completed_stops_count == 2

    def test_approaching_stop_outside_radius_is_not_completed(self):
        # ~333 m short of stop 2
        progress = resolve_progress(_route(), "s3", _bus(lon=0.007))
        assert progress.nearest_stop_id == "s2"
        assert progress.completed_stops_count == 1
        assert progress.stops_away == 1
        assert progress.has_arrived is False

    def test_bus_past_target_counts_as_arrived(self):
        progress = resolve_progress(_route(), "s1", _bus(lon=STEP))
        assert progress.has_arrived is True
        assert progress.stops_away == 0

    def test_no_position_means_not_departed(self):
        route = _route(5)
        progress = resolve_progress(route, "s4", _bus())
        assert progress.stops_away == 4
        assert progress.completed_stops_count == 0
        assert progress.has_arrived is False
        assert progress.last_completed_stop_id is None

        assert resolve_progress(route, "s4", None).stops_away == 4

    def test_off_route_bus_still_resolves(self):
        progress = resolve_progress(_route(), "s3", _bus(lon=STEP, lat=0.5))
        assert progress.has_stop is True
        assert progress.nearest_stop_id == "s2"
        assert progress.nearest_stop_distance_m > 50000
        assert progress.completed_stops_count == 1

    def test_stops_without_coordinates_are_skipped(self):
        route = _route()
        route.stops[1].coordinate = None
        progress = resolve_progress(route, "s3", _bus(lon=STEP))
        assert progress.nearest_stop_id in {"s1", "s3"}
        assert progress.total_stops == 3

    def test_no_geocoded_stops_falls_back_to_floor(self):
        route = _route()
        for stop in route.stops:
            stop.coordinate = None
        progress = resolve_progress(route, "s3", _bus(lon=STEP), completed_floor=1)
        assert progress.completed_stops_count == 1
        assert progress.stops_away == 2
        assert progress.message

    def test_arrival_radius_is_tunable(self):
        # ~333 m from stop 2
        bus = _bus(lon=0.007)
        assert resolve_progress(_route(), "s3", bus, arrival_radius_m=400).completed_stops_count == 2
        assert resolve_progress(_route(), "s3", bus, arrival_radius_m=100).completed_stops_count == 1


class TestTieBreak:
    def test_equidistant_prefers_lowest_stop_ahead(self):
        bus = _bus(lon=STEP / 2)
        assert resolve_progress(_route(), "s3", bus, completed_floor=0).nearest_stop_id == "s1"

    def test_equidistant_skips_stops_already_completed(self):
        bus = _bus(lon=STEP / 2)
        progress = resolve_progress(_route(), "s3", bus, completed_floor=1)
        assert progress.nearest_stop_id == "s2"
        assert progress.completed_stops_count == 1
        assert progress.stops_away == 1


class TestMissingAssociations:
    def test_no_route(self):
        progress = resolve_progress(None, "s1", _bus(lon=0.0))
        assert progress.has_route is False
        assert progress.to_dict() == {"hasRoute": False, "message": progress.message}

    def test_route_without_stops(self):
        assert resolve_progress(Route(id="empty"), "s1", None).has_route is False

    def test_unknown_stop(self):
        progress = resolve_progress(_route(), "nope", _bus(lon=0.0))
        assert progress.has_route is True
        assert progress.has_stop is False
        assert set(progress.to_dict()) == {"hasRoute", "hasStop", "message"}


def test_to_dict_uses_wire_keys():
    payload = resolve_progress(_route(), "s3", _bus(lon=STEP)).to_dict()
    assert payload["hasRoute"] is True
    assert payload["hasStop"] is True
    assert payload["studentStopId"] == "s3"
    assert payload["studentStopAddress"] == "3 Main St"
    assert payload["studentStopSequence"] == 3
    assert payload["totalStops"] == 3
    assert payload["completedStopsCount"] == 2
    assert payload["stopsAway"] == 1
    assert payload["hasArrived"] is False
    assert payload["lastCompletedStopId"] == "s2"


class TestTracker:
    def test_completed_count_never_goes_backward(self):
        """GPS jitter back toward earlier stops must not undo progress."""
        tracker = StopProgressTracker(arrival_radius_m=150.0)
        route = _route()
        positions = [0.0, STEP, STEP - 0.0005, 0.004, STEP + 0.003, 2 * STEP]
        completed = []
        for i, lon in enumerate(positions):
            now = DAY_ONE + timedelta(seconds=10 * i)
            completed.append(tracker.resolve(route, "s3", _bus(lon=lon), now=now).completed_stops_count)
        assert completed == sorted(completed)
        assert completed[-1] == 3
        assert completed[3] == 2

    def test_pure_resolver_would_regress_without_floor(self):
        assert resolve_progress(_route(), "s3", _bus(lon=0.004)).completed_stops_count == 0

    def test_new_service_day_starts_fresh(self):
        tracker = StopProgressTracker()
        route = _route()
        tracker.resolve(route, "s3", _bus(lon=2 * STEP), now=DAY_ONE)
        next_day = DAY_ONE + timedelta(days=1)
        progress = tracker.resolve(route, "s3", _bus(lon=0.0), now=next_day)
        assert progress.completed_stops_count == 1

    def test_reset_route_clears_marks(self):
        tracker = StopProgressTracker()
        tracker.resolve(_route(), "s3", _bus(lon=STEP), now=DAY_ONE)
        tracker.resolve(_route(route_id="r2"), "s3", _bus(lon=STEP), now=DAY_ONE)
        assert len(tracker.get_marks()) == 2
        assert tracker.reset_route("r1") == 1
        assert [m["route_id"] for m in tracker.get_marks()] == ["r2"]
        assert tracker.reset_route("r1") == 0

    def test_marks_are_per_bus(self):
        tracker = StopProgressTracker()
        route = _route()
        tracker.resolve(route, "s3", _bus(lon=2 * STEP, bus_id="b1"), now=DAY_ONE)
        progress = tracker.resolve(route, "s3", _bus(lon=0.0, bus_id="b2"), now=DAY_ONE)
        assert progress.completed_stops_count == 1

    def test_recent_resolutions_recorded(self):
        tracker = StopProgressTracker()
        tracker.resolve(_route(), "s2", _bus(lon=0.0), now=DAY_ONE)
        entry = tracker.recent_resolutions[-1]
        assert entry["route_id"] == "r1"
        assert entry["target_stop_id"] == "s2"
        assert entry["completed"] == 1

    def test_stale_marks_are_pruned_on_a_new_day(self):
        tracker = StopProgressTracker()
        tracker.resolve(_route(route_id="r2"), "s3", _bus(lon=STEP), now=DAY_ONE)
        tracker.resolve(_route(), "s3", _bus(lon=0.0), now=DAY_ONE + timedelta(days=1))
        assert [m["route_id"] for m in tracker.get_marks()] == ["r1"]


class TestDriverCompletions:
    def test_completion_without_position_raises_floor(self):
        tracker = StopProgressTracker(arrival_radius_m=150.0)
        route = _route()
        completion = tracker.mark_completed(route, "s2", "b1", driver_id="d1", now=DAY_ONE)
        assert completion.stop_sequence == 2
        assert completion.to_dict()["arrived_at"] == "2024-09-03T15:00:00Z"

        at_s2 = tracker.resolve(route, "s2", None, bus_id="b1", now=DAY_ONE)
        assert at_s2.completed_stops_count == 2
        assert at_s2.has_arrived is True
        assert at_s2.stops_away == 0

        at_s3 = tracker.resolve(route, "s3", None, bus_id="b1", now=DAY_ONE)
        assert at_s3.completed_stops_count == 2
        assert at_s3.stops_away == 1
        assert at_s3.last_completed_stop_id == "s2"

    def test_completion_outranks_lagging_gps(self):
        tracker = StopProgressTracker(arrival_radius_m=150.0)
        route = _route()
        tracker.mark_completed(route, "s2", "b1", now=DAY_ONE)
        progress = tracker.resolve(route, "s2", _bus(lon=0.0), now=DAY_ONE + timedelta(seconds=5))
        assert progress.completed_stops_count == 2
        assert progress.has_arrived is True

    def test_earlier_stop_does_not_lower_floor(self):
        tracker = StopProgressTracker()
        route = _route()
        tracker.mark_completed(route, "s3", "b1", now=DAY_ONE)
        tracker.mark_completed(route, "s1", "b1", now=DAY_ONE + timedelta(minutes=1))
        assert tracker.completed_floor("r1", "b1", DAY_ONE.date()) == 3

    def test_unknown_stop_is_rejected(self):
        tracker = StopProgressTracker()
        with pytest.raises(ValueError, match="Stop not found"):
            tracker.mark_completed(_route(), "nope", "b1", now=DAY_ONE)
        assert tracker.get_marks() == []

    def test_completed_stops_are_ordered_and_scoped_to_today(self):
        tracker = StopProgressTracker()
        route = _route()
        tracker.mark_completed(route, "s3", "b1", now=DAY_ONE)
        tracker.mark_completed(route, "s1", "b1", now=DAY_ONE + timedelta(minutes=2))
        assert [c.stop_id for c in tracker.completed_stops("r1", now=DAY_ONE)] == ["s1", "s3"]
        assert tracker.completed_stops("r2", now=DAY_ONE) == []

        next_day = DAY_ONE + timedelta(days=1)
        assert tracker.completed_stops("r1", now=next_day) == []
        assert tracker.get_marks() == []

    def test_reset_route_clears_completions(self):
        tracker = StopProgressTracker()
        tracker.mark_completed(_route(), "s2", "b1", now=DAY_ONE)
        assert tracker.reset_route("r1") == 1
        assert tracker.completed_stops("r1", now=DAY_ONE) == []


class TestStaleness:
    def test_never_reported(self):
        info = describe_staleness(None, DAY_ONE)
        assert info["label"] == "never"
        assert info["is_stale"] is True

    def test_fresh_fix(self):
        info = describe_staleness(_bus(lon=0.0), DAY_ONE + timedelta(seconds=20))
        assert info["label"] == "just now"
        assert info["is_stale"] is False
        assert info["last_updated"] == "2024-09-03T15:00:00Z"

    def test_old_fix(self):
        info = describe_staleness(_bus(lon=0.0), DAY_ONE + timedelta(minutes=3), stale_after_s=90)
        assert info["label"] == "3 minutes ago"
        assert info["is_stale"] is True

    def test_hours(self):
        info = describe_staleness(_bus(lon=0.0), DAY_ONE + timedelta(hours=1, minutes=5))
        assert info["label"] == "1 hour ago"


class TestTrackingConfig:
    def test_missing_file_keeps_defaults(self, tmp_path):
        assert load_tracking_config(tmp_path / "missing.json") == TrackingConfig()

    def test_values_loaded(self, tmp_path):
        path = tmp_path / "tracking.json"
        path.write_text(json.dumps({"arrival_radius_m": 75, "average_speed_kmh": "32.5"}))
        config = load_tracking_config(path)
        assert config.arrival_radius_m == pytest.approx(75.0)
        assert config.average_speed_kmh == pytest.approx(32.5)

    def test_invalid_values_ignored(self, tmp_path):
        path = tmp_path / "tracking.json"
        path.write_text(json.dumps({"arrival_radius_m": -5, "average_speed_kmh": "fast"}))
        assert load_tracking_config(path) == TrackingConfig()

    def test_malformed_file_ignored(self, tmp_path):
        path = tmp_path / "tracking.json"
        path.write_text("{not json")
        assert load_tracking_config(path) == TrackingConfig()
