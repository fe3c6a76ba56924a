from __future__ import annotations

from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Set, Tuple
import csv

from journey_aggregator import CheckpointEvent
from route_model import parse_iso8601_utc
from service_day import get_service_date


def _isoformat(dt: datetime) -> str:
    return dt.replace(microsecond=0).isoformat().replace("+00:00", "Z")


def event_to_row(event: CheckpointEvent) -> List[str]:
    return [
        _isoformat(event.timestamp),
        event.name,
        event.bus_id or "",
        event.route_id or "",
        event.driver_id or "",
        event.school_id or "",
    ]


class JourneyStorage:
    """Append-only checkpoint log, one CSV file per service day."""

    def __init__(self, base_dir: Path):
        self.base_dir = base_dir

    def _file_for_date(self, service_date: date) -> Path:
        return self.base_dir / f"{service_date.isoformat()}.csv"

    def write_events(self, events: Sequence[CheckpointEvent]) -> None:
        if not events:
            return
        self.base_dir.mkdir(parents=True, exist_ok=True)
        grouped_rows: dict[Path, List[List[str]]] = {}
        for event in events:
            path = self._file_for_date(get_service_date(event.timestamp))
            grouped_rows.setdefault(path, []).append(event_to_row(event))

        for path, rows in grouped_rows.items():
            with path.open("a", newline="") as f:
                writer = csv.writer(f)
                writer.writerows(rows)

    def _iter_files(self, start: date, end: date) -> Iterable[Tuple[date, Path]]:
        current = start
        while current <= end:
            yield current, self._file_for_date(current)
            current += timedelta(days=1)

    def query_events(
        self,
        start: date,
        end: date,
        bus_ids: Optional[Set[str]] = None,
    ) -> List[CheckpointEvent]:
        """Events for service dates ``start`` through ``end`` inclusive, oldest first."""
        if end < start:
            return []
        bus_filter = set(bus_ids) if bus_ids else None

        events: List[CheckpointEvent] = []
        for _, path in self._iter_files(start, end):
            if not path.exists():
                continue
            with path.open("r", newline="") as f:
                reader = csv.reader(f)
                for row in reader:
                    if len(row) < 3:
                        continue
                    try:
                        ts = parse_iso8601_utc(row[0])
                        bus_id = row[2] or None
                        if bus_filter and (bus_id is None or bus_id not in bus_filter):
                            continue
                        event = CheckpointEvent(
                            name=row[1],
                            timestamp=ts,
                            bus_id=bus_id,
                            route_id=(row[3] or None) if len(row) > 3 else None,
                            driver_id=(row[4] or None) if len(row) > 4 else None,
                            school_id=(row[5] or None) if len(row) > 5 else None,
                        )
                    except ValueError as exc:
                        print(f"[journey] skipping malformed row in {path.name}: {exc}")
                        continue
                    events.append(event)
        events.sort(key=lambda e: e.timestamp)
        return events
