import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from geo import Coordinate
from route_model import BusSnapshot, Route, Stop, add_stop, move_stop, remove_stop


def _copy_route(route: Route) -> Route:
    return Route.from_dict(route.to_dict())


class RouteStore:
    """Routes and the latest bus samples, persisted as one JSON document.

    Routes are handed out as copies; changes go back through ``save_route``
    or one of the stop operations so every write happens under the lock.
    """

    def __init__(self, path: Path):
        self._path = path
        self._lock = asyncio.Lock()
        self._routes: Dict[str, Route] = {}
        self._buses: Dict[str, BusSnapshot] = {}
        self._load_sync()

    def _load_sync(self) -> None:
        self._routes.clear()
        self._buses.clear()
        if not self._path.exists():
            self._path.parent.mkdir(parents=True, exist_ok=True)
            return
        try:
            raw = json.loads(self._path.read_text())
        except json.JSONDecodeError as exc:
            print(f"[routes] failed to parse {self._path}: {exc}")
            return
        if not isinstance(raw, dict):
            return
        for entry in raw.get("routes") or []:
            if not isinstance(entry, dict) or not entry.get("id"):
                continue
            try:
                route = Route.from_dict(entry)
            except (KeyError, TypeError, ValueError) as exc:
                print(f"[routes] skipping route {entry.get('id')}: {exc}")
                continue
            self._routes[route.id] = route
        for entry in raw.get("buses") or []:
            if not isinstance(entry, dict) or not entry.get("id"):
                continue
            try:
                bus = BusSnapshot.from_dict(entry)
            except (KeyError, TypeError, ValueError) as exc:
                print(f"[routes] skipping bus {entry.get('id')}: {exc}")
                continue
            self._buses[bus.id] = bus

    async def _persist(self) -> None:
        data = {
            "routes": [route.to_dict() for route in self._routes.values()],
            "buses": [bus.to_dict() for bus in self._buses.values()],
        }
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path.write_text(json.dumps(data, indent=2, sort_keys=True))
        tmp_path.replace(self._path)

    async def list_routes(self, include_inactive: bool = True) -> List[Route]:
        async with self._lock:
            routes = [_copy_route(r) for r in self._routes.values()]
        if not include_inactive:
            routes = [r for r in routes if r.is_active]
        routes.sort(key=lambda r: (r.name or "", r.id))
        return routes

    async def get_route(self, route_id: str) -> Optional[Route]:
        async with self._lock:
            route = self._routes.get(str(route_id))
            return _copy_route(route) if route is not None else None

    async def save_route(self, route: Route) -> Route:
        async with self._lock:
            self._routes[route.id] = _copy_route(route)
            await self._persist()
        return route

    async def reorder_stop(self, route_id: str, stop_id: str, direction: str) -> Optional[List[Stop]]:
        async with self._lock:
            route = self._routes.get(str(route_id))
            if route is None:
                return None
            stops = [Stop.from_dict(s.to_dict()) for s in move_stop(route, stop_id, direction)]
            await self._persist()
        return stops

    async def add_stop(self, route_id: str, stop: Stop) -> Optional[Stop]:
        async with self._lock:
            route = self._routes.get(str(route_id))
            if route is None:
                return None
            added = add_stop(route, Stop.from_dict(stop.to_dict()))
            await self._persist()
        return Stop.from_dict(added.to_dict())

    async def remove_stop(self, route_id: str, stop_id: str) -> bool:
        async with self._lock:
            route = self._routes.get(str(route_id))
            if route is None or not remove_stop(route, stop_id):
                return False
            await self._persist()
        return True

    async def list_buses(self) -> List[BusSnapshot]:
        async with self._lock:
            buses = list(self._buses.values())
        buses.sort(key=lambda b: (b.bus_number or "", b.id))
        return buses

    async def get_bus(self, bus_id: str) -> Optional[BusSnapshot]:
        async with self._lock:
            return self._buses.get(str(bus_id))

    async def update_bus_location(
        self,
        bus_id: str,
        coordinate: Coordinate,
        speed: Optional[float] = None,
        timestamp: Optional[datetime] = None,
    ) -> BusSnapshot:
        """Replace the bus's sample; no history is kept."""
        async with self._lock:
            existing = self._buses.get(str(bus_id))
            bus = BusSnapshot(
                id=str(bus_id),
                coordinate=coordinate,
                speed=speed,
                last_updated=timestamp or datetime.now(timezone.utc),
                bus_number=existing.bus_number if existing else None,
            )
            self._buses[bus.id] = bus
            await self._persist()
        return bus

    async def route_for_bus(self, bus_id: str) -> Optional[Route]:
        async with self._lock:
            for route in self._routes.values():
                if route.bus_id == str(bus_id) and route.is_active:
                    return _copy_route(route)
        return None
