from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from Geodesy import LatLon

logger = logging.getLogger(__name__)

ACTIVE = "active"
INACTIVE = "inactive"
MAINTENANCE = "maintenance"


@dataclass(frozen=True)
class Stop:
    sequence: int
    latitude: Optional[float]
    longitude: Optional[float]
    stop_id: Optional[str] = None
    name: Optional[str] = None

    @property
    def usable(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def latlon(self) -> LatLon:
        return self.latitude, self.longitude


@dataclass(frozen=True)
class Vehicle:
    vehicle_id: str
    registration_number: str = ""
    status: str = ACTIVE
    stops: Sequence[Stop] = field(default_factory=tuple)

    @property
    def is_active(self) -> bool:
        return self.status == ACTIVE


def ordered_stops(stops: Sequence[Stop]) -> List[Stop]:
    """Usable stops sorted by their sequence on the route."""
    return sorted((s for s in stops if s.usable), key=lambda s: s.sequence)


def _float_or_none(v: Any) -> Optional[float]:
    if v is None or v == "":
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        return None


def parse_route_stop(raw: Dict[str, Any]) -> Stop:
    # route_stops carry the coordinates on the nested stop, older payloads inline them
    stop = raw.get("stop") or {}
    return Stop(
        sequence=int(raw.get("sequence", 0)),
        latitude=_float_or_none(stop.get("latitude", raw.get("latitude"))),
        longitude=_float_or_none(stop.get("longitude", raw.get("longitude"))),
        stop_id=raw.get("stop_id") or stop.get("id"),
        name=stop.get("name") or raw.get("name"),
    )


def parse_bus(raw: Dict[str, Any]) -> Vehicle:
    route = raw.get("assigned_route") or raw.get("route") or {}
    raw_stops = route.get("route_stops") or route.get("stops") or []
    return Vehicle(
        vehicle_id=str(raw["id"]),
        registration_number=raw.get("registration_number", ""),
        status=raw.get("status", ACTIVE),
        stops=tuple(parse_route_stop(s) for s in raw_stops),
    )


class HttpVehicleSource:
    """Reads buses with their assigned route stops from the dashboard backend. Read once per call."""

    def __init__(self, session: aiohttp.ClientSession, api_url: str, token: Optional[str] = None):
        self.session = session
        self.api_url = api_url.rstrip("/")
        self.token = token

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Token {self.token}"
        return headers

    async def fetch_vehicles(self) -> List[Vehicle]:
        async with self.session.get(f"{self.api_url}/buses/", headers=self._headers()) as resp:
            resp.raise_for_status()
            data = await resp.json()

        # paginated responses wrap the list in "results"
        if isinstance(data, dict):
            data = data.get("results", [])
        vehicles = [parse_bus(b) for b in data]
        logger.info("fetched %d buses", len(vehicles))
        return vehicles
