from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol, Set

import aiohttp

logger = logging.getLogger(__name__)

END_STATUSES = ("inactive", "maintenance")


class TripError(RuntimeError):
    def __init__(self, vehicle_id: str, message: str, status: Optional[int] = None):
        super().__init__(f"vehicle {vehicle_id}: {message}")
        self.vehicle_id = vehicle_id
        self.status = status


class TripGateway(Protocol):
    async def start_trip(self, vehicle_id: str) -> None: ...

    async def end_trip(self, vehicle_id: str) -> None: ...


class HttpTripGateway:
    """Trip lifecycle on the dashboard backend: POST /buses/{id}/start-trip/ and /end-trip/."""

    def __init__(self,
                 session: aiohttp.ClientSession,
                 api_url: str,
                 token: Optional[str] = None,
                 end_status: Optional[str] = None,
                 timeout_s: float = 10.0):
        if end_status is not None and end_status not in END_STATUSES:
            raise ValueError(f"end_status must be one of {END_STATUSES}")
        self.session = session
        self.api_url = api_url.rstrip("/")
        self.token = token
        self.end_status = end_status
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Token {self.token}"
        return headers

    async def _post(self, vehicle_id: str, action: str, body: Dict[str, Any]) -> None:
        url = f"{self.api_url}/buses/{vehicle_id}/{action}/"
        logger.debug("POST %s %s", url, body)
        try:
            async with self.session.post(url, json=body, headers=self._headers(), timeout=self.timeout) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise TripError(vehicle_id, f"{action} rejected ({resp.status}): {text}", resp.status)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TripError(vehicle_id, f"{action} failed: {e}") from e

    async def start_trip(self, vehicle_id: str) -> None:
        await self._post(vehicle_id, "start-trip", {})

    async def end_trip(self, vehicle_id: str) -> None:
        body = {"status": self.end_status} if self.end_status else {}
        await self._post(vehicle_id, "end-trip", body)


class InMemoryTripGateway:
    """Trip state kept in process, for running without a backend."""

    def __init__(self):
        self.active: Set[str] = set()
        self.started = 0
        self.ended = 0

    async def start_trip(self, vehicle_id: str) -> None:
        if vehicle_id in self.active:
            raise TripError(vehicle_id, "already has an active trip")
        self.active.add(vehicle_id)
        self.started += 1

    async def end_trip(self, vehicle_id: str) -> None:
        if vehicle_id not in self.active:
            raise TripError(vehicle_id, "has no active trip")
        self.active.discard(vehicle_id)
        self.ended += 1
