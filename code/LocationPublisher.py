from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol, Sequence

import aiohttp

from VehicleSimulation import Position

logger = logging.getLogger(__name__)


class PublishError(RuntimeError):
    pass


class LocationPublisher(Protocol):
    async def publish(self, vehicle_id: str, position: Position) -> None: ...


def position_event(vehicle_id: str, position: Position) -> Dict[str, Any]:
    return {
        "type": "position",
        "vehicle_id": vehicle_id,
        "latitude": position.latitude,
        "longitude": position.longitude,
        "speed": position.speed_kmh,
        "heading": round(position.heading),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


class HttpLocationPublisher:
    """POST /buses/{id}/location/ on the dashboard backend."""

    def __init__(self, session: aiohttp.ClientSession, api_url: str, token: Optional[str] = None,
                 timeout_s: float = 5.0):
        self.session = session
        self.api_url = api_url.rstrip("/")
        self.token = token
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)

    async def publish(self, vehicle_id: str, position: Position) -> None:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Token {self.token}"
        body = {
            "latitude": position.latitude,
            "longitude": position.longitude,
            "speed": position.speed_kmh,
            "heading": round(position.heading),
        }
        url = f"{self.api_url}/buses/{vehicle_id}/location/"
        try:
            async with self.session.post(url, json=body, headers=headers, timeout=self.timeout) as resp:
                if resp.status >= 400:
                    raise PublishError(f"location update for {vehicle_id} rejected ({resp.status})")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise PublishError(f"location update for {vehicle_id} failed: {e}") from e


class QueuePublisher:
    """Pushes position events onto an asyncio.Queue for in-process consumers."""

    def __init__(self, maxsize: int = 1000):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    async def publish(self, vehicle_id: str, position: Position) -> None:
        q = self.queue
        # keep only latest event if queue is full
        if q.full():
            try:
                q.get_nowait()
                q.task_done()
            except asyncio.QueueEmpty:
                pass
        await q.put(position_event(vehicle_id, position))


class SnapshotFilePublisher:
    """Keeps the latest position per vehicle and rewrites one JSON file atomically on every publish."""

    def __init__(self, path: str = "positions.json"):
        self.path = path
        self.latest: Dict[str, Dict[str, Any]] = {}

    def _write(self, snapshot: Dict[str, Any]) -> None:
        # readers only ever see a complete file: dump next to the target, then rename over it
        target_dir = os.path.dirname(os.path.abspath(self.path))
        with tempfile.NamedTemporaryFile("w", encoding="utf-8", dir=target_dir,
                                         prefix=".snapshot-", suffix=".json", delete=False) as f:
            json.dump(snapshot, f)
            f.flush()
            os.fsync(f.fileno())
        try:
            os.replace(f.name, self.path)
        except OSError:
            os.unlink(f.name)
            raise

    async def publish(self, vehicle_id: str, position: Position) -> None:
        self.latest[vehicle_id] = position_event(vehicle_id, position)
        snapshot = {"vehicles": list(self.latest.values())}
        try:
            await asyncio.to_thread(self._write, snapshot)
        except OSError as e:
            raise PublishError(f"writing {self.path} failed: {e}") from e


class FanOutPublisher:
    """Publishes to every target; fails if any target failed, after trying all of them."""

    def __init__(self, targets: Sequence[LocationPublisher]):
        self.targets = list(targets)

    async def publish(self, vehicle_id: str, position: Position) -> None:
        errors = []
        for t in self.targets:
            try:
                await t.publish(vehicle_id, position)
            except PublishError as e:
                errors.append(str(e))
        if errors:
            raise PublishError("; ".join(errors))
