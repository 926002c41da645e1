from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set

from Geodesy import LatLon, random_offset
from LocationPublisher import LocationPublisher, PublishError
from PathGeometryResolver import PathGeometryResolver
from SimConfig import DEFAULT_AREA, EngineSettings, SimulationParams
from TripGateway import TripError, TripGateway
from VehicleSimulation import Position, Status, VehicleSimulation
from VehicleSource import Stop, Vehicle

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class StartOutcome(Enum):
    STARTED = "started"
    ALREADY_ACTIVE = "already_active"
    PARKED = "parked"
    CANCELLED = "cancelled"


@dataclass
class StartAllReport:
    started: List[str] = field(default_factory=list)
    parked: List[str] = field(default_factory=list)
    already_active: List[str] = field(default_factory=list)
    cancelled: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    def record(self, vehicle_id: str, outcome: StartOutcome) -> None:
        {
            StartOutcome.STARTED: self.started,
            StartOutcome.PARKED: self.parked,
            StartOutcome.ALREADY_ACTIVE: self.already_active,
            StartOutcome.CANCELLED: self.cancelled,
        }[outcome].append(vehicle_id)


@dataclass
class _Entry:
    simulation: VehicleSimulation
    params: SimulationParams
    task: Optional[asyncio.Task] = None


class SimulationScheduler:
    """
    Owns vehicle_id -> (VehicleSimulation, driver task).

    One asyncio task per running vehicle advances and publishes its position
    every tick. The map and the set of in-flight starts are only mutated under
    self._lock; a driver task is cancelled in the same critical section that
    removes its entry. end_trip is issued only by whoever moved the simulation
    into COMPLETED or STOPPED, so each successful start_trip gets exactly one.
    """

    def __init__(self,
                 resolver: PathGeometryResolver,
                 trips: TripGateway,
                 publisher: LocationPublisher,
                 default_area: LatLon = DEFAULT_AREA,
                 park_radius_m: float = 1100.0,
                 stagger_ms: int = 250,
                 routing_timeout_s: float = 10.0,
                 sleep: SleepFn = asyncio.sleep,
                 rng: Optional[random.Random] = None):
        self.resolver = resolver
        self.trips = trips
        self.publisher = publisher
        self.default_area = default_area
        self.park_radius_m = park_radius_m
        self.stagger_ms = stagger_ms
        self.routing_timeout_s = routing_timeout_s
        self._sleep = sleep
        self._rng = rng or random.Random()

        self._lock = asyncio.Lock()
        self._entries: Dict[str, _Entry] = {}
        # vehicle_id -> token of the start attempt currently in flight
        self._starting: Dict[str, object] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._end_tasks: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: EngineSettings, resolver: PathGeometryResolver,
                      trips: TripGateway, publisher: LocationPublisher, **kwargs) -> "SimulationScheduler":
        return cls(resolver, trips, publisher,
                   default_area=settings.default_area,
                   park_radius_m=settings.park_radius_m,
                   stagger_ms=settings.stagger_ms,
                   routing_timeout_s=settings.routing_timeout_s,
                   **kwargs)

    # -------------------------
    # introspection
    # -------------------------
    def is_active(self, vehicle_id: str) -> bool:
        return vehicle_id in self._entries

    def active_ids(self) -> List[str]:
        return sorted(self._entries)

    def simulation(self, vehicle_id: str) -> Optional[VehicleSimulation]:
        entry = self._entries.get(vehicle_id)
        return entry.simulation if entry else None

    # -------------------------
    # start
    # -------------------------
    async def start_one(self, vehicle_id: str, stops: Sequence[Stop], params: SimulationParams) -> StartOutcome:
        token = object()
        async with self._lock:
            if vehicle_id in self._entries or vehicle_id in self._starting:
                logger.debug("vehicle %s already simulating", vehicle_id)
                return StartOutcome.ALREADY_ACTIVE
            self._starting[vehicle_id] = token

        try:
            return await self._start(vehicle_id, stops, params, token)
        finally:
            if self._starting.get(vehicle_id) is token:
                del self._starting[vehicle_id]

    def _still_starting(self, vehicle_id: str, token: object) -> bool:
        return self._starting.get(vehicle_id) is token

    async def _start(self, vehicle_id: str, stops: Sequence[Stop], params: SimulationParams,
                     token: object) -> StartOutcome:
        path = await self.resolver.resolve_async(stops, self.routing_timeout_s)
        if not self._still_starting(vehicle_id, token):
            return StartOutcome.CANCELLED

        if path is None:
            await self._park(vehicle_id)
            return StartOutcome.PARKED

        # TripError propagates, nothing has been registered yet
        await self.trips.start_trip(vehicle_id)

        sim = VehicleSimulation(vehicle_id=vehicle_id, path=path, speed_kmh=params.speed_kmh)
        sim.start()
        registered = False
        try:
            if self._still_starting(vehicle_id, token):
                await self._publish(vehicle_id, sim.current_position())

            async with self._lock:
                registered = self._still_starting(vehicle_id, token)
                if registered:
                    del self._starting[vehicle_id]
                    entry = _Entry(simulation=sim, params=params)
                    self._entries[vehicle_id] = entry
                    entry.task = asyncio.create_task(self._drive(entry), name=f"sim-{vehicle_id}")
                    self._tasks.add(entry.task)
                    entry.task.add_done_callback(self._tasks.discard)
        except BaseException:
            # cancelled with the trip open and nobody else owning it
            if not registered and sim.stop():
                logger.warning("start of vehicle %s interrupted, ending its trip", vehicle_id)
                self._spawn_end_trip(vehicle_id)
            raise

        if not registered:
            # stopped while the trip was being started
            sim.stop()
            await self._end_trip(vehicle_id)
            return StartOutcome.CANCELLED

        logger.info("vehicle %s started: %.0f m at %.1f km/h, tick %d ms",
                    vehicle_id, path.total_length, params.speed_kmh, params.tick_interval_ms)
        return StartOutcome.STARTED

    async def start_all(self, vehicles: Iterable[Vehicle], params: SimulationParams) -> StartAllReport:
        report = StartAllReport()
        eligible = []
        for v in vehicles:
            if v.is_active:
                eligible.append(v)
            else:
                report.skipped.append(v.vehicle_id)

        for n, v in enumerate(eligible):
            if n and self.stagger_ms > 0:
                await self._sleep(self.stagger_ms / 1000.0)
            try:
                outcome = await self.start_one(v.vehicle_id, v.stops, params)
            except TripError as e:
                logger.warning("could not start vehicle %s: %s", v.vehicle_id, e)
                report.failed[v.vehicle_id] = str(e)
                continue
            report.record(v.vehicle_id, outcome)

        logger.info("start_all: %d started, %d parked, %d already active, %d failed, %d skipped",
                    len(report.started), len(report.parked), len(report.already_active),
                    len(report.failed), len(report.skipped))
        return report

    async def _park(self, vehicle_id: str) -> None:
        lat, lon = random_offset(self.default_area, self.park_radius_m, self._rng)
        logger.info("vehicle %s has no usable route, parked at (%.5f, %.5f)", vehicle_id, lat, lon)
        await self._publish(vehicle_id, Position(latitude=lat, longitude=lon, speed_kmh=0.0, heading=0.0))

    # -------------------------
    # ticking
    # -------------------------
    async def _drive(self, entry: _Entry) -> None:
        sim = entry.simulation
        vehicle_id = sim.vehicle_id
        try:
            while sim.status is Status.RUNNING:
                await self._sleep(entry.params.tick_interval_s)
                sim.advance(entry.params.tick_interval_ms)
                pos = sim.current_position()
                logger.debug("vehicle %s at %.0f/%.0f m (%.5f, %.5f)", vehicle_id,
                             sim.distance_traveled, sim.path.total_length, pos.latitude, pos.longitude)
                await self._publish(vehicle_id, pos)
        except Exception:
            logger.exception("driver for vehicle %s crashed", vehicle_id)
            async with self._lock:
                if self._entries.get(vehicle_id) is entry:
                    del self._entries[vehicle_id]
                ended_here = sim.stop() or sim.status is Status.COMPLETED
            if ended_here:
                await self._end_trip(vehicle_id)
            return

        if sim.status is not Status.COMPLETED:
            return

        async with self._lock:
            if self._entries.get(vehicle_id) is entry:
                del self._entries[vehicle_id]
        logger.info("vehicle %s completed its route", vehicle_id)
        await self._end_trip(vehicle_id)

    async def _publish(self, vehicle_id: str, position: Position) -> None:
        try:
            await self.publisher.publish(vehicle_id, position)
        except PublishError as e:
            logger.warning("publish failed for vehicle %s: %s", vehicle_id, e)

    async def _end_trip(self, vehicle_id: str) -> None:
        try:
            await self.trips.end_trip(vehicle_id)
        except TripError as e:
            logger.error("end_trip failed for vehicle %s: %s", vehicle_id, e)

    def _spawn_end_trip(self, vehicle_id: str) -> None:
        t = asyncio.create_task(self._end_trip(vehicle_id), name=f"end-trip-{vehicle_id}")
        self._end_tasks.add(t)
        t.add_done_callback(self._end_tasks.discard)

    # -------------------------
    # stop
    # -------------------------
    async def stop_one(self, vehicle_id: str) -> bool:
        async with self._lock:
            pending = self._starting.pop(vehicle_id, None)
            entry = self._entries.pop(vehicle_id, None)
            if entry is None:
                # an in-flight start notices the missing token and cleans up itself
                return pending is not None
            stopped = entry.simulation.stop()
            if stopped and entry.task is not None:
                entry.task.cancel()

        if stopped:
            logger.info("vehicle %s stopped at %.0f m", vehicle_id, entry.simulation.distance_traveled)
            await self._end_trip(vehicle_id)
        return stopped

    async def stop_all(self) -> int:
        async with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
            self._starting.clear()
            to_end = []
            for entry in entries:
                if entry.simulation.stop():
                    if entry.task is not None:
                        entry.task.cancel()
                    to_end.append(entry.simulation.vehicle_id)

        for vehicle_id in to_end:
            self._spawn_end_trip(vehicle_id)

        logger.info("stopped %d vehicles", len(to_end))
        return len(to_end)

    async def join(self) -> None:
        """Waits for every driver task and pending end_trip call to finish."""
        while self._tasks or self._end_tasks:
            await asyncio.gather(*(self._tasks | self._end_tasks), return_exceptions=True)
