import asyncio
import logging
import os
import signal
from typing import List

import aiohttp

from LocationPublisher import FanOutPublisher, HttpLocationPublisher, SnapshotFilePublisher
from PathGeometryResolver import PathGeometryResolver
from RoutingClient import RoutingClient
from SimConfig import EngineSettings, SimulationParams
from SimulationScheduler import SimulationScheduler
from TripGateway import HttpTripGateway, InMemoryTripGateway
from VehicleSource import HttpVehicleSource, Stop, Vehicle

logger = logging.getLogger("fleetsim")


def demo_fleet() -> List[Vehicle]:
    # Blue Area -> Centaurus -> F-9 Park, plus one bus without a route
    stops = (
        Stop(1, 33.7104, 73.0551, name="Blue Area"),
        Stop(2, 33.7077, 73.0498, name="Centaurus"),
        Stop(3, 33.7003, 73.0228, name="F-9 Park"),
    )
    return [
        Vehicle("1", "ISB-101", stops=stops),
        Vehicle("2", "ISB-102", stops=tuple(reversed(stops))),
        Vehicle("3", "ISB-103"),
    ]


def install_shutdown_handlers() -> asyncio.Event:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass
    return stop


async def supervise(scheduler: SimulationScheduler, vehicles: List[Vehicle], params: SimulationParams,
                    shutdown: asyncio.Event) -> None:
    """
    Starts the fleet and keeps it running until shutdown is set.

    A shutdown during start_all cancels the remaining starts. Every vehicle
    that did start is stopped and its trip ended before this returns.
    """
    starting = asyncio.create_task(scheduler.start_all(vehicles, params), name="start-all")
    waiting = asyncio.create_task(shutdown.wait(), name="shutdown")
    try:
        done, _ = await asyncio.wait({starting, waiting}, return_when=asyncio.FIRST_COMPLETED)
        if starting in done:
            for vehicle_id, reason in starting.result().failed.items():
                logger.warning("vehicle %s not started: %s", vehicle_id, reason)
            await waiting
        else:
            logger.info("shutdown requested while starting the fleet")
    finally:
        for t in (starting, waiting):
            t.cancel()
        await asyncio.gather(starting, waiting, return_exceptions=True)
        await scheduler.stop_all()
        await scheduler.join()


async def run(settings: EngineSettings, offline: bool) -> None:
    shutdown = install_shutdown_handlers()
    routing = RoutingClient(base_url=settings.routing_url,
                            profile=settings.routing_profile,
                            access_token=settings.routing_token,
                            timeout_s=settings.routing_timeout_s)
    resolver = PathGeometryResolver(routing, snap_endpoints=settings.snap_endpoints)
    snapshot = SnapshotFilePublisher(os.environ.get("FLEETSIM_SNAPSHOT", "positions.json"))

    async with aiohttp.ClientSession() as session:
        if offline:
            trips = InMemoryTripGateway()
            publisher = snapshot
            vehicles = demo_fleet()
        else:
            trips = HttpTripGateway(session, settings.api_url, settings.api_token)
            publisher = FanOutPublisher([HttpLocationPublisher(session, settings.api_url, settings.api_token),
                                         snapshot])
            vehicles = await HttpVehicleSource(session, settings.api_url, settings.api_token).fetch_vehicles()

        scheduler = SimulationScheduler.from_settings(settings, resolver, trips, publisher)
        await supervise(scheduler, vehicles, settings.params, shutdown)


def main() -> None:
    logging.basicConfig(level=os.environ.get("FLEETSIM_LOG_LEVEL", "INFO"),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    settings = EngineSettings.from_env()
    offline = os.environ.get("FLEETSIM_OFFLINE", "").lower() in ("1", "true", "yes")
    asyncio.run(run(settings, offline))


if __name__ == "__main__":
    main()
