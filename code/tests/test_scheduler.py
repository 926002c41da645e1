import asyncio
import random

import pytest

from Geodesy import haversine_m
from PathGeometryResolver import PathGeometryResolver
from SimConfig import DEFAULT_AREA, SimulationParams
from SimulationScheduler import SimulationScheduler, StartOutcome
from TripGateway import InMemoryTripGateway, TripError
from VehicleSimulation import Status
from VehicleSource import Stop, Vehicle
from fakes import (A, B, FailingRouting, FakeClock, GatedTripGateway, RecordingPublisher, StalledPublisher,
                   stops_ab)

CRUISE = SimulationParams(speed_kmh=36.0, tick_interval_ms=1000)
PARKED_SPEED = SimulationParams(speed_kmh=0.0, tick_interval_ms=1000)


def make_scheduler(clock=None, trips=None, publisher=None):
    clock = clock or FakeClock()
    trips = trips or InMemoryTripGateway()
    publisher = publisher or RecordingPublisher()
    scheduler = SimulationScheduler(PathGeometryResolver(FailingRouting()), trips, publisher,
                                    sleep=clock.sleep, rng=random.Random(1))
    return scheduler, clock, trips, publisher


async def spin(n=50):
    for _ in range(n):
        await asyncio.sleep(0)


async def _test_end_to_end_route_completes():
    scheduler, clock, trips, publisher = make_scheduler()

    outcome = await scheduler.start_one("bus-1", stops_ab(), CRUISE)
    assert outcome is StartOutcome.STARTED
    sim = scheduler.simulation("bus-1")
    assert sim.path.total_length == pytest.approx(1113, abs=5)

    await scheduler.join()

    positions = publisher.for_vehicle("bus-1")
    # initial position plus one per tick
    assert len(positions) == 113
    assert clock.ticks(1.0) == 112
    assert (positions[0].latitude, positions[0].longitude) == A

    expected_lat = A[0] + (B[0] - A[0]) * 1110.0 / sim.path.total_length
    assert positions[111].latitude == pytest.approx(expected_lat, abs=1e-9)
    assert positions[111].speed_kmh == 36.0

    assert (positions[-1].latitude, positions[-1].longitude) == B
    assert positions[-1].speed_kmh == 0.0
    assert sim.status is Status.COMPLETED
    assert sim.distance_traveled == sim.path.total_length

    assert trips.started == 1
    assert trips.ended == 1
    assert not scheduler.is_active("bus-1")


def test_end_to_end_route_completes():
    asyncio.run(_test_end_to_end_route_completes())


async def _test_start_is_idempotent():
    scheduler, clock, trips, publisher = make_scheduler()

    outcomes = await asyncio.gather(
        scheduler.start_one("bus-1", stops_ab(), PARKED_SPEED),
        scheduler.start_one("bus-1", stops_ab(), PARKED_SPEED),
    )
    assert sorted(o.value for o in outcomes) == ["already_active", "started"]
    assert await scheduler.start_one("bus-1", stops_ab(), CRUISE) is StartOutcome.ALREADY_ACTIVE

    assert trips.started == 1
    assert scheduler.active_ids() == ["bus-1"]
    assert len(scheduler._tasks) == 1

    assert await scheduler.stop_all() == 1
    await scheduler.join()
    assert trips.ended == 1


def test_start_is_idempotent():
    asyncio.run(_test_start_is_idempotent())


async def _test_zero_speed_runs_until_stopped():
    scheduler, clock, trips, publisher = make_scheduler()

    await scheduler.start_one("bus-1", stops_ab(), PARKED_SPEED)
    await spin(200)
    sim = scheduler.simulation("bus-1")
    assert sim.status is Status.RUNNING
    assert sim.distance_traveled == 0.0
    assert clock.ticks(1.0) > 10

    assert await scheduler.stop_one("bus-1") is True
    published = len(publisher.events)
    await spin(50)
    await scheduler.join()

    assert len(publisher.events) == published
    assert sim.status is Status.STOPPED
    assert trips.ended == 1
    assert not scheduler.is_active("bus-1")


def test_zero_speed_runs_until_stopped():
    asyncio.run(_test_zero_speed_runs_until_stopped())


async def _test_stop_mid_route_ends_trip_once():
    scheduler, clock, trips, publisher = make_scheduler(clock=FakeClock(pause_after=10))

    await scheduler.start_one("bus-1", stops_ab(), CRUISE)
    while len(clock.calls) <= 10:
        await asyncio.sleep(0)
    sim = scheduler.simulation("bus-1")
    assert sim.distance_traveled == pytest.approx(100.0)

    assert await scheduler.stop_one("bus-1") is True
    assert await scheduler.stop_one("bus-1") is False
    await scheduler.join()

    assert len(publisher.for_vehicle("bus-1")) == 11
    assert sim.status is Status.STOPPED
    assert trips.ended == 1


def test_stop_mid_route_ends_trip_once():
    asyncio.run(_test_stop_mid_route_ends_trip_once())


async def _test_stop_after_completion_does_not_end_again():
    scheduler, clock, trips, publisher = make_scheduler()

    await scheduler.start_one("bus-1", stops_ab(), CRUISE)
    await scheduler.join()
    assert await scheduler.stop_one("bus-1") is False
    assert await scheduler.stop_all() == 0
    await scheduler.join()

    assert trips.started == 1
    assert trips.ended == 1


def test_stop_after_completion_does_not_end_again():
    asyncio.run(_test_stop_after_completion_does_not_end_again())


async def _test_stop_racing_final_tick():
    scheduler, clock, trips, publisher = make_scheduler()

    stop_results = []

    class StopOnArrival(RecordingPublisher):
        async def publish(self, vehicle_id, position):
            await super().publish(vehicle_id, position)
            if position.speed_kmh == 0.0:
                # completion already happened, the manual stop must not end the trip again
                stop_results.append(await scheduler.stop_one(vehicle_id))

    scheduler.publisher = StopOnArrival()
    await scheduler.start_one("bus-1", stops_ab(), CRUISE)
    await scheduler.join()

    assert stop_results == [False]
    assert trips.ended == 1
    assert not scheduler.is_active("bus-1")


def test_stop_racing_final_tick():
    asyncio.run(_test_stop_racing_final_tick())


async def _test_failed_start_trip_registers_nothing():
    scheduler, clock, trips, publisher = make_scheduler()
    trips.active.add("bus-1")

    with pytest.raises(TripError):
        await scheduler.start_one("bus-1", stops_ab(), CRUISE)

    assert not scheduler.is_active("bus-1")
    assert publisher.events == []
    assert scheduler._tasks == set()

    # the failed attempt does not block a later start
    trips.active.discard("bus-1")
    assert await scheduler.start_one("bus-1", stops_ab(), CRUISE) is StartOutcome.STARTED
    await scheduler.join()


def test_failed_start_trip_registers_nothing():
    asyncio.run(_test_failed_start_trip_registers_nothing())


async def _test_insufficient_stops_parks_vehicle():
    scheduler, clock, trips, publisher = make_scheduler()

    outcome = await scheduler.start_one("bus-9", [Stop(1, A[0], A[1])], CRUISE)

    assert outcome is StartOutcome.PARKED
    assert trips.started == 0
    assert not scheduler.is_active("bus-9")
    [pos] = publisher.for_vehicle("bus-9")
    assert pos.speed_kmh == 0.0
    assert pos.heading == 0.0
    assert haversine_m(DEFAULT_AREA, (pos.latitude, pos.longitude)) < 1700
    await spin()
    assert clock.calls == []


def test_insufficient_stops_parks_vehicle():
    asyncio.run(_test_insufficient_stops_parks_vehicle())


async def _test_publish_failures_do_not_stop_simulation():
    scheduler, clock, trips, publisher = make_scheduler(publisher=RecordingPublisher(fail=True))

    await scheduler.start_one("bus-1", stops_ab(), CRUISE)
    await scheduler.join()

    assert len(publisher.events) == 113
    assert trips.ended == 1


def test_publish_failures_do_not_stop_simulation():
    asyncio.run(_test_publish_failures_do_not_stop_simulation())


async def _test_stop_while_trip_is_starting():
    trips = GatedTripGateway()
    scheduler, clock, trips, publisher = make_scheduler(trips=trips)

    start = asyncio.create_task(scheduler.start_one("bus-1", stops_ab(), CRUISE))
    await trips.entered.wait()
    assert await scheduler.stop_one("bus-1") is True
    trips.release()

    assert await start is StartOutcome.CANCELLED
    assert publisher.events == []
    await scheduler.join()
    assert trips.started == 1
    assert trips.ended == 1
    assert not scheduler.is_active("bus-1")
    assert clock.calls == []


def test_stop_while_trip_is_starting():
    asyncio.run(_test_stop_while_trip_is_starting())


async def _test_stop_all_while_trip_is_starting():
    trips = GatedTripGateway()
    scheduler, clock, trips, publisher = make_scheduler(trips=trips)

    start = asyncio.create_task(scheduler.start_one("bus-1", stops_ab(), CRUISE))
    await trips.entered.wait()
    assert await scheduler.stop_all() == 0
    trips.release()

    assert await start is StartOutcome.CANCELLED
    await scheduler.join()
    assert trips.started == 1
    assert trips.ended == 1
    assert scheduler.active_ids() == []
    assert publisher.events == []


def test_stop_all_while_trip_is_starting():
    asyncio.run(_test_stop_all_while_trip_is_starting())


async def _test_cancelled_start_ends_its_trip():
    scheduler, clock, trips, publisher = make_scheduler(publisher=StalledPublisher())

    start = asyncio.create_task(scheduler.start_one("bus-1", stops_ab(), CRUISE))
    await publisher.entered.wait()
    start.cancel()
    with pytest.raises(asyncio.CancelledError):
        await start

    assert await scheduler.stop_all() == 0
    await scheduler.join()
    assert trips.started == 1
    assert trips.ended == 1
    assert not scheduler.is_active("bus-1")

    # the start token was released, a new start goes through
    restart = asyncio.create_task(scheduler.start_one("bus-1", stops_ab(), CRUISE))
    await spin()
    assert trips.started == 2
    restart.cancel()
    await asyncio.gather(restart, return_exceptions=True)
    await scheduler.join()
    assert trips.ended == 2


def test_cancelled_start_ends_its_trip():
    asyncio.run(_test_cancelled_start_ends_its_trip())


async def _test_start_all_staggers_and_reports():
    scheduler, clock, trips, publisher = make_scheduler()
    trips.active.add("busy")
    a, b = stops_ab()
    fleet = [
        Vehicle("1", "ISB-1", stops=(a, b)),
        Vehicle("2", "ISB-2"),
        Vehicle("3", "ISB-3", status="maintenance", stops=(a, b)),
        Vehicle("busy", "ISB-4", stops=(a, b)),
    ]

    report = await scheduler.start_all(fleet, PARKED_SPEED)

    assert report.started == ["1"]
    assert report.parked == ["2"]
    assert report.skipped == ["3"]
    assert list(report.failed) == ["busy"]
    assert clock.calls.count(0.25) == 2
    assert scheduler.active_ids() == ["1"]

    again = await scheduler.start_all(fleet[:1], PARKED_SPEED)
    assert again.already_active == ["1"]

    assert await scheduler.stop_all() == 1
    assert scheduler.active_ids() == []
    await scheduler.join()
    assert trips.ended == 1


def test_start_all_staggers_and_reports():
    asyncio.run(_test_start_all_staggers_and_reports())


async def _test_vehicles_tick_independently():
    scheduler, clock, trips, publisher = make_scheduler()
    a, b = stops_ab()

    await scheduler.start_one("slow", (a, b), PARKED_SPEED)
    await scheduler.start_one("fast", (b, a), CRUISE)
    while scheduler.is_active("fast"):
        await asyncio.sleep(0)

    assert scheduler.active_ids() == ["slow"]
    assert publisher.for_vehicle("fast")[-1].latitude == A[0]
    await scheduler.stop_all()
    await scheduler.join()
    assert trips.ended == 2


def test_vehicles_tick_independently():
    asyncio.run(_test_vehicles_tick_independently())
