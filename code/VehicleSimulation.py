from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto

from DistanceIndexedPath import DistanceIndexedPath


class Status(Enum):
    IDLE = auto()
    RUNNING = auto()
    COMPLETED = auto()
    STOPPED = auto()


TERMINAL = (Status.COMPLETED, Status.STOPPED)


class SimulationStateError(RuntimeError):
    pass


@dataclass(frozen=True)
class Position:
    latitude: float
    longitude: float
    speed_kmh: float
    heading: float


@dataclass
class VehicleSimulation:
    vehicle_id: str
    path: DistanceIndexedPath
    speed_kmh: float
    distance_traveled: float = 0.0
    status: Status = Status.IDLE

    def __post_init__(self):
        if self.speed_kmh < 0:
            raise ValueError("speed_kmh must be >= 0")

    @property
    def done(self) -> bool:
        return self.status in TERMINAL

    def start(self) -> None:
        if self.status is not Status.IDLE:
            raise SimulationStateError(f"vehicle {self.vehicle_id}: cannot start from {self.status.name}")
        self.distance_traveled = 0.0
        self.status = Status.RUNNING

    def advance(self, elapsed_ms: float) -> None:
        if self.status is not Status.RUNNING:
            return

        # km/h * ms / 3600 == meters
        delta = self.speed_kmh * max(0.0, elapsed_ms) / 3600.0
        self.distance_traveled = min(self.distance_traveled + delta, self.path.total_length)

        if self.distance_traveled >= self.path.total_length:
            self.status = Status.COMPLETED

    def stop(self) -> bool:
        """Moves RUNNING -> STOPPED. True only for the call that made the transition."""
        if self.status is not Status.RUNNING:
            return False
        self.status = Status.STOPPED
        return True

    def current_position(self) -> Position:
        lat, lon, idx = self.path.position_at(self.distance_traveled)
        speed = self.speed_kmh if self.status is Status.RUNNING else 0.0
        return Position(latitude=lat, longitude=lon, speed_kmh=speed, heading=self.path.heading_at(idx))
