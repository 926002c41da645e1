import os
from dataclasses import dataclass
from typing import Mapping, Optional

from Geodesy import LatLon
from RoutingClient import MAPBOX_DIRECTIONS

# Islamabad, where buses without a route are parked
DEFAULT_AREA: LatLon = (33.6844, 73.0479)
DEFAULT_API_URL = "http://localhost:8000/api"


@dataclass(frozen=True)
class SimulationParams:
    """Applied uniformly to every vehicle of a start_one / start_all call."""
    speed_kmh: float = 40.0
    tick_interval_ms: int = 2000

    def __post_init__(self):
        if self.speed_kmh < 0:
            raise ValueError(f"speed_kmh must be >= 0, got {self.speed_kmh}")
        if self.tick_interval_ms <= 0:
            raise ValueError(f"tick_interval_ms must be > 0, got {self.tick_interval_ms}")

    @property
    def tick_interval_s(self) -> float:
        return self.tick_interval_ms / 1000.0


def read_key_file(path: str) -> Optional[str]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            key = f.read().strip()
    except OSError:
        return None
    return key or None


def _bool(v: str) -> bool:
    return v.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class EngineSettings:
    api_url: str = DEFAULT_API_URL
    api_token: Optional[str] = None
    routing_url: str = MAPBOX_DIRECTIONS
    routing_profile: str = "driving"
    routing_token: Optional[str] = None
    routing_timeout_s: float = 10.0
    snap_endpoints: bool = False
    default_area: LatLon = DEFAULT_AREA
    park_radius_m: float = 1100.0
    stagger_ms: int = 250
    params: SimulationParams = SimulationParams()

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineSettings":
        env = os.environ if environ is None else environ
        routing_token = env.get("MAPBOX_API_KEY") or read_key_file(env.get("FLEETSIM_KEY_FILE", "key.txt"))
        return cls(
            api_url=env.get("FLEETSIM_API_URL", DEFAULT_API_URL),
            api_token=env.get("FLEETSIM_API_TOKEN") or None,
            routing_url=env.get("FLEETSIM_ROUTING_URL", MAPBOX_DIRECTIONS),
            routing_profile=env.get("FLEETSIM_ROUTING_PROFILE", "driving"),
            routing_token=routing_token,
            routing_timeout_s=float(env.get("FLEETSIM_ROUTING_TIMEOUT_S", "10")),
            snap_endpoints=_bool(env.get("FLEETSIM_SNAP_ENDPOINTS", "false")),
            stagger_ms=int(env.get("FLEETSIM_STAGGER_MS", "250")),
            params=SimulationParams(
                speed_kmh=float(env.get("FLEETSIM_SPEED_KMH", "40")),
                tick_interval_ms=int(env.get("FLEETSIM_TICK_MS", "2000")),
            ),
        )
