import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import polyline
import requests

from Geodesy import LatLon

logger = logging.getLogger(__name__)

MAPBOX_DIRECTIONS = "https://api.mapbox.com/directions/v5/mapbox"
OSRM_LOCAL = "http://localhost:5000/route/v1"


class RoutingError(RuntimeError):
    pass


@dataclass(frozen=True)
class RouteInfo:
    coordinates: Tuple[LatLon, ...]
    distance_m: float
    duration_s: float


def get_profile(option: str) -> str:
    profiles = {
        "driving": "driving",
        "traffic": "driving-traffic",
        "cycling": "cycling",
        "walking": "walking",
    }
    return profiles.get(option, "driving")


class RoutingClient:
    """
    Road-routing query against a Mapbox Directions or OSRM style endpoint.
    One request carries all waypoints in order. No retries.
    """

    def __init__(self,
                 base_url: str = MAPBOX_DIRECTIONS,
                 profile: str = "driving",
                 access_token: Optional[str] = None,
                 timeout_s: float = 10.0,
                 geometries: str = "geojson",
                 session: Optional[requests.Session] = None):
        if geometries not in ("geojson", "polyline", "polyline6"):
            raise ValueError(f"Unknown geometries format: {geometries}")
        self.base_url = base_url.rstrip("/")
        self.profile = get_profile(profile)
        self.access_token = access_token
        self.timeout_s = timeout_s
        self.geometries = geometries
        self.session = session or requests.Session()
        self._cache: Dict[Tuple[LatLon, ...], RouteInfo] = {}
        self._cache_lock = threading.Lock()

    @property
    def needs_token(self) -> bool:
        return self.base_url.startswith(MAPBOX_DIRECTIONS)

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    def fetch_route(self, waypoints: Sequence[LatLon]) -> List[LatLon]:
        return list(self.fetch_route_info(waypoints).coordinates)

    def fetch_route_info(self, waypoints: Sequence[LatLon]) -> RouteInfo:
        key = tuple((float(lat), float(lon)) for lat, lon in waypoints)
        if len(key) < 2:
            raise RoutingError("need at least 2 waypoints")

        with self._cache_lock:
            cached = self._cache.get(key)
        if cached is not None:
            logger.debug("using cached route for %d waypoints", len(key))
            return cached

        info = self._request(key)
        with self._cache_lock:
            self._cache[key] = info
        return info

    def _request(self, waypoints: Tuple[LatLon, ...]) -> RouteInfo:
        if self.needs_token and not self.access_token:
            raise RoutingError("no Mapbox access token configured")

        # provider expects lon,lat
        coords = ";".join(f"{lon},{lat}" for lat, lon in waypoints)
        url = f"{self.base_url}/{self.profile}/{coords}"
        params = {"overview": "full", "geometries": self.geometries, "steps": "false"}
        if self.access_token:
            params["access_token"] = self.access_token

        logger.info("fetching route through %d waypoints", len(waypoints))
        try:
            r = self.session.get(url, params=params, timeout=self.timeout_s)
            r.raise_for_status()
            data = r.json()
        except requests.RequestException as e:
            raise RoutingError(f"routing request failed: {e}") from e
        except ValueError as e:
            raise RoutingError(f"routing response is not JSON: {e}") from e

        return self._parse(data)

    def _parse(self, data) -> RouteInfo:
        if not isinstance(data, dict) or data.get("code") != "Ok" or not data.get("routes"):
            raise RoutingError(f"routing failed: {data!r}")

        try:
            route = data["routes"][0]
            geometry = route["geometry"]
            if self.geometries == "geojson":
                latlon = [(float(lat), float(lon)) for lon, lat in geometry["coordinates"]]
            else:
                precision = 6 if self.geometries == "polyline6" else 5
                latlon = [(float(lat), float(lon)) for lat, lon in polyline.decode(geometry, precision)]
            distance = float(route.get("distance", 0.0))
            duration = float(route.get("duration", 0.0))
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise RoutingError(f"malformed routing response: {e}") from e

        if len(latlon) < 2:
            raise RoutingError(f"route geometry has {len(latlon)} vertices")

        logger.info("got route with %d points", len(latlon))
        return RouteInfo(coordinates=tuple(latlon), distance_m=distance, duration_s=duration)
