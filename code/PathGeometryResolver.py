import asyncio
import logging
from typing import List, Optional, Sequence

from DistanceIndexedPath import DistanceIndexedPath
from Geodesy import LatLon
from RoutingClient import RoutingClient, RoutingError
from VehicleSource import Stop, ordered_stops

logger = logging.getLogger(__name__)


class PathGeometryResolver:
    """
    Builds a DistanceIndexedPath for an ordered stop list.

    Road-snapped geometry comes from the routing client; any routing failure
    falls back to straight segments between the stops. Returns None when fewer
    than 2 usable stops are given.
    """

    def __init__(self, routing: Optional[RoutingClient], snap_endpoints: bool = False):
        self.routing = routing
        self.snap_endpoints = snap_endpoints

    def resolve(self, stops: Sequence[Stop]) -> Optional[DistanceIndexedPath]:
        waypoints = self._waypoints(stops)
        if waypoints is None:
            return None

        if self.routing is None:
            return self.fallback_path(waypoints)

        try:
            vertices = self.routing.fetch_route(waypoints)
        except RoutingError as e:
            logger.warning("routing failed, using straight lines between %d stops: %s", len(waypoints), e)
            return self.fallback_path(waypoints)

        if self.snap_endpoints:
            vertices[0] = waypoints[0]
            vertices[-1] = waypoints[-1]
        return DistanceIndexedPath.from_latlon(vertices)

    async def resolve_async(self, stops: Sequence[Stop], timeout_s: float) -> Optional[DistanceIndexedPath]:
        waypoints = self._waypoints(stops)
        if waypoints is None:
            return None
        try:
            return await asyncio.wait_for(asyncio.to_thread(self.resolve, stops), timeout_s)
        except asyncio.TimeoutError:
            logger.warning("routing timed out after %.1fs, using straight lines", timeout_s)
            return self.fallback_path(waypoints)

    @staticmethod
    def fallback_path(waypoints: Sequence[LatLon]) -> DistanceIndexedPath:
        return DistanceIndexedPath.from_latlon(waypoints)

    @staticmethod
    def _waypoints(stops: Sequence[Stop]) -> Optional[List[LatLon]]:
        usable = ordered_stops(stops)
        if len(usable) < 2:
            return None
        return [s.latlon for s in usable]
