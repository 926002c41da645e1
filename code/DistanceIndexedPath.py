from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass, field
from typing import List, Sequence, Tuple

from Geodesy import LatLon, bearing_deg, cum_array, segment_lengths


@dataclass(frozen=True)
class PathPoint:
    latitude: float
    longitude: float
    distance_from_start: float  # cumulative meters from the first point

    @property
    def latlon(self) -> LatLon:
        return self.latitude, self.longitude


@dataclass(frozen=True)
class DistanceIndexedPath:
    """
    Polyline indexed by cumulative distance.
    points: >= 2 PathPoints, distance_from_start non-decreasing
    total_length: distance_from_start of the last point
    """
    points: Tuple[PathPoint, ...]
    total_length: float = field(init=False)
    _cum: Tuple[float, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        if len(self.points) < 2:
            raise ValueError("DistanceIndexedPath needs at least 2 points")
        cum = tuple(p.distance_from_start for p in self.points)
        for i in range(len(cum) - 1):
            if cum[i + 1] < cum[i]:
                raise ValueError(f"distance_from_start decreases at point {i + 1}")
        object.__setattr__(self, "points", tuple(self.points))
        object.__setattr__(self, "_cum", cum)
        object.__setattr__(self, "total_length", cum[-1])

    @classmethod
    def from_latlon(cls, coords: Sequence[LatLon]) -> "DistanceIndexedPath":
        coords = [(float(lat), float(lon)) for lat, lon in coords]
        if len(coords) < 2:
            raise ValueError("need at least 2 coordinates to build a path")
        cum = cum_array(segment_lengths(coords))
        return cls(tuple(PathPoint(lat, lon, d) for (lat, lon), d in zip(coords, cum)))

    @property
    def segment_count(self) -> int:
        return len(self.points) - 1

    def latlon_list(self) -> List[LatLon]:
        return [p.latlon for p in self.points]

    def position_at(self, distance: float) -> Tuple[float, float, int]:
        """Returns (lat, lon, segment_index) at the given distance along the path."""
        if distance <= 0.0:
            first = self.points[0]
            return first.latitude, first.longitude, 0

        if distance >= self.total_length:
            last = self.points[-1]
            return last.latitude, last.longitude, self.segment_count - 1

        i = bisect_right(self._cum, distance) - 1
        i = min(i, self.segment_count - 1)
        p1 = self.points[i]
        p2 = self.points[i + 1]
        seg_len = p2.distance_from_start - p1.distance_from_start
        alpha = 0.0 if seg_len <= 0.0 else (distance - p1.distance_from_start) / seg_len
        return (p1.latitude + alpha * (p2.latitude - p1.latitude),
                p1.longitude + alpha * (p2.longitude - p1.longitude),
                i)

    def heading_at(self, segment_index: int) -> float:
        i = max(0, min(segment_index, self.segment_count - 1))
        return bearing_deg(self.points[i].latlon, self.points[i + 1].latlon)
