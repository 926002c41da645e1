import math
import random
from typing import List, Optional, Tuple

LatLon = Tuple[float, float]  # (lat, lon)

EARTH_RADIUS_M = 6371000.0
METERS_PER_DEGREE = 111320.0


# -------------------------
# small utils
# -------------------------
def cum_array(values: List[float]) -> List[float]:
    cum = [0.0]
    s = 0.0
    for v in values:
        s += v
        cum.append(s)
    return cum


def haversine_m(a: LatLon, b: LatLon) -> float:
    lat1, lon1 = map(math.radians, a)
    lat2, lon2 = map(math.radians, b)
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    x = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(min(1.0, x)))


def bearing_deg(a: LatLon, b: LatLon) -> float:
    """Initial compass bearing from a to b in [0, 360). 0.0 when a == b."""
    if a == b:
        return 0.0
    lat1, lon1 = map(math.radians, a)
    lat2, lon2 = map(math.radians, b)
    dlon = lon2 - lon1
    y = math.sin(dlon) * math.cos(lat2)
    x = math.cos(lat1) * math.sin(lat2) - math.sin(lat1) * math.cos(lat2) * math.cos(dlon)
    heading = math.degrees(math.atan2(y, x)) % 360.0
    # tiny negative angles round up to exactly 360.0
    if heading >= 360.0:
        heading = 0.0
    return heading


def segment_lengths(points: List[LatLon]) -> List[float]:
    return [haversine_m(points[i], points[i + 1]) for i in range(len(points) - 1)]


def random_offset(point: LatLon, radius_m: float, rng: Optional[random.Random] = None) -> LatLon:
    rng = rng or random
    lat, lon = point
    dlat = rng.uniform(-radius_m, radius_m) / METERS_PER_DEGREE
    dlon = rng.uniform(-radius_m, radius_m) / (METERS_PER_DEGREE * math.cos(math.radians(lat)))
    return lat + dlat, lon + dlon
