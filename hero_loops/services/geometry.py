import math
from typing import Sequence


LonLat = tuple[float, float]

EARTH_RADIUS_M = 6_371_000
METERS_PER_DEG_LAT = EARTH_RADIUS_M * math.pi / 180


def haversine_meters(a: LonLat, b: LonLat) -> float:
    """Great-circle distance between two (lon, lat) points in meters."""
    lon1, lat1 = math.radians(a[0]), math.radians(a[1])
    lon2, lat2 = math.radians(b[0]), math.radians(b[1])

    dlat = lat2 - lat1
    dlon = lon2 - lon1

    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    c = 2 * math.asin(math.sqrt(min(1.0, h)))

    return EARTH_RADIUS_M * c


def path_length_meters(path: Sequence[LonLat]) -> float:
    """Sum of consecutive haversine distances along a polyline."""
    total = 0.0
    for i in range(1, len(path)):
        total += haversine_meters(path[i - 1], path[i])
    return total


def bounding_box(path: Sequence[LonLat]) -> tuple[float, float, float, float]:
    """Return (min_lon, min_lat, max_lon, max_lat) of a non-empty path."""
    if not path:
        raise ValueError("bounding box of an empty path")
    lons = [p[0] for p in path]
    lats = [p[1] for p in path]
    return (min(lons), min(lats), max(lons), max(lats))


def expand_bounding_box(
    bbox: tuple[float, float, float, float], margin_m: float
) -> tuple[float, float, float, float]:
    """Grow a bbox by roughly margin_m on every side."""
    min_lon, min_lat, max_lon, max_lat = bbox
    dlat = margin_m / METERS_PER_DEG_LAT
    # Widest longitude span occurs at the latitude closest to a pole
    widest_lat = max(abs(min_lat), abs(max_lat))
    cos_lat = max(math.cos(math.radians(widest_lat)), 1e-6)
    dlon = margin_m / (METERS_PER_DEG_LAT * cos_lat)
    return (min_lon - dlon, min_lat - dlat, max_lon + dlon, max_lat + dlat)


def in_bounding_box(point: LonLat, bbox: tuple[float, float, float, float]) -> bool:
    min_lon, min_lat, max_lon, max_lat = bbox
    return min_lon <= point[0] <= max_lon and min_lat <= point[1] <= max_lat


def near(a: LonLat, b: LonLat, tolerance_m: float) -> bool:
    return haversine_meters(a, b) <= tolerance_m


def is_valid_coordinate(point: Sequence[float]) -> bool:
    """Finite lon/lat pair inside the WGS84 range."""
    if not isinstance(point, (list, tuple)) or len(point) < 2:
        return False
    lon, lat = point[0], point[1]
    if not isinstance(lon, (int, float)) or not isinstance(lat, (int, float)):
        return False
    if isinstance(lon, bool) or isinstance(lat, bool):
        return False
    if not (math.isfinite(lon) and math.isfinite(lat)):
        return False
    return -180.0 <= lon <= 180.0 and -90.0 <= lat <= 90.0


def dedupe_consecutive(path: Sequence[LonLat]) -> list[LonLat]:
    """Drop points identical to their predecessor."""
    out: list[LonLat] = []
    for p in path:
        if not out or out[-1] != p:
            out.append(p)
    return out


def grid_cell(point: LonLat, cell_size_m: float, ref_lat: float) -> tuple[int, int]:
    """Grid cell for spatial bucketing of nearby points.

    ref_lat must be the most poleward latitude of the point set so that no
    cell is narrower than cell_size_m on the ground.
    """
    lat_cell = math.floor(point[1] * METERS_PER_DEG_LAT / cell_size_m)
    lon_scale = METERS_PER_DEG_LAT * max(math.cos(math.radians(ref_lat)), 1e-6)
    lon_cell = math.floor(point[0] * lon_scale / cell_size_m)
    return (lat_cell, lon_cell)
