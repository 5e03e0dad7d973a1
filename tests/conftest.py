import math

import pytest

from hero_loops.models.infrastructure import InfrastructureMode, InfrastructureSegment
from hero_loops.services.geometry import METERS_PER_DEG_LAT


ORIGIN = (34.78, 32.08)  # lon, lat


def to_lonlat(east_m: float, north_m: float, origin=ORIGIN) -> tuple[float, float]:
    """Local metre offsets to (lon, lat) around origin."""
    lat = origin[1] + north_m / METERS_PER_DEG_LAT
    lon = origin[0] + east_m / (METERS_PER_DEG_LAT * math.cos(math.radians(origin[1])))
    return (lon, lat)


@pytest.fixture
def at():
    return to_lonlat


@pytest.fixture
def make_segment():
    def _make(seg_id, points_m, mode=InfrastructureMode.PEDESTRIAN, authority_id="tlv", **extra):
        return InfrastructureSegment(
            id=seg_id,
            authority_id=authority_id,
            path=[to_lonlat(e, n) for e, n in points_m],
            mode=mode,
            **extra,
        )
    return _make


@pytest.fixture
def triangle(make_segment):
    """Three 600 m segments closing into an 1800 m triangle."""
    a, b, c = (0.0, 0.0), (600.0, 0.0), (300.0, 519.615)
    return [
        make_segment("tri-ab", [a, b]),
        make_segment("tri-bc", [b, c]),
        make_segment("tri-ca", [c, a]),
    ]


@pytest.fixture
def dead_end(make_segment):
    """A single 480 m bent segment whose ends are 400 m apart."""
    return [make_segment("spur", [(0.0, 0.0), (200.0, 132.665), (400.0, 0.0)])]
