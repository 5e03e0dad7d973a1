from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, model_validator

from hero_loops.services.geometry import LonLat, dedupe_consecutive, is_valid_coordinate, path_length_meters


class ActivityType(str, Enum):
    RUNNING = "running"
    WALKING = "walking"
    CYCLING = "cycling"


class InfrastructureMode(str, Enum):
    CYCLING = "cycling"
    PEDESTRIAN = "pedestrian"
    SHARED = "shared"


COMPATIBLE_MODES: dict[ActivityType, frozenset[InfrastructureMode]] = {
    ActivityType.CYCLING: frozenset({InfrastructureMode.CYCLING, InfrastructureMode.SHARED}),
    ActivityType.RUNNING: frozenset({InfrastructureMode.PEDESTRIAN, InfrastructureMode.SHARED}),
    ActivityType.WALKING: frozenset({InfrastructureMode.PEDESTRIAN, InfrastructureMode.SHARED}),
}


def compatible_modes(activity_type: ActivityType) -> frozenset[InfrastructureMode]:
    """Infrastructure modes a given activity may use."""
    return COMPATIBLE_MODES[ActivityType(activity_type)]


def default_mode_for(activity_type: ActivityType) -> InfrastructureMode:
    if ActivityType(activity_type) == ActivityType.CYCLING:
        return InfrastructureMode.CYCLING
    return InfrastructureMode.PEDESTRIAN


class GISClassification(BaseModel):
    """Admin-supplied tags applied to every feature of one import."""

    model_config = ConfigDict(frozen=True)

    activity: ActivityType = ActivityType.CYCLING
    terrain: Literal["asphalt", "dirt", "mixed"] = "asphalt"
    environment: Literal["urban", "nature", "park", "beach"] = "urban"
    difficulty: Literal["easy", "medium", "hard"] = "easy"
    mode: InfrastructureMode | None = None  # overrides attribute detection


class InfrastructureSegment(BaseModel):
    """One raw polyline of real-world path.

    The path is normalized on construction: duplicate consecutive points are
    dropped and length_meters is always recomputed, whatever the input says.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    authority_id: str
    path: tuple[LonLat, ...]
    mode: InfrastructureMode
    length_meters: float = 0.0
    import_batch_id: str | None = None
    source_name: str = ""
    name: str = ""
    external_id: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_path(cls, data):
        if not isinstance(data, dict):
            return data
        raw_path = data.get("path")
        if raw_path is None:
            raise ValueError("segment path is required")

        points: list[LonLat] = []
        for point in raw_path:
            if not is_valid_coordinate(point):
                raise ValueError(f"invalid coordinate {point!r}")
            points.append((float(point[0]), float(point[1])))

        points = dedupe_consecutive(points)
        if len(points) < 2:
            raise ValueError("segment path needs at least two distinct points")

        length = path_length_meters(points)
        if length <= 0:
            raise ValueError("zero-length segment")

        return {**data, "path": tuple(points), "length_meters": length}

    @property
    def start_point(self) -> LonLat:
        return self.path[0]

    @property
    def end_point(self) -> LonLat:
        return self.path[-1]
