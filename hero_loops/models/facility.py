from enum import Enum, IntEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from hero_loops.services.geometry import LonLat, is_valid_coordinate


class FacilityType(str, Enum):
    GYM_EQUIPMENT = "gym_equipment"
    STAIRS = "stairs"
    BENCH = "bench"
    WATER_SOURCE = "water_source"
    SCENIC_POINT = "scenic_point"


class FacilityPriority(IntEnum):
    PRIMARY = 1
    SECONDARY = 2
    TERTIARY = 3


DEFAULT_PRIORITY: dict[FacilityType, FacilityPriority] = {
    FacilityType.GYM_EQUIPMENT: FacilityPriority.PRIMARY,
    FacilityType.STAIRS: FacilityPriority.SECONDARY,
    FacilityType.BENCH: FacilityPriority.TERTIARY,
    FacilityType.WATER_SOURCE: FacilityPriority.TERTIARY,
    FacilityType.SCENIC_POINT: FacilityPriority.TERTIARY,
}


class Facility(BaseModel):
    """A point amenity that can turn a loop into a hybrid route."""

    model_config = ConfigDict(frozen=True)

    id: str
    coordinate: LonLat
    facility_type: FacilityType
    priority: FacilityPriority
    name: str = ""
    number_of_steps: int | None = Field(default=None, ge=0)  # stairs only

    @field_validator("coordinate", mode="before")
    @classmethod
    def _check_coordinate(cls, value):
        if not is_valid_coordinate(value):
            raise ValueError(f"invalid coordinate {value!r}")
        return (float(value[0]), float(value[1]))

    @model_validator(mode="before")
    @classmethod
    def _default_priority(cls, data):
        if isinstance(data, dict) and data.get("priority") is None and "facility_type" in data:
            return {**data, "priority": DEFAULT_PRIORITY[FacilityType(data["facility_type"])]}
        return data


class FacilityStop(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    coordinate: LonLat
    facility_type: FacilityType
    priority: FacilityPriority
    name: str = ""
    path_index: int  # nearest vertex on the route path
    distance_meters: float
