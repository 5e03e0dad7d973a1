from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from hero_loops.models.infrastructure import ActivityType


TIER_NAMES = ("short", "medium", "long")

# Loop distances that suit each activity, shortest first
DEFAULT_ACTIVITY_TIERS: dict[ActivityType, tuple[float, ...]] = {
    ActivityType.WALKING: (3000.0, 5000.0, 8000.0),
    ActivityType.RUNNING: (5500.0, 10000.0, 16000.0),
    ActivityType.CYCLING: (8000.0, 15000.0, 30000.0),
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="HERO_LOOPS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Graph building
    snap_tolerance_m: float = 15.0  # endpoints closer than this share a node
    min_cluster_length_m: float = 200.0
    max_clusters: int | None = 8  # largest clusters kept per run

    # Loop search
    closure_tolerance_m: float = 50.0
    tier_targets_m: list[float] | None = None  # one list for every activity when set
    walking_tier_targets_m: list[float] = list(DEFAULT_ACTIVITY_TIERS[ActivityType.WALKING])
    running_tier_targets_m: list[float] = list(DEFAULT_ACTIVITY_TIERS[ActivityType.RUNNING])
    cycling_tier_targets_m: list[float] = list(DEFAULT_ACTIVITY_TIERS[ActivityType.CYCLING])
    tier_lower_ratio: float = 0.8
    tier_upper_ratio: float = 1.25
    max_expansions_per_tier: int = 50_000
    max_seconds_per_tier: float = 5.0

    # Hybrid augmentation
    facility_buffer_m: float = 60.0
    min_stair_steps: int = 15  # shorter flights are not worth a stop

    # Remote feature service
    feature_service_page_size: int = 1000
    feature_service_max_pages: int = 50
    feature_service_timeout_s: float = 30.0
    feature_service_retries: int = 2
    feature_service_retry_delay_s: float = 1.0


settings = Settings()


class TierSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    target_meters: float = Field(gt=0)

    @property
    def difficulty(self) -> str:
        if self.name == "short":
            return "easy"
        if self.name == "medium":
            return "medium"
        return "hard"


def _named_tiers(value):
    """Plain distances become short / medium / long / tier_4 ... by size."""
    if not value:
        raise ValueError("at least one tier is required")
    items = list(value)
    if all(isinstance(v, (int, float)) for v in items):
        targets = sorted(float(v) for v in items)
        named = []
        for i, target in enumerate(targets):
            name = TIER_NAMES[i] if i < len(TIER_NAMES) else f"tier_{i + 1}"
            named.append({"name": name, "target_meters": target})
        return tuple(named)
    return tuple(items)


def _sorted_tiers(value: tuple[TierSpec, ...]) -> tuple[TierSpec, ...]:
    return tuple(sorted(value, key=lambda t: (t.target_meters, t.name)))


class GenerationConfig(BaseModel):
    """Tolerances and budgets for one generation run.

    ``tiers`` applies one tier list to every activity; when it is left
    unset each activity uses its own list from ``activity_tiers``.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    snap_tolerance_m: float = Field(default=15.0, gt=0)
    closure_tolerance_m: float = Field(default=50.0, gt=0)
    min_cluster_length_m: float = Field(default=200.0, ge=0)
    max_clusters: int | None = Field(default=8, gt=0)
    tiers: tuple[TierSpec, ...] | None = None
    activity_tiers: dict[ActivityType, tuple[TierSpec, ...]] = Field(
        default_factory=lambda: dict(DEFAULT_ACTIVITY_TIERS), validate_default=True
    )
    tier_lower_ratio: float = Field(default=0.8, gt=0)
    tier_upper_ratio: float = Field(default=1.25, gt=0)
    facility_buffer_m: float = Field(default=60.0, ge=0)
    min_stair_steps: int = Field(default=15, ge=0)
    max_expansions_per_tier: int = Field(default=50_000, gt=0)
    max_seconds_per_tier: float | None = 5.0

    @field_validator("tiers", mode="before")
    @classmethod
    def _coerce_tiers(cls, value):
        if value is None:
            return None
        return _named_tiers(value)

    @field_validator("tiers")
    @classmethod
    def _sort_tiers(cls, value):
        if value is None:
            return None
        return _sorted_tiers(value)

    @field_validator("activity_tiers", mode="before")
    @classmethod
    def _coerce_activity_tiers(cls, value):
        given = {ActivityType(k): v for k, v in dict(value).items()}
        merged = {**DEFAULT_ACTIVITY_TIERS, **given}
        return {activity: _named_tiers(tiers) for activity, tiers in merged.items()}

    @field_validator("activity_tiers")
    @classmethod
    def _sort_activity_tiers(cls, value):
        return {activity: _sorted_tiers(tiers) for activity, tiers in value.items()}

    @model_validator(mode="after")
    def _check_ratios(self):
        if self.tier_lower_ratio >= self.tier_upper_ratio:
            raise ValueError("tier_lower_ratio must be below tier_upper_ratio")
        return self

    def tiers_for(self, activity_type: ActivityType) -> tuple[TierSpec, ...]:
        if self.tiers is not None:
            return self.tiers
        return self.activity_tiers[ActivityType(activity_type)]

    def tier_bounds(self, tier: TierSpec) -> tuple[float, float]:
        return (
            tier.target_meters * self.tier_lower_ratio,
            tier.target_meters * self.tier_upper_ratio,
        )

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> "GenerationConfig":
        source = source or settings
        return cls(
            snap_tolerance_m=source.snap_tolerance_m,
            closure_tolerance_m=source.closure_tolerance_m,
            min_cluster_length_m=source.min_cluster_length_m,
            max_clusters=source.max_clusters,
            tiers=source.tier_targets_m,
            activity_tiers={
                ActivityType.WALKING: source.walking_tier_targets_m,
                ActivityType.RUNNING: source.running_tier_targets_m,
                ActivityType.CYCLING: source.cycling_tier_targets_m,
            },
            tier_lower_ratio=source.tier_lower_ratio,
            tier_upper_ratio=source.tier_upper_ratio,
            facility_buffer_m=source.facility_buffer_m,
            min_stair_steps=source.min_stair_steps,
            max_expansions_per_tier=source.max_expansions_per_tier,
            max_seconds_per_tier=source.max_seconds_per_tier,
        )
