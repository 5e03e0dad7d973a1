from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from hero_loops.models.facility import FacilityStop
from hero_loops.models.infrastructure import ActivityType, InfrastructureMode, InfrastructureSegment
from hero_loops.services.geometry import LonLat


class HybridType(str, Enum):
    NONE = "none"
    PRIMARY = "primary"      # gym equipment
    SECONDARY = "secondary"  # stairs
    TERTIARY = "tertiary"    # benches and other amenities
    MIXED = "mixed"


class DataSource(str, Enum):
    CYCLING = "cycling"
    PEDESTRIAN = "pedestrian"
    MIXED = "mixed"
    NONE = "none"


class ProgressPhase(str, Enum):
    FETCH = "fetch"
    CLUSTER = "cluster"
    STITCH = "stitch"
    AUGMENT = "augment"
    DONE = "done"


class ProgressUpdate(BaseModel):
    phase: ProgressPhase
    detail: str
    percent: int = Field(ge=0, le=100)
    features_so_far: int | None = None


class CuratedRoute(BaseModel):
    """A generated closed loop, ready for the persistence collaborator."""

    model_config = ConfigDict(frozen=True)

    id: str
    authority_id: str
    activity_type: ActivityType
    name: str = ""
    path: tuple[LonLat, ...]
    distance_meters: float
    tier: str
    difficulty: str = "easy"
    is_hybrid: bool = False
    hybrid_type: HybridType = HybridType.NONE
    facility_stops: tuple[FacilityStop, ...] = ()
    infrastructure_mode: InfrastructureMode
    segment_ids: tuple[str, ...] = ()
    cluster_index: int = 0
    import_batch_id: str | None = None
    import_source_name: str = ""


class GenerationStats(BaseModel):
    segments_processed: int = 0
    compatible_segments: int = 0
    clusters_found: int = 0
    tiers_generated: int = 0
    tiers_skipped: int = 0
    total_infrastructure_km: float = 0.0
    hybrid_routes: int = 0
    data_source: DataSource = DataSource.NONE


class BatchSummary(BaseModel):
    batch_id: str
    source_name: str
    count: int
    created_at: datetime | None = None
    authority_id: str | None = None
    activity_type: ActivityType | None = None
    kind: str = "segment"  # or "curated"


@dataclass
class IngestionResult:
    """Segments produced from one source plus what had to be dropped.

    ``truncated`` is set when a remote service still had records after the
    page cap; the segment list is then incomplete.
    """
    segments: list[InfrastructureSegment] = field(default_factory=list)
    features_seen: int = 0
    skipped_features: int = 0
    pages: int = 0
    ingestion_id: str | None = None
    truncated: bool = False


@dataclass
class GenerationResult:
    routes: list[CuratedRoute]
    stats: GenerationStats
    batch_id: str | None = None

    @property
    def hybrid_routes(self) -> list[CuratedRoute]:
        return [r for r in self.routes if r.is_hybrid]
