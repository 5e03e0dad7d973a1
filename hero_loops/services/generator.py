"""Hero Loop generation pipeline: cluster, stitch, augment."""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Sequence

from hero_loops.config import GenerationConfig
from hero_loops.models.facility import Facility
from hero_loops.models.infrastructure import ActivityType, InfrastructureSegment
from hero_loops.models.route import (
    CuratedRoute,
    GenerationResult,
    GenerationStats,
    HybridType,
    ProgressPhase,
)
from hero_loops.services.batches import new_batch_id, tag_batch
from hero_loops.services.facility_augmenter import augment_route
from hero_loops.services.graph_builder import build_clusters, data_source_for, filter_compatible
from hero_loops.services.loop_stitcher import LoopStitcher
from hero_loops.services.progress import ProgressCallback, report_progress


logger = logging.getLogger(__name__)

ACTIVITY_LABELS = {
    ActivityType.RUNNING: "Run",
    ActivityType.WALKING: "Walk",
    ActivityType.CYCLING: "Ride",
}

TIER_LABELS = {
    "short": "Short loop",
    "medium": "Medium loop",
    "long": "Long route",
}


def route_name(
    hybrid_type: HybridType,
    activity_type: ActivityType,
    tier: str,
    authority_name: str,
) -> str:
    label = ACTIVITY_LABELS[ActivityType(activity_type)]
    if hybrid_type == HybridType.MIXED:
        return f"Hybrid {label.lower()}: strength and stairs - {authority_name}"
    if hybrid_type == HybridType.PRIMARY:
        return f"Hybrid route: {label} + fitness equipment - {authority_name}"
    if hybrid_type == HybridType.SECONDARY:
        return f"Hybrid route: {label} + stair training - {authority_name}"
    if hybrid_type == HybridType.TERTIARY:
        return f"Hybrid route: {label} + urban strength - {authority_name}"
    return f"{TIER_LABELS.get(tier, 'Loop')} - {authority_name}"


def generate_curated_routes(
    segments: Sequence[InfrastructureSegment],
    activity_type: ActivityType,
    *,
    authority_id: str,
    facilities: Sequence[Facility] = (),
    config: GenerationConfig | None = None,
    on_progress: ProgressCallback | None = None,
    authority_name: str | None = None,
    enable_hybrid: bool = True,
    batch_id: str | None = None,
) -> GenerationResult:
    """Generate Hero Loop routes for one (authority, activity) pair.

    Pure function of its inputs apart from the batch id: finding no loop
    at all is reported through the stats, never raised.
    """
    activity_type = ActivityType(activity_type)
    config = config or GenerationConfig.from_settings()
    authority_name = authority_name or authority_id
    source_name = f"Hero Loop Engine - {authority_name}"
    batch_id = batch_id or new_batch_id(source_name)
    facilities = list(facilities) if enable_hybrid else []

    compatible = filter_compatible(segments, activity_type)
    stats = GenerationStats(
        segments_processed=len(segments),
        compatible_segments=len(compatible),
        total_infrastructure_km=round(sum(s.length_meters for s in compatible) / 1000, 1),
        data_source=data_source_for(compatible),
    )

    if not compatible:
        logger.warning(
            "Authority %s has %d segments but none usable for %s",
            authority_id, len(segments), activity_type.value,
        )
        report_progress(on_progress, ProgressPhase.DONE, f"No {activity_type.value} infrastructure", 100)
        return GenerationResult(routes=[], stats=stats, batch_id=batch_id)

    report_progress(
        on_progress,
        ProgressPhase.CLUSTER,
        f"{len(compatible)}/{len(segments)} segments usable for {activity_type.value}",
        10,
    )
    clusters = build_clusters(compatible, activity_type, config)
    stats.clusters_found = len(clusters)
    report_progress(on_progress, ProgressPhase.CLUSTER, f"Found {len(clusters)} clusters", 20)

    drafts: list[CuratedRoute] = []
    for position, cluster in enumerate(clusters, start=1):
        report_progress(
            on_progress,
            ProgressPhase.STITCH,
            f"Cluster {position}/{len(clusters)}: {cluster.total_length_meters / 1000:.1f} km",
            20 + 60 * position / len(clusters),
        )
        stitched = LoopStitcher(cluster, config).stitch(activity_type, authority_id)
        drafts.extend(stitched.routes)
        stats.tiers_skipped += stitched.tiers_skipped

    stats.tiers_generated = len(drafts)

    routes = []
    for position, draft in enumerate(drafts, start=1):
        route = draft
        if facilities:
            route = augment_route(draft, facilities, config.facility_buffer_m, config.min_stair_steps)
        routes.append(route.model_copy(update={
            "name": route_name(route.hybrid_type, activity_type, route.tier, authority_name),
        }))
        if facilities:
            report_progress(
                on_progress,
                ProgressPhase.AUGMENT,
                f"Checked facilities for {position}/{len(drafts)} routes",
                80 + 15 * position / len(drafts),
            )

    routes = tag_batch(routes, batch_id, source_name)
    stats.hybrid_routes = sum(1 for r in routes if r.is_hybrid)

    logger.info(
        "Generated %d routes (%d hybrid) for %s/%s from %d clusters",
        len(routes), stats.hybrid_routes, authority_id, activity_type.value, len(clusters),
    )
    report_progress(
        on_progress,
        ProgressPhase.DONE,
        f"{len(routes)} Hero Loop routes created ({stats.hybrid_routes} hybrid)",
        100,
    )
    return GenerationResult(routes=routes, stats=stats, batch_id=batch_id)


@dataclass
class GenerationJob:
    """Inputs for one independent generation run."""
    authority_id: str
    activity_type: ActivityType
    segments: Sequence[InfrastructureSegment]
    facilities: Sequence[Facility] = field(default_factory=list)
    authority_name: str | None = None
    enable_hybrid: bool = True


def run_generation_jobs(
    jobs: Sequence[GenerationJob],
    config: GenerationConfig | None = None,
    max_workers: int | None = None,
) -> list[GenerationResult]:
    """Run independent (authority, activity) generations on a thread pool.

    Results come back in job order. An exception in any job propagates.
    """
    config = config or GenerationConfig.from_settings()

    def run(job: GenerationJob) -> GenerationResult:
        return generate_curated_routes(
            job.segments,
            job.activity_type,
            authority_id=job.authority_id,
            facilities=job.facilities,
            config=config,
            authority_name=job.authority_name,
            enable_hybrid=job.enable_hybrid,
        )

    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        return list(pool.map(run, jobs))
