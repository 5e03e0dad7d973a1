import logging
from collections import defaultdict
from itertools import zip_longest
from typing import Iterable, Iterator

from hero_loops.models.facility import Facility, FacilityStop, FacilityType
from hero_loops.models.infrastructure import ActivityType
from hero_loops.models.route import CuratedRoute, HybridType
from hero_loops.services.geometry import (
    LonLat,
    bounding_box,
    expand_bounding_box,
    haversine_meters,
    in_bounding_box,
)


logger = logging.getLogger(__name__)

TERTIARY_TYPES = {FacilityType.BENCH, FacilityType.WATER_SOURCE, FacilityType.SCENIC_POINT}

WALKING_MAX_STOPS = 4
WALKING_KM_PER_STOP = 2
PERFORMANCE_MAX_STOPS = 2
PERFORMANCE_KM_PER_STOP = 5


def nearest_vertex(path: tuple[LonLat, ...] | list[LonLat], point: LonLat) -> tuple[int, float]:
    """Index of the path vertex closest to point and its distance in meters.

    The first of equally distant vertices wins.
    """
    best_index = 0
    best_dist = float("inf")
    for i, vertex in enumerate(path):
        dist = haversine_meters(vertex, point)
        if dist < best_dist:
            best_index = i
            best_dist = dist
    return best_index, best_dist


def collect_facility_stops(
    path: tuple[LonLat, ...] | list[LonLat],
    facilities: Iterable[Facility],
    buffer_m: float,
) -> list[FacilityStop]:
    """Facilities within buffer_m of any path vertex, in order along the path."""
    if not path:
        return []
    search_box = expand_bounding_box(bounding_box(path), buffer_m)

    stops = []
    for facility in facilities:
        if not in_bounding_box(facility.coordinate, search_box):
            continue
        index, dist = nearest_vertex(path, facility.coordinate)
        if dist > buffer_m:
            continue
        stops.append(FacilityStop(
            id=facility.id,
            coordinate=facility.coordinate,
            facility_type=facility.facility_type,
            priority=facility.priority,
            name=facility.name,
            path_index=index,
            distance_meters=dist,
        ))

    stops.sort(key=lambda s: (s.path_index, s.distance_meters, s.id))
    return stops


def usable_facilities(facilities: Iterable[Facility], min_stair_steps: int) -> Iterator[Facility]:
    """Drop flights of stairs known to have min_stair_steps steps or fewer."""
    for facility in facilities:
        if (
            facility.facility_type == FacilityType.STAIRS
            and facility.number_of_steps is not None
            and facility.number_of_steps <= min_stair_steps
        ):
            continue
        yield facility


def max_stops_for(activity_type: ActivityType, distance_meters: float) -> int:
    """Stop budget for a loop: one per 2 km walking (up to 4), one per 5 km otherwise (up to 2).

    Every loop may take at least one stop.
    """
    km = distance_meters / 1000
    if ActivityType(activity_type) == ActivityType.WALKING:
        return max(1, min(int(km // WALKING_KM_PER_STOP), WALKING_MAX_STOPS))
    return max(1, min(int(km // PERFORMANCE_KM_PER_STOP), PERFORMANCE_MAX_STOPS))


def select_stops(
    stops: list[FacilityStop], activity_type: ActivityType, max_stops: int
) -> list[FacilityStop]:
    """Choose which nearby facilities become stops.

    Walking explores: the closest facility of each priority is taken in
    turn, best priority first, so one loop can mix facility kinds. Running
    and cycling keep their rhythm: only facilities of the best priority
    present are used. Within a priority, closer facilities come first.
    The chosen stops are returned in path order.
    """
    if not stops or max_stops <= 0:
        return []
    by_distance = sorted(stops, key=lambda s: (s.distance_meters, s.path_index, s.id))

    if ActivityType(activity_type) == ActivityType.WALKING:
        pools = defaultdict(list)
        for stop in by_distance:
            pools[stop.priority].append(stop)
        rounds = zip_longest(*(pools[p] for p in sorted(pools)))
        chosen = [stop for round_ in rounds for stop in round_ if stop is not None][:max_stops]
    else:
        best = min(s.priority for s in stops)
        chosen = [s for s in by_distance if s.priority == best][:max_stops]

    return sorted(chosen, key=lambda s: (s.path_index, s.distance_meters, s.id))


def classify_hybrid(stops: Iterable[FacilityStop]) -> HybridType:
    types = {s.facility_type for s in stops}
    if not types:
        return HybridType.NONE
    if len(types) > 1:
        return HybridType.MIXED

    (only,) = types
    if only == FacilityType.GYM_EQUIPMENT:
        return HybridType.PRIMARY
    if only == FacilityType.STAIRS:
        return HybridType.SECONDARY
    if only in TERTIARY_TYPES:
        return HybridType.TERTIARY
    raise ValueError(f"Unhandled facility type {only!r}")


def augment_route(
    route: CuratedRoute,
    facilities: Iterable[Facility],
    buffer_m: float,
    min_stair_steps: int = 15,
) -> CuratedRoute:
    """Attach nearby facilities to a loop; the path itself is left untouched."""
    candidates = collect_facility_stops(route.path, usable_facilities(facilities, min_stair_steps), buffer_m)
    stops = select_stops(
        candidates,
        route.activity_type,
        max_stops_for(route.activity_type, route.distance_meters),
    )
    hybrid_type = classify_hybrid(stops)
    if hybrid_type != HybridType.NONE:
        logger.debug(
            "Route %s is %s hybrid with %d of %d nearby facilities",
            route.id, hybrid_type.value, len(stops), len(candidates),
        )
    return route.model_copy(update={
        "is_hybrid": hybrid_type != HybridType.NONE,
        "hybrid_type": hybrid_type,
        "facility_stops": tuple(stops),
    })
