"""Closed-loop search within a cluster, one loop per distance tier.

Depth-first search with backtracking over the cluster's multigraph. Each
segment may be walked once; a bridge (a segment on no cycle) may be walked
a second time, which gives out-and-back loops on tree-shaped networks
without letting a cyclic network be lapped twice.
"""

import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterator

import networkx as nx

from hero_loops.config import GenerationConfig, TierSpec
from hero_loops.models.infrastructure import ActivityType, InfrastructureMode, InfrastructureSegment
from hero_loops.models.route import CuratedRoute
from hero_loops.services.geometry import LonLat, haversine_meters, near, path_length_meters
from hero_loops.services.graph_builder import Cluster


logger = logging.getLogger(__name__)

TIME_CHECK_INTERVAL = 256


@dataclass
class _Step:
    """One traversed edge of the current DFS path."""
    key: str
    points_added: int
    length_after: float


@dataclass
class _Frame:
    node: int
    options: Iterator


@dataclass
class LoopCandidate:
    """A closed walk that satisfies a tier's bounds."""
    segment_ids: list[str]
    path: list[LonLat]
    length_meters: float


@dataclass
class TierOutcome:
    tier: TierSpec
    loop: LoopCandidate | None
    expansions: int = 0
    budget_exhausted: bool = False


@dataclass
class StitchResult:
    cluster_index: int
    routes: list[CuratedRoute] = field(default_factory=list)
    outcomes: list[TierOutcome] = field(default_factory=list)

    @property
    def tiers_skipped(self) -> int:
        return sum(1 for o in self.outcomes if o.loop is None)


def find_bridges(graph: nx.MultiGraph) -> set[str]:
    """Edge keys whose removal disconnects the graph.

    Parallel segments between the same two nodes form a cycle with each
    other, so neither is a bridge.
    """
    pair_counts: dict[frozenset, int] = defaultdict(int)
    simple = nx.Graph()
    simple.add_nodes_from(graph.nodes)
    for u, v in graph.edges():
        if u == v:
            continue
        pair_counts[frozenset((u, v))] += 1
        simple.add_edge(u, v)

    bridge_pairs = {
        frozenset((u, v)) for u, v in nx.bridges(simple)
        if pair_counts[frozenset((u, v))] == 1
    }
    return {
        key for u, v, key in graph.edges(keys=True)
        if u != v and frozenset((u, v)) in bridge_pairs
    }


def pick_start_node(cluster: Cluster) -> int:
    """Highest-degree node; lowest id wins ties."""
    return min(cluster.node_ids, key=lambda n: (-cluster.degree(n), n))


def dominant_mode(segments: list[InfrastructureSegment]) -> InfrastructureMode:
    """Mode covering the most traversed length, ties broken by name."""
    weights: dict[InfrastructureMode, float] = defaultdict(float)
    for segment in segments:
        weights[segment.mode] += segment.length_meters
    return min(weights, key=lambda m: (-weights[m], m.value))


def route_id(authority_id: str, activity_type: ActivityType, tier: str, cluster_index: int) -> str:
    return f"hero_{authority_id}_{ActivityType(activity_type).value}_{tier}_c{cluster_index}"


class LoopStitcher:
    """Searches one cluster for a closed loop per tier."""

    def __init__(self, cluster: Cluster, config: GenerationConfig | None = None):
        self.cluster = cluster
        self.config = config or GenerationConfig()
        self.graph = cluster.graph
        self.bridges = find_bridges(self.graph)
        self.start_node = pick_start_node(cluster) if cluster.nodes else None

    def _oriented_path(self, data: dict, from_node: int) -> tuple[LonLat, ...]:
        path = data["segment"].path
        if data["start_node"] == from_node:
            return path
        return path[::-1]

    def _options(self, node: int, counts: dict[str, int]) -> Iterator:
        """Edges walkable from node, least-used first then by segment id."""
        options = []
        for _, other, key, data in self.graph.edges(node, keys=True, data=True):
            used = counts[key]
            if used == 0 or (used == 1 and key in self.bridges):
                options.append((used, key, other, data))
        options.sort(key=lambda o: (o[0], o[1]))
        return iter(options)

    def search(self, tier: TierSpec) -> TierOutcome:
        """Find the first closed walk from the start node within the tier bounds.

        Budget exhaustion (expansions or wall clock) ends the search with no
        loop, the same as an exhaustive search that found nothing.
        """
        lower, upper = self.config.tier_bounds(tier)
        closure = self.config.closure_tolerance_m
        # Node coordinates are centroids and both the current end and the start may sit
        # up to one snap tolerance from theirs
        slack = closure + 2 * self.config.snap_tolerance_m
        max_expansions = self.config.max_expansions_per_tier
        deadline = None
        if self.config.max_seconds_per_tier is not None:
            deadline = time.monotonic() + self.config.max_seconds_per_tier

        if self.start_node is None:
            return TierOutcome(tier=tier, loop=None)
        home = self.cluster.node_coord(self.start_node)

        counts: dict[str, int] = defaultdict(int)
        points: list[LonLat] = []
        steps: list[_Step] = []
        frames = [_Frame(self.start_node, self._options(self.start_node, counts))]
        expansions = 0

        while frames:
            frame = frames[-1]
            option = next(frame.options, None)
            if option is None:
                frames.pop()
                if steps:
                    step = steps.pop()
                    counts[step.key] -= 1
                    del points[len(points) - step.points_added:]
                continue

            _, key, other, data = option
            coords = self._oriented_path(data, frame.node)
            length = steps[-1].length_after if steps else 0.0

            if not points:
                new_points = coords
                added = data["length"]
            elif points[-1] == coords[0]:
                new_points = coords[1:]
                added = data["length"]
            else:
                # Snapped junction: the gap between the two ends is walked too
                new_points = coords
                added = haversine_meters(points[-1], coords[0]) + data["length"]

            new_length = length + added
            way_home = max(0.0, haversine_meters(self.cluster.node_coord(other), home) - slack)
            if new_length + way_home > upper:
                continue

            expansions += 1
            if expansions > max_expansions or (
                deadline is not None
                and expansions % TIME_CHECK_INTERVAL == 0
                and time.monotonic() > deadline
            ):
                logger.info(
                    "Search budget exhausted for tier %s in cluster %d after %d expansions",
                    tier.name, self.cluster.index, expansions,
                )
                return TierOutcome(tier=tier, loop=None, expansions=expansions, budget_exhausted=True)

            counts[key] += 1
            points.extend(new_points)
            steps.append(_Step(key=key, points_added=len(new_points), length_after=new_length))

            if lower <= new_length <= upper and near(points[0], points[-1], closure):
                exact = path_length_meters(points)
                if lower <= exact <= upper:
                    loop = LoopCandidate(
                        segment_ids=[s.key for s in steps],
                        path=list(points),
                        length_meters=exact,
                    )
                    return TierOutcome(tier=tier, loop=loop, expansions=expansions)

            frames.append(_Frame(other, self._options(other, counts)))

        return TierOutcome(tier=tier, loop=None, expansions=expansions)

    def stitch(self, activity_type: ActivityType, authority_id: str) -> StitchResult:
        """Search every configured tier and build draft routes for the hits."""
        result = StitchResult(cluster_index=self.cluster.index)
        for tier in self.config.tiers_for(activity_type):
            outcome = self.search(tier)
            result.outcomes.append(outcome)
            if outcome.loop is None:
                logger.debug(
                    "No %s loop (%.0f m) in cluster %d",
                    tier.name, tier.target_meters, self.cluster.index,
                )
                continue

            loop = outcome.loop
            walked = [self.cluster.segments[k] for k in loop.segment_ids]
            result.routes.append(CuratedRoute(
                id=route_id(authority_id, activity_type, tier.name, self.cluster.index),
                authority_id=authority_id,
                activity_type=activity_type,
                path=tuple(loop.path),
                distance_meters=loop.length_meters,
                tier=tier.name,
                difficulty=tier.difficulty,
                infrastructure_mode=dominant_mode(walked),
                segment_ids=tuple(loop.segment_ids),
                cluster_index=self.cluster.index,
            ))
        return result


def stitch_cluster(
    cluster: Cluster,
    activity_type: ActivityType,
    authority_id: str,
    config: GenerationConfig | None = None,
) -> StitchResult:
    return LoopStitcher(cluster, config).stitch(activity_type, authority_id)
