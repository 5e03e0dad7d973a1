"""Endpoint snapping and connectivity clustering of infrastructure segments."""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable

import networkx as nx
from networkx.utils import UnionFind

from hero_loops.config import GenerationConfig
from hero_loops.models.infrastructure import (
    ActivityType,
    InfrastructureMode,
    InfrastructureSegment,
    compatible_modes,
)
from hero_loops.models.route import DataSource
from hero_loops.services.geometry import LonLat, grid_cell, near


logger = logging.getLogger(__name__)


@dataclass
class GraphNode:
    """A snapped endpoint shared by one or more segments."""
    id: int
    coordinate: LonLat
    incident_segment_ids: set[str] = field(default_factory=set)


@dataclass
class Cluster:
    """Connected component of compatible segments."""
    index: int
    graph: nx.MultiGraph  # edge key = segment id
    nodes: dict[int, GraphNode]
    segments: dict[str, InfrastructureSegment]
    total_length_meters: float

    @property
    def node_ids(self) -> list[int]:
        return sorted(self.nodes)

    def degree(self, node_id: int) -> int:
        return self.graph.degree(node_id)

    def node_coord(self, node_id: int) -> LonLat:
        return self.nodes[node_id].coordinate


def filter_compatible(
    segments: Iterable[InfrastructureSegment], activity_type: ActivityType
) -> list[InfrastructureSegment]:
    """Segments whose mode the activity may use, deduplicated by id."""
    allowed = compatible_modes(activity_type)
    seen: dict[str, InfrastructureSegment] = {}
    for segment in segments:
        if segment.mode not in allowed:
            continue
        if segment.id in seen:
            logger.warning("Duplicate segment id %s, keeping the first", segment.id)
            continue
        seen[segment.id] = segment
    return [seen[k] for k in sorted(seen)]


def data_source_for(compatible: Iterable[InfrastructureSegment]) -> DataSource:
    """Which kind of infrastructure a run was built from."""
    modes = {s.mode for s in compatible}
    if not modes:
        return DataSource.NONE
    if modes == {InfrastructureMode.CYCLING}:
        return DataSource.CYCLING
    if modes == {InfrastructureMode.PEDESTRIAN}:
        return DataSource.PEDESTRIAN
    return DataSource.MIXED


def snap_endpoints(
    segments: list[InfrastructureSegment], tolerance_m: float
) -> tuple[dict[int, GraphNode], dict[tuple[str, int], int]]:
    """Merge segment endpoints that lie within tolerance_m of each other.

    Merging is transitive (A~B and B~C puts A, B, C on one node) and the
    result does not depend on segment order: candidate pairs come from a
    grid bucketed at the tolerance, node ids are assigned after sorting
    the merged groups by their south-west-most member.

    Returns (nodes, endpoint_to_node) where endpoint_to_node maps
    (segment_id, 0 for start / 1 for end) to a node id.
    """
    endpoints: list[tuple[LonLat, tuple[str, int]]] = []
    for segment in segments:
        endpoints.append((segment.start_point, (segment.id, 0)))
        endpoints.append((segment.end_point, (segment.id, 1)))

    if not endpoints:
        return {}, {}

    ref_lat = max(abs(p[1]) for p, _ in endpoints)
    grid: dict[tuple[int, int], list[int]] = defaultdict(list)
    for i, (point, _) in enumerate(endpoints):
        grid[grid_cell(point, tolerance_m, ref_lat)].append(i)

    uf = UnionFind(range(len(endpoints)))
    for (row, col), members in grid.items():
        for dr in (-1, 0, 1):
            for dc in (-1, 0, 1):
                neighbours = grid.get((row + dr, col + dc))
                if not neighbours:
                    continue
                for i in members:
                    for j in neighbours:
                        if j > i and near(endpoints[i][0], endpoints[j][0], tolerance_m):
                            uf.union(i, j)

    # Identical points always share a group, so the minimum point is a unique sort key
    groups = sorted(uf.to_sets(), key=lambda g: min(endpoints[i][0] for i in g))

    nodes: dict[int, GraphNode] = {}
    endpoint_to_node: dict[tuple[str, int], int] = {}
    for node_id, group in enumerate(groups):
        points = sorted(endpoints[i][0] for i in group)
        centroid = (
            sum(p[0] for p in points) / len(points),
            sum(p[1] for p in points) / len(points),
        )
        node = GraphNode(id=node_id, coordinate=centroid)
        for i in group:
            seg_id, end = endpoints[i][1]
            node.incident_segment_ids.add(seg_id)
            endpoint_to_node[(seg_id, end)] = node_id
        nodes[node_id] = node

    return nodes, endpoint_to_node


class InfrastructureGraph:
    """Snapped node/segment graph for one activity type."""

    def __init__(
        self,
        segments: Iterable[InfrastructureSegment],
        activity_type: ActivityType,
        config: GenerationConfig | None = None,
    ):
        self.activity_type = ActivityType(activity_type)
        self.config = config or GenerationConfig()
        self.segments = filter_compatible(segments, self.activity_type)
        self.graph = nx.MultiGraph()
        self.nodes: dict[int, GraphNode] = {}

        self._build_graph()

    def _build_graph(self):
        self.nodes, endpoint_to_node = snap_endpoints(self.segments, self.config.snap_tolerance_m)

        for node_id, node in self.nodes.items():
            self.graph.add_node(node_id, coordinate=node.coordinate)

        for segment in self.segments:
            start_node = endpoint_to_node[(segment.id, 0)]
            end_node = endpoint_to_node[(segment.id, 1)]
            self.graph.add_edge(
                start_node,
                end_node,
                key=segment.id,
                segment=segment,
                start_node=start_node,
                length=segment.length_meters,
                mode=segment.mode.value,
            )

    def clusters(self) -> list[Cluster]:
        """Connected components above the minimum length, largest first.

        At most config.max_clusters are returned.
        """
        found = []
        for component in nx.connected_components(self.graph):
            sub = self.graph.subgraph(component).copy()
            segments = {key: data["segment"] for _, _, key, data in sub.edges(keys=True, data=True)}
            total = sum(s.length_meters for s in segments.values())
            if total < self.config.min_cluster_length_m:
                logger.debug(
                    "Dropping %d-segment cluster of %.0f m (< %.0f m)",
                    len(segments), total, self.config.min_cluster_length_m,
                )
                continue
            found.append((sub, segments, total))

        found.sort(key=lambda item: (-item[2], min(item[0].nodes)))
        limit = self.config.max_clusters
        if limit is not None and len(found) > limit:
            logger.info("Keeping the %d largest of %d clusters", limit, len(found))
            found = found[:limit]
        return [
            Cluster(
                index=index,
                graph=sub,
                nodes={n: self.nodes[n] for n in sorted(sub.nodes)},
                segments=segments,
                total_length_meters=total,
            )
            for index, (sub, segments, total) in enumerate(found)
        ]


def build_clusters(
    segments: Iterable[InfrastructureSegment],
    activity_type: ActivityType,
    config: GenerationConfig | None = None,
) -> list[Cluster]:
    """Cluster the segments usable by activity_type into connected components."""
    return InfrastructureGraph(segments, activity_type, config).clusters()
