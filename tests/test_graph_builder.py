import random

import networkx as nx
import pytest

from hero_loops.config import GenerationConfig
from hero_loops.models.infrastructure import ActivityType, InfrastructureMode
from hero_loops.models.route import DataSource
from hero_loops.services.graph_builder import (
    InfrastructureGraph,
    build_clusters,
    data_source_for,
    filter_compatible,
    snap_endpoints,
)
from hero_loops.services.geometry import haversine_meters


CYCLING = InfrastructureMode.CYCLING
PEDESTRIAN = InfrastructureMode.PEDESTRIAN
SHARED = InfrastructureMode.SHARED


def cluster_signature(clusters):
    return [
        (
            c.index,
            sorted(c.segments),
            {n: node.coordinate for n, node in c.nodes.items()},
            round(c.total_length_meters, 6),
        )
        for c in clusters
    ]


@pytest.mark.parametrize("activity, allowed", [
    (ActivityType.CYCLING, {CYCLING, SHARED}),
    (ActivityType.RUNNING, {PEDESTRIAN, SHARED}),
    (ActivityType.WALKING, {PEDESTRIAN, SHARED}),
])
def test_filter_compatible(make_segment, activity, allowed):
    segments = [
        make_segment("c", [(0, 0), (100, 0)], mode=CYCLING),
        make_segment("p", [(0, 0), (0, 100)], mode=PEDESTRIAN),
        make_segment("s", [(0, 0), (-100, 0)], mode=SHARED),
    ]
    assert {s.mode for s in filter_compatible(segments, activity)} == allowed


def test_endpoints_within_tolerance_share_a_node(make_segment):
    segments = [
        make_segment("a", [(0, 0), (200, 0)]),
        make_segment("b", [(210, 0), (400, 0)]),  # 10 m gap
    ]
    nodes, endpoint_to_node = snap_endpoints(segments, 15)
    assert len(nodes) == 3
    assert endpoint_to_node[("a", 1)] == endpoint_to_node[("b", 0)]
    shared = nodes[endpoint_to_node[("a", 1)]]
    assert shared.incident_segment_ids == {"a", "b"}


def test_endpoints_beyond_tolerance_stay_apart(make_segment):
    segments = [
        make_segment("a", [(0, 0), (200, 0)]),
        make_segment("b", [(220, 0), (400, 0)]),  # 20 m gap
    ]
    nodes, endpoint_to_node = snap_endpoints(segments, 15)
    assert len(nodes) == 4
    assert endpoint_to_node[("a", 1)] != endpoint_to_node[("b", 0)]


def test_snapping_is_transitive(make_segment):
    # 10 m apart pairwise along a line: first and last are 20 m apart
    segments = [
        make_segment("a", [(0, 0), (0, 300)]),
        make_segment("b", [(10, 0), (200, -300)]),
        make_segment("c", [(20, 0), (400, 0)]),
    ]
    _, endpoint_to_node = snap_endpoints(segments, 15)
    assert endpoint_to_node[("a", 0)] == endpoint_to_node[("b", 0)] == endpoint_to_node[("c", 0)]


def test_node_coordinate_is_member_centroid(make_segment, at):
    segments = [
        make_segment("a", [(0, 0), (0, 300)]),
        make_segment("b", [(10, 0), (300, 0)]),
    ]
    nodes, endpoint_to_node = snap_endpoints(segments, 15)
    node = nodes[endpoint_to_node[("a", 0)]]
    assert haversine_meters(node.coordinate, at(5, 0)) < 0.01


def test_clustering_is_order_independent(triangle, make_segment):
    segments = triangle + [
        make_segment("spur", [(600, 0), (900, 0)]),
        make_segment("far-1", [(5000, 5000), (5300, 5000)]),
        make_segment("far-2", [(5300, 5008), (5300, 5400)]),
    ]
    expected = cluster_signature(build_clusters(segments, ActivityType.WALKING))

    rng = random.Random(7)
    for _ in range(5):
        shuffled = segments[:]
        rng.shuffle(shuffled)
        assert cluster_signature(build_clusters(shuffled, ActivityType.WALKING)) == expected


def test_clusters_are_connected_components_sorted_by_length(triangle, make_segment):
    segments = triangle + [
        make_segment("far-1", [(5000, 5000), (5300, 5000)]),
        make_segment("far-2", [(5300, 5000), (5300, 5400)]),
    ]
    clusters = build_clusters(segments, ActivityType.WALKING)

    assert [c.index for c in clusters] == [0, 1]
    assert set(clusters[0].segments) == {"tri-ab", "tri-bc", "tri-ca"}
    assert set(clusters[1].segments) == {"far-1", "far-2"}
    assert clusters[0].total_length_meters == pytest.approx(1800, rel=1e-3)
    assert clusters[0].graph.number_of_edges() == 3
    assert all(clusters[0].degree(n) == 2 for n in clusters[0].node_ids)


def test_short_clusters_are_dropped(triangle, make_segment):
    segments = triangle + [make_segment("stub", [(5000, 5000), (5150, 5000)])]
    clusters = build_clusters(segments, ActivityType.WALKING, GenerationConfig(min_cluster_length_m=200))
    assert len(clusters) == 1
    assert "stub" not in clusters[0].segments


def test_cluster_excludes_incompatible_modes(make_segment):
    # Two cycling arms and one pedestrian arm meeting at one junction
    segments = [
        make_segment("east", [(0, 0), (300, 0)], mode=CYCLING),
        make_segment("north", [(0, 0), (0, 300)], mode=CYCLING),
        make_segment("west", [(0, 0), (-300, 0)], mode=PEDESTRIAN),
    ]
    clusters = build_clusters(segments, ActivityType.CYCLING)
    assert len(clusters) == 1
    assert set(clusters[0].segments) == {"east", "north"}
    assert all(s.mode != PEDESTRIAN for s in clusters[0].segments.values())
    assert data_source_for(filter_compatible(segments, ActivityType.CYCLING)) == DataSource.CYCLING


@pytest.mark.parametrize("modes, expected", [
    ([], DataSource.NONE),
    ([CYCLING, CYCLING], DataSource.CYCLING),
    ([PEDESTRIAN], DataSource.PEDESTRIAN),
    ([SHARED], DataSource.MIXED),
    ([CYCLING, SHARED], DataSource.MIXED),
])
def test_data_source(make_segment, modes, expected):
    segments = [make_segment(f"s{i}", [(0, i * 50), (100, i * 50)], mode=m) for i, m in enumerate(modes)]
    assert data_source_for(segments) == expected


def test_circular_segment_becomes_self_loop(make_segment):
    ring = make_segment("ring", [(0, 0), (300, 0), (300, 300), (0, 300), (0, 5)])
    graph = InfrastructureGraph([ring], ActivityType.WALKING)
    assert graph.graph.number_of_nodes() == 1
    assert nx.number_of_selfloops(graph.graph) == 1


def test_duplicate_segment_ids_keep_first(make_segment):
    first = make_segment("dup", [(0, 0), (300, 0)])
    second = make_segment("dup", [(0, 100), (300, 100)])
    assert filter_compatible([first, second], ActivityType.WALKING) == [first]


def test_only_the_largest_clusters_are_kept(make_segment):
    segments = [
        make_segment(f"line{i}", [(0, i * 1000), (300 + 100 * i, i * 1000)])
        for i in range(5)
    ]
    config = GenerationConfig(max_clusters=3)
    clusters = build_clusters(segments, ActivityType.WALKING, config)
    assert [sorted(c.segments) for c in clusters] == [["line4"], ["line3"], ["line2"]]

    uncapped = build_clusters(segments, ActivityType.WALKING, GenerationConfig(max_clusters=None))
    assert len(uncapped) == 5
