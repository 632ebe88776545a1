import numpy as np
import pytest

from Dynamic_Lattice.engine.topology.compaction import (
    CompactionEngine,
    compact_topology,
    exclusive_scan,
)
from Dynamic_Lattice.engine.topology.degree import DegreeRecompute
from Dynamic_Lattice.engine.topology.verifier import TopologyVerifier
from Dynamic_Lattice.graph.csr import CsrGraph
from Dynamic_Lattice.graph.io import random_graph
from invariants import checks


def _flag(graph, a, b):
    flags = np.zeros(graph.nnz, dtype=bool)
    flags[graph.find_edge(a, b)] = True
    return flags


def test_exclusive_scan():
    assert exclusive_scan(np.array([2, 0, 3])).tolist() == [0, 2, 2, 5]
    assert exclusive_scan(np.array([], dtype=np.int64)).tolist() == [0]


def test_degree_recompute(ring5):
    flags = _flag(ring5, 1, 0)
    degrees = DegreeRecompute().compute(ring5, flags, np.array([0]), np.array([2]))
    assert degrees.tolist() == [2, 1, 3, 2, 2]
    plain = DegreeRecompute().compute(ring5, flags, np.array([]), np.array([]))
    assert plain.tolist() == [1, 1, 2, 2, 2]
    with pytest.raises(ValueError):
        DegreeRecompute().compute(ring5, flags, np.array([0]), np.array([]))


def test_rebuild_drops_and_adds(ring5):
    flags = _flag(ring5, 0, 1)
    result = CompactionEngine().rebuild(
        ring5, flags, np.array([0]), np.array([2]), np.array([0.75])
    )
    assert result.overflow_writes == 0
    assert result.degrees.tolist() == [2, 1, 3, 2, 2]
    g = CsrGraph(result.row_offsets, result.col_indices, result.edge_weights)
    assert not g.has_edge(0, 1)
    assert g.edge_weights[g.find_edge(2, 0)] == pytest.approx(0.75)
    assert g.neighbors(2).tolist() == [0, 1, 3]
    assert TopologyVerifier().check(
        result.row_offsets, result.col_indices, 5, result.degrees
    ).ok
    assert checks.symmetric(g)


def test_undersized_degrees_count_lost_writes(ring5):
    flags = np.zeros(ring5.nnz, dtype=bool)
    result = CompactionEngine().rebuild(
        ring5, flags, final_degrees=np.array([1, 2, 2, 2, 2])
    )
    assert result.overflow_writes == 1


def test_oversized_degrees_leave_sentinels(ring5):
    flags = np.zeros(ring5.nnz, dtype=bool)
    degrees = np.array([3, 2, 2, 2, 2])
    result = CompactionEngine().rebuild(ring5, flags, final_degrees=degrees)
    assert (result.col_indices == -1).sum() == 1
    report = TopologyVerifier().check(result.row_offsets, result.col_indices, 5, degrees)
    assert not report.ok


def test_compact_topology(weighted_graph):
    offsets, cols, weights, nnz = compact_topology(weighted_graph, 0.01)
    assert nnz == 10
    assert offsets[-1] == 10
    assert weights.min() >= 0.01
    assert checks.csr_valid(offsets, cols, 6)


def test_parallel_rebuild_matches_serial():
    graph = random_graph(60, 0.2, seed=4).graph
    flags = graph.edge_weights < 0.3
    add_a = np.array([0, 1, 2])
    add_b = np.array([59, 58, 57])
    keep = graph.find_edges(add_a, add_b) < 0
    add_a, add_b = add_a[keep], add_b[keep]
    add_w = np.full(add_a.size, 0.5)
    serial = CompactionEngine(block_size=7, workers=1).rebuild(
        graph, flags, add_a, add_b, add_w
    )
    parallel = CompactionEngine(block_size=7, workers=4).rebuild(
        graph, flags, add_a, add_b, add_w
    )
    assert np.array_equal(serial.row_offsets, parallel.row_offsets)
    assert np.array_equal(serial.col_indices, parallel.col_indices)
    assert np.array_equal(serial.edge_weights, parallel.edge_weights)
    degrees = DegreeRecompute(block_size=7, workers=4).compute(graph, flags, add_a, add_b)
    assert np.array_equal(degrees, serial.degrees)
