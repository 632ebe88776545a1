import networkx as nx
import numpy as np
import pytest

from Dynamic_Lattice.graph.csr import CsrGraph


def test_ring_layout(ring5):
    assert ring5.node_count == 5
    assert ring5.nnz == 10
    assert ring5.row_offsets.tolist() == [0, 2, 4, 6, 8, 10]
    assert ring5.neighbors(0).tolist() == [1, 4]
    assert ring5.neighbors(4).tolist() == [0, 3]
    assert ring5.degrees().tolist() == [2, 2, 2, 2, 2]
    assert ring5.version == 0


def test_structural_arrays_are_read_only(ring5):
    with pytest.raises(ValueError):
        ring5.col_indices[0] = 3
    with pytest.raises(ValueError):
        ring5.edge_weights[0] = 1.0
    ring5.node_potential[0] = 2.0
    assert ring5.node_potential[0] == 2.0


def test_self_loops_dropped_and_last_duplicate_wins():
    g = CsrGraph.from_edge_list(3, [(0, 0), (0, 1), (1, 0)], [1.0, 0.2, 0.7])
    assert g.nnz == 2
    assert g.edge_weights[g.find_edge(0, 1)] == pytest.approx(0.7)
    assert g.edge_weights[g.find_edge(1, 0)] == pytest.approx(0.7)


def test_invalid_inputs_raise():
    with pytest.raises(ValueError):
        CsrGraph([0, 1], [0, 1], [1.0, 1.0])
    with pytest.raises(ValueError):
        CsrGraph([0, 1], [0], [1.0, 2.0])
    with pytest.raises(ValueError, match="sorted"):
        CsrGraph([0, 2, 3, 3], [2, 1, 0], [1.0, 1.0, 1.0])
    with pytest.raises(ValueError, match="range"):
        CsrGraph([0, 1, 1], [5], [1.0])
    with pytest.raises(ValueError, match="decrease"):
        CsrGraph([0, 2, 1], [1], [1.0])
    with pytest.raises(ValueError):
        CsrGraph.from_edge_list(2, [(0, 2)])
    with pytest.raises(ValueError):
        CsrGraph.from_edge_list(3, [(0, 1)], [1.0, 2.0])


def test_find_edges_and_mirrors(weighted_graph):
    g = weighted_graph
    assert g.has_edge(2, 3)
    assert g.has_edge(3, 2)
    assert not g.has_edge(0, 3)
    assert g.find_edge(0, 7) == -1
    found = g.find_edges(np.array([0, 0, 5]), np.array([1, 3, 1]))
    assert found[0] == g.find_edge(0, 1)
    assert found[1] == -1
    assert found[2] == g.find_edge(5, 1)
    mirror = g.mirror_indices()
    src = g.edge_sources()
    assert np.array_equal(src[mirror], g.col_indices)
    assert np.array_equal(g.col_indices[mirror], src)


def test_mirror_closure_and_canonical(weighted_graph):
    g = weighted_graph
    mask = np.zeros(g.nnz, dtype=bool)
    mask[g.find_edge(3, 2)] = True
    closed = g.mirror_closure(mask)
    assert closed[g.find_edge(2, 3)] and closed[g.find_edge(3, 2)]
    assert closed.sum() == 2
    assert g.undirected_edge_count() == 7
    canonical = g.canonical_mask()
    assert canonical.sum() == 7
    assert np.all(g.edge_sources()[canonical] < g.col_indices[canonical])
    with pytest.raises(ValueError):
        g.mirror_closure(np.zeros(3, dtype=bool))


def test_successor_bumps_version(ring5):
    ring5.node_potential[:] = 1.5
    nxt = ring5.successor(ring5.row_offsets, ring5.col_indices, ring5.edge_weights)
    assert nxt.version == 1
    assert np.array_equal(nxt.node_potential, ring5.node_potential)
    nxt.node_potential[0] = 0.0
    assert ring5.node_potential[0] == 1.5


def test_networkx_round_trip(weighted_graph):
    g = weighted_graph.to_networkx()
    assert isinstance(g, nx.Graph)
    assert g.number_of_edges() == 7
    assert g[2][3]["weight"] == pytest.approx(0.0005)
    back = CsrGraph.from_networkx(g)
    assert np.array_equal(back.row_offsets, weighted_graph.row_offsets)
    assert np.array_equal(back.col_indices, weighted_graph.col_indices)
    assert np.allclose(back.edge_weights, weighted_graph.edge_weights)


def test_upload_and_release(ring5):
    assert not ring5.is_resident
    handles = ring5.upload()
    assert ring5.is_resident
    assert set(handles) == {"row_offsets", "col_indices", "edge_weights"}
    ring5.release()
    assert not ring5.is_resident
