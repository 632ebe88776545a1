import numpy as np
import pytest

from Dynamic_Lattice.engine.topology.atomics import IntegrityFlags
from Dynamic_Lattice.engine.topology.conservation import (
    ConservationTransfer,
    dying_edges,
    split_halves,
)
from Dynamic_Lattice.engine.topology.errors import ConservationViolationError
from Dynamic_Lattice.engine.topology.fixed_point import FIXED_POINT_SCALE, MAX_SAFE
from Dynamic_Lattice.graph.csr import CsrGraph


def test_split_halves_gives_remainder_to_first():
    first, second = split_halves(np.array([3, 4, 0, -3]))
    assert first.tolist() == [2, 2, 0, -1]
    assert second.tolist() == [1, 2, 0, -2]
    assert (first + second).tolist() == [3, 4, 0, -3]


def test_ring_transfer(ring5, masses5):
    flags = ring5.edge_weights < 0.6
    stats = ConservationTransfer().transfer(ring5, flags, masses5)
    assert stats.dying_edge_count == 5
    assert stats.energy_before == pytest.approx(2.5)
    assert stats.energy_transferred == pytest.approx(2.5)
    assert stats.error == 0.0
    assert stats.is_conserved
    assert stats.integrity_flags == IntegrityFlags.NONE
    assert np.allclose(masses5, 1.5)


def test_odd_units_split_toward_smaller_id():
    g = CsrGraph.from_edge_list(2, [(1, 0)], [3 / FIXED_POINT_SCALE])
    transfer = ConservationTransfer()
    masses = np.zeros(2)
    transfer.transfer(g, np.ones(g.nnz, dtype=bool), masses)
    assert transfer.last_increments.tolist() == [2, 1]
    assert masses[0] * FIXED_POINT_SCALE == pytest.approx(2.0)


def test_single_orientation_flag_counts_once(ring5, masses5):
    flags = np.zeros(ring5.nnz, dtype=bool)
    flags[ring5.find_edge(1, 0)] = True
    stats = ConservationTransfer().transfer(ring5, flags, masses5)
    assert stats.dying_edge_count == 1
    assert masses5[0] == pytest.approx(1.25)
    assert masses5[1] == pytest.approx(1.25)
    assert masses5[2:].tolist() == [1.0, 1.0, 1.0]


def test_previous_existence_filters(ring5):
    flags = np.ones(ring5.nnz, dtype=bool)
    existed = np.zeros(ring5.nnz, dtype=bool)
    existed[ring5.find_edge(0, 1)] = True
    assert dying_edges(ring5, flags, existed).tolist() == [ring5.find_edge(0, 1)]


def test_conversion_factors(ring5, masses5):
    transfer = ConservationTransfer(
        energy_conversion_factor=2.0, flux_conversion_factor=0.5
    )
    stats = transfer.transfer(ring5, np.ones(ring5.nnz, dtype=bool), masses5)
    assert stats.energy_transferred == pytest.approx(5.0)
    assert stats.flux_transferred == pytest.approx(2.5)
    assert np.allclose(masses5, 2.0)


def test_saturation_is_flagged_not_wrapped():
    g = CsrGraph.from_edge_list(2, [(0, 1)], [200.0])
    masses = np.zeros(2)
    stats = ConservationTransfer().transfer(g, np.ones(2, dtype=bool), masses)
    assert stats.integrity_flags & IntegrityFlags.OVERFLOW
    assert stats.saturated
    assert not stats.is_conserved
    assert stats.energy_before == pytest.approx(200.0)
    assert stats.error > 80.0
    assert masses.sum() == pytest.approx(MAX_SAFE / FIXED_POINT_SCALE)


def test_strict_mode_raises_before_touching_masses():
    g = CsrGraph.from_edge_list(2, [(0, 1)], [200.0])
    masses = np.zeros(2)
    with pytest.raises(ConservationViolationError) as excinfo:
        ConservationTransfer(strict=True).transfer(g, np.ones(2, dtype=bool), masses)
    assert excinfo.value.flags & IntegrityFlags.OVERFLOW
    assert excinfo.value.error == pytest.approx(200.0 - MAX_SAFE / FIXED_POINT_SCALE)
    assert masses.tolist() == [0.0, 0.0]


def test_invalid_mass_arrays(ring5):
    flags = np.ones(ring5.nnz, dtype=bool)
    with pytest.raises(ValueError):
        ConservationTransfer().transfer(ring5, flags, np.ones(4))
    with pytest.raises(ValueError):
        ConservationTransfer().transfer(ring5, flags, np.ones(5, dtype=np.int64))


def test_multi_worker_matches_single(weighted_graph):
    flags = weighted_graph.edge_weights < 0.5
    single = np.zeros(6)
    multi = np.zeros(6)
    ConservationTransfer(block_size=1, workers=1).transfer(weighted_graph, flags, single)
    stats = ConservationTransfer(block_size=1, workers=4).transfer(
        weighted_graph, flags, multi
    )
    assert np.array_equal(single, multi)
    assert stats.is_conserved
    removed = weighted_graph.edge_weights[flags & weighted_graph.canonical_mask()].sum()
    assert multi.sum() == pytest.approx(removed, abs=1e-6)
