import json
from pathlib import Path

import numpy as np
import pytest

from Dynamic_Lattice.config import Config
from Dynamic_Lattice.engine.topology import (
    ConservationViolationError,
    DynamicTopologyConfig,
    DynamicTopologyOrchestrator,
    StructuralIntegrityError,
    TopologyPhase,
)
from Dynamic_Lattice.graph.csr import CsrGraph
from Dynamic_Lattice.graph.io import random_graph
from invariants import checks


def _records(category):
    path = Path(Config.output_dir) / f"{category}_log.jsonl"
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text().splitlines()]


def test_ring_collapses_with_conservation(ring5, masses5):
    cfg = DynamicTopologyConfig(
        deletion_threshold=0.6, enable_conservation=True, enable_additions=False
    )
    orch = DynamicTopologyOrchestrator(cfg)
    new = orch.evolve_topology(ring5, masses5)
    assert new is not None
    assert new.nnz == 0
    assert new.version == 1
    assert orch.current_graph is new
    assert np.allclose(masses5, 1.5)
    stats = orch.last_stats
    assert stats.outcome == "published"
    assert stats.edges_marked == 5
    assert stats.new_nnz == 0
    assert stats.conservation.energy_before == pytest.approx(2.5)
    assert stats.conservation.energy_transferred == pytest.approx(2.5)
    assert stats.conservation.is_conserved
    assert orch.transitions == [
        TopologyPhase.IDLE,
        TopologyPhase.PROPOSAL,
        TopologyPhase.MARK,
        TopologyPhase.CONSERVE,
        TopologyPhase.DEGREE,
        TopologyPhase.COMPACT,
        TopologyPhase.VERIFY,
        TopologyPhase.PUBLISHED,
    ]
    assert set(stats.phase_ms) == {"proposal", "mark", "conserve", "degree", "compact", "verify"}
    rebuild = [r for r in _records("topology") if r["label"] == "rebuild"]
    assert rebuild and rebuild[-1]["payload"]["new_nnz"] == 0
    audit = _records("conservation")
    assert audit[-1]["payload"]["energy_before"] == pytest.approx(2.5)


def test_no_deletions_means_no_change(ring5, masses5):
    orch = DynamicTopologyOrchestrator(DynamicTopologyConfig(enable_conservation=True))
    assert orch.evolve_topology(ring5, masses5) is None
    assert orch.state is TopologyPhase.NO_CHANGE
    assert orch.last_stats.outcome == "no_change"
    assert TopologyPhase.CONSERVE not in orch.transitions
    assert np.allclose(masses5, 1.0)
    assert orch.current_graph is ring5
    assert _records("topology") == []


def test_protected_edges_survive(weighted_graph):
    cfg = DynamicTopologyConfig(
        deletion_threshold=1.0,
        max_protected_heavy_edges=2,
        topk_strategy="cpu_only",
        enable_additions=False,
    )
    orch = DynamicTopologyOrchestrator(cfg)
    new = orch.evolve_topology(weighted_graph, np.zeros(6))
    assert new.nnz == 2
    assert new.has_edge(0, 1) and new.has_edge(1, 0)
    assert orch.last_stats.protection.selected == 2


def test_mcmc_deletion_source(weighted_graph):
    cfg = DynamicTopologyConfig(
        deletion_source="mcmc",
        deletion_threshold=0.01,
        beta=0.0,
        use_proposal_ratio=False,
        enable_additions=False,
    )
    orch = DynamicTopologyOrchestrator(cfg)
    new = orch.evolve_topology(weighted_graph, np.zeros(6))
    assert new.nnz == 10
    assert not new.has_edge(2, 3)
    assert not new.has_edge(5, 1)
    assert orch.last_stats.deletion_source == "mcmc"
    assert orch.last_stats.deletions_accepted == 2


def test_additions_are_published(weighted_graph):
    cfg = DynamicTopologyConfig(
        deletion_threshold=0.01, beta=0.0, use_proposal_ratio=False
    )
    orch = DynamicTopologyOrchestrator(cfg)
    new = orch.evolve_topology(weighted_graph, np.zeros(6))
    added = orch.last_stats.edges_added
    assert added == orch.last_stats.additions_accepted
    assert new.nnz == 10 + 2 * added
    assert checks.csr_valid(new.row_offsets, new.col_indices, new.node_count)
    assert checks.symmetric(new)
    assert checks.no_self_loops(new)
    assert checks.no_duplicate_edges(new)


def test_verification_failure_rolls_back(ring5, masses5, monkeypatch):
    cfg = DynamicTopologyConfig(
        deletion_threshold=0.6, enable_conservation=True, enable_additions=False
    )
    orch = DynamicTopologyOrchestrator(cfg)

    def reject(*_args, **_kwargs):
        raise StructuralIntegrityError(["row 0: forced"])

    monkeypatch.setattr(orch.verifier, "verify", reject)
    with pytest.raises(StructuralIntegrityError):
        orch.evolve_topology(ring5, masses5)
    assert orch.state is TopologyPhase.ROLLED_BACK
    assert orch.current_graph is ring5
    assert np.allclose(masses5, 1.0)
    assert "forced" in orch.last_stats.error
    rollback = [r for r in _records("topology") if r["label"] == "rollback"]
    assert rollback and rollback[-1]["payload"]["outcome"] == "rolled_back"


def test_strict_conservation_violation_rolls_back():
    graph = CsrGraph.from_edge_list(3, [(0, 1), (1, 2)], [200.0, 0.5])
    masses = np.ones(3)
    cfg = DynamicTopologyConfig(
        deletion_threshold=1000.0,
        enable_conservation=True,
        strict_validation=True,
        enable_additions=False,
    )
    orch = DynamicTopologyOrchestrator(cfg)
    with pytest.raises(ConservationViolationError):
        orch.evolve_topology(graph, masses)
    assert masses.tolist() == [1.0, 1.0, 1.0]
    assert orch.state is TopologyPhase.ROLLED_BACK
    assert TopologyPhase.DEGREE not in orch.transitions


def test_rebuild_cadence(ring5, masses5):
    cfg = DynamicTopologyConfig(
        deletion_threshold=0.6, rebuild_interval=3, enable_additions=False
    )
    orch = DynamicTopologyOrchestrator(cfg)
    assert not orch.should_rebuild(0)
    assert orch.step(1, ring5, masses5) is None
    assert orch.state is TopologyPhase.IDLE
    new = orch.step(3, ring5, masses5)
    assert new is not None and new.nnz == 0
    assert orch.rebuilds == 1


def test_defaults_come_from_config(monkeypatch):
    monkeypatch.setitem(Config.dynamic_topology, "deletion_threshold", 0.25)
    monkeypatch.setitem(Config.dynamic_topology, "max_additions_per_step", 7)
    orch = DynamicTopologyOrchestrator()
    assert orch.config.deletion_threshold == 0.25
    assert orch.capacity_report()["addition_capacity"] == 7


def test_configure_keeps_buffers(weighted_graph):
    orch = DynamicTopologyOrchestrator(DynamicTopologyConfig(seed=1))
    buffer = orch.buffer
    seeds = orch.seeds
    orch.configure(orch.config.with_overrides(beta=3.0))
    assert orch.buffer is buffer
    assert orch.seeds is seeds
    orch.configure(orch.config.with_overrides(seed=2))
    assert orch.seeds is not seeds


def test_configure_grows_buffer_to_new_limits():
    orch = DynamicTopologyOrchestrator(
        DynamicTopologyConfig(max_additions_per_step=8, max_deletions_per_step=4)
    )
    buffer = orch.buffer
    orch.configure(orch.config.with_overrides(max_additions_per_step=32))
    assert orch.buffer is buffer
    assert orch.capacity_report() == {
        "addition_capacity": 32,
        "deletion_capacity": 4,
        "generation": 1,
    }
    orch.configure(orch.config.with_overrides(max_additions_per_step=2))
    assert orch.buffer.addition_capacity == 32
    assert orch.buffer.generation == 1


def test_repeated_rebuilds_preserve_invariants():
    lattice = random_graph(40, 0.15, weight_range=(0.0, 0.4), seed=9)
    graph, masses = lattice.graph, lattice.masses
    cfg = DynamicTopologyConfig(
        deletion_threshold=0.1,
        enable_conservation=True,
        max_protected_heavy_edges=4,
        initial_weight=0.3,
        seed=5,
    )
    orch = DynamicTopologyOrchestrator(cfg, block_size=16)
    for _ in range(5):
        before = masses.copy()
        flagged = graph.edge_weights < 0.1
        protected = orch.selector.protected_mask(graph)
        removed = graph.edge_weights[flagged & ~protected & graph.canonical_mask()].sum()
        new = orch.evolve_topology(graph, masses)
        if new is None:
            break
        assert checks.csr_valid(new.row_offsets, new.col_indices, new.node_count)
        assert checks.symmetric(new)
        assert checks.no_duplicate_edges(new)
        assert checks.no_self_loops(new)
        assert checks.mass_conserved(before, masses, removed, 1e-5)
        assert new.version == graph.version + 1
        graph = new
