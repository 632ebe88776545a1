import json
import logging
from pathlib import Path

import numpy as np
import pytest

from Dynamic_Lattice.config import Config
from Dynamic_Lattice.engine.backend import cupy_kernels
from Dynamic_Lattice.engine.topology import protection
from Dynamic_Lattice.engine.topology.params import TopKStrategy
from Dynamic_Lattice.engine.topology.protection import (
    ProtectionSelector,
    quickselect_top_k,
    resolve_strategy,
)


def test_quickselect():
    w = np.array([0.1, 0.9, 0.5, 0.7])
    assert set(quickselect_top_k(w, 2).tolist()) == {1, 3}
    assert set(quickselect_top_k(w, 10).tolist()) == {0, 1, 2, 3}
    assert quickselect_top_k(w, 0).size == 0
    assert set(quickselect_top_k(w, 1, np.array([0, 2])).tolist()) == {2}


def test_resolve_strategy():
    assert resolve_strategy(TopKStrategy.AUTO, 100) is TopKStrategy.CPU_ONLY
    assert resolve_strategy(TopKStrategy.AUTO, 50_000) is TopKStrategy.BLOCK_TOP_M
    assert (
        resolve_strategy(TopKStrategy.AUTO, 200_000)
        is TopKStrategy.PARALLEL_BLOCK_TOP_M
    )
    assert resolve_strategy("cpu_only", 10**6) is TopKStrategy.CPU_ONLY


def test_block_local_top_m_ignores_padding():
    w = np.arange(10, dtype=float)
    idx = cupy_kernels.block_local_top_m(w, 4, 2)
    assert set(idx.tolist()) == {2, 3, 6, 7, 8, 9}


@pytest.mark.parametrize(
    "strategy",
    [TopKStrategy.BLOCK_TOP_M, TopKStrategy.PARALLEL_BLOCK_TOP_M],
)
def test_block_strategies_exact_when_k_within_local_m(strategy):
    rng = np.random.default_rng(5)
    w = rng.random(20_000)
    selector = ProtectionSelector(4, strategy, local_m=4)
    got = set(selector.select(w).tolist())
    assert got == set(np.argsort(w)[-4:].tolist())
    assert selector.last_metrics.method == strategy.value
    assert not selector.last_metrics.fallback


def test_protected_mask_is_mirror_closed(weighted_graph):
    g = weighted_graph
    mask = ProtectionSelector(3, TopKStrategy.CPU_ONLY).protected_mask(g)
    assert mask.sum() == 4
    for a, b in [(0, 1), (1, 0), (3, 4), (4, 3)]:
        assert mask[g.find_edge(a, b)]


def test_zero_k_protects_nothing(weighted_graph):
    selector = ProtectionSelector(0)
    assert not selector.protected_mask(weighted_graph).any()
    assert not selector.last_metrics.fallback


def test_fallback_to_cpu_quickselect(monkeypatch, caplog):
    def broken(*_args, **_kwargs):
        raise RuntimeError("device lost")

    monkeypatch.setattr(cupy_kernels, "block_local_top_m", broken)
    w = np.linspace(0.0, 1.0, 200)
    selector = ProtectionSelector(5, TopKStrategy.BLOCK_TOP_M)
    with caplog.at_level(logging.WARNING):
        picked = selector.select(w)
    assert set(picked.tolist()) == {195, 196, 197, 198, 199}
    metrics = selector.last_metrics
    assert metrics.fallback
    assert metrics.method == "cpu_quickselect"
    assert "device lost" in metrics.error
    assert "top-k selection" in caplog.text
    lines = (Path(Config.output_dir) / "event_log.jsonl").read_text().splitlines()
    record = json.loads(lines[-1])
    assert record["label"] == "topk_fallback"
    assert record["payload"]["method"] == "cpu_quickselect"


def test_fallback_chain_ends_empty(monkeypatch):
    def broken(*_args, **_kwargs):
        raise MemoryError("out of memory")

    monkeypatch.setattr(protection, "quickselect_top_k", broken)
    selector = ProtectionSelector(3, TopKStrategy.CPU_ONLY)
    picked = selector.select(np.ones(10))
    assert picked.size == 0
    assert selector.last_metrics.method == "none"
    assert selector.last_metrics.fallback
