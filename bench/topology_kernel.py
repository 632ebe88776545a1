"""Benchmark one topology rebuild on a periodic square lattice.

Times ``evolve_topology`` on CPU and, when available, with the CuPy backend
selected for the block kernels. Reports milliseconds per phase.
"""

from __future__ import annotations

import argparse
import time

import numpy as np

from Dynamic_Lattice.config import Config
from Dynamic_Lattice.engine.topology import (
    DynamicTopologyConfig,
    DynamicTopologyOrchestrator,
)
from Dynamic_Lattice.graph.io import lattice_graph

try:  # pragma: no cover - optional GPU path
    import cupy as cp

    _HAS_CUDA = cp.cuda.runtime.getDeviceCount() > 0
except Exception:  # pragma: no cover - CuPy not installed or no GPU
    cp = None
    _HAS_CUDA = False


def _bench(side: int, repeats: int, workers: int) -> dict:
    lattice = lattice_graph(side, side, weight=0.5)
    rng = np.random.default_rng(0)
    weights = rng.uniform(0.0, 1.0, lattice.graph.nnz)
    # Symmetrise so both orientations of an edge share a weight.
    weights = np.maximum(weights, weights[lattice.graph.mirror_indices()])
    graph = lattice.graph.successor(
        lattice.graph.row_offsets, lattice.graph.col_indices, weights
    )
    params = DynamicTopologyConfig(
        deletion_threshold=0.2,
        max_protected_heavy_edges=64,
        enable_conservation=True,
        rebuild_interval=1,
    )
    phases: dict[str, float] = {}
    start = time.perf_counter()
    for _ in range(repeats):
        orchestrator = DynamicTopologyOrchestrator(params, workers=workers)
        orchestrator.evolve_topology(graph, lattice.masses.copy())
        for name, ms in orchestrator.last_stats.phase_ms.items():
            phases[name] = phases.get(name, 0.0) + ms / repeats
    total = (time.perf_counter() - start) * 1000.0 / repeats
    return {"total_ms": total, "nnz": graph.nnz, **phases}


def _report(label: str, result: dict) -> None:
    phases = ", ".join(
        f"{k}={v:.2f}" for k, v in result.items() if k not in {"total_ms", "nnz"}
    )
    print(f"{label}: {result['total_ms']:.2f} ms/rebuild (nnz={result['nnz']}) {phases}")


def main() -> None:
    """Execute the benchmark and print timings."""

    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--side", type=int, default=128)
    parser.add_argument("--repeats", type=int, default=5)
    parser.add_argument("--workers", type=int, default=1)
    args = parser.parse_args()

    Config.backend = "cpu"
    _report("CPU", _bench(args.side, args.repeats, args.workers))
    if _HAS_CUDA:
        Config.backend = "cupy"
        try:
            _report("CuPy", _bench(args.side, args.repeats, args.workers))
        finally:
            Config.backend = "cpu"
    else:  # pragma: no cover
        print("CuPy not available or no CUDA device detected.")


if __name__ == "__main__":  # pragma: no cover
    main()
