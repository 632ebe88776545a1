import sys
from copy import deepcopy
from pathlib import Path

# Ensure package import for tests
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import numpy as np
import pytest

from Dynamic_Lattice.config import Config
from Dynamic_Lattice.graph.csr import CsrGraph


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path, monkeypatch):
    """Send logs to a temporary directory and restore mutable settings."""

    monkeypatch.setattr(Config, "output_dir", str(tmp_path / "output"))
    monkeypatch.setattr(
        Config, "log_files", {k: dict(v) for k, v in Config.DEFAULT_LOG_FILES.items()}
    )
    monkeypatch.setattr(Config, "dynamic_topology", deepcopy(Config.dynamic_topology))
    monkeypatch.setattr(Config, "generator", deepcopy(Config.generator))
    monkeypatch.setattr(Config, "logging_mode", ["diagnostic"])
    yield


def ring(n: int, weight: float = 0.5) -> CsrGraph:
    edges = [(i, (i + 1) % n) for i in range(n)]
    return CsrGraph.from_edge_list(n, edges, [weight] * n)


@pytest.fixture
def ring5() -> CsrGraph:
    return ring(5)


@pytest.fixture
def weighted_graph() -> CsrGraph:
    """Six nodes, seven edges with distinct weights."""

    edges = [(0, 1), (0, 2), (1, 2), (2, 3), (3, 4), (4, 5), (1, 5)]
    weights = [0.9, 0.05, 0.4, 0.0005, 0.7, 0.2, 0.0002]
    return CsrGraph.from_edge_list(6, edges, weights)


@pytest.fixture
def masses5() -> np.ndarray:
    return np.ones(5)
