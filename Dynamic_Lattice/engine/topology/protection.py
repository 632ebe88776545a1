"""Top-K selection of heavy edges exempt from deletion."""

from __future__ import annotations

import logging
import time
from typing import Optional, Tuple

import numpy as np

from ..backend import cupy_kernels, dispatch
from ..logging.logger import log_entry
from ..logging_models import TopKFallbackEntry, TopKFallbackPayload
from ...graph.csr import CsrGraph
from .params import TopKStrategy
from .stats import TopKMetrics

logger = logging.getLogger(__name__)

__all__ = ["quickselect_top_k", "resolve_strategy", "ProtectionSelector"]

TOPK_BLOCK_SIZE = 1024
THREADS_PER_BLOCK = 4
CPU_ONLY_BELOW = 10_000
BLOCK_TOP_M_BELOW = 100_000


def quickselect_top_k(
    weights: np.ndarray, k: int, indices: Optional[np.ndarray] = None
) -> np.ndarray:
    """Return the positions of the ``k`` largest ``weights``.

    When ``indices`` is given, ``weights`` is indexed through it and the
    selected entries of ``indices`` are returned. The result is unordered.
    """

    if indices is None:
        indices = np.arange(len(weights), dtype=np.int64)
    else:
        indices = np.asarray(indices, dtype=np.int64)
    k = min(int(k), int(indices.size))
    if k <= 0:
        return np.empty(0, dtype=np.int64)
    values = np.asarray(weights, dtype=np.float64)[indices]
    if k == indices.size:
        return indices.copy()
    part = np.argpartition(-values, k - 1)[:k]
    return indices[part]


def resolve_strategy(strategy: TopKStrategy, nnz: int) -> TopKStrategy:
    """Resolve ``AUTO`` by edge count."""

    strategy = TopKStrategy(strategy)
    if strategy is not TopKStrategy.AUTO:
        return strategy
    if nnz < CPU_ONLY_BELOW:
        return TopKStrategy.CPU_ONLY
    if nnz < BLOCK_TOP_M_BELOW:
        return TopKStrategy.BLOCK_TOP_M
    return TopKStrategy.PARALLEL_BLOCK_TOP_M


class ProtectionSelector:
    """Select the ``k`` heaviest edges with a GPU, CPU, empty fallback chain.

    Parameters
    ----------
    k:
        Number of flat edge entries to protect. ``0`` disables protection.
    strategy:
        Selection strategy; ``AUTO`` picks one from the edge count.
    local_m:
        Candidates kept per block by the block strategies.
    block_size:
        Edges examined per block.
    """

    def __init__(
        self,
        k: int,
        strategy: TopKStrategy = TopKStrategy.AUTO,
        local_m: int = 4,
        block_size: int = TOPK_BLOCK_SIZE,
    ) -> None:
        self.k = max(0, int(k))
        self.strategy = TopKStrategy(strategy)
        self.local_m = min(8, max(1, int(local_m)))
        self.block_size = int(block_size)
        self.last_metrics = TopKMetrics()

    # ------------------------------------------------------------------
    def _block_candidates(self, weights: np.ndarray) -> np.ndarray:
        return cupy_kernels.block_local_top_m(weights, self.block_size, self.local_m)

    def _parallel_block_candidates(self, weights: np.ndarray) -> np.ndarray:
        # Each block is split into lanes; every lane keeps its own local top-M.
        lane = max(1, self.block_size // THREADS_PER_BLOCK)

        def kernel(block: int, start: int, stop: int) -> np.ndarray:
            local = cupy_kernels.block_local_top_m(
                weights[start:stop], lane, self.local_m
            )
            return local + start

        parts = dispatch.launch(kernel, len(weights), block_size=self.block_size)
        return np.concatenate(parts) if parts else np.empty(0, dtype=np.int64)

    def _primary(self, weights: np.ndarray, strategy: TopKStrategy) -> Tuple[np.ndarray, int]:
        if strategy is TopKStrategy.CPU_ONLY:
            return quickselect_top_k(weights, self.k), len(weights)
        if strategy is TopKStrategy.BLOCK_TOP_M:
            candidates = self._block_candidates(weights)
        else:
            candidates = self._parallel_block_candidates(weights)
        return quickselect_top_k(weights, self.k, candidates), int(candidates.size)

    def _report_fallback(
        self, attempted: str, method: str, error: Optional[str], candidates: int
    ) -> None:
        logger.warning(
            "top-k selection via %s failed (%s); using %s", attempted, error, method
        )
        log_entry(
            "event",
            "topk_fallback",
            TopKFallbackEntry(
                payload=TopKFallbackPayload(
                    attempted=attempted,
                    method=method,
                    error=error,
                    candidates=candidates,
                )
            ),
        )

    def select(self, weights: np.ndarray) -> np.ndarray:
        """Return flat indices of the heaviest edges.

        Never raises; failures degrade to an exact CPU selection and then to
        an empty set. :attr:`last_metrics` records what happened.
        """

        weights = np.asarray(weights, dtype=np.float64)
        strategy = resolve_strategy(self.strategy, len(weights))
        metrics = TopKMetrics(requested=self.k, strategy=strategy.value)
        self.last_metrics = metrics
        if self.k == 0 or len(weights) == 0:
            return np.empty(0, dtype=np.int64)
        start = time.perf_counter()
        selected = np.empty(0, dtype=np.int64)
        try:
            selected, metrics.candidates = self._primary(weights, strategy)
            metrics.method = strategy.value
            if selected.size == 0:
                metrics.error = "empty result"
        except Exception as exc:
            metrics.error = f"{type(exc).__name__}: {exc}"
            selected = np.empty(0, dtype=np.int64)

        if selected.size == 0:
            metrics.fallback = True
            try:
                selected = quickselect_top_k(weights, self.k)
                metrics.method = "cpu_quickselect"
            except Exception as exc:
                metrics.error = f"{metrics.error}; {type(exc).__name__}: {exc}"
                selected = np.empty(0, dtype=np.int64)
                metrics.method = "none"
            self._report_fallback(
                strategy.value, metrics.method, metrics.error, metrics.candidates
            )

        metrics.selected = int(selected.size)
        metrics.elapsed_ms = (time.perf_counter() - start) * 1000.0
        return selected

    def protected_mask(self, graph: CsrGraph) -> np.ndarray:
        """Return a boolean mask over ``graph`` entries, closed under mirroring."""

        mask = np.zeros(graph.nnz, dtype=bool)
        mask[self.select(graph.edge_weights)] = True
        return graph.mirror_closure(mask)
