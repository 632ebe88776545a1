"""Stream compaction of the CSR arrays after a rebuild.

Row offsets come from an exclusive prefix sum over the final degrees. Every
surviving or added entry then claims a slot in its row through a per-node
write counter, and each row is sorted once all writes have landed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from ..backend import dispatch
from ...graph.csr import CsrGraph
from .atomics import AtomicCounter, AtomicInt32Buffer
from .degree import DegreeRecompute

__all__ = [
    "CompactionResult",
    "CompactionEngine",
    "exclusive_scan",
    "compact_topology",
]


def exclusive_scan(values: np.ndarray) -> np.ndarray:
    """Return ``[0, v0, v0+v1, ...]`` with one more entry than ``values``."""

    values = np.asarray(values, dtype=np.int64)
    out = np.zeros(values.size + 1, dtype=np.int64)
    np.cumsum(values, out=out[1:])
    return out


def _reserve_slots(counters: AtomicInt32Buffer, rows: np.ndarray) -> np.ndarray:
    """Claim one write slot per entry of ``rows`` and return its rank."""

    order = np.argsort(rows, kind="stable")
    cells, starts, counts = np.unique(
        rows[order], return_index=True, return_counts=True
    )
    with counters.locked() as data:
        base = data[cells].astype(np.int64)
        data[cells] += counts.astype(np.int32)
    ranks = np.empty(rows.size, dtype=np.int64)
    ranks[order] = (
        np.repeat(base, counts) + np.arange(rows.size) - np.repeat(starts, counts)
    )
    return ranks


@dataclass
class CompactionResult:
    row_offsets: np.ndarray
    col_indices: np.ndarray
    edge_weights: np.ndarray
    degrees: np.ndarray
    overflow_writes: int = 0

    @property
    def nnz(self) -> int:
        return int(self.col_indices.size)


class CompactionEngine:
    """Build new CSR arrays from survivors and accepted additions.

    Writes that would land past the end of their row are discarded and
    counted in :attr:`CompactionResult.overflow_writes`; the slots they should
    have filled keep the ``-1`` sentinel so verification rejects the result.
    """

    def __init__(
        self, *, block_size: Optional[int] = None, workers: Optional[int] = None
    ) -> None:
        self.block_size = block_size
        self.workers = workers
        self._degrees = DegreeRecompute(block_size=block_size, workers=workers)

    def rebuild(
        self,
        graph: CsrGraph,
        deletion_flags: np.ndarray,
        addition_a: Optional[np.ndarray] = None,
        addition_b: Optional[np.ndarray] = None,
        addition_weight: Optional[np.ndarray] = None,
        final_degrees: Optional[np.ndarray] = None,
    ) -> CompactionResult:
        """Return compacted arrays for the next generation of ``graph``.

        Parameters
        ----------
        graph:
            Current topology.
        deletion_flags:
            Entries to drop; either orientation of an edge drops both.
        addition_a, addition_b, addition_weight:
            Accepted additions, written in both orientations.
        final_degrees:
            Precomputed degrees. Recomputed when omitted.
        """

        n = graph.node_count
        empty_i = np.empty(0, dtype=np.int64)
        add_a = empty_i if addition_a is None else np.asarray(addition_a, np.int64)
        add_b = empty_i if addition_b is None else np.asarray(addition_b, np.int64)
        if addition_weight is None:
            add_w = np.zeros(add_a.size, dtype=np.float64)
        else:
            add_w = np.asarray(addition_weight, dtype=np.float64)
        if not (add_a.shape == add_b.shape == add_w.shape):
            raise ValueError("addition arrays must share a shape")

        survive = self._degrees.survivors(graph, deletion_flags)
        if final_degrees is None:
            final_degrees = self._degrees.compute(graph, deletion_flags, add_a, add_b)
        degrees = np.asarray(final_degrees, dtype=np.int64)
        offsets = exclusive_scan(degrees)
        total = int(offsets[-1])
        cols = np.full(total, -1, dtype=np.int64)
        weights = np.zeros(total, dtype=np.float64)
        counters = AtomicInt32Buffer(n)
        lost = AtomicCounter()

        def scatter(rows: np.ndarray, targets: np.ndarray, w: np.ndarray) -> None:
            if rows.size == 0:
                return
            ranks = _reserve_slots(counters, rows)
            fits = ranks < degrees[rows]
            slots = offsets[rows[fits]] + ranks[fits]
            cols[slots] = targets[fits]
            weights[slots] = w[fits]
            lost.fetch_add(int(rows.size - np.count_nonzero(fits)))

        keep = np.flatnonzero(survive)
        sources = graph.edge_sources()

        def survivor_kernel(block: int, start: int, stop: int) -> None:
            e = keep[start:stop]
            scatter(sources[e], graph.col_indices[e], graph.edge_weights[e])

        def addition_kernel(block: int, start: int, stop: int) -> None:
            a, b, w = add_a[start:stop], add_b[start:stop], add_w[start:stop]
            scatter(np.concatenate([a, b]), np.concatenate([b, a]), np.concatenate([w, w]))

        dispatch.launch(
            survivor_kernel, int(keep.size), block_size=self.block_size, workers=self.workers
        )
        dispatch.launch(
            addition_kernel, int(add_a.size), block_size=self.block_size, workers=self.workers
        )

        rows = np.repeat(np.arange(n, dtype=np.int64), degrees)
        order = np.lexsort((cols, rows))
        return CompactionResult(
            row_offsets=offsets,
            col_indices=cols[order],
            edge_weights=weights[order],
            degrees=degrees,
            overflow_writes=lost.load(),
        )


def compact_topology(
    graph: CsrGraph, threshold: float
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, int]:
    """Drop entries lighter than ``threshold``.

    Returns
    -------
    tuple
        ``(row_offsets, col_indices, weights, nnz)`` of the compacted graph.
    """

    result = CompactionEngine().rebuild(graph, graph.edge_weights < threshold)
    return result.row_offsets, result.col_indices, result.edge_weights, result.nnz
