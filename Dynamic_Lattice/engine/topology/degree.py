"""Final degree of every node after deletions and additions."""

from __future__ import annotations

from typing import Optional

import numpy as np

from ..backend import dispatch
from ...graph.csr import CsrGraph
from .atomics import AtomicInt32Buffer

__all__ = ["DegreeRecompute"]


class DegreeRecompute:
    """Compute ``surviving incident entries + additions touching each node``.

    An entry survives when neither orientation of its edge is flagged. The
    result equals the row lengths produced by
    :class:`~Dynamic_Lattice.engine.topology.compaction.CompactionEngine`.
    """

    def __init__(
        self, *, block_size: Optional[int] = None, workers: Optional[int] = None
    ) -> None:
        self.block_size = block_size
        self.workers = workers

    def survivors(self, graph: CsrGraph, deletion_flags: np.ndarray) -> np.ndarray:
        """Return the survival mask over ``graph`` entries."""
        return ~graph.mirror_closure(deletion_flags)

    def compute(
        self,
        graph: CsrGraph,
        deletion_flags: np.ndarray,
        addition_a: np.ndarray,
        addition_b: np.ndarray,
    ) -> np.ndarray:
        n = graph.node_count
        survive = self.survivors(graph, deletion_flags).astype(np.int64)
        running = np.zeros(graph.nnz + 1, dtype=np.int64)
        np.cumsum(survive, out=running[1:])
        offsets = graph.row_offsets
        degrees = np.zeros(n, dtype=np.int64)

        def row_kernel(block: int, start: int, stop: int) -> None:
            degrees[start:stop] = (
                running[offsets[start + 1 : stop + 1]] - running[offsets[start:stop]]
            )

        dispatch.launch(row_kernel, n, block_size=self.block_size, workers=self.workers)

        addition_a = np.asarray(addition_a, dtype=np.int64)
        addition_b = np.asarray(addition_b, dtype=np.int64)
        if addition_a.shape != addition_b.shape:
            raise ValueError("addition endpoint arrays must share a shape")
        bumps = AtomicInt32Buffer(n)

        def addition_kernel(block: int, start: int, stop: int) -> None:
            touched = np.concatenate([addition_a[start:stop], addition_b[start:stop]])
            cells, counts = np.unique(touched, return_counts=True)
            with bumps.locked() as data:
                data[cells] += counts.astype(np.int32)

        dispatch.launch(
            addition_kernel,
            int(addition_a.size),
            block_size=self.block_size,
            workers=self.workers,
        )
        return degrees + bumps.data.astype(np.int64)
