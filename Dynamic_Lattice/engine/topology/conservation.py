"""Transfer of dying edge content onto endpoint nodes."""

from __future__ import annotations

import logging
import time
from typing import Optional

import numpy as np

from ..backend import dispatch
from ...graph.csr import CsrGraph
from .atomics import AtomicInt32Buffer, IntegrityFlags
from .errors import ConservationViolationError
from .fixed_point import (
    FIXED_POINT_SCALE,
    Int64Accumulator,
    from_fixed,
    saturating_scatter_add,
    to_fixed,
)
from .stats import ConservationStats

logger = logging.getLogger(__name__)

__all__ = ["ConservationTransfer", "dying_edges", "split_halves"]

_FAILURE_FLAGS = (
    IntegrityFlags.OVERFLOW
    | IntegrityFlags.UNDERFLOW
    | IntegrityFlags.RETRIES_EXHAUSTED
    | IntegrityFlags.INT64_OVERFLOW
)


def split_halves(scaled: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Split scaled values into ``(floor(W/2) + remainder, floor(W/2))``."""

    scaled = np.asarray(scaled, dtype=np.int64)
    half = scaled // 2
    return half + (scaled - 2 * half), half


def dying_edges(
    graph: CsrGraph,
    deletion_flags: np.ndarray,
    previous_existence: Optional[np.ndarray] = None,
) -> np.ndarray:
    """Return one flat entry per physical edge that dies this rebuild.

    An edge dies when either orientation is flagged and the canonical entry
    existed in the previous frame.
    """

    flagged = graph.mirror_closure(deletion_flags)
    if previous_existence is None:
        previous_existence = graph.edge_weights > 0
    mask = flagged & graph.canonical_mask() & np.asarray(previous_existence, dtype=bool)
    return np.flatnonzero(mask)


class ConservationTransfer:
    """Move the energy of dying edges onto their endpoints.

    Each dying edge contributes ``W = energy_conversion_factor * weight`` in
    fixed point. ``floor(W/2)`` plus the remainder goes to the smaller node id
    and ``floor(W/2)`` to the other. Per-node increments are accumulated in a
    zero-initialised 32-bit buffer with saturating adds and then added to the
    caller's mass array. Totals are audited with :class:`Int64Accumulator`;
    ``energy_before`` is taken from the unclamped weights, so content lost to
    saturation is reported in ``error``.

    Parameters
    ----------
    tolerance:
        Maximum ``|energy_before - energy_transferred|`` in real units.
    energy_conversion_factor:
        Factor converting edge weight to node energy.
    flux_conversion_factor:
        Factor applied to the transferred total for flux reporting.
    strict:
        Raise :class:`ConservationViolationError` instead of recording the
        mismatch. Masses are left untouched when raising.
    """

    def __init__(
        self,
        tolerance: float = 1e-6,
        energy_conversion_factor: float = 1.0,
        flux_conversion_factor: float = 1.0,
        strict: bool = False,
        *,
        scale: int = FIXED_POINT_SCALE,
        block_size: Optional[int] = None,
        workers: Optional[int] = None,
    ) -> None:
        self.tolerance = float(tolerance)
        self.energy_conversion_factor = float(energy_conversion_factor)
        self.flux_conversion_factor = float(flux_conversion_factor)
        self.strict = strict
        self.scale = int(scale)
        self.block_size = block_size
        self.workers = workers
        self.last_increments: np.ndarray = np.zeros(0, dtype=np.int32)

    def transfer(
        self,
        graph: CsrGraph,
        deletion_flags: np.ndarray,
        masses: np.ndarray,
        previous_existence: Optional[np.ndarray] = None,
    ) -> ConservationStats:
        """Apply the transfer to ``masses`` in place and return statistics."""

        start_time = time.perf_counter()
        if not isinstance(masses, np.ndarray) or masses.shape != (graph.node_count,):
            raise ValueError("masses must be an array with one value per node")
        if not np.issubdtype(masses.dtype, np.floating):
            raise ValueError("masses must be a floating point array")
        dying = dying_edges(graph, deletion_flags, previous_existence)
        sources = graph.edge_sources()[dying]
        targets = graph.col_indices[dying]
        energy = self.energy_conversion_factor * graph.edge_weights[dying]
        scaled, conversion_flags = to_fixed(energy, self.scale)
        exact = np.rint(energy * self.scale).astype(np.int64)

        increments = AtomicInt32Buffer(graph.node_count)
        flags = AtomicInt32Buffer(1, stripes=1)
        flags.fetch_or(0, int(conversion_flags))
        before = Int64Accumulator()
        transferred = Int64Accumulator()

        def kernel(block: int, lo: int, hi: int) -> None:
            w = scaled[lo:hi].astype(np.int64)
            a = sources[lo:hi]
            b = targets[lo:hi]
            low, high = np.minimum(a, b), np.maximum(a, b)
            first, second = split_halves(w)
            before.add_total(int(exact[lo:hi].sum()))
            applied = saturating_scatter_add(
                increments,
                np.concatenate([low, high]),
                np.concatenate([first, second]),
                flags,
            )
            transferred.add_total(applied)

        dispatch.launch(
            kernel, int(dying.size), block_size=self.block_size, workers=self.workers
        )

        all_flags = IntegrityFlags(flags.load(0)) | before.flags | transferred.flags
        energy_before = from_fixed(before.value, self.scale)
        energy_transferred = from_fixed(transferred.value, self.scale)
        error = abs(energy_before - energy_transferred)
        stats = ConservationStats(
            energy_before=energy_before,
            energy_transferred=energy_transferred,
            dying_edge_count=int(dying.size),
            error=error,
            tolerance=self.tolerance,
            integrity_flags=all_flags,
            is_conserved=error <= self.tolerance and not (all_flags & _FAILURE_FLAGS),
        )
        self.last_increments = increments.data.copy()
        stats.flux_transferred = energy_transferred * self.flux_conversion_factor
        stats.elapsed_ms = (time.perf_counter() - start_time) * 1000.0

        if all_flags & _FAILURE_FLAGS:
            logger.warning("fixed-point integrity flags raised: %r", all_flags)
        if not stats.is_conserved and self.strict:
            raise ConservationViolationError(error, self.tolerance, int(all_flags))
        masses += from_fixed(self.last_increments, self.scale)
        return stats
