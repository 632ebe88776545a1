"""Invariant checks used by tests and the ``cw inspect`` command."""

from __future__ import annotations

from typing import Iterable, Mapping, Optional

import numpy as np


def csr_valid(row_offsets: np.ndarray, col_indices: np.ndarray, node_count: int) -> bool:
    """Offsets start at zero, end at ``nnz``, never decrease and columns are in range."""

    offsets = np.asarray(row_offsets)
    cols = np.asarray(col_indices)
    if offsets.size != node_count + 1:
        return False
    return bool(
        offsets[0] == 0
        and offsets[-1] == cols.size
        and np.all(np.diff(offsets) >= 0)
        and np.all((cols >= 0) & (cols < node_count))
    )


def degree_consistent(graph, degrees: np.ndarray) -> bool:
    """Row lengths of ``graph`` equal ``degrees``."""

    return bool(np.array_equal(graph.degrees(), np.asarray(degrees)))


def symmetric(graph) -> bool:
    """Every entry has a reverse entry with the same weight."""

    mirror = graph.mirror_indices()
    if np.any(mirror < 0):
        return False
    return bool(np.array_equal(graph.edge_weights[mirror], graph.edge_weights))


def no_self_loops(graph) -> bool:
    return not bool(np.any(graph.edge_sources() == graph.col_indices))


def no_duplicate_edges(graph) -> bool:
    """Columns are strictly increasing within every row."""

    cols = graph.col_indices
    rows = graph.edge_sources()
    same_row = rows[1:] == rows[:-1]
    return not bool(np.any(same_row & (cols[1:] <= cols[:-1])))


def protection_respected(deletion_flags: np.ndarray, protected: np.ndarray) -> bool:
    """No protected entry is flagged for deletion."""

    return not bool(np.any(np.asarray(deletion_flags) & np.asarray(protected)))


def new_edges_valid(
    graph, addition_a: Iterable[int], addition_b: Iterable[int]
) -> bool:
    """Proposed additions join distinct, unconnected nodes and are unique."""

    a = np.asarray(list(addition_a), dtype=np.int64)
    b = np.asarray(list(addition_b), dtype=np.int64)
    if np.any(a == b):
        return False
    pairs = set(zip(np.minimum(a, b).tolist(), np.maximum(a, b).tolist()))
    if len(pairs) != a.size:
        return False
    return bool(np.all(graph.find_edges(a, b) < 0))


def local_conservation(prev: float, current: float, tolerance: float) -> bool:
    """Check that local conservation holds within ``tolerance``."""

    return abs(current - prev) <= tolerance


def mass_conserved(
    before: np.ndarray,
    after: np.ndarray,
    removed_weight: float,
    tolerance: float,
    factor: float = 1.0,
) -> bool:
    """Total mass grew by ``factor * removed_weight`` within ``tolerance``."""

    gained = float(np.sum(after) - np.sum(before))
    return local_conservation(factor * removed_weight, gained, tolerance)


def from_stats(stats: Mapping[str, object]) -> dict:
    """Extract invariant fields from :meth:`DynamicTopologyStats.to_dict` output."""

    cons: Optional[Mapping[str, object]] = stats.get("conservation")  # type: ignore[assignment]
    return {
        "inv_published": stats.get("outcome") == "published",
        "inv_conservation_residual": float(cons["error"]) if cons else 0.0,
        "inv_conserved": bool(cons["is_conserved"]) if cons else True,
        "inv_capacity_ok": not (
            stats.get("additions_dropped") or stats.get("deletions_dropped")
        ),
    }
