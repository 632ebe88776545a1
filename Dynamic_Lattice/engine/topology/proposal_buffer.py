"""Bounded proposal storage with atomic slot allocation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from .atomics import AtomicCounter

logger = logging.getLogger(__name__)

__all__ = ["EdgeProposal", "ProposalBuffer"]

GROWTH_FACTOR = 1.5


@dataclass(frozen=True)
class EdgeProposal:
    """Candidate structural change, not yet applied."""

    node_a: int
    node_b: int
    weight: float
    is_addition: bool


class _Lane:
    """Fixed-capacity candidate arrays sharing one atomic counter."""

    def __init__(self, capacity: int) -> None:
        self.counter = AtomicCounter()
        self.capacity = 0
        self.node_a = np.empty(0, dtype=np.int64)
        self.node_b = np.empty(0, dtype=np.int64)
        self.weight = np.empty(0, dtype=np.float64)
        self.edge = np.empty(0, dtype=np.int64)
        self.allocate(capacity)

    def allocate(self, capacity: int) -> None:
        capacity = int(capacity)
        node_a = np.full(capacity, -1, dtype=np.int64)
        node_b = np.full(capacity, -1, dtype=np.int64)
        weight = np.zeros(capacity, dtype=np.float64)
        edge = np.full(capacity, -1, dtype=np.int64)
        self.node_a, self.node_b, self.weight, self.edge = node_a, node_b, weight, edge
        self.capacity = capacity

    def append(
        self,
        node_a: np.ndarray,
        node_b: np.ndarray,
        weight: np.ndarray,
        edge: Optional[np.ndarray] = None,
    ) -> int:
        """Reserve slots for a block of accepted proposals and store them.

        Returns the number of proposals that did not fit.
        """

        count = int(len(node_a))
        if count == 0:
            return 0
        base = self.counter.fetch_add(count)
        slots = base + np.arange(count, dtype=np.int64)
        fits = slots < self.capacity
        stored = slots[fits]
        self.node_a[stored] = np.asarray(node_a)[fits]
        self.node_b[stored] = np.asarray(node_b)[fits]
        self.weight[stored] = np.asarray(weight)[fits]
        if edge is not None:
            self.edge[stored] = np.asarray(edge)[fits]
        return count - int(stored.size)

    def resize(self, capacity: int) -> None:
        """Reallocate to ``capacity`` keeping stored proposals."""
        kept = self.count
        old = (self.node_a, self.node_b, self.weight, self.edge)
        self.allocate(capacity)
        for new_arr, old_arr in zip(
            (self.node_a, self.node_b, self.weight, self.edge), old
        ):
            new_arr[:kept] = old_arr[:kept]
        self.counter.reset(kept)

    @property
    def demand(self) -> int:
        return self.counter.load()

    @property
    def count(self) -> int:
        return min(self.demand, self.capacity)

    @property
    def dropped(self) -> int:
        return self.demand - self.count


class ProposalBuffer:
    """Addition and deletion candidate buffers for one orchestrator.

    Counters are reset by :meth:`reset` at the start of every proposal phase.
    Accepted proposals beyond capacity are counted but not stored; calling
    :meth:`grow_to_demand` afterwards enlarges the buffers by at least
    :data:`GROWTH_FACTOR` so the next phase can hold the observed demand.
    Growth increments :attr:`generation` and invalidates array views obtained
    earlier.

    Parameters
    ----------
    addition_capacity:
        Initial number of addition slots.
    deletion_capacity:
        Initial number of deletion slots.
    """

    def __init__(self, addition_capacity: int, deletion_capacity: int) -> None:
        if addition_capacity < 0 or deletion_capacity < 0:
            raise ValueError("capacities must be non-negative")
        self._additions = _Lane(addition_capacity)
        self._deletions = _Lane(deletion_capacity)
        self.generation = 0

    # ------------------------------------------------------------------
    @property
    def addition_capacity(self) -> int:
        return self._additions.capacity

    @property
    def deletion_capacity(self) -> int:
        return self._deletions.capacity

    @property
    def addition_count(self) -> int:
        return self._additions.count

    @property
    def deletion_count(self) -> int:
        return self._deletions.count

    @property
    def addition_demand(self) -> int:
        return self._additions.demand

    @property
    def deletion_demand(self) -> int:
        return self._deletions.demand

    @property
    def dropped_additions(self) -> int:
        return self._additions.dropped

    @property
    def dropped_deletions(self) -> int:
        return self._deletions.dropped

    def reset(self) -> None:
        self._additions.counter.reset()
        self._deletions.counter.reset()

    # ------------------------------------------------------------------
    def append_additions(
        self, node_a: np.ndarray, node_b: np.ndarray, weight: np.ndarray
    ) -> int:
        return self._additions.append(node_a, node_b, weight)

    def append_deletions(
        self,
        node_a: np.ndarray,
        node_b: np.ndarray,
        weight: np.ndarray,
        edge: np.ndarray,
    ) -> int:
        return self._deletions.append(node_a, node_b, weight, edge)

    def additions(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Return ``(node_a, node_b, weight)`` views of stored additions."""

        lane = self._additions
        n = lane.count
        return lane.node_a[:n], lane.node_b[:n], lane.weight[:n]

    def deletions(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        """Return ``(node_a, node_b, weight, edge)`` views of stored deletions."""

        lane = self._deletions
        n = lane.count
        return lane.node_a[:n], lane.node_b[:n], lane.weight[:n], lane.edge[:n]

    def proposals(self) -> List[EdgeProposal]:
        out = [
            EdgeProposal(int(a), int(b), float(w), True)
            for a, b, w in zip(*self.additions())
        ]
        a_del, b_del, w_del, _ = self.deletions()
        out.extend(
            EdgeProposal(int(a), int(b), float(w), False)
            for a, b, w in zip(a_del, b_del, w_del)
        )
        return out

    def ensure_capacity(self, addition_capacity: int, deletion_capacity: int) -> bool:
        """Grow lanes to at least the given capacities; never shrinks."""

        grown = False
        for lane, capacity in (
            (self._additions, addition_capacity),
            (self._deletions, deletion_capacity),
        ):
            if int(capacity) > lane.capacity:
                lane.resize(capacity)
                grown = True
        if grown:
            self.generation += 1
        return grown

    # ------------------------------------------------------------------
    def grow_to_demand(
        self, addition_limit: Optional[int] = None, deletion_limit: Optional[int] = None
    ) -> bool:
        """Grow lanes whose last demand exceeded capacity.

        Stored proposals are preserved and the lane counter is clamped to the
        number actually stored. Returns ``True`` when a reallocation happened.
        """

        grown = False
        for name, lane, limit in (
            ("addition", self._additions, addition_limit),
            ("deletion", self._deletions, deletion_limit),
        ):
            if lane.demand <= lane.capacity:
                continue
            target = max(int(np.ceil(lane.capacity * GROWTH_FACTOR)), lane.demand)
            if limit is not None:
                target = min(target, max(int(limit), lane.capacity))
            if target <= lane.capacity:
                continue
            demand = lane.demand
            lane.resize(target)
            logger.info(
                "%s capacity grown to %d (demand %d)", name, target, demand
            )
            grown = True
        if grown:
            self.generation += 1
        return grown
