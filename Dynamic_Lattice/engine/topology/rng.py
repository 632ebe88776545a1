"""Per-thread xorshift32 random streams."""

from __future__ import annotations

import numpy as np

__all__ = ["xorshift32", "xorshift32_vec", "uniform_from_state", "SeedTable"]

_MASK32 = 0xFFFFFFFF
_UNIFORM_MASK = 0x7FFFFFFF


def xorshift32(state: int) -> int:
    """Return the successor of a scalar xorshift32 ``state``."""

    x = state & _MASK32
    x ^= (x << 13) & _MASK32
    x ^= x >> 17
    x ^= (x << 5) & _MASK32
    return x


def xorshift32_vec(states: np.ndarray) -> np.ndarray:
    """Vectorised :func:`xorshift32` over a ``uint32`` array."""

    x = np.asarray(states, dtype=np.uint32).copy()
    x ^= x << np.uint32(13)
    x ^= x >> np.uint32(17)
    x ^= x << np.uint32(5)
    return x


def uniform_from_state(states: np.ndarray) -> np.ndarray:
    """Map xorshift states to uniforms in ``[0, 1]``."""

    return (np.asarray(states, dtype=np.uint32) & np.uint32(_UNIFORM_MASK)).astype(
        np.float64
    ) / float(_UNIFORM_MASK)


class SeedTable:
    """Seed table with one xorshift32 state per logical thread.

    States are drawn from ``seed`` in ``[1, 2**31 - 1)`` so no stream starts
    at the absorbing zero state. The table is extended, never reshuffled, when
    more threads are requested so earlier streams continue where they left
    off.
    """

    def __init__(self, seed: int = 42, size: int = 0) -> None:
        self._rng = np.random.default_rng(seed)
        self.states = np.empty(0, dtype=np.uint32)
        self.ensure(size)

    def __len__(self) -> int:
        return int(self.states.shape[0])

    def ensure(self, size: int) -> None:
        """Grow the table to at least ``size`` states."""

        missing = int(size) - len(self)
        if missing <= 0:
            return
        fresh = self._rng.integers(1, _UNIFORM_MASK, size=missing, dtype=np.int64)
        self.states = np.concatenate([self.states, fresh.astype(np.uint32)])

    def view(self, start: int, stop: int) -> np.ndarray:
        return self.states[start:stop]

    def store(self, start: int, values: np.ndarray) -> None:
        """Write advanced states back for threads ``start..start+len(values)``."""

        self.states[start : start + len(values)] = values
