"""Host-side stand-ins for device atomics.

Kernel blocks running on the dispatch thread pool share these objects. Each
operation holds a lock for the duration of a single read-modify-write so the
observable semantics match hardware ``InterlockedAdd``/``InterlockedCompareExchange``.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from enum import IntFlag
from typing import Iterator

import numpy as np

__all__ = ["IntegrityFlags", "AtomicCounter", "AtomicInt32Buffer", "wrap_int32"]


class IntegrityFlags(IntFlag):
    """Bit flags raised by fixed-point accumulation."""

    NONE = 0
    OVERFLOW = 1
    UNDERFLOW = 2
    RETRIES_EXHAUSTED = 4
    INT64_OVERFLOW = 32


def wrap_int32(value: int) -> int:
    """Return ``value`` reduced to the signed 32-bit range with wrap-around."""

    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


class AtomicCounter:
    """Integer counter supporting ``fetch_add``."""

    def __init__(self, value: int = 0) -> None:
        self._value = int(value)
        self._lock = threading.Lock()

    def fetch_add(self, amount: int = 1) -> int:
        """Add ``amount`` and return the previous value."""
        with self._lock:
            old = self._value
            self._value += int(amount)
            return old

    def load(self) -> int:
        with self._lock:
            return self._value

    def reset(self, value: int = 0) -> None:
        with self._lock:
            self._value = int(value)


class AtomicInt32Buffer:
    """Array of signed 32-bit cells with atomic read-modify-write operations.

    Parameters
    ----------
    size:
        Number of cells. Cells start at zero.
    stripes:
        Number of locks guarding the cells. Cell ``i`` uses lock
        ``i % stripes``.
    """

    def __init__(self, size: int, stripes: int = 64) -> None:
        self.data = np.zeros(int(size), dtype=np.int32)
        self._locks = [threading.Lock() for _ in range(max(1, int(stripes)))]

    def __len__(self) -> int:
        return int(self.data.shape[0])

    def _lock_for(self, index: int) -> threading.Lock:
        return self._locks[index % len(self._locks)]

    @contextmanager
    def locked(self) -> Iterator[np.ndarray]:
        """Hold every stripe lock and yield the raw cell array."""
        for lock in self._locks:
            lock.acquire()
        try:
            yield self.data
        finally:
            for lock in reversed(self._locks):
                lock.release()

    def load(self, index: int) -> int:
        with self._lock_for(index):
            return int(self.data[index])

    def fetch_add(self, index: int, value: int) -> int:
        """Add ``value`` with 32-bit wrap-around and return the old cell."""
        with self._lock_for(index):
            old = int(self.data[index])
            self.data[index] = wrap_int32(old + int(value))
            return old

    def fetch_or(self, index: int, value: int) -> int:
        with self._lock_for(index):
            old = int(self.data[index])
            self.data[index] = wrap_int32(old | int(value))
            return old

    def compare_exchange(self, index: int, expected: int, desired: int) -> int:
        """Store ``desired`` when the cell equals ``expected``.

        Returns the value found in the cell, so the exchange succeeded when
        the return value equals ``expected``.
        """
        with self._lock_for(index):
            old = int(self.data[index])
            if old == expected:
                self.data[index] = wrap_int32(desired)
            return old
