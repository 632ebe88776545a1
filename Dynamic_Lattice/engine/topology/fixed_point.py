"""Fixed-point arithmetic used by the conservation phase.

Quantities are stored as signed 32-bit integers scaled by ``2**24``. Additions
saturate to ``[MIN_SAFE, MAX_SAFE]`` through a compare-and-swap loop and raise
an :class:`~Dynamic_Lattice.engine.topology.atomics.IntegrityFlags` bit instead
of wrapping. Graph-wide sums use :class:`Int64Accumulator`, which carries a
64-bit total in two 32-bit words.
"""

from __future__ import annotations

from typing import Tuple

import numpy as np

from .atomics import AtomicInt32Buffer, IntegrityFlags

__all__ = [
    "FIXED_POINT_SCALE",
    "MAX_SAFE",
    "MIN_SAFE",
    "MAX_CAS_RETRIES",
    "to_fixed",
    "from_fixed",
    "saturating_add",
    "saturating_scatter_add",
    "Int64Accumulator",
]

FIXED_POINT_SCALE = 1 << 24
MAX_SAFE = 2_000_000_000
MIN_SAFE = -2_000_000_000
MAX_CAS_RETRIES = 64

_INT32_MIN = -(1 << 31)
_INT32_MAX = (1 << 31) - 1


def to_fixed(
    values: np.ndarray, scale: int = FIXED_POINT_SCALE
) -> Tuple[np.ndarray, IntegrityFlags]:
    """Return ``values`` scaled to clamped ``int32`` fixed point.

    Parameters
    ----------
    values:
        Real valued input array.
    scale:
        Fixed-point scale factor.

    Returns
    -------
    tuple
        ``(scaled, flags)`` where ``flags`` records whether any entry had to be
        clamped to the safe range.
    """

    raw = np.rint(np.asarray(values, dtype=np.float64) * scale)
    flags = IntegrityFlags.NONE
    if raw.size and raw.max() > MAX_SAFE:
        flags |= IntegrityFlags.OVERFLOW
    if raw.size and raw.min() < MIN_SAFE:
        flags |= IntegrityFlags.UNDERFLOW
    return np.clip(raw, MIN_SAFE, MAX_SAFE).astype(np.int32), flags


def from_fixed(values, scale: int = FIXED_POINT_SCALE):
    """Return fixed-point ``values`` as floats."""

    if isinstance(values, (int, np.integer)):
        return int(values) / scale
    return np.asarray(values, dtype=np.float64) / scale


def saturating_add(
    buffer: AtomicInt32Buffer,
    index: int,
    delta: int,
    flags: AtomicInt32Buffer,
    max_retries: int = MAX_CAS_RETRIES,
) -> int:
    """Atomically add ``delta`` to ``buffer[index]`` with saturation.

    Returns the amount actually applied, which differs from ``delta`` when the
    result was clamped or every retry was used.
    """

    delta = int(delta)
    if delta == 0:
        return 0
    for _ in range(max_retries):
        current = buffer.load(index)
        if delta > 0 and current > MAX_SAFE - delta:
            new = MAX_SAFE
            flags.fetch_or(0, IntegrityFlags.OVERFLOW)
        elif delta < 0 and current < MIN_SAFE - delta:
            new = MIN_SAFE
            flags.fetch_or(0, IntegrityFlags.UNDERFLOW)
        else:
            new = current + delta
        if new == current:
            return 0
        if buffer.compare_exchange(index, current, new) == current:
            return new - current
    flags.fetch_or(0, IntegrityFlags.OVERFLOW | IntegrityFlags.RETRIES_EXHAUSTED)
    return 0


def saturating_scatter_add(
    buffer: AtomicInt32Buffer,
    indices: np.ndarray,
    deltas: np.ndarray,
    flags: AtomicInt32Buffer,
    max_retries: int = MAX_CAS_RETRIES,
) -> int:
    """Apply ``buffer[indices[k]] += deltas[k]`` for every ``k``.

    When all deltas share a sign and every touched cell stays in the safe
    range the update is applied in one vectorised step, which gives the same
    result as the element-wise loop because the partial sums are monotonic.
    Otherwise each element goes through :func:`saturating_add` in order.

    Returns
    -------
    int
        Total amount actually applied.
    """

    indices = np.asarray(indices, dtype=np.int64)
    deltas = np.asarray(deltas, dtype=np.int64)
    if indices.size == 0:
        return 0
    same_sign = bool((deltas >= 0).all() or (deltas <= 0).all())
    if same_sign:
        cells, inverse = np.unique(indices, return_inverse=True)
        sums = np.zeros(cells.size, dtype=np.int64)
        np.add.at(sums, inverse, deltas)
        with buffer.locked():
            proposed = buffer.data[cells].astype(np.int64) + sums
            if proposed.min() >= MIN_SAFE and proposed.max() <= MAX_SAFE:
                buffer.data[cells] = proposed.astype(np.int32)
                return int(sums.sum())
    applied = 0
    for idx, delta in zip(indices.tolist(), deltas.tolist()):
        applied += saturating_add(buffer, idx, delta, flags, max_retries)
    return applied


class Int64Accumulator:
    """64-bit signed accumulator built from two 32-bit atomic words.

    The low word is treated as unsigned and receives every addend through a
    wrapping ``fetch_add``. The high word receives the sign extension of the
    addend plus the carry out of the low word.
    """

    def __init__(self) -> None:
        self._lo = AtomicInt32Buffer(1, stripes=1)
        self._hi = AtomicInt32Buffer(1, stripes=1)
        self._flags = AtomicInt32Buffer(1, stripes=1)

    @property
    def flags(self) -> IntegrityFlags:
        return IntegrityFlags(self._flags.load(0))

    @property
    def low(self) -> int:
        return self._lo.load(0) & 0xFFFFFFFF

    @property
    def high(self) -> int:
        return self._hi.load(0)

    @property
    def value(self) -> int:
        return (self.high << 32) + self.low

    def reset(self) -> None:
        with self._lo.locked(), self._hi.locked(), self._flags.locked():
            self._lo.data[0] = 0
            self._hi.data[0] = 0
            self._flags.data[0] = 0

    def add(self, value: int) -> None:
        """Add a signed 32-bit ``value``."""

        value = int(value)
        if not _INT32_MIN <= value <= _INT32_MAX:
            raise ValueError(f"addend {value} does not fit in 32 bits")
        sign_extension = -1 if value < 0 else 0
        low_part = value & 0xFFFFFFFF
        old_low = self._lo.fetch_add(0, value) & 0xFFFFFFFF
        new_low = (old_low + low_part) & 0xFFFFFFFF
        carry = 1 if new_low < old_low else 0
        high_delta = sign_extension + carry
        if high_delta == 0:
            return
        new_high = self._hi.fetch_add(0, high_delta) + high_delta
        if (high_delta > 0 and new_high > MAX_SAFE) or (
            high_delta < 0 and new_high < MIN_SAFE
        ):
            self._flags.fetch_or(0, IntegrityFlags.INT64_OVERFLOW)

    def add_total(self, total: int) -> None:
        """Add an arbitrary integer as a sequence of 32-bit addends."""

        total = int(total)
        while total > _INT32_MAX:
            self.add(_INT32_MAX)
            total -= _INT32_MAX
        while total < _INT32_MIN:
            self.add(_INT32_MIN)
            total -= _INT32_MIN
        if total:
            self.add(total)
