"""Array backend helpers for the topology kernels.

Kernels are written against an array module ``xp`` which is :mod:`cupy` when
``Config.backend == "cupy"`` and ``Config.cupy_kernels`` is enabled, and
:mod:`numpy` otherwise. If `cupy` is not installed or a CUDA device is
unavailable, the helpers transparently fall back to NumPy.
"""

from __future__ import annotations

from typing import Any, Iterable

import numpy as np
from ...config import Config

try:  # pragma: no cover - optional dependency
    import cupy as cp
except Exception:  # pragma: no cover - gracefully handle missing CUDA
    cp = None


def is_available() -> bool:
    """Return ``True`` when CuPy is selected and available."""

    return cp is not None and Config.backend == "cupy" and Config.cupy_kernels


def get_array_module() -> Any:
    """Return the array module used by kernels."""

    return cp if is_available() else np


def to_device(array: np.ndarray | Iterable[float]) -> "cp.ndarray" | np.ndarray:
    """Return ``array`` on the active device."""
    if not is_available():
        return np.asarray(array)
    return cp.asarray(array)


def to_host(array: Any) -> np.ndarray:
    """Copy ``array`` back to host memory.

    The copy blocks until every kernel writing ``array`` has completed.
    """

    if cp is not None and isinstance(array, cp.ndarray):
        return cp.asnumpy(array)
    return np.asarray(array)


def block_local_top_m(weights: np.ndarray, block_size: int, m: int) -> np.ndarray:
    """Return candidate indices holding each block's ``m`` largest weights.

    Parameters
    ----------
    weights:
        Flat edge weights on the host.
    block_size:
        Number of edges examined by one block.
    m:
        Local candidates kept per block.

    Returns
    -------
    np.ndarray
        Flat edge indices of all local candidates, unordered. Padding slots
        introduced for the final partial block are never returned.
    """

    if block_size < 1 or m < 1:
        raise ValueError("block_size and m must be positive")
    n = int(len(weights))
    if n == 0:
        return np.empty(0, dtype=np.int64)
    xp = get_array_module()
    blocks = -(-n // block_size)
    padded = xp.full(blocks * block_size, -xp.inf, dtype=xp.float64)
    padded[:n] = to_device(np.asarray(weights, dtype=np.float64))
    grid = padded.reshape(blocks, block_size)
    keep = min(m, block_size)
    local = xp.argpartition(-grid, keep - 1, axis=1)[:, :keep]
    flat = local + (xp.arange(blocks, dtype=local.dtype) * block_size)[:, None]
    flat = to_host(flat.ravel()).astype(np.int64)
    return flat[flat < n]
