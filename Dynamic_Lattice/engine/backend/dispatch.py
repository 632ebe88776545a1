"""Block dispatch for emulated SIMT kernels.

A kernel is a callable receiving ``(block_index, start, stop)`` for a slice of
logical thread ids. :func:`launch` returns only after every block finished, so
each launch is a barrier between pipeline phases.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, TypeVar

from ...config import Config

__all__ = ["block_ranges", "launch"]

T = TypeVar("T")


def block_ranges(thread_count: int, block_size: int) -> List[tuple[int, int, int]]:
    """Return ``(block_index, start, stop)`` triples covering ``thread_count``."""

    if block_size < 1:
        raise ValueError("block_size must be positive")
    return [
        (b, start, min(start + block_size, thread_count))
        for b, start in enumerate(range(0, thread_count, block_size))
    ]


def launch(
    kernel: Callable[[int, int, int], T],
    thread_count: int,
    *,
    block_size: Optional[int] = None,
    workers: Optional[int] = None,
) -> List[T]:
    """Run ``kernel`` over ``thread_count`` logical threads.

    Parameters
    ----------
    kernel:
        Callable executed once per block.
    thread_count:
        Number of logical threads.
    block_size:
        Threads per block. Defaults to ``Config.kernel_block_size``.
    workers:
        Pool size. Defaults to ``Config.kernel_workers``; ``1`` runs blocks
        inline in block order.

    Returns
    -------
    list
        Per-block results in block order.
    """

    block_size = block_size or getattr(Config, "kernel_block_size", 1024)
    workers = workers or getattr(Config, "kernel_workers", 1)
    ranges = block_ranges(int(thread_count), int(block_size))
    if not ranges:
        return []
    if workers <= 1 or len(ranges) == 1:
        return [kernel(*r) for r in ranges]
    with ThreadPoolExecutor(max_workers=workers) as ex:
        futures = [ex.submit(kernel, *r) for r in ranges]
        return [f.result() for f in futures]
