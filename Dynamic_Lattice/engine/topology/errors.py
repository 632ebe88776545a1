"""Exceptions raised by the topology rebuild pipeline."""

from __future__ import annotations

from typing import Iterable, List


class TopologyError(RuntimeError):
    """Base class for rebuild failures that keep the previous topology live."""


class StructuralIntegrityError(TopologyError):
    """Raised when a freshly built CSR fails verification."""

    def __init__(self, failures: Iterable[str]) -> None:
        self.failures: List[str] = list(failures)
        summary = "; ".join(self.failures[:5])
        if len(self.failures) > 5:
            summary += f"; ... ({len(self.failures) - 5} more)"
        super().__init__(f"CSR verification failed: {summary}")


class ConservationViolationError(TopologyError):
    """Raised in strict mode when transferred energy does not match."""

    def __init__(self, error: float, tolerance: float, flags: int = 0) -> None:
        self.error = float(error)
        self.tolerance = float(tolerance)
        self.flags = int(flags)
        super().__init__(
            f"energy conservation violated: error={self.error:.3e} "
            f"tolerance={self.tolerance:.3e} flags={self.flags}"
        )
