"""Statistics records published after each rebuild."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Dict, Optional

from .atomics import IntegrityFlags


@dataclass
class ConservationStats:
    energy_before: float = 0.0
    energy_transferred: float = 0.0
    flux_transferred: float = 0.0
    dying_edge_count: int = 0
    error: float = 0.0
    tolerance: float = 0.0
    integrity_flags: IntegrityFlags = IntegrityFlags.NONE
    is_conserved: bool = True
    elapsed_ms: float = 0.0

    @property
    def saturated(self) -> bool:
        return bool(
            self.integrity_flags
            & (IntegrityFlags.OVERFLOW | IntegrityFlags.UNDERFLOW)
        )


@dataclass
class TopKMetrics:
    """Diagnostics from protected edge selection."""

    requested: int = 0
    selected: int = 0
    strategy: str = "none"
    method: str = "none"
    fallback: bool = False
    error: Optional[str] = None
    candidates: int = 0
    elapsed_ms: float = 0.0


@dataclass
class DynamicTopologyStats:
    """Summary of one :meth:`evolve_topology` call."""

    graph_version: int = 0
    outcome: str = "idle"
    deletion_source: str = "threshold"
    old_nnz: int = 0
    new_nnz: int = 0
    additions_proposed: int = 0
    additions_accepted: int = 0
    additions_dropped: int = 0
    deletions_proposed: int = 0
    deletions_accepted: int = 0
    deletions_dropped: int = 0
    edges_marked: int = 0
    edges_added: int = 0
    protection: TopKMetrics = field(default_factory=TopKMetrics)
    conservation: Optional[ConservationStats] = None
    phase_ms: Dict[str, float] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def total_ms(self) -> float:
        return sum(self.phase_ms.values())

    def to_dict(self) -> dict:
        data = asdict(self)
        if self.conservation is not None:
            data["conservation"]["integrity_flags"] = int(
                self.conservation.integrity_flags
            )
        return data
