"""Dynamic_Lattice package initialization."""

from __future__ import annotations

from typing import Any

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from .engine.topology.orchestrator import DynamicTopologyOrchestrator
    from .graph.csr import CsrGraph

__all__ = ["DynamicTopologyOrchestrator", "CsrGraph"]


def __getattr__(name: str) -> Any:  # pragma: no cover - attribute access
    """Lazily expose the orchestrator and graph container."""

    if name == "DynamicTopologyOrchestrator":
        from .engine.topology.orchestrator import DynamicTopologyOrchestrator as _Orc

        return _Orc
    if name == "CsrGraph":
        from .graph.csr import CsrGraph as _CsrGraph

        return _CsrGraph
    raise AttributeError(name)
