"""Parameter records for topology evolution.

:class:`DynamicTopologyConfig` is the user facing value object. The kernel
parameter records are rebuilt from it whenever the configuration or the graph
statistics they capture change, and compared through :meth:`fingerprint`.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, fields, replace
from enum import Enum
from typing import Any, Dict, Mapping

__all__ = [
    "TopKStrategy",
    "DeletionSource",
    "DynamicTopologyConfig",
    "AdditionKernelParams",
    "DeletionKernelParams",
]


class TopKStrategy(str, Enum):
    """Strategy used to select protected heavy edges."""

    AUTO = "auto"
    CPU_ONLY = "cpu_only"
    BLOCK_TOP_M = "block_top_m"
    PARALLEL_BLOCK_TOP_M = "parallel_block_top_m"


class DeletionSource(str, Enum):
    """Producer of deletion flags for a rebuild."""

    THRESHOLD = "threshold"
    MCMC = "mcmc"


def _fingerprint(payload: Mapping[str, Any]) -> str:
    blob = json.dumps(payload, sort_keys=True, default=str).encode()
    return hashlib.sha1(blob).hexdigest()


@dataclass(frozen=True)
class DynamicTopologyConfig:
    """Coefficients and limits governing one topology rebuild."""

    beta: float = 1.0
    link_cost_coeff: float = 0.1
    target_degree: float = 4.0
    degree_penalty_coeff: float = 0.01
    initial_weight: float = 0.5
    deletion_threshold: float = 0.001
    rebuild_interval: int = 10
    max_additions_per_step: int = 100
    max_deletions_per_step: int = 100
    max_protected_heavy_edges: int = 0
    topk_strategy: TopKStrategy = TopKStrategy.AUTO
    topk_local_m: int = 4
    enable_additions: bool = True
    enable_conservation: bool = False
    conservation_tolerance: float = 1e-6
    energy_conversion_factor: float = 1.0
    flux_conversion_factor: float = 1.0
    strict_validation: bool = False
    strict_verification: bool = True
    deletion_source: DeletionSource = DeletionSource.THRESHOLD
    use_proposal_ratio: bool = True
    seed: int = 42

    def __post_init__(self) -> None:
        object.__setattr__(self, "topk_strategy", TopKStrategy(self.topk_strategy))
        object.__setattr__(
            self, "deletion_source", DeletionSource(self.deletion_source)
        )
        object.__setattr__(
            self, "topk_local_m", min(8, max(1, int(self.topk_local_m)))
        )
        if self.beta < 0:
            raise ValueError("beta must be non-negative")
        if self.rebuild_interval < 1:
            raise ValueError("rebuild_interval must be at least 1")
        if self.max_additions_per_step < 0 or self.max_deletions_per_step < 0:
            raise ValueError("proposal capacities must be non-negative")
        if self.max_protected_heavy_edges < 0:
            raise ValueError("max_protected_heavy_edges must be non-negative")
        if self.conservation_tolerance < 0:
            raise ValueError("conservation_tolerance must be non-negative")
        if self.initial_weight < 0:
            raise ValueError("initial_weight must be non-negative")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "DynamicTopologyConfig":
        """Build a config from ``data`` ignoring unknown keys."""

        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names})

    @classmethod
    def from_config(cls) -> "DynamicTopologyConfig":
        """Build a config from :attr:`Config.dynamic_topology`."""

        from ...config import Config

        return cls.from_mapping(Config.dynamic_topology)

    def with_overrides(self, **changes: Any) -> "DynamicTopologyConfig":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["topk_strategy"] = self.topk_strategy.value
        data["deletion_source"] = self.deletion_source.value
        return data

    def fingerprint(self) -> str:
        """Return a stable hash of every field."""
        return _fingerprint(self.to_dict())


@dataclass(frozen=True)
class _KernelParams:
    beta: float
    link_cost_coeff: float
    target_degree: float
    degree_penalty_coeff: float
    node_count: int
    edge_count: int
    use_proposal_ratio: bool

    @property
    def missing_count(self) -> int:
        return self.node_count * (self.node_count - 1) // 2 - self.edge_count

    def fingerprint(self) -> str:
        return _fingerprint({"kind": type(self).__name__, **asdict(self)})


@dataclass(frozen=True)
class AdditionKernelParams(_KernelParams):
    """Values captured by the addition kernel for one dispatch."""

    initial_weight: float = 0.5

    @property
    def q_ratio(self) -> float:
        if not self.use_proposal_ratio:
            return 1.0
        return self.missing_count / (self.edge_count + 1)

    @classmethod
    def build(
        cls, config: DynamicTopologyConfig, node_count: int, edge_count: int
    ) -> "AdditionKernelParams":
        return cls(
            beta=config.beta,
            link_cost_coeff=config.link_cost_coeff,
            target_degree=config.target_degree,
            degree_penalty_coeff=config.degree_penalty_coeff,
            node_count=int(node_count),
            edge_count=int(edge_count),
            use_proposal_ratio=config.use_proposal_ratio,
            initial_weight=config.initial_weight,
        )


@dataclass(frozen=True)
class DeletionKernelParams(_KernelParams):
    """Values captured by the deletion kernel for one dispatch."""

    deletion_threshold: float = 0.001

    @property
    def q_ratio(self) -> float:
        if not self.use_proposal_ratio:
            return 1.0
        return self.edge_count / (self.missing_count + 1)

    @classmethod
    def build(
        cls, config: DynamicTopologyConfig, node_count: int, edge_count: int
    ) -> "DeletionKernelParams":
        return cls(
            beta=config.beta,
            link_cost_coeff=config.link_cost_coeff,
            target_degree=config.target_degree,
            degree_penalty_coeff=config.degree_penalty_coeff,
            node_count=int(node_count),
            edge_count=int(edge_count),
            use_proposal_ratio=config.use_proposal_ratio,
            deletion_threshold=config.deletion_threshold,
        )
