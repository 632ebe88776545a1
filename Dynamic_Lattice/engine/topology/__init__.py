"""Dynamic topology evolution for CSR lattices."""

from .errors import (
    ConservationViolationError,
    StructuralIntegrityError,
    TopologyError,
)
from .params import DeletionSource, DynamicTopologyConfig, TopKStrategy
from .stats import ConservationStats, DynamicTopologyStats, TopKMetrics
from .proposal_buffer import EdgeProposal, ProposalBuffer
from .proposals import ProposalCollector, ProposalResult
from .protection import ProtectionSelector
from .conservation import ConservationTransfer
from .degree import DegreeRecompute
from .compaction import CompactionEngine, compact_topology
from .verifier import TopologyVerifier, VerificationReport
from .orchestrator import DynamicTopologyOrchestrator, TopologyPhase

__all__ = [
    "TopologyError",
    "StructuralIntegrityError",
    "ConservationViolationError",
    "DeletionSource",
    "DynamicTopologyConfig",
    "TopKStrategy",
    "ConservationStats",
    "DynamicTopologyStats",
    "TopKMetrics",
    "EdgeProposal",
    "ProposalBuffer",
    "ProposalCollector",
    "ProposalResult",
    "ProtectionSelector",
    "ConservationTransfer",
    "DegreeRecompute",
    "CompactionEngine",
    "compact_topology",
    "TopologyVerifier",
    "VerificationReport",
    "DynamicTopologyOrchestrator",
    "TopologyPhase",
]
