"""Sequencing of one topology rebuild.

:class:`DynamicTopologyOrchestrator` owns the proposal buffers and the live
:class:`~Dynamic_Lattice.graph.csr.CsrGraph`. A rebuild walks through

``IDLE -> PROPOSAL -> MARK -> CONSERVE -> DEGREE -> COMPACT -> VERIFY``

and ends in ``PUBLISHED`` (new graph returned), ``NO_CHANGE`` (nothing was
flagged for deletion, ``None`` returned) or ``ROLLED_BACK`` (an error was
raised and the previous graph stays live). ``CONSERVE`` only runs when
conservation is enabled.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from enum import Enum
from typing import Iterator, List, Optional

import numpy as np

from ..logging.logger import log_entry, log_record
from ..logging_models import (
    ConservationAuditEntry,
    ConservationAuditPayload,
    TopologyRebuildEntry,
    TopologyRebuildPayload,
)
from ...graph.csr import CsrGraph
from .compaction import CompactionEngine
from .conservation import ConservationTransfer
from .degree import DegreeRecompute
from .errors import TopologyError
from .params import DeletionSource, DynamicTopologyConfig
from .proposal_buffer import ProposalBuffer
from .proposals import ProposalCollector, ProposalResult
from .protection import ProtectionSelector
from .rng import SeedTable
from .stats import DynamicTopologyStats
from .verifier import TopologyVerifier

logger = logging.getLogger(__name__)

__all__ = ["TopologyPhase", "DynamicTopologyOrchestrator"]


class TopologyPhase(str, Enum):
    IDLE = "idle"
    PROPOSAL = "proposal"
    MARK = "mark"
    CONSERVE = "conserve"
    DEGREE = "degree"
    COMPACT = "compact"
    VERIFY = "verify"
    PUBLISHED = "published"
    NO_CHANGE = "no_change"
    ROLLED_BACK = "rolled_back"


class DynamicTopologyOrchestrator:
    """Run topology rebuilds and publish the resulting graph.

    Parameters
    ----------
    config:
        Topology parameters. Defaults to :meth:`DynamicTopologyConfig.from_config`.
    block_size:
        Logical threads per kernel block.
    workers:
        Thread pool size for kernel blocks.
    """

    def __init__(
        self,
        config: Optional[DynamicTopologyConfig] = None,
        *,
        block_size: Optional[int] = None,
        workers: Optional[int] = None,
    ) -> None:
        self.block_size = block_size
        self.workers = workers
        self.state = TopologyPhase.IDLE
        self.transitions: List[TopologyPhase] = []
        self.current_graph: Optional[CsrGraph] = None
        self.last_stats = DynamicTopologyStats()
        self.rebuilds = 0
        self._lock = threading.Lock()
        self.configure(config or DynamicTopologyConfig.from_config())

    def configure(self, config: DynamicTopologyConfig) -> None:
        """Install ``config``, rebuilding components that capture it.

        Buffers keep their grown capacity, growing further when the new
        per-step limits are larger. Random streams continue unless the seed
        changed.
        """

        previous = getattr(self, "config", None)
        self.config = config
        if previous is None or previous.seed != config.seed:
            self.seeds = SeedTable(config.seed)
        if previous is None:
            self.buffer = ProposalBuffer(
                config.max_additions_per_step, config.max_deletions_per_step
            )
        else:
            self.buffer.ensure_capacity(
                config.max_additions_per_step, config.max_deletions_per_step
            )
        self.collector = ProposalCollector(
            config,
            self.buffer,
            self.seeds,
            block_size=self.block_size,
            workers=self.workers,
        )
        self.selector = ProtectionSelector(
            config.max_protected_heavy_edges, config.topk_strategy, config.topk_local_m
        )
        self.conservation = ConservationTransfer(
            config.conservation_tolerance,
            config.energy_conversion_factor,
            config.flux_conversion_factor,
            strict=config.strict_validation,
            block_size=self.block_size,
            workers=self.workers,
        )
        self.degrees = DegreeRecompute(block_size=self.block_size, workers=self.workers)
        self.compaction = CompactionEngine(
            block_size=self.block_size, workers=self.workers
        )
        self.verifier = TopologyVerifier(strict=config.strict_verification)

    # ------------------------------------------------------------------
    def should_rebuild(self, step: int) -> bool:
        """Return ``True`` on steps that fall on the rebuild cadence."""
        return step > 0 and step % self.config.rebuild_interval == 0

    def step(
        self, step_index: int, graph: CsrGraph, node_scalars: np.ndarray
    ) -> Optional[CsrGraph]:
        """Evolve ``graph`` when ``step_index`` is a rebuild step."""

        if not self.should_rebuild(step_index):
            return None
        return self.evolve_topology(graph, node_scalars, step=step_index)

    def capacity_report(self) -> dict:
        return {
            "addition_capacity": self.buffer.addition_capacity,
            "deletion_capacity": self.buffer.deletion_capacity,
            "generation": self.buffer.generation,
        }

    # ------------------------------------------------------------------
    def _transition(self, state: TopologyPhase) -> None:
        self.state = state
        self.transitions.append(state)

    @contextmanager
    def _phase(
        self, state: TopologyPhase, stats: DynamicTopologyStats
    ) -> Iterator[None]:
        self._transition(state)
        start = time.perf_counter()
        try:
            yield
        finally:
            stats.phase_ms[state.value] = (time.perf_counter() - start) * 1000.0

    def _mark(
        self, graph: CsrGraph, proposals: ProposalResult, protected: np.ndarray
    ) -> np.ndarray:
        if self.config.deletion_source is DeletionSource.MCMC:
            flags = np.zeros(graph.nnz, dtype=bool)
            flags[proposals.deletion_edges] = True
            flags = graph.mirror_closure(flags)
        else:
            flags = graph.edge_weights < self.config.deletion_threshold
        return flags & ~protected

    # ------------------------------------------------------------------
    def evolve_topology(
        self,
        graph: CsrGraph,
        node_scalars: np.ndarray,
        *,
        step: Optional[int] = None,
    ) -> Optional[CsrGraph]:
        """Run one rebuild of ``graph``.

        Parameters
        ----------
        graph:
            Current live topology.
        node_scalars:
            Per-node masses updated in place by the conservation phase.
        step:
            Optional simulation step used to tag log records.

        Returns
        -------
        CsrGraph or None
            The new graph, or ``None`` when no edge was flagged for deletion.

        Raises
        ------
        StructuralIntegrityError
            The rebuilt arrays failed verification.
        ConservationViolationError
            Conservation failed while ``strict_validation`` is enabled.
        """

        with self._lock:
            return self._evolve(graph, node_scalars, step)

    def _evolve(
        self, graph: CsrGraph, node_scalars: np.ndarray, step: Optional[int]
    ) -> Optional[CsrGraph]:
        cfg = self.config
        self.transitions = []
        self._transition(TopologyPhase.IDLE)
        self.current_graph = graph
        stats = DynamicTopologyStats(
            graph_version=graph.version,
            outcome=TopologyPhase.IDLE.value,
            deletion_source=cfg.deletion_source.value,
            old_nnz=graph.nnz,
            new_nnz=graph.nnz,
        )
        self.last_stats = stats
        snapshot = None
        if cfg.enable_conservation:
            snapshot = np.array(node_scalars, copy=True)
        graph.upload()

        try:
            with self._phase(TopologyPhase.PROPOSAL, stats):
                proposals = self.collector.collect(
                    graph,
                    additions=cfg.enable_additions,
                    deletions=cfg.deletion_source is DeletionSource.MCMC,
                )
            self._record_proposals(stats, proposals, step)

            with self._phase(TopologyPhase.MARK, stats):
                protected = self.selector.protected_mask(graph)
                stats.protection = self.selector.last_metrics
                flags = self._mark(graph, proposals, protected)
            stats.edges_marked = int(np.count_nonzero(flags & graph.canonical_mask()))

            if not flags.any():
                self._transition(TopologyPhase.NO_CHANGE)
                stats.outcome = TopologyPhase.NO_CHANGE.value
                self._publish_log(stats, step, "no_change")
                return None

            if cfg.enable_conservation:
                with self._phase(TopologyPhase.CONSERVE, stats):
                    stats.conservation = self.conservation.transfer(
                        graph, flags, node_scalars
                    )
                self._conservation_log(stats, step)

            add_a = proposals.addition_a
            add_b = proposals.addition_b
            add_w = proposals.addition_weight
            with self._phase(TopologyPhase.DEGREE, stats):
                degrees = self.degrees.compute(graph, flags, add_a, add_b)
            with self._phase(TopologyPhase.COMPACT, stats):
                result = self.compaction.rebuild(
                    graph, flags, add_a, add_b, add_w, final_degrees=degrees
                )
            with self._phase(TopologyPhase.VERIFY, stats):
                self.verifier.verify(
                    result.row_offsets, result.col_indices, graph.node_count, degrees
                )
            new_graph = graph.successor(
                result.row_offsets, result.col_indices, result.edge_weights
            )
        except Exception as exc:
            if snapshot is not None:
                node_scalars[...] = snapshot
            self._transition(TopologyPhase.ROLLED_BACK)
            stats.outcome = TopologyPhase.ROLLED_BACK.value
            stats.error = f"{type(exc).__name__}: {exc}"
            level = logging.WARNING if isinstance(exc, TopologyError) else logging.ERROR
            logger.log(level, "topology rebuild rolled back: %s", stats.error)
            self._publish_log(stats, step, "rollback")
            raise

        resident = graph.is_resident
        self.current_graph = new_graph
        graph.release()
        if resident:
            new_graph.upload()
        self._transition(TopologyPhase.PUBLISHED)
        self.rebuilds += 1
        stats.outcome = TopologyPhase.PUBLISHED.value
        stats.new_nnz = new_graph.nnz
        stats.edges_added = int(add_a.size)
        logger.info(
            "topology_rebuild",
            extra={
                "version": new_graph.version,
                "old_nnz": stats.old_nnz,
                "new_nnz": stats.new_nnz,
            },
        )
        self._publish_log(stats, step, "rebuild")
        return new_graph

    # Logging helpers -----------------------------------------------------
    def _record_proposals(
        self, stats: DynamicTopologyStats, proposals: ProposalResult, step: Optional[int]
    ) -> None:
        stats.additions_proposed = proposals.additions_attempted
        stats.additions_accepted = proposals.additions_accepted
        stats.additions_dropped = proposals.additions_dropped
        stats.deletions_proposed = proposals.deletions_attempted
        stats.deletions_accepted = proposals.deletions_accepted
        stats.deletions_dropped = proposals.deletions_dropped
        if proposals.additions_dropped or proposals.deletions_dropped:
            log_record(
                "event",
                "capacity_exceeded",
                step=step,
                value={
                    "additions_dropped": proposals.additions_dropped,
                    "deletions_dropped": proposals.deletions_dropped,
                    **self.capacity_report(),
                },
            )

    def _conservation_log(self, stats: DynamicTopologyStats, step: Optional[int]) -> None:
        cons = stats.conservation
        if cons is None:
            return
        log_entry(
            "conservation",
            "audit",
            ConservationAuditEntry(
                step=step,
                graph_version=stats.graph_version,
                payload=ConservationAuditPayload(
                    energy_before=cons.energy_before,
                    energy_transferred=cons.energy_transferred,
                    dying_edge_count=cons.dying_edge_count,
                    error=cons.error,
                    tolerance=cons.tolerance,
                    is_conserved=cons.is_conserved,
                    integrity_flags=int(cons.integrity_flags),
                ),
            ),
        )

    def _publish_log(
        self, stats: DynamicTopologyStats, step: Optional[int], label: str
    ) -> None:
        log_entry(
            "topology",
            label,
            TopologyRebuildEntry(
                step=step,
                graph_version=stats.graph_version,
                payload=TopologyRebuildPayload(
                    outcome=stats.outcome,
                    deletion_source=stats.deletion_source,
                    old_nnz=stats.old_nnz,
                    new_nnz=stats.new_nnz,
                    additions_proposed=stats.additions_proposed,
                    additions_accepted=stats.additions_accepted,
                    additions_dropped=stats.additions_dropped,
                    deletions_proposed=stats.deletions_proposed,
                    deletions_accepted=stats.deletions_accepted,
                    deletions_dropped=stats.deletions_dropped,
                    edges_marked=stats.edges_marked,
                    protected_edges=stats.protection.selected,
                    protection_method=stats.protection.method,
                    phase_ms=dict(stats.phase_ms),
                    error=stats.error,
                ),
            ),
        )
