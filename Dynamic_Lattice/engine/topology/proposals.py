"""Metropolis-Hastings edge addition and deletion proposals.

Two kernels run over the current graph:

* the addition kernel uses one logical thread per node ``a``; each thread draws
  a partner ``b`` from its xorshift32 stream and proposes ``{a, b}`` when the
  pair is ordered (``a < b``) and not yet connected;
* the deletion kernel uses one logical thread per flat edge entry; only the
  canonical orientation of edges lighter than ``deletion_threshold`` is
  considered.

A proposal is accepted with probability ``min(1, exp(-beta * dS) * q_ratio)``.
Accepted proposals reserve buffer slots through an atomic counter.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import numpy as np

from ..backend import dispatch
from ...graph.csr import CsrGraph
from .params import AdditionKernelParams, DeletionKernelParams, DynamicTopologyConfig
from .proposal_buffer import ProposalBuffer
from .rng import SeedTable, uniform_from_state, xorshift32_vec

logger = logging.getLogger(__name__)

__all__ = ["ProposalResult", "ProposalCollector", "acceptance_probability"]

# Keeps exp() finite; any larger exponent already saturates min(1, .).
_MAX_EXPONENT = 700.0


def acceptance_probability(
    delta_s: np.ndarray, beta: float, q_ratio: float
) -> np.ndarray:
    """Return ``min(1, exp(-beta * delta_s) * q_ratio)`` element-wise."""

    delta_s = np.asarray(delta_s, dtype=np.float64)
    if q_ratio <= 0.0:
        return np.zeros_like(delta_s)
    exponent = np.minimum(-beta * delta_s, _MAX_EXPONENT)
    return np.minimum(1.0, np.exp(exponent) * q_ratio)


@dataclass
class ProposalResult:
    """Accepted proposals copied out of the buffer after one collection."""

    addition_a: np.ndarray = field(default_factory=lambda: np.empty(0, np.int64))
    addition_b: np.ndarray = field(default_factory=lambda: np.empty(0, np.int64))
    addition_weight: np.ndarray = field(
        default_factory=lambda: np.empty(0, np.float64)
    )
    deletion_edges: np.ndarray = field(default_factory=lambda: np.empty(0, np.int64))
    additions_attempted: int = 0
    additions_accepted: int = 0
    additions_dropped: int = 0
    deletions_attempted: int = 0
    deletions_accepted: int = 0
    deletions_dropped: int = 0
    buffer_generation: int = 0

    @property
    def additions_stored(self) -> int:
        return int(self.addition_a.size)

    @property
    def deletions_stored(self) -> int:
        return int(self.deletion_edges.size)


class ProposalCollector:
    """Run the proposal kernels and collect accepted candidates.

    Parameters
    ----------
    config:
        Topology parameters.
    buffer:
        Buffer receiving accepted proposals. A new one sized from
        ``max_additions_per_step``/``max_deletions_per_step`` is created when
        omitted.
    seeds:
        Per-thread random states. Threads ``0..n-1`` drive additions and
        threads ``n..n+nnz-1`` drive deletions.
    block_size:
        Logical threads per dispatched block.
    workers:
        Thread pool size used for block dispatch.
    """

    def __init__(
        self,
        config: DynamicTopologyConfig,
        buffer: Optional[ProposalBuffer] = None,
        seeds: Optional[SeedTable] = None,
        *,
        block_size: Optional[int] = None,
        workers: Optional[int] = None,
    ) -> None:
        self.config = config
        self.buffer = buffer or ProposalBuffer(
            config.max_additions_per_step, config.max_deletions_per_step
        )
        self.seeds = seeds or SeedTable(config.seed)
        self.block_size = block_size
        self.workers = workers
        self._params: Dict[str, object] = {}
        self._fingerprints: Dict[str, str] = {}
        self.param_rebuilds = 0

    # ------------------------------------------------------------------
    def _kernel_params(
        self, graph: CsrGraph
    ) -> Tuple[AdditionKernelParams, DeletionKernelParams]:
        n = graph.node_count
        e = graph.undirected_edge_count()
        for key, builder in (
            ("add", AdditionKernelParams.build),
            ("del", DeletionKernelParams.build),
        ):
            candidate = builder(self.config, n, e)
            fp = candidate.fingerprint()
            if self._fingerprints.get(key) != fp:
                self._params[key] = candidate
                self._fingerprints[key] = fp
                self.param_rebuilds += 1
                logger.debug("rebuilt %s kernel parameters: %s", key, candidate)
        return self._params["add"], self._params["del"]  # type: ignore[return-value]

    def collect(
        self, graph: CsrGraph, *, additions: bool = True, deletions: bool = True
    ) -> ProposalResult:
        """Run the proposal kernels against ``graph``.

        Counters are reset first; the returned result holds copies of the
        stored proposals so later buffer growth does not affect it.
        """

        n = graph.node_count
        nnz = graph.nnz
        add_params, del_params = self._kernel_params(graph)
        self.seeds.ensure(n + nnz)
        self.buffer.reset()
        degrees = graph.degrees().astype(np.float64)

        add_attempted = 0
        if additions and n > 1:
            add_attempted = sum(
                dispatch.launch(
                    lambda b, s, t: self._addition_block(graph, add_params, degrees, s, t),
                    n,
                    block_size=self.block_size,
                    workers=self.workers,
                )
            )
        del_attempted = 0
        if deletions and nnz > 0:
            canonical = graph.canonical_mask()
            sources = graph.edge_sources()
            del_attempted = sum(
                dispatch.launch(
                    lambda b, s, t: self._deletion_block(
                        graph, del_params, degrees, canonical, sources, s, t
                    ),
                    nnz,
                    block_size=self.block_size,
                    workers=self.workers,
                )
            )

        buf = self.buffer
        add_a, add_b, add_w = buf.additions()
        _, _, _, del_e = buf.deletions()
        result = ProposalResult(
            addition_a=add_a.copy(),
            addition_b=add_b.copy(),
            addition_weight=add_w.copy(),
            deletion_edges=del_e.copy(),
            additions_attempted=int(add_attempted),
            additions_accepted=buf.addition_demand,
            additions_dropped=buf.dropped_additions,
            deletions_attempted=int(del_attempted),
            deletions_accepted=buf.deletion_demand,
            deletions_dropped=buf.dropped_deletions,
        )
        if result.additions_dropped or result.deletions_dropped:
            logger.warning(
                "proposal capacity exceeded: dropped %d additions, %d deletions",
                result.additions_dropped,
                result.deletions_dropped,
            )
        buf.grow_to_demand(addition_limit=n, deletion_limit=nnz)
        result.buffer_generation = buf.generation
        return result

    # Kernels -----------------------------------------------------------
    def _addition_block(
        self,
        graph: CsrGraph,
        params: AdditionKernelParams,
        degrees: np.ndarray,
        start: int,
        stop: int,
    ) -> int:
        n = params.node_count
        node_a = np.arange(start, stop, dtype=np.int64)
        first = xorshift32_vec(self.seeds.view(start, stop))
        node_b = (first % np.uint32(n)).astype(np.int64)
        valid = node_a < node_b
        if valid.any():
            idx = np.flatnonzero(valid)
            valid[idx] = graph.find_edges(node_a[idx], node_b[idx]) < 0
        t = params.target_degree
        delta_s = params.link_cost_coeff * (1.0 - params.initial_weight) + (
            params.degree_penalty_coeff
            * ((2.0 * (degrees[node_a] - t) + 1.0) + (2.0 * (degrees[node_b] - t) + 1.0))
        )
        prob = acceptance_probability(delta_s, params.beta, params.q_ratio)
        certain = prob >= 1.0
        second = xorshift32_vec(first)
        accept = valid & (certain | (uniform_from_state(second) < prob))
        self.seeds.store(start, np.where(valid & ~certain, second, first))
        count = int(np.count_nonzero(accept))
        if count:
            self.buffer.append_additions(
                node_a[accept],
                node_b[accept],
                np.full(count, params.initial_weight, dtype=np.float64),
            )
        return int(np.count_nonzero(valid))

    def _deletion_block(
        self,
        graph: CsrGraph,
        params: DeletionKernelParams,
        degrees: np.ndarray,
        canonical: np.ndarray,
        sources: np.ndarray,
        start: int,
        stop: int,
    ) -> int:
        n = params.node_count
        edge = np.arange(start, stop, dtype=np.int64)
        weight = graph.edge_weights[start:stop]
        src = sources[start:stop]
        dst = graph.col_indices[start:stop]
        candidate = canonical[start:stop] & (weight < params.deletion_threshold)
        old = self.seeds.view(n + start, n + stop)
        state = xorshift32_vec(old)
        self.seeds.store(n + start, np.where(candidate, state, old))
        if not candidate.any():
            return 0
        t = params.target_degree
        delta_s = -params.link_cost_coeff * (1.0 - weight) + (
            params.degree_penalty_coeff
            * ((-2.0 * (degrees[src] - t) + 1.0) + (-2.0 * (degrees[dst] - t) + 1.0))
        )
        prob = acceptance_probability(delta_s, params.beta, params.q_ratio)
        accept = candidate & ((prob >= 1.0) | (uniform_from_state(state) < prob))
        if accept.any():
            self.buffer.append_deletions(
                src[accept], dst[accept], weight[accept], edge[accept]
            )
        return int(np.count_nonzero(candidate))
