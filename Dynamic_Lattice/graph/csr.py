"""Compressed sparse row container for the lattice topology."""

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np

from ..engine.backend import cupy_kernels

__all__ = ["CsrGraph"]


def _frozen(array: np.ndarray) -> np.ndarray:
    array.flags.writeable = False
    return array


def _check_structure(offsets: np.ndarray, cols: np.ndarray, n: int) -> None:
    if offsets[0] != 0 or np.any(np.diff(offsets) < 0):
        raise ValueError("row_offsets must start at 0 and never decrease")
    if cols.size == 0:
        return
    if cols.min() < 0 or cols.max() >= n:
        raise ValueError("col_indices out of range")
    # Lookups binary-search row * n + col, which needs rows sorted by column.
    rows = np.repeat(np.arange(n, dtype=np.int64), np.diff(offsets))
    if np.any(np.diff(rows * n + cols) < 0):
        raise ValueError("col_indices must be sorted within each row")


class CsrGraph:
    """Undirected graph stored as a symmetric CSR matrix.

    Structural arrays are read-only; a rebuild produces a new instance through
    :meth:`successor` with ``version`` incremented. ``node_potential`` is a
    per-node scalar field carried alongside the structure and remains writable.

    Parameters
    ----------
    row_offsets:
        ``node_count + 1`` non-decreasing offsets into the flat edge arrays.
    col_indices:
        Neighbour id of every flat entry, sorted within each row.
    edge_weights:
        Weight of every flat entry.
    node_potential:
        Optional per-node scalar field. Defaults to zeros.
    version:
        Structural generation of this instance.
    """

    def __init__(
        self,
        row_offsets: Sequence[int] | np.ndarray,
        col_indices: Sequence[int] | np.ndarray,
        edge_weights: Sequence[float] | np.ndarray,
        node_potential: Optional[Sequence[float] | np.ndarray] = None,
        *,
        version: int = 0,
    ) -> None:
        offsets = np.array(row_offsets, dtype=np.int64)
        cols = np.array(col_indices, dtype=np.int64)
        weights = np.array(edge_weights, dtype=np.float64)
        if offsets.ndim != 1 or offsets.size == 0:
            raise ValueError("row_offsets must be a non-empty 1-D array")
        n = offsets.size - 1
        if cols.shape != weights.shape:
            raise ValueError("col_indices and edge_weights must share a shape")
        if int(offsets[-1]) != cols.size:
            raise ValueError("row_offsets[-1] must equal the number of entries")
        _check_structure(offsets, cols, n)
        if node_potential is None:
            potential = np.zeros(n, dtype=np.float64)
        else:
            potential = np.array(node_potential, dtype=np.float64)
            if potential.shape != (n,):
                raise ValueError("node_potential must have one value per node")
        self.row_offsets = _frozen(offsets)
        self.col_indices = _frozen(cols)
        self.edge_weights = _frozen(weights)
        self.node_potential = potential
        self.version = int(version)
        self._sources: Optional[np.ndarray] = None
        self._mirror: Optional[np.ndarray] = None
        self._keys: Optional[np.ndarray] = None
        self._device: Optional[dict] = None

    # ------------------------------------------------------------------
    @classmethod
    def from_edge_list(
        cls,
        node_count: int,
        edges: Iterable[Tuple[int, int]],
        weights: Optional[Iterable[float]] = None,
        potential: Optional[Sequence[float]] = None,
        *,
        version: int = 0,
    ) -> "CsrGraph":
        """Build a symmetric graph from undirected ``edges``.

        Self-loops are discarded. When an edge is listed more than once the
        last weight wins.
        """

        pairs = np.array(list(edges), dtype=np.int64).reshape(-1, 2)
        if weights is None:
            w = np.ones(len(pairs), dtype=np.float64)
        else:
            w = np.array(list(weights), dtype=np.float64)
            if w.shape != (len(pairs),):
                raise ValueError("weights must have one value per edge")
        if pairs.size and (pairs.min() < 0 or pairs.max() >= node_count):
            raise ValueError("edge endpoint out of range")
        keep = pairs[:, 0] != pairs[:, 1]
        pairs, w = pairs[keep], w[keep]
        lo = pairs.min(axis=1)
        hi = pairs.max(axis=1)
        # Deduplicate undirected pairs first so both orientations agree.
        _, last = np.unique((lo * node_count + hi)[::-1], return_index=True)
        last = len(lo) - 1 - last
        lo, hi, w = lo[last], hi[last], w[last]
        src = np.concatenate([lo, hi])
        dst = np.concatenate([hi, lo])
        ww = np.concatenate([w, w])
        return cls.from_coo(node_count, src, dst, ww, potential, version=version)

    @classmethod
    def from_coo(
        cls,
        node_count: int,
        sources: np.ndarray,
        targets: np.ndarray,
        weights: np.ndarray,
        potential: Optional[Sequence[float]] = None,
        *,
        version: int = 0,
    ) -> "CsrGraph":
        """Build a graph from directed entries, keeping the last duplicate."""

        src = np.asarray(sources, dtype=np.int64)
        dst = np.asarray(targets, dtype=np.int64)
        w = np.asarray(weights, dtype=np.float64)
        keys = src * node_count + dst
        # Reverse so np.unique keeps the last occurrence.
        uniq, first = np.unique(keys[::-1], return_index=True)
        w = w[::-1][first]
        rows = uniq // node_count if node_count else uniq
        cols = uniq % node_count if node_count else uniq
        counts = np.bincount(rows, minlength=node_count)
        offsets = np.zeros(node_count + 1, dtype=np.int64)
        np.cumsum(counts, out=offsets[1:])
        return cls(offsets, cols, w, potential, version=version)

    @classmethod
    def from_networkx(cls, graph, weight: str = "weight", potential: str = "potential"):
        """Build a graph from a :mod:`networkx` graph with integer-labelled nodes."""

        nodes = sorted(graph.nodes())
        index = {node: i for i, node in enumerate(nodes)}
        edges = [(index[u], index[v]) for u, v in graph.edges()]
        weights = [float(d.get(weight, 1.0)) for _, _, d in graph.edges(data=True)]
        pot = [float(graph.nodes[n].get(potential, 0.0)) for n in nodes]
        return cls.from_edge_list(len(nodes), edges, weights, pot)

    def successor(
        self,
        row_offsets: np.ndarray,
        col_indices: np.ndarray,
        edge_weights: np.ndarray,
        node_potential: Optional[np.ndarray] = None,
    ) -> "CsrGraph":
        """Return the next structural generation of this graph."""

        if node_potential is None:
            node_potential = self.node_potential.copy()
        return CsrGraph(
            row_offsets,
            col_indices,
            edge_weights,
            node_potential,
            version=self.version + 1,
        )

    # ------------------------------------------------------------------
    @property
    def node_count(self) -> int:
        return int(self.row_offsets.size - 1)

    @property
    def nnz(self) -> int:
        return int(self.col_indices.size)

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return (
            f"CsrGraph(nodes={self.node_count}, nnz={self.nnz}, "
            f"version={self.version})"
        )

    def degree(self, node: int) -> int:
        return int(self.row_offsets[node + 1] - self.row_offsets[node])

    def degrees(self) -> np.ndarray:
        return np.diff(self.row_offsets)

    def neighbors(self, node: int) -> np.ndarray:
        return self.col_indices[self.row_offsets[node] : self.row_offsets[node + 1]]

    def neighbor_weights(self, node: int) -> np.ndarray:
        return self.edge_weights[self.row_offsets[node] : self.row_offsets[node + 1]]

    def edge_sources(self) -> np.ndarray:
        """Return the row id of every flat entry."""

        if self._sources is None:
            self._sources = _frozen(
                np.repeat(np.arange(self.node_count, dtype=np.int64), self.degrees())
            )
        return self._sources

    def _entry_keys(self) -> np.ndarray:
        # Rows are sorted, so ``row * n + col`` is globally ascending.
        if self._keys is None:
            self._keys = _frozen(
                self.edge_sources() * self.node_count + self.col_indices
            )
        return self._keys

    def find_edges(self, a: np.ndarray, b: np.ndarray) -> np.ndarray:
        """Vectorised :meth:`find_edge`; ``-1`` marks missing pairs."""

        a = np.asarray(a, dtype=np.int64)
        b = np.asarray(b, dtype=np.int64)
        keys = self._entry_keys()
        if keys.size == 0:
            return np.full(a.shape, -1, dtype=np.int64)
        wanted = a * self.node_count + b
        pos = np.searchsorted(keys, wanted)
        clipped = np.minimum(pos, keys.size - 1)
        found = (pos < keys.size) & (keys[clipped] == wanted)
        return np.where(found, clipped, -1)

    def find_edge(self, a: int, b: int) -> int:
        """Return the flat index of entry ``(a, b)`` or ``-1``."""

        if not (0 <= a < self.node_count and 0 <= b < self.node_count):
            return -1
        row = self.neighbors(a)
        pos = int(np.searchsorted(row, b))
        if pos < row.size and row[pos] == b:
            return int(self.row_offsets[a]) + pos
        return -1

    def has_edge(self, a: int, b: int) -> bool:
        return self.find_edge(a, b) >= 0

    def mirror_indices(self) -> np.ndarray:
        """Return the flat index of each entry's reverse orientation."""

        if self._mirror is None:
            self._mirror = _frozen(
                self.find_edges(self.col_indices, self.edge_sources())
            )
        return self._mirror

    def mirror_closure(self, mask: np.ndarray) -> np.ndarray:
        """Return ``mask`` with every selected entry's reverse also selected."""

        mask = np.asarray(mask, dtype=bool)
        if mask.shape != (self.nnz,):
            raise ValueError("mask must have one value per edge entry")
        out = mask.copy()
        mirror = self.mirror_indices()
        has_mirror = mirror >= 0
        out[mirror[has_mirror]] |= mask[has_mirror]
        return out

    def canonical_mask(self) -> np.ndarray:
        """Return ``True`` for one entry per undirected edge."""

        src = self.edge_sources()
        return (src < self.col_indices) | (self.mirror_indices() < 0)

    def undirected_edge_count(self) -> int:
        return int(np.count_nonzero(self.canonical_mask()))

    def to_edge_list(self) -> List[Tuple[int, int, float]]:
        mask = self.canonical_mask()
        src = self.edge_sources()[mask]
        dst = self.col_indices[mask]
        w = self.edge_weights[mask]
        return [(int(a), int(b), float(x)) for a, b, x in zip(src, dst, w)]

    def to_networkx(self):
        """Return the graph as an undirected :class:`networkx.Graph`."""

        import networkx as nx

        g = nx.Graph()
        for i, pot in enumerate(self.node_potential):
            g.add_node(i, potential=float(pot))
        for a, b, w in self.to_edge_list():
            g.add_edge(a, b, weight=w)
        return g

    # ------------------------------------------------------------------
    @property
    def is_resident(self) -> bool:
        return self._device is not None

    def upload(self) -> dict:
        """Mirror the arrays onto the active compute device."""

        if self._device is None:
            self._device = {
                "row_offsets": cupy_kernels.to_device(self.row_offsets),
                "col_indices": cupy_kernels.to_device(self.col_indices),
                "edge_weights": cupy_kernels.to_device(self.edge_weights),
            }
        return self._device

    def release(self) -> None:
        """Drop device mirrors; handles obtained from :meth:`upload` are stale."""

        self._device = None
