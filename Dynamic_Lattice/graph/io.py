"""File IO and generators for :mod:`Dynamic_Lattice.graph`."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, List, Optional

import numpy as np

from .csr import CsrGraph


@dataclass
class LatticeFile:
    """Graph plus the per-node masses stored alongside it."""

    graph: CsrGraph
    masses: np.ndarray
    labels: List[str] = field(default_factory=list)


def load_graph(path: str) -> LatticeFile:
    """Load a graph from ``path``.

    ``nodes`` may be a list of objects with an ``id`` or a mapping of id to
    attributes; ``mass`` and ``potential`` default to zero. Edges list
    ``from``/``to`` ids and an optional ``weight`` (default ``1.0``).
    """
    with open(path) as f:
        data = json.load(f)
    _validate_graph(data)
    return from_dict(data)


def from_dict(data: dict[str, Any]) -> LatticeFile:
    nodes = data["nodes"]
    if isinstance(nodes, dict):
        items = [(str(k), v or {}) for k, v in nodes.items()]
    else:
        items = [(str(n["id"]), n) for n in nodes]
    labels = [label for label, _ in items]
    index = {label: i for i, label in enumerate(labels)}
    masses = np.array([float(a.get("mass", 0.0)) for _, a in items])
    potential = np.array([float(a.get("potential", 0.0)) for _, a in items])
    edges = []
    weights = []
    for edge in data["edges"]:
        src, dst = str(edge["from"]), str(edge["to"])
        if src not in index or dst not in index:
            raise ValueError(f"edge references unknown node {src!r} -> {dst!r}")
        edges.append((index[src], index[dst]))
        weights.append(float(edge.get("weight", 1.0)))
    graph = CsrGraph.from_edge_list(len(labels), edges, weights, potential)
    return LatticeFile(graph, masses, labels)


def to_dict(lattice: LatticeFile) -> dict[str, Any]:
    graph = lattice.graph
    labels = lattice.labels or [str(i) for i in range(graph.node_count)]
    nodes = {
        labels[i]: {
            "mass": float(lattice.masses[i]),
            "potential": float(graph.node_potential[i]),
        }
        for i in range(graph.node_count)
    }
    edges = [
        {"from": labels[a], "to": labels[b], "weight": w}
        for a, b, w in graph.to_edge_list()
    ]
    return {"nodes": nodes, "edges": edges}


def save_graph(path: str, lattice: LatticeFile) -> None:
    """Write ``lattice`` to ``path`` in JSON format."""
    with open(path, "w") as f:
        json.dump(to_dict(lattice), f, indent=2)


def ring_graph(nodes: int, weight: float = 0.5, mass: float = 1.0) -> LatticeFile:
    """Return a cycle ``0-1-...-(n-1)-0`` with uniform weights."""
    if nodes < 3:
        raise ValueError("a ring needs at least three nodes")
    edges = [(i, (i + 1) % nodes) for i in range(nodes)]
    graph = CsrGraph.from_edge_list(nodes, edges, [weight] * nodes)
    return LatticeFile(graph, np.full(nodes, float(mass)))


def lattice_graph(
    rows: int,
    cols: int,
    weight: float = 0.5,
    mass: float = 1.0,
    periodic: bool = True,
) -> LatticeFile:
    """Return a 2-D square lattice, toroidal when ``periodic``."""
    import networkx as nx

    g = nx.grid_2d_graph(rows, cols, periodic=periodic)
    g = nx.convert_node_labels_to_integers(g, ordering="sorted")
    nx.set_edge_attributes(g, float(weight), "weight")
    graph = CsrGraph.from_networkx(g)
    return LatticeFile(graph, np.full(graph.node_count, float(mass)))


def random_graph(
    nodes: int,
    probability: float,
    weight_range: tuple[float, float] = (0.0, 1.0),
    mass: float = 1.0,
    seed: Optional[int] = None,
) -> LatticeFile:
    """Return an Erdos-Renyi graph with uniform random weights."""
    import networkx as nx

    g = nx.gnp_random_graph(nodes, probability, seed=seed)
    rng = np.random.default_rng(seed)
    lo, hi = weight_range
    for u, v in g.edges():
        g[u][v]["weight"] = float(rng.uniform(lo, hi))
    graph = CsrGraph.from_networkx(g)
    return LatticeFile(graph, np.full(graph.node_count, float(mass)))


def generate(kind: str, **params: Any) -> LatticeFile:
    """Build a generated graph by ``kind`` name."""
    if kind == "ring":
        return ring_graph(
            int(params.get("nodes", 64)),
            float(params.get("weight", 0.5)),
            float(params.get("mass", 1.0)),
        )
    if kind == "lattice":
        side = int(params.get("side", 8))
        return lattice_graph(
            int(params.get("rows", side)),
            int(params.get("cols", side)),
            float(params.get("weight", 0.5)),
            float(params.get("mass", 1.0)),
            bool(params.get("periodic", True)),
        )
    if kind == "random":
        return random_graph(
            int(params.get("nodes", 64)),
            float(params.get("probability", 0.1)),
            mass=float(params.get("mass", 1.0)),
            seed=params.get("seed"),
        )
    raise ValueError(f"unknown graph kind: {kind}")


def _validate_graph(data: dict[str, Any]) -> None:
    if "nodes" not in data or "edges" not in data:
        raise ValueError("Graph file must contain 'nodes' and 'edges'")
    if not isinstance(data["nodes"], (dict, list)):
        raise ValueError("'nodes' must be a dict or list")
    if isinstance(data["nodes"], list):
        for node in data["nodes"]:
            if not isinstance(node, dict) or "id" not in node:
                raise ValueError("node entries must be objects with an 'id'")
    if not isinstance(data["edges"], list):
        raise ValueError("'edges' must be a list")
    for edge in data["edges"]:
        if not isinstance(edge, dict):
            raise ValueError("edge entries must be objects")
        if "from" not in edge or "to" not in edge:
            raise ValueError("edge missing 'from' or 'to'")
