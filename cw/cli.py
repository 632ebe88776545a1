"""Console entrypoint for the ``cw`` command."""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import List, Optional

import yaml

from invariants import checks


def _inspect(path: Path, strict: bool) -> dict:
    from Dynamic_Lattice.engine.topology import TopologyVerifier
    from Dynamic_Lattice.graph.io import load_graph

    lattice = load_graph(str(path))
    graph = lattice.graph
    report = TopologyVerifier(strict=strict).check(
        graph.row_offsets, graph.col_indices, graph.node_count
    )
    degrees = graph.degrees()
    return {
        "graph": str(path),
        "nodes": graph.node_count,
        "entries": graph.nnz,
        "edges": graph.undirected_edge_count(),
        "mean_degree": float(degrees.mean()) if degrees.size else 0.0,
        "max_degree": int(degrees.max()) if degrees.size else 0,
        "total_mass": float(lattice.masses.sum()),
        "csr_valid": report.ok,
        "symmetric": checks.symmetric(graph),
        "no_self_loops": checks.no_self_loops(graph),
        "failures": report.failures,
    }


def main(argv: Optional[List[str]] = None) -> int:
    """Parse ``cw`` CLI arguments and dispatch to the runner."""

    parser = argparse.ArgumentParser(prog="cw")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run topology evolution headless")
    inspect_p = sub.add_parser("inspect", help="Summarise and verify a graph file")
    inspect_p.add_argument("graph", help="Graph JSON file")
    inspect_p.add_argument(
        "--lenient",
        action="store_true",
        help="Skip duplicate/sorted column checks",
    )
    inspect_p.add_argument(
        "--format", choices=["json", "yaml"], default="json", help="Output format"
    )

    args, rest = parser.parse_known_args(argv)
    if args.command == "run":
        from Dynamic_Lattice.main import MainService

        MainService(argv=rest).run()
        return 0
    summary = _inspect(Path(args.graph), strict=not args.lenient)
    if args.format == "yaml":
        print(yaml.safe_dump(summary, sort_keys=False), end="")
    else:
        print(json.dumps(summary, indent=2))
    return 0 if summary["csr_valid"] else 1


if __name__ == "__main__":
    raise SystemExit(main())
