# main.py

"""Entry point for running topology evolution headless."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Any

from Dynamic_Lattice.config import Config, load_config


# Internal Config attributes that should not be exposed as CLI flags
_PRIVATE_KEYS = {
    "base_dir",
    "input_dir",
    "config_file",
    "graph_file",
    "output_root",
    "output_dir",
    "state_lock",
    "current_step",
    "DEFAULT_LOG_FILES",
    "log_files",
    "logging_mode",
}

_FLAG_TYPES = (bool, int, float, str, dict)


def _configure_logging() -> None:
    """Configure application logging and capture uncaught exceptions."""

    level = getattr(logging, str(Config.log_verbosity).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    def _log_excepthook(exc_type, exc, tb) -> None:
        logging.getLogger(__name__).exception(
            "Uncaught exception", exc_info=(exc_type, exc, tb)
        )

    sys.excepthook = _log_excepthook


def _add_config_args(
    parser: argparse.ArgumentParser, data: dict[str, Any], prefix: str = ""
) -> None:
    """Recursively add CLI flags based on ``data`` keys."""
    for key, value in data.items():
        if key in _PRIVATE_KEYS:
            continue
        arg_name = f"--{prefix}{key}"
        dest = f"{prefix}{key}".replace(".", "_")
        if isinstance(value, dict):
            _add_config_args(parser, value, prefix=f"{prefix}{key}.")
            continue
        if not isinstance(value, _FLAG_TYPES):
            continue
        if dest == "backend":
            parser.add_argument(arg_name, choices=["cpu", "cupy"], dest=dest)
            continue
        if isinstance(value, bool):
            parser.add_argument(arg_name, type=lambda x: x.lower() == "true", dest=dest)
        else:
            parser.add_argument(arg_name, type=type(value), dest=dest)


def _config_defaults() -> dict[str, Any]:
    """Return a dictionary of the plain settings defined on :class:`Config`."""
    defaults: dict[str, Any] = {}
    for key, value in Config.__dict__.items():
        if key.startswith("_") or key in _PRIVATE_KEYS:
            continue
        if not isinstance(value, _FLAG_TYPES):
            continue
        defaults[key] = value
    return defaults


def _merge_configs(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into ``base`` returning a new dict."""
    result: dict[str, Any] = {}
    keys = set(base) | set(override)
    for key in keys:
        if isinstance(base.get(key), dict) and isinstance(override.get(key), dict):
            result[key] = _merge_configs(base[key], override[key])
        elif key in override:
            result[key] = override[key]
        else:
            result[key] = base[key]
    return result


def _apply_overrides(
    args: argparse.Namespace, data: dict[str, Any], prefix: str = ""
) -> None:
    """Apply CLI overrides back onto :class:`Config`."""
    for key, value in data.items():
        full = f"{prefix}{key}"
        dest = full.replace(".", "_")
        override = getattr(args, dest, None)
        if override is not None:
            parts = full.split(".")
            target: Any = Config
            for part in parts[:-1]:
                target = target[part] if isinstance(target, dict) else getattr(target, part)
            if isinstance(target, dict):
                target[parts[-1]] = override
            else:
                setattr(target, parts[-1], override)
        elif isinstance(value, dict):
            _apply_overrides(args, value, prefix=f"{full}.")


@dataclass
class MainService:
    """Handle CLI parsing and the headless run loop."""

    argv: list[str] | None = None
    summaries: list[dict[str, Any]] = field(default_factory=list)

    def run(self) -> None:
        args, cfg = self._parse_args()
        _apply_overrides(args, cfg)
        self._apply_log_overrides(args)
        if args.output:
            Config.output_dir = os.path.abspath(args.output)
        _configure_logging()
        self._run_headless(quiet=args.quiet)

    # ------------------------------------------------------------------
    @staticmethod
    def _apply_log_overrides(args: argparse.Namespace) -> None:
        """Update :class:`Config.log_files` based on CLI flags."""

        mappings = {
            "topology": (args.enable_topology, args.disable_topology),
            "conservation": (args.enable_conservation, args.disable_conservation),
            "event": (args.enable_events, args.disable_events),
        }
        for cat, (en, dis) in mappings.items():
            cfg = Config.log_files.setdefault(cat, {})
            if en:
                for label in en.split(","):
                    label = label.strip()
                    if label:
                        cfg[label] = True
            if dis:
                for label in dis.split(","):
                    label = label.strip()
                    if label:
                        cfg[label] = False

    # ------------------------------------------------------------------
    def _parse_args(self) -> tuple[argparse.Namespace, dict[str, Any]]:
        initial = argparse.ArgumentParser(add_help=False)
        initial.add_argument(
            "--config",
            default=Config.input_path("config.json"),
            help="Path to JSON or YAML configuration file",
        )
        initial.add_argument(
            "--graph",
            default=Config.graph_file,
            help="Path to graph JSON file",
        )
        known, _ = initial.parse_known_args(self.argv)
        Config.graph_file = known.graph

        config_data: dict[str, Any] = {}
        if known.config and os.path.exists(known.config):
            config_data = load_config(known.config)
            initial.set_defaults(graph=Config.graph_file)

        parser = argparse.ArgumentParser(
            parents=[initial], description="Run Dynamic Lattice topology evolution"
        )
        defaults = _merge_configs(_config_defaults(), config_data)
        _add_config_args(parser, defaults)
        parser.add_argument(
            "--output", default=None, help="Directory receiving logs and results"
        )
        parser.add_argument(
            "--quiet", action="store_true", help="Do not print rebuild summaries"
        )
        for cat, plural in (
            ("topology", "topology"),
            ("conservation", "conservation"),
            ("events", "event"),
        ):
            parser.add_argument(
                f"--enable-{cat}",
                default="",
                help=f"Comma-separated {plural} labels to enable",
            )
            parser.add_argument(
                f"--disable-{cat}",
                default="",
                help=f"Comma-separated {plural} labels to disable",
            )
        args = parser.parse_args(self.argv)
        Config.graph_file = args.graph
        return args, defaults

    # ------------------------------------------------------------------
    @staticmethod
    def _load_lattice():
        from Dynamic_Lattice.graph import io as graph_io

        if Config.graph_file and os.path.exists(Config.graph_file):
            return graph_io.load_graph(Config.graph_file)
        spec = dict(Config.generator)
        kind = spec.pop("kind", "ring")
        logging.getLogger(__name__).info(
            "graph file %s not found; generating %s lattice", Config.graph_file, kind
        )
        return graph_io.generate(kind, **spec)

    def _run_headless(self, quiet: bool = False) -> None:
        """Run ``Config.max_steps`` steps, rebuilding on the configured cadence."""
        from Dynamic_Lattice.engine.logging.logger import flush_metrics
        from Dynamic_Lattice.engine.topology import (
            DynamicTopologyConfig,
            DynamicTopologyOrchestrator,
            TopologyError,
        )
        from Dynamic_Lattice.graph import io as graph_io

        log = logging.getLogger(__name__)
        lattice = self._load_lattice()
        params = DynamicTopologyConfig.from_config()
        if Config.run_seed:
            params = params.with_overrides(seed=int(Config.run_seed))
        orchestrator = DynamicTopologyOrchestrator(
            params,
            block_size=Config.kernel_block_size,
            workers=Config.kernel_workers,
        )
        graph = lattice.graph
        masses = lattice.masses
        for step in range(1, int(Config.max_steps) + 1):
            with Config.state_lock:
                Config.current_step = step
            try:
                new_graph = orchestrator.step(step, graph, masses)
            except TopologyError as exc:
                log.warning("step %d: rebuild rolled back (%s)", step, exc)
                new_graph = None
            if orchestrator.should_rebuild(step):
                summary = {"step": step, **orchestrator.last_stats.to_dict()}
                self.summaries.append(summary)
                if not quiet:
                    print(
                        json.dumps(
                            {
                                "step": step,
                                "outcome": summary["outcome"],
                                "old_nnz": summary["old_nnz"],
                                "new_nnz": summary["new_nnz"],
                                "version": (orchestrator.current_graph or graph).version,
                            }
                        )
                    )
            if new_graph is not None:
                graph = new_graph
            if step % max(1, int(Config.log_interval)) == 0:
                flush_metrics(step)

        lattice.graph = graph
        os.makedirs(Config.output_dir, exist_ok=True)
        graph_io.save_graph(Config.output_path("graph_final.json"), lattice)


def main(argv: list[str] | None = None) -> None:
    MainService(argv=argv).run()


if __name__ == "__main__":
    main()
