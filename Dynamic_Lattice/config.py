# config.py

import os
import threading


class Config:
    """Global configuration loaded from ``input/config.json``.

    Attributes
    ----------
    backend:
        Compute backend to use: ``"cpu"`` (default) or ``"cupy"``.
    cupy_kernels:
        When ``True`` and :attr:`backend` is ``"cupy"`` the block kernels run
        on the GPU through CuPy arrays.
    kernel_workers:
        Number of worker threads used to dispatch kernel blocks. A single
        worker keeps proposal slots in block order.
    kernel_block_size:
        Number of logical threads handled by one kernel block.
    dynamic_topology:
        Parameters controlling topology evolution. Keys mirror the fields of
        :class:`~Dynamic_Lattice.engine.topology.params.DynamicTopologyConfig`
        such as ``beta``, ``link_cost_coeff``, ``target_degree``,
        ``deletion_threshold`` and ``rebuild_interval``.
    graph_file:
        Path to the graph JSON file used by the headless runner.
    generator:
        Fallback lattice generated when no graph file exists. ``kind`` is
        ``"ring"`` or ``"lattice"``.
    max_steps:
        Number of simulation steps executed by the headless runner.
    log_files:
        Mapping of ``category`` -> {``label``: bool} controlling which JSON
        line records are written.
    """

    # Base directories for package resources
    base_dir = os.path.abspath(os.path.dirname(__file__))
    input_dir = os.path.join(base_dir, "input")
    config_file = os.path.join(input_dir, "config.json")
    graph_file = os.path.join(input_dir, "graph.json")
    output_root = os.path.join(base_dir, "output")
    output_dir = output_root

    @staticmethod
    def input_path(*parts: str) -> str:
        """Return absolute path under the ``input`` directory."""
        return os.path.join(Config.input_dir, *parts)

    @staticmethod
    def output_path(*parts: str) -> str:
        """Return absolute path under the current output directory."""
        return os.path.join(Config.output_dir, *parts)

    # Synchronization lock for cross-thread state access
    state_lock = threading.Lock()

    max_steps = 100  # Steps executed by the headless runner
    current_step = 0
    run_seed = 0  # Seed for reproducible runs
    #: Compute backend; ``"cpu"`` or ``"cupy"``
    backend = "cpu"
    cupy_kernels = True
    kernel_workers = 1
    kernel_block_size = 1024

    #: Topology evolution parameters
    dynamic_topology = {
        "beta": 1.0,
        "link_cost_coeff": 0.1,
        "target_degree": 4.0,
        "degree_penalty_coeff": 0.01,
        "initial_weight": 0.5,
        "deletion_threshold": 0.001,
        "rebuild_interval": 10,
        "max_additions_per_step": 100,
        "max_deletions_per_step": 100,
        "max_protected_heavy_edges": 0,
        "topk_strategy": "auto",
        "topk_local_m": 4,
        "enable_additions": True,
        "enable_conservation": False,
        "conservation_tolerance": 1e-6,
        "energy_conversion_factor": 1.0,
        "flux_conversion_factor": 1.0,
        "strict_validation": False,
        "strict_verification": True,
        "deletion_source": "threshold",
        "use_proposal_ratio": True,
        "seed": 42,
    }

    #: Graph generated when ``graph_file`` does not exist
    generator = {"kind": "ring", "nodes": 64, "weight": 0.5, "mass": 1.0}

    # Mapping of ``category`` -> {``label``: bool} controlling which logs are
    # written. Categories correspond to ``<category>_log.jsonl`` files.
    DEFAULT_LOG_FILES = {
        "topology": {
            "rebuild": True,
            "rollback": True,
            "no_change": False,
        },
        "conservation": {
            "audit": True,
        },
        "event": {
            "topk_fallback": True,
            "capacity_exceeded": True,
        },
    }

    # Default runtime copy
    log_files = {k: dict(v) for k, v in DEFAULT_LOG_FILES.items()}

    #: Allowed logging modes. ``diagnostic`` enables all logs, otherwise only
    #: the listed categories are written.
    logging_mode = ["diagnostic"]

    # interval between metric logs
    log_interval = 1
    log_verbosity = "info"

    @classmethod
    def is_category_enabled(cls, category: str) -> bool:
        """Return ``True`` if ``category`` should be written based on mode."""
        mode = set(getattr(cls, "logging_mode", ["diagnostic"]))
        return "diagnostic" in mode or category in mode

    @classmethod
    def is_log_enabled(cls, category: str, label: str | None = None) -> bool:
        """Return ``True`` if a log entry should be written."""

        cfg = cls.log_files.get(category, {})
        if label is not None and not cfg.get(label, True):
            return False
        return cls.is_category_enabled(category)

    @classmethod
    def load_from_file(cls, path: str) -> None:
        """Load configuration values from a JSON or YAML file.

        Only keys that already exist as attributes on ``Config`` will be
        assigned. Dictionaries are merged when the existing attribute is also
        a ``dict``. Relative ``graph_file`` and ``output_dir`` values are
        resolved relative to the directory containing ``path``.

        Parameters
        ----------
        path:
            Path to the configuration file. ``.yaml`` and ``.yml`` files are
            parsed with :mod:`yaml`, anything else as JSON.
        """
        if not os.path.exists(path):
            raise FileNotFoundError(path)
        data = _read_mapping(path)
        cls.config_file = os.path.abspath(path)
        base_dir = os.path.dirname(cls.config_file)

        for key, value in data.items():
            if not hasattr(cls, key):
                continue
            if key in {"graph_file", "output_dir"} and not os.path.isabs(value):
                value = os.path.abspath(os.path.join(base_dir, value))
            current = getattr(cls, key)
            if isinstance(current, dict) and isinstance(value, dict):
                current.update(value)
            else:
                setattr(cls, key, value)


def _read_mapping(path: str) -> dict:
    with open(path) as f:
        if path.endswith((".yaml", ".yml")):
            import yaml

            data = yaml.safe_load(f) or {}
        else:
            import json

            data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a mapping")
    return data


def load_config(path: str | None = None) -> dict:
    """Load configuration from ``path`` and return the data."""
    if path is None:
        path = Config.input_path("config.json")
    Config.load_from_file(path)
    return _read_mapping(path)
