import json

import pytest

from Dynamic_Lattice.config import Config, load_config
from Dynamic_Lattice.engine.topology.params import (
    DeletionSource,
    DynamicTopologyConfig,
    TopKStrategy,
)


def test_load_from_file_resolves_paths(tmp_path):
    cfg = tmp_path / "config.json"
    cfg.write_text(json.dumps({"graph_file": "g.json", "output_dir": "out"}))
    original = (Config.graph_file, Config.output_dir, Config.config_file)
    try:
        Config.load_from_file(str(cfg))
        assert Config.graph_file == str(tmp_path / "g.json")
        assert Config.output_dir == str(tmp_path / "out")
    finally:
        Config.graph_file, Config.output_dir, Config.config_file = original


def test_dict_groups_merge_and_unknown_keys_ignored(tmp_path):
    cfg = tmp_path / "config.json"
    cfg.write_text(
        json.dumps({"dynamic_topology": {"beta": 2.5}, "not_a_setting": 1})
    )
    original_file = Config.config_file
    try:
        Config.load_from_file(str(cfg))
        assert Config.dynamic_topology["beta"] == 2.5
        assert Config.dynamic_topology["rebuild_interval"] == 10
        assert not hasattr(Config, "not_a_setting")
    finally:
        Config.config_file = original_file


def test_yaml_config(tmp_path):
    cfg = tmp_path / "config.yaml"
    cfg.write_text("dynamic_topology:\n  deletion_source: mcmc\n")
    original_file = Config.config_file
    try:
        data = load_config(str(cfg))
        assert data == {"dynamic_topology": {"deletion_source": "mcmc"}}
        params = DynamicTopologyConfig.from_config()
        assert params.deletion_source is DeletionSource.MCMC
    finally:
        Config.config_file = original_file


def test_missing_and_malformed_files(tmp_path):
    with pytest.raises(FileNotFoundError):
        Config.load_from_file(str(tmp_path / "missing.json"))
    bad = tmp_path / "list.json"
    bad.write_text("[1, 2]")
    with pytest.raises(ValueError):
        Config.load_from_file(str(bad))


def test_logging_mode_filters_categories(monkeypatch):
    monkeypatch.setattr(Config, "logging_mode", ["topology"])
    assert Config.is_log_enabled("topology", "rebuild")
    assert not Config.is_log_enabled("conservation", "audit")
    assert not Config.is_log_enabled("topology", "no_change")


def test_topology_config_coercion_and_validation():
    cfg = DynamicTopologyConfig(topk_strategy="block_top_m", topk_local_m=20)
    assert cfg.topk_strategy is TopKStrategy.BLOCK_TOP_M
    assert cfg.topk_local_m == 8
    assert cfg.to_dict()["topk_strategy"] == "block_top_m"
    for bad in (
        {"beta": -1.0},
        {"rebuild_interval": 0},
        {"max_additions_per_step": -1},
        {"max_protected_heavy_edges": -2},
        {"conservation_tolerance": -1e-3},
        {"deletion_source": "random"},
    ):
        with pytest.raises(ValueError):
            DynamicTopologyConfig(**bad)


def test_fingerprint_tracks_changes():
    cfg = DynamicTopologyConfig()
    assert cfg.fingerprint() == DynamicTopologyConfig().fingerprint()
    assert cfg.fingerprint() != cfg.with_overrides(beta=1.5).fingerprint()
    assert DynamicTopologyConfig.from_mapping({"beta": 0.5, "extra": 1}).beta == 0.5
