from pathlib import Path

import pytest
import yaml

from chunkbatch.config import BatchConfig, ConfigError, get_chunkbatch_home, load_config


def test_get_chunkbatch_home_default(monkeypatch):
    monkeypatch.delenv("CHUNKBATCH_HOME", raising=False)
    home = get_chunkbatch_home()
    assert home == Path("~/.config/chunkbatch").expanduser()


def test_get_chunkbatch_home_env_var(monkeypatch, tmp_path):
    custom_home = tmp_path / "custom_home"
    monkeypatch.setenv("CHUNKBATCH_HOME", str(custom_home))
    assert get_chunkbatch_home() == custom_home


def test_load_config_missing_file(monkeypatch, tmp_path):
    monkeypatch.setenv("CHUNKBATCH_HOME", str(tmp_path))
    with pytest.raises(FileNotFoundError, match="chunkbatch config.yaml not found"):
        load_config()


def test_load_config_valid(monkeypatch, tmp_path):
    monkeypatch.setenv("CHUNKBATCH_HOME", str(tmp_path))
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.dump({
        "tracker_path": str(tmp_path / "executions.db"),
        "target_database": str(tmp_path / "target.db"),
        "default_chunk_size": 50,
        "log_format": "structured",
    }))

    cfg = load_config()
    assert isinstance(cfg, BatchConfig)
    assert cfg.tracker_path == str(tmp_path / "executions.db")
    assert cfg.default_chunk_size == 50
    assert cfg.default_skip_limit == 0
    assert cfg.log_format == "structured"


def test_load_config_explicit_path(tmp_path):
    config_path = tmp_path / "elsewhere.yaml"
    config_path.write_text(yaml.dump({"tracker_path": "a.db", "target_database": "b.db"}))
    cfg = load_config(config_path)
    assert cfg.target_database == "b.db"


def test_load_config_expands_user(tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.dump({"tracker_path": "~/executions.db", "target_database": "~/target.db"}))
    cfg = load_config(config_path)
    assert cfg.tracker_path == str(Path("~/executions.db").expanduser())


def test_load_config_invalid_yaml(tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("tracker_path: [unclosed")
    with pytest.raises(ConfigError, match="Invalid YAML"):
        load_config(config_path)


def test_load_config_not_a_mapping(tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("- just\n- a list\n")
    with pytest.raises(ConfigError, match="mapping"):
        load_config(config_path)


def test_load_config_unknown_key(tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.dump({"tracker_path": "a.db", "target_database": "b.db", "project": "x"}))
    with pytest.raises(ConfigError, match="Unknown config keys: project"):
        load_config(config_path)


def test_load_config_missing_required(tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.dump({"tracker_path": "a.db"}))
    with pytest.raises(ConfigError, match="target_database"):
        load_config(config_path)


def test_invalid_values_rejected():
    with pytest.raises(ConfigError, match="default_chunk_size"):
        BatchConfig(tracker_path="a.db", target_database="b.db", default_chunk_size=0)
    with pytest.raises(ConfigError, match="log_format"):
        BatchConfig(tracker_path="a.db", target_database="b.db", log_format="xml")


def test_default_rooted_at_home(tmp_path):
    cfg = BatchConfig.default(tmp_path)
    assert cfg.tracker_path == str(tmp_path / "executions.db")
    assert cfg.target_database == str(tmp_path / "target.db")
    assert cfg.default_chunk_size == 200


def test_to_dict_round_trips_through_yaml(tmp_path):
    cfg = BatchConfig.default(tmp_path)
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.safe_dump(cfg.to_dict()))
    assert load_config(config_path) == cfg
