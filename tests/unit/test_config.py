import json

import pytest

from lafsbackup import config as config_module


def _prepare_config(tmp_path, monkeypatch):
    config_dir = tmp_path / "config"
    config_file = config_dir / "config.json"
    monkeypatch.setattr(config_module, "CONFIG_DIR", config_dir)
    monkeypatch.setattr(config_module, "CONFIG_FILE", config_file)
    monkeypatch.delenv(config_module.ENV_NODE_URL, raising=False)
    return config_file


def test_load_config_defaults(tmp_path, monkeypatch):
    _prepare_config(tmp_path, monkeypatch)

    cfg = config_module.load_config()

    assert cfg.node_url == config_module.DEFAULT_NODE_URL
    assert cfg.database is None
    assert cfg.threads == config_module.DEFAULT_THREADS
    assert cfg.excludes == []
    assert cfg.ctime_policy == "strict"
    assert cfg.reuse_identity is False
    assert cfg.reupload_after_days == 0


def test_setters_persist_values(tmp_path, monkeypatch):
    config_file = _prepare_config(tmp_path, monkeypatch)

    config_module.set_node_url("gateway.local:3456/uri/")
    config_module.set_threads(8)
    config_module.set_ctime_policy("Relaxed")
    config_module.set_reuse_identity(True)
    config_module.set_reupload_after_days(30)

    stored = json.loads(config_file.read_text())
    assert stored["node_url"] == "http://gateway.local:3456"
    assert stored["threads"] == 8
    assert stored["ctime_policy"] == "relaxed"
    assert stored["reuse_identity"] is True
    assert stored["reupload_after_days"] == 30


def test_invalid_values_are_rejected(tmp_path, monkeypatch):
    config_file = _prepare_config(tmp_path, monkeypatch)

    with pytest.raises(ValueError):
        config_module.set_threads(0)
    with pytest.raises(ValueError):
        config_module.set_ctime_policy("never")
    with pytest.raises(ValueError):
        config_module.set_reupload_after_days(-1)
    with pytest.raises(ValueError):
        config_module.set_node_url("ftp://example.com")
    assert not config_file.exists()


def test_excludes_merge_and_clear(tmp_path, monkeypatch):
    _prepare_config(tmp_path, monkeypatch)

    config_module.add_excludes(["*.tmp", " .cache/ "])
    config_module.add_excludes(["*.tmp", "build/"])
    assert config_module.load_config().excludes == ["*.tmp", ".cache/", "build/"]

    config_module.clear_excludes()
    assert config_module.load_config().excludes == []


def test_load_config_coerces_bad_values(tmp_path, monkeypatch):
    config_file = _prepare_config(tmp_path, monkeypatch)
    config_file.parent.mkdir(parents=True)
    config_file.write_text(
        json.dumps({"threads": 0, "ctime_policy": "sometimes", "excludes": "nope"})
    )

    cfg = config_module.load_config()

    assert cfg.threads == 1
    assert cfg.ctime_policy == "strict"
    assert cfg.excludes == []


def test_resolve_database_path_prefers_override(tmp_path, monkeypatch):
    _prepare_config(tmp_path, monkeypatch)
    cfg = config_module.Config()

    assert config_module.resolve_database_path(cfg) == tmp_path / "config" / "backup.db"
    cfg.database = str(tmp_path / "custom.db")
    assert config_module.resolve_database_path(cfg) == tmp_path / "custom.db"
    assert config_module.resolve_database_path(cfg, tmp_path / "cli.db") == tmp_path / "cli.db"


def test_resolve_node_url_order(tmp_path, monkeypatch):
    _prepare_config(tmp_path, monkeypatch)
    monkeypatch.setattr(config_module, "load_dotenv", lambda: None)
    cfg = config_module.Config(node_url="http://from-config:1")

    assert config_module.resolve_node_url(cfg) == "http://from-config:1"
    monkeypatch.setenv(config_module.ENV_NODE_URL, "from-env:2")
    assert config_module.resolve_node_url(cfg) == "http://from-env:2"
    assert config_module.resolve_node_url(cfg, "https://cli:3/") == "https://cli:3"


def test_config_dir_context_overrides_location(tmp_path, monkeypatch):
    _prepare_config(tmp_path, monkeypatch)
    override = tmp_path / "elsewhere"

    with config_module.config_dir_context(override):
        config_module.set_threads(2)
        assert (override / "config.json").exists()
        assert (
            config_module.resolve_database_path(config_module.Config())
            == override.resolve() / "backup.db"
        )

    assert config_module.load_config().threads == config_module.DEFAULT_THREADS
