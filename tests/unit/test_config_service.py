from __future__ import annotations

from lafsbackup import config as config_module
from lafsbackup.services.config_service import apply_config_updates, get_config_snapshot


def test_apply_config_updates_reports_changes(tmp_path, monkeypatch):
    monkeypatch.setattr(config_module, "CONFIG_DIR", tmp_path)
    monkeypatch.setattr(config_module, "CONFIG_FILE", tmp_path / "config.json")

    untouched = apply_config_updates()
    assert untouched.changed is False

    result = apply_config_updates(
        threads=3,
        reupload_after_days=7,
        excludes=["*.bak"],
        clear_exclude_patterns=True,
    )

    assert result.changed is True
    assert result.threads_set and result.reupload_after_set
    assert result.excludes_cleared and result.excludes_added
    snapshot = get_config_snapshot()
    assert snapshot.threads == 3
    assert snapshot.reupload_after_days == 7
    assert snapshot.excludes == ["*.bak"]
