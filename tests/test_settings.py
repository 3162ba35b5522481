from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from workspace_sync.core.settings import load_settings
from workspace_sync.domain.errors import WorkspaceSyncError


def test_packaged_defaults():
    settings = load_settings()

    assert settings.max_workers == 4
    assert settings.call_timeout == 30.0
    assert settings.security_groups == ("Project Administrators", "Contributors", "Readers")
    assert settings.trash_sentinels == ("Recycle Bin", "Trash")
    assert settings.query_depth is None


def test_missing_file_falls_back_to_defaults(tmp_path):
    settings = load_settings(tmp_path / "absent.yaml")

    assert settings.snapshot_max_age_seconds == 3600


def test_yaml_file_and_env_overrides(tmp_path, monkeypatch):
    config = tmp_path / "sync.yaml"
    config.write_text("max_workers: 2\nsecurity_groups: Readers, Contributors\n", encoding="utf-8")
    monkeypatch.setenv("WORKSPACE_SYNC_CONFIG", str(config))
    monkeypatch.setenv("WORKSPACE_SYNC_CALL_TIMEOUT", "5")

    settings = load_settings()

    assert settings.max_workers == 2
    assert settings.call_timeout == 5.0
    assert settings.security_groups == ("Readers", "Contributors")


def test_non_mapping_file_is_rejected(tmp_path):
    config = tmp_path / "sync.yaml"
    config.write_text("- max_workers\n", encoding="utf-8")

    with pytest.raises(WorkspaceSyncError):
        load_settings(config)


def test_out_of_range_value_is_rejected(monkeypatch):
    monkeypatch.setenv("WORKSPACE_SYNC_MAX_WORKERS", "0")

    with pytest.raises(WorkspaceSyncError, match="invalid settings"):
        load_settings()
