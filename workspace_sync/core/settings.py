"""Engine settings: YAML defaults with environment overrides."""
from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from workspace_sync.domain.errors import WorkspaceSyncError

logger = logging.getLogger(__name__)

CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"
DEFAULT_CONFIG_PATH = CONFIG_DIR / "sync.yaml"

ENV_CONFIG_PATH = "WORKSPACE_SYNC_CONFIG"
ENV_OVERRIDES: dict[str, str] = {
    "WORKSPACE_SYNC_MAX_WORKERS": "max_workers",
    "WORKSPACE_SYNC_CALL_TIMEOUT": "call_timeout",
    "WORKSPACE_SYNC_SNAPSHOT_MAX_AGE": "snapshot_max_age_seconds",
}


class SyncSettings(BaseModel):
    max_workers: int = Field(default=4, ge=1, le=32)
    call_timeout: float = Field(default=30.0, gt=0)
    snapshot_max_age_seconds: float = Field(default=3600.0, gt=0)
    security_groups: tuple[str, ...] = ("Project Administrators", "Contributors", "Readers")
    trash_sentinels: tuple[str, ...] = ("Recycle Bin", "Trash")
    classification_depth: int | None = Field(default=10, ge=1)
    query_depth: int | None = Field(default=None, ge=1)

    @field_validator("security_groups", "trash_sentinels", mode="before")
    @classmethod
    def _coerce_names(cls, value: object) -> object:
        if isinstance(value, str):
            return tuple(part.strip() for part in value.split(",") if part.strip())
        return value


def _read_yaml(path: Path) -> dict:
    if not path.exists():
        logger.debug("settings file %s not found; using defaults", path)
        return {}
    with path.open("r", encoding="utf-8") as fp:
        data = yaml.safe_load(fp) or {}
    if not isinstance(data, dict):
        raise WorkspaceSyncError(f"settings file {path} must contain a mapping")
    return data


def load_settings(path: Path | str | None = None) -> SyncSettings:
    """Load settings from ``path`` (or ``$WORKSPACE_SYNC_CONFIG``) plus env overrides."""

    config_path = Path(path or os.getenv(ENV_CONFIG_PATH) or DEFAULT_CONFIG_PATH).expanduser()
    data = _read_yaml(config_path)
    for env_name, key in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            data[key] = value
    try:
        return SyncSettings(**data)
    except ValidationError as exc:
        raise WorkspaceSyncError(f"invalid settings in {config_path}: {exc}") from exc


__all__ = ["SyncSettings", "load_settings"]
