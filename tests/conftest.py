from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from workspace_sync.core.schema import AREA, GroupMember, ITERATION
from workspace_sync.core.settings import SyncSettings
from workspace_sync.infrastructure.memory import InMemoryWorkspaceClient

ALICE = GroupMember(display_name="Alice", email="alice@example.com", principal_name="alice@example.com")
BOB = GroupMember(display_name="Bob", email="bob@example.com", principal_name="bob@example.com")
CAROL = GroupMember(display_name="Carol", email="carol@example.com", principal_name="carol@example.com")

DEFAULT_GROUPS = ("Project Administrators", "Contributors", "Readers")


def seed_workspace(client: InMemoryWorkspaceClient, ws_id: str, name: str) -> None:
    """Populate a workspace with one record of every entity type."""

    client.add_work_item(ws_id, "Login page", "User Story", state="Active", area_path=f"{name}\\Web")
    client.add_classification_path(ws_id, AREA, "Web")
    client.add_classification_path(ws_id, ITERATION, "Sprint 1")
    client.add_query(
        ws_id,
        "Shared Queries/Team/Active",
        f"SELECT [System.Id] FROM WorkItems WHERE [System.TeamProject] = '{name}' AND [System.State] = 'Active'",
    )
    for group in DEFAULT_GROUPS:
        client.set_group(ws_id, group, [ALICE])


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    for name in (
        "WORKSPACE_SYNC_CONFIG",
        "WORKSPACE_SYNC_MAX_WORKERS",
        "WORKSPACE_SYNC_CALL_TIMEOUT",
        "WORKSPACE_SYNC_SNAPSHOT_MAX_AGE",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def settings() -> SyncSettings:
    return SyncSettings()


@pytest.fixture()
def client() -> InMemoryWorkspaceClient:
    memory = InMemoryWorkspaceClient()
    memory.add_workspace("proj-a", "ProjA")
    memory.add_workspace("proj-b", "ProjB")
    return memory
