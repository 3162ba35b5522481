"""Contract for the remote workspace service consumed by the engine."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

from pydantic import BaseModel

from workspace_sync.core.schema import GroupInfo, GroupMember, WorkItemRecord
from workspace_sync.domain.workspaces import WorkspaceRef

FieldsT = TypeVar("FieldsT", bound=BaseModel)


@dataclass(frozen=True, slots=True)
class FetchOptions:
    """Optional hints for :meth:`RemoteWorkspaceClient.fetch_records`."""

    depth: int | None = None


class RemoteWorkspaceClient(Protocol):
    """Remote operations for one organization.

    ``fetch_records`` returns, per kind: ``work_item`` -> ``WorkItemRecord``
    list; ``area``/``iteration`` -> a one-element list holding the root
    ``ClassificationNode``; ``query`` -> root ``QueryItem`` folders;
    ``work_item_type`` -> type names.

    Implementations raise :class:`~workspace_sync.domain.errors.RemoteError`
    subclasses; ``fetch_group_members`` returns ``None`` instead of raising
    when the group is missing or not readable, and resolves membership
    transitively: users reached through nested groups are listed once.
    """

    def resolve_workspace(self, workspace_id: str) -> WorkspaceRef: ...

    def fetch_records(self, workspace: WorkspaceRef, kind: str, options: FetchOptions | None = None) -> list[Any]: ...

    def fetch_record_detail(self, workspace: WorkspaceRef, record_id: str) -> WorkItemRecord: ...

    def create_record(
        self,
        workspace: WorkspaceRef,
        kind: str,
        fields: BaseModel,
        parent_ref: str | None = None,
    ) -> str: ...

    def update_record(self, workspace: WorkspaceRef, kind: str, record_id: str, patch: BaseModel) -> None: ...

    def fetch_group_members(self, workspace: WorkspaceRef, group_name: str) -> GroupInfo | None: ...

    def add_group_member(self, workspace: WorkspaceRef, group_name: str, member: GroupMember) -> None: ...


def expect_fields(fields: BaseModel, model: type[FieldsT], kind: str) -> FieldsT:
    """Narrow a create/update payload to the model ``kind`` accepts."""

    if not isinstance(fields, model):
        raise TypeError(f"{kind} records take {model.__name__}, got {type(fields).__name__}")
    return fields
