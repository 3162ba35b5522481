"""Per-call timeout wrapper around any :class:`RemoteWorkspaceClient`."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, TypeVar

from pydantic import BaseModel

from workspace_sync.core.schema import GroupInfo, GroupMember, WorkItemRecord
from workspace_sync.domain.errors import RemoteUnavailable
from workspace_sync.domain.workspaces import WorkspaceRef

from .remote import FetchOptions, RemoteWorkspaceClient

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT")


class TimeoutBoundClient:
    """Runs every call on a worker thread and gives up after ``timeout``.

    A call that times out raises :class:`RemoteUnavailable`; the abandoned
    thread is left to finish on its own.
    """

    def __init__(self, inner: RemoteWorkspaceClient, *, timeout: float, max_workers: int = 4) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self._inner = inner
        self._timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="remote-call")

    @property
    def inner(self) -> RemoteWorkspaceClient:
        return self._inner

    def _call(self, name: str, func: Callable[..., ResultT], *args: Any) -> ResultT:
        future = self._executor.submit(func, *args)
        try:
            return future.result(timeout=self._timeout)
        except FutureTimeout as exc:
            future.cancel()
            logger.warning("remote call %s timed out after %.1fs", name, self._timeout)
            raise RemoteUnavailable(f"{name} timed out after {self._timeout:.1f}s") from exc

    def resolve_workspace(self, workspace_id: str) -> WorkspaceRef:
        return self._call("resolve_workspace", self._inner.resolve_workspace, workspace_id)

    def fetch_records(self, workspace: WorkspaceRef, kind: str, options: FetchOptions | None = None) -> list[Any]:
        return self._call(f"fetch_records[{kind}]", self._inner.fetch_records, workspace, kind, options)

    def fetch_record_detail(self, workspace: WorkspaceRef, record_id: str) -> WorkItemRecord:
        return self._call("fetch_record_detail", self._inner.fetch_record_detail, workspace, record_id)

    def create_record(
        self,
        workspace: WorkspaceRef,
        kind: str,
        fields: BaseModel,
        parent_ref: str | None = None,
    ) -> str:
        return self._call(f"create_record[{kind}]", self._inner.create_record, workspace, kind, fields, parent_ref)

    def update_record(self, workspace: WorkspaceRef, kind: str, record_id: str, patch: BaseModel) -> None:
        self._call(f"update_record[{kind}]", self._inner.update_record, workspace, kind, record_id, patch)

    def fetch_group_members(self, workspace: WorkspaceRef, group_name: str) -> GroupInfo | None:
        return self._call("fetch_group_members", self._inner.fetch_group_members, workspace, group_name)

    def add_group_member(self, workspace: WorkspaceRef, group_name: str, member: GroupMember) -> None:
        self._call("add_group_member", self._inner.add_group_member, workspace, group_name, member)

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
