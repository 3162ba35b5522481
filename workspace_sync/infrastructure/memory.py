"""In-memory remote workspace service for fast iteration and tests."""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from workspace_sync.core.name_normalize import normalize
from workspace_sync.core.schema import (
    AREA,
    ITERATION,
    QUERY,
    QUERY_FOLDER,
    WORK_ITEM,
    WORK_ITEM_TYPE,
    ClassificationNode,
    GroupInfo,
    GroupMember,
    NodeFields,
    QueryFields,
    QueryItem,
    WorkItemFields,
    WorkItemRecord,
)
from workspace_sync.core.tree import AREA_SEPARATOR, QUERY_SEPARATOR, split_path
from workspace_sync.domain.errors import NotFound, RemoteError
from workspace_sync.domain.workspaces import WorkspaceRef

from .remote import FetchOptions, expect_fields

DEFAULT_HOST = "https://dev.azure.com/example"
QUERY_ROOTS = ("My Queries", "Shared Queries")
DEFAULT_TYPES = ("Epic", "Feature", "User Story", "Task", "Bug")


@dataclass(slots=True)
class WorkspaceState:
    """Everything one in-memory workspace holds."""

    ref: WorkspaceRef
    work_items: dict[str, WorkItemRecord] = field(default_factory=dict)
    areas: ClassificationNode | None = None
    iterations: ClassificationNode | None = None
    queries: list[QueryItem] = field(default_factory=list)
    groups: dict[str, GroupInfo] = field(default_factory=dict)
    nested_groups: dict[str, list[str]] = field(default_factory=dict)
    work_item_types: list[str] = field(default_factory=lambda: list(DEFAULT_TYPES))


class InMemoryWorkspaceClient:
    """Implements :class:`RemoteWorkspaceClient` over plain Python objects.

    Mutating calls are appended to :attr:`mutations` so tests can assert on
    exactly what the engine asked for. :meth:`fail` makes an operation raise.
    """

    def __init__(self) -> None:
        self._workspaces: dict[str, WorkspaceState] = {}
        self._failures: dict[tuple[str, str], Exception] = {}
        self._id_counter = 0
        self._lock = threading.RLock()
        self.mutations: list[tuple[str, str, str]] = []

    # ------------------------------------------------------------------
    # internal helpers
    # ------------------------------------------------------------------
    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    def _state(self, workspace: WorkspaceRef | str) -> WorkspaceState:
        ws_id = workspace.id if isinstance(workspace, WorkspaceRef) else workspace
        state = self._workspaces.get(normalize(ws_id))
        if state is None:
            raise NotFound(f"workspace {ws_id} not found", status_code=404)
        return state

    def _check_failure(self, workspace: WorkspaceRef | str, operation: str) -> None:
        ws_id = workspace.id if isinstance(workspace, WorkspaceRef) else workspace
        error = self._failures.get((normalize(ws_id), operation))
        if error is not None:
            raise error

    def _tree(self, state: WorkspaceState, kind: str) -> ClassificationNode:
        root = state.areas if kind == AREA else state.iterations
        if root is None:
            raise NotFound(f"{kind} tree missing for {state.ref.display_name}")
        return root

    @staticmethod
    def _child(node_children: list, name: str) -> Any | None:
        for child in node_children:
            if normalize(child.name) == normalize(name):
                return child
        return None

    def _find_node(self, root: ClassificationNode, path: str | None) -> ClassificationNode:
        node = root
        for segment in split_path(path or "", AREA_SEPARATOR):
            child = self._child(node.children, segment)
            if child is None:
                raise NotFound(f"classification path '{path}' not found")
            node = child
        return node

    def _find_node_by_id(self, root: ClassificationNode, record_id: str) -> ClassificationNode:
        stack = [root]
        while stack:
            node = stack.pop()
            if node.id == record_id:
                return node
            stack.extend(node.children)
        raise NotFound(f"classification node {record_id} not found")

    def _find_query(self, state: WorkspaceState, path: str | None) -> QueryItem:
        children = state.queries
        item: QueryItem | None = None
        for segment in split_path(path or "", QUERY_SEPARATOR):
            item = self._child(children, segment)
            if item is None:
                raise NotFound(f"query path '{path}' not found")
            children = item.children
        if item is None:
            raise NotFound("query path must not be empty")
        return item

    def _find_query_by_id(self, state: WorkspaceState, record_id: str) -> QueryItem:
        stack = list(state.queries)
        while stack:
            item = stack.pop()
            if item.id == record_id:
                return item
            stack.extend(item.children)
        raise NotFound(f"query {record_id} not found")

    # ------------------------------------------------------------------
    # seeding helpers
    # ------------------------------------------------------------------
    def add_workspace(self, ws_id: str, display_name: str, host_endpoint: str = DEFAULT_HOST) -> WorkspaceRef:
        with self._lock:
            ref = WorkspaceRef(id=ws_id, display_name=display_name, host_endpoint=host_endpoint)
            state = WorkspaceState(
                ref=ref,
                areas=ClassificationNode(id=self._next_id(), name=display_name, structure=AREA),
                iterations=ClassificationNode(id=self._next_id(), name=display_name, structure=ITERATION),
                queries=[
                    QueryItem(id=self._next_id(), name=root, path=root, is_folder=True, is_public=root != "My Queries")
                    for root in QUERY_ROOTS
                ],
            )
            self._workspaces[normalize(ws_id)] = state
            return ref

    def add_work_item(self, ws_id: str, title: str, work_item_type: str = "Task", **fields: Any) -> WorkItemRecord:
        with self._lock:
            state = self._state(ws_id)
            fields.setdefault("team_project", state.ref.display_name)
            fields.setdefault("area_path", state.ref.display_name)
            fields.setdefault("iteration_path", state.ref.display_name)
            record = WorkItemRecord(id=self._next_id(), title=title, work_item_type=work_item_type, **fields)
            state.work_items[record.id] = record
            return record

    def add_classification_path(self, ws_id: str, kind: str, path: str) -> ClassificationNode:
        with self._lock:
            node = self._tree(self._state(ws_id), kind)
            for segment in split_path(path, AREA_SEPARATOR):
                child = self._child(node.children, segment)
                if child is None:
                    child = ClassificationNode(id=self._next_id(), name=segment, structure=node.structure)
                    node.children.append(child)
                node = child
            return node

    def add_query(self, ws_id: str, path: str, wiql: str | None = None, *, is_public: bool = True) -> QueryItem:
        """Create a query (or a folder when ``wiql`` is None) plus missing folders."""

        with self._lock:
            state = self._state(ws_id)
            segments = split_path(path, QUERY_SEPARATOR)
            children = state.queries
            item: QueryItem | None = None
            for index, segment in enumerate(segments):
                item = self._child(children, segment)
                is_leaf = index == len(segments) - 1
                if item is None:
                    item = QueryItem(
                        id=self._next_id(),
                        name=segment,
                        path=QUERY_SEPARATOR.join(segments[: index + 1]),
                        is_folder=not (is_leaf and wiql is not None),
                        wiql=wiql if is_leaf else None,
                        is_public=is_public,
                    )
                    children.append(item)
                children = item.children
            if item is None:
                raise ValueError("query path must not be empty")
            return item

    def set_group(
        self,
        ws_id: str,
        group_name: str,
        members: list[GroupMember],
        *,
        principal_name: str | None = None,
        nested_groups: list[str] | None = None,
    ) -> GroupInfo:
        """Seed a group; ``nested_groups`` names groups whose users it inherits."""

        with self._lock:
            state = self._state(ws_id)
            group = GroupInfo(
                group_name=group_name,
                principal_name=principal_name or f"[{state.ref.display_name}]\\{group_name}",
                descriptor=f"vssgp.{self._next_id()}",
                members=list(members),
            )
            state.groups[normalize(group_name)] = group
            state.nested_groups[normalize(group_name)] = list(nested_groups or [])
            return group

    def set_work_item_types(self, ws_id: str, types: list[str]) -> None:
        with self._lock:
            self._state(ws_id).work_item_types = list(types)

    def fail(self, ws_id: str, operation: str, error: Exception) -> None:
        """Make ``operation`` (a protocol method name, or ``fetch_records:<kind>``) raise."""

        self._failures[(normalize(ws_id), operation)] = error

    def clear_failures(self) -> None:
        self._failures.clear()

    # ------------------------------------------------------------------
    # RemoteWorkspaceClient
    # ------------------------------------------------------------------
    def resolve_workspace(self, workspace_id: str) -> WorkspaceRef:
        self._check_failure(workspace_id, "resolve_workspace")
        with self._lock:
            return self._state(workspace_id).ref

    def fetch_records(self, workspace: WorkspaceRef, kind: str, options: FetchOptions | None = None) -> list[Any]:
        self._check_failure(workspace, "fetch_records")
        self._check_failure(workspace, f"fetch_records:{kind}")
        with self._lock:
            state = self._state(workspace)
            if kind == WORK_ITEM:
                return [item.model_copy(deep=True) for item in state.work_items.values()]
            if kind in (AREA, ITERATION):
                return [self._tree(state, kind).model_copy(deep=True)]
            if kind == QUERY:
                return [item.model_copy(deep=True) for item in state.queries]
            if kind == WORK_ITEM_TYPE:
                return list(state.work_item_types)
            raise RemoteError(f"unsupported record kind '{kind}'", status_code=400)

    def fetch_record_detail(self, workspace: WorkspaceRef, record_id: str) -> WorkItemRecord:
        self._check_failure(workspace, "fetch_record_detail")
        with self._lock:
            record = self._state(workspace).work_items.get(str(record_id))
            if record is None:
                raise NotFound(f"work item {record_id} not found", status_code=404)
            return record.model_copy(deep=True)

    def create_record(
        self,
        workspace: WorkspaceRef,
        kind: str,
        fields: BaseModel,
        parent_ref: str | None = None,
    ) -> str:
        self._check_failure(workspace, "create_record")
        self._check_failure(workspace, f"create_record:{kind}")
        with self._lock:
            state = self._state(workspace)
            if kind == WORK_ITEM:
                values = expect_fields(fields, WorkItemFields, kind).changed()
                values.setdefault("work_item_type", "Task")
                record = WorkItemRecord(
                    id=self._next_id(),
                    title=values.pop("title", ""),
                    team_project=state.ref.display_name,
                    **values,
                )
                state.work_items[record.id] = record
                created = record.id
            elif kind in (AREA, ITERATION):
                fields = expect_fields(fields, NodeFields, kind)
                parent = self._find_node(self._tree(state, kind), parent_ref)
                if self._child(parent.children, fields.name) is not None:
                    raise RemoteError(f"{kind} '{fields.name}' already exists under '{parent_ref or ''}'", status_code=409)
                node = ClassificationNode(id=self._next_id(), name=fields.name, structure=parent.structure)
                parent.children.append(node)
                created = node.id
            elif kind in (QUERY, QUERY_FOLDER):
                fields = expect_fields(fields, QueryFields, kind)
                name = fields.name or ""
                siblings = self._find_query(state, parent_ref).children if parent_ref else state.queries
                if self._child(siblings, name) is not None:
                    raise RemoteError(f"query item '{name}' already exists under '{parent_ref or ''}'", status_code=409)
                item = QueryItem(
                    id=self._next_id(),
                    name=name,
                    path=f"{parent_ref}{QUERY_SEPARATOR}{name}" if parent_ref else name,
                    is_folder=kind == QUERY_FOLDER,
                    wiql=None if kind == QUERY_FOLDER else fields.wiql,
                    is_public=True if fields.is_public is None else fields.is_public,
                )
                siblings.append(item)
                created = item.id
            else:
                raise RemoteError(f"cannot create records of kind '{kind}'", status_code=400)
            self.mutations.append(("create", state.ref.id, f"{kind}:{created}"))
            return created

    def update_record(self, workspace: WorkspaceRef, kind: str, record_id: str, patch: BaseModel) -> None:
        self._check_failure(workspace, "update_record")
        with self._lock:
            state = self._state(workspace)
            if kind == WORK_ITEM:
                record = state.work_items.get(str(record_id))
                if record is None:
                    raise NotFound(f"work item {record_id} not found", status_code=404)
                changes = expect_fields(patch, WorkItemFields, kind).changed()
                state.work_items[record.id] = record.model_copy(update=changes)
            elif kind in (AREA, ITERATION):
                name = expect_fields(patch, NodeFields, kind).name
                node = self._find_node_by_id(self._tree(state, kind), str(record_id))
                node.name = name
            elif kind in (QUERY, QUERY_FOLDER):
                changes = expect_fields(patch, QueryFields, kind).changed()
                item = self._find_query_by_id(state, str(record_id))
                for key, value in changes.items():
                    setattr(item, key, value)
            else:
                raise RemoteError(f"cannot update records of kind '{kind}'", status_code=400)
            self.mutations.append(("update", state.ref.id, f"{kind}:{record_id}"))

    def fetch_group_members(self, workspace: WorkspaceRef, group_name: str) -> GroupInfo | None:
        self._check_failure(workspace, "fetch_group_members")
        with self._lock:
            state = self._state(workspace)
            group = state.groups.get(normalize(group_name))
            if group is None:
                return None
            resolved = group.model_copy(deep=True)
            visited = {normalize(group_name)}
            pending = list(state.nested_groups.get(normalize(group_name), []))
            while pending:
                key = normalize(pending.pop())
                if key in visited:
                    continue
                visited.add(key)
                nested = state.groups.get(key)
                if nested is None:
                    continue
                for member in nested.members:
                    if resolved.find_member(member) is None:
                        resolved.members.append(member)
                pending.extend(state.nested_groups.get(key, []))
            return resolved

    def add_group_member(self, workspace: WorkspaceRef, group_name: str, member: GroupMember) -> None:
        self._check_failure(workspace, "add_group_member")
        with self._lock:
            state = self._state(workspace)
            group = state.groups.get(normalize(group_name))
            if group is None:
                raise NotFound(f"group '{group_name}' not found in {state.ref.display_name}", status_code=404)
            if group.find_member(member) is None:
                group.members.append(member)
            self.mutations.append(("add_member", state.ref.id, f"{group_name}:{member.email or member.principal_name}"))


__all__ = ["InMemoryWorkspaceClient", "WorkspaceState"]
