"""Per-entity-type comparators producing :class:`Difference` lists.

Each comparator fetches full source and target snapshots, matches source
records to target records by natural key (case-insensitive, never by remote
id) and classifies them. Matching is one-directional: target-only records
are reported separately as ``Missing`` and are never proposed for deletion.

Remote failures are caught per comparator (and per structure or group where
possible) and turned into guidance text, so one entity type failing does not
stop the others.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, ClassVar

from workspace_sync.core.isolation import ensure_in_scope
from workspace_sync.core.name_normalize import contains_sentinel, normalize, record_key
from workspace_sync.core.query_rewriter import rewrite_query
from workspace_sync.core.schema import (
    AREA,
    ITERATION,
    QUERY,
    QUERY_FOLDER,
    SECURITY_GROUP,
    WORK_ITEM,
    ClassificationNode,
    GroupInfo,
    QueryItem,
    WorkItemRecord,
)
from workspace_sync.core.settings import SyncSettings
from workspace_sync.core.tree import AREA_SEPARATOR, FlatNode, flatten_classification, flatten_queries, relative_path
from workspace_sync.domain.differences import (
    CLASSIFICATION_NODES,
    ERROR,
    MISSING,
    NEW,
    QUERIES,
    SECURITY_GROUPS,
    SYNCHRONIZED,
    UPDATED,
    WORK_ITEMS,
    Difference,
    GroupDifference,
)
from workspace_sync.domain.errors import CrossScopeLeak, NotFound, PermissionDenied, RemoteError
from workspace_sync.domain.workspaces import WorkspaceRef
from workspace_sync.infrastructure.remote import FetchOptions, RemoteWorkspaceClient

logger = logging.getLogger(__name__)

PERMISSION_GUIDANCE = (
    "The access token needs these scopes: Identity (read) to read users and groups, "
    "Graph (read/write) to access security groups and memberships, "
    "Project and Team (read/write) to access project security settings."
)


@dataclass(slots=True)
class ComparisonResult:
    entity_type: str
    differences: list[Difference[Any]] = field(default_factory=list)
    target_only: list[Difference[Any]] = field(default_factory=list)
    guidance: list[str] = field(default_factory=list)
    failed: bool = False


@dataclass(frozen=True, slots=True)
class ClassificationPayload:
    structure: str
    path: str
    name: str
    parent_path: str | None


@dataclass(frozen=True, slots=True)
class QueryPayload:
    path: str
    name: str
    parent_path: str | None
    is_folder: bool
    wiql: str | None = None
    is_public: bool = True


def _describe_change(field_name: str, source_value: object, target_value: object) -> str:
    return f"{field_name}: {target_value!r} -> {source_value!r}"


class EntityComparator:
    """Shared failure handling; subclasses implement :meth:`_compare`."""

    entity_type: ClassVar[str] = ""

    def __init__(
        self,
        source_client: RemoteWorkspaceClient,
        target_client: RemoteWorkspaceClient,
        settings: SyncSettings,
    ) -> None:
        self._source_client = source_client
        self._target_client = target_client
        self._settings = settings

    def compare(self, source: WorkspaceRef, target: WorkspaceRef) -> ComparisonResult:
        result = ComparisonResult(entity_type=self.entity_type)
        try:
            self._compare(source, target, result)
        except PermissionDenied as exc:
            logger.warning("%s comparison denied: %s", self.entity_type, exc)
            result.failed = True
            result.guidance.append(f"Permission denied while reading {self.entity_type}: {exc}. {PERMISSION_GUIDANCE}")
        except NotFound as exc:
            logger.warning("%s comparison found nothing to read: %s", self.entity_type, exc)
            result.failed = True
            result.guidance.append(f"{self.entity_type} could not be found: {exc}")
        except RemoteError as exc:
            logger.warning("%s comparison failed: %s", self.entity_type, exc)
            result.failed = True
            result.guidance.append(f"{self.entity_type} could not be compared: {exc}")
        result.differences.sort(key=lambda diff: record_key(*diff.key))
        result.target_only.sort(key=lambda diff: record_key(*diff.key))
        return result

    def _compare(self, source: WorkspaceRef, target: WorkspaceRef, result: ComparisonResult) -> None:
        raise NotImplementedError

    def _is_trashed(self, *values: str | None) -> bool:
        return any(contains_sentinel(value, self._settings.trash_sentinels) for value in values)


# ----------------------------------------------------------------------
# work items
# ----------------------------------------------------------------------
class WorkItemComparator(EntityComparator):
    """Matches work items by (title, type); compares the tracked fields."""

    entity_type = WORK_ITEMS

    COMPARED_FIELDS: ClassVar[tuple[str, ...]] = (
        "state",
        "description",
        "assigned_to",
        "area_path",
        "iteration_path",
        "priority",
    )
    PATH_FIELDS: ClassVar[frozenset[str]] = frozenset({"area_path", "iteration_path"})

    @staticmethod
    def key_of(record: WorkItemRecord) -> tuple[str, ...]:
        return record_key(record.title, record.work_item_type)

    def field_changes(self, source_item: WorkItemRecord, target_item: WorkItemRecord) -> list[str]:
        changes: list[str] = []
        for name in self.COMPARED_FIELDS:
            source_value = getattr(source_item, name)
            target_value = getattr(target_item, name)
            if source_value is None or source_value == "":
                # blank source values are never written to the target
                continue
            if name in self.PATH_FIELDS:
                equal = normalize(relative_path(source_value)) == normalize(relative_path(target_value))
            else:
                equal = (source_value or None) == (target_value or None)
            if not equal:
                changes.append(_describe_change(name, source_value, target_value))
        return changes

    def _compare(self, source: WorkspaceRef, target: WorkspaceRef, result: ComparisonResult) -> None:
        source_items: list[WorkItemRecord] = self._source_client.fetch_records(source, WORK_ITEM)
        target_items: list[WorkItemRecord] = self._target_client.fetch_records(target, WORK_ITEM)

        target_index: dict[tuple[str, ...], WorkItemRecord] = {}
        for item in target_items:
            # duplicate titles collide; the first one wins
            target_index.setdefault(self.key_of(item), item)

        seen: set[tuple[str, ...]] = set()
        for item in source_items:
            key = self.key_of(item)
            seen.add(key)
            display_key = (item.title, item.work_item_type)
            match = target_index.get(key)
            if match is None:
                result.differences.append(
                    Difference(
                        record_kind=WORK_ITEM,
                        difference_type=NEW,
                        key=display_key,
                        source_id=item.id,
                        description=f"{item.work_item_type} '{item.title}' does not exist in {target.display_name}",
                        payload=item,
                    )
                )
                continue
            changes = self.field_changes(item, match)
            result.differences.append(
                Difference(
                    record_kind=WORK_ITEM,
                    difference_type=UPDATED if changes else SYNCHRONIZED,
                    key=display_key,
                    source_id=item.id,
                    target_id=match.id,
                    description=("; ".join(changes) if changes else "In sync"),
                    payload=item,
                    changes=tuple(changes),
                )
            )

        for key, item in target_index.items():
            if key in seen:
                continue
            result.target_only.append(
                Difference(
                    record_kind=WORK_ITEM,
                    difference_type=MISSING,
                    key=(item.title, item.work_item_type),
                    source_id=None,
                    target_id=item.id,
                    description=f"Only in {target.display_name}; left untouched",
                    payload=item,
                )
            )
        logger.debug("work items: %d source, %d target", len(source_items), len(target_items))


# ----------------------------------------------------------------------
# classification nodes
# ----------------------------------------------------------------------
class ClassificationNodeComparator(EntityComparator):
    """Compares area and iteration trees by path relative to the workspace root."""

    entity_type = CLASSIFICATION_NODES
    STRUCTURES: ClassVar[tuple[str, ...]] = (AREA, ITERATION)

    def _flatten(self, client: RemoteWorkspaceClient, workspace: WorkspaceRef, structure: str) -> list[FlatNode[ClassificationNode]]:
        depth = self._settings.classification_depth
        roots: list[ClassificationNode] = client.fetch_records(workspace, structure, FetchOptions(depth=depth))
        flat: list[FlatNode[ClassificationNode]] = []
        for root in roots:
            flat.extend(flatten_classification(root, max_depth=depth))
        return [node for node in flat if not self._is_trashed(node.path)]

    def _compare(self, source: WorkspaceRef, target: WorkspaceRef, result: ComparisonResult) -> None:
        failures = 0
        for structure in self.STRUCTURES:
            try:
                self._compare_structure(source, target, structure, result)
            except RemoteError as exc:
                failures += 1
                logger.warning("%s paths could not be compared: %s", structure, exc)
                result.guidance.append(f"{structure} paths could not be compared: {exc}")
        if failures == len(self.STRUCTURES):
            result.failed = True

    def _compare_structure(self, source: WorkspaceRef, target: WorkspaceRef, structure: str, result: ComparisonResult) -> None:
        source_nodes = self._flatten(self._source_client, source, structure)
        target_nodes = self._flatten(self._target_client, target, structure)
        target_index = {normalize(node.path): node for node in target_nodes}

        seen: set[str] = set()
        for node in source_nodes:
            path_key = normalize(node.path)
            seen.add(path_key)
            payload = ClassificationPayload(structure=structure, path=node.path, name=node.name, parent_path=node.parent_path)
            match = target_index.get(path_key)
            if match is None:
                result.differences.append(
                    Difference(
                        record_kind=structure,
                        difference_type=NEW,
                        key=(structure, node.path),
                        source_id=node.record.id,
                        description=f"{structure} path '{node.path}' is missing in {target.display_name}",
                        payload=payload,
                    )
                )
                continue
            changes = [] if node.name == match.name else [_describe_change("name", node.name, match.name)]
            result.differences.append(
                Difference(
                    record_kind=structure,
                    difference_type=UPDATED if changes else SYNCHRONIZED,
                    key=(structure, node.path),
                    source_id=node.record.id,
                    target_id=match.record.id,
                    description="; ".join(changes) if changes else "In sync",
                    payload=payload,
                    changes=tuple(changes),
                )
            )

        for path_key, node in target_index.items():
            if path_key in seen:
                continue
            result.target_only.append(
                Difference(
                    record_kind=structure,
                    difference_type=MISSING,
                    key=(structure, node.path),
                    source_id=None,
                    target_id=node.record.id,
                    description=f"Only in {target.display_name}; left untouched",
                    payload=ClassificationPayload(structure=structure, path=node.path, name=node.name, parent_path=node.parent_path),
                )
            )


# ----------------------------------------------------------------------
# saved queries
# ----------------------------------------------------------------------
class QueryComparator(EntityComparator):
    """Compares query folders and queries by hierarchical path.

    Source WIQL is rewritten into the target namespace before comparing, so
    a query that only differs by workspace name counts as synchronized.
    """

    entity_type = QUERIES

    def _flatten(self, client: RemoteWorkspaceClient, workspace: WorkspaceRef) -> list[FlatNode[QueryItem]]:
        depth = self._settings.query_depth
        items: list[QueryItem] = client.fetch_records(workspace, QUERY, FetchOptions(depth=depth))
        flat = flatten_queries(items, max_depth=depth)
        return [node for node in flat if not self._is_trashed(node.path, node.name)]

    @staticmethod
    def _payload(node: FlatNode[QueryItem]) -> QueryPayload:
        return QueryPayload(
            path=node.path,
            name=node.name,
            parent_path=node.parent_path,
            is_folder=node.record.is_folder,
            wiql=node.record.wiql,
            is_public=node.record.is_public,
        )

    def _compare(self, source: WorkspaceRef, target: WorkspaceRef, result: ComparisonResult) -> None:
        source_nodes = self._flatten(self._source_client, source)
        target_nodes = self._flatten(self._target_client, target)
        target_index = {normalize(node.path): node for node in target_nodes}

        seen: set[str] = set()
        for node in source_nodes:
            path_key = normalize(node.path)
            seen.add(path_key)
            kind = QUERY_FOLDER if node.record.is_folder else QUERY
            match = target_index.get(path_key)
            if match is None:
                noun = "Folder" if node.record.is_folder else "Query"
                result.differences.append(
                    Difference(
                        record_kind=kind,
                        difference_type=NEW,
                        key=(node.path,),
                        source_id=node.record.id,
                        description=f"{noun} '{node.path}' does not exist in {target.display_name}",
                        payload=self._payload(node),
                    )
                )
                continue

            changes: list[str] = []
            if not node.record.is_folder:
                rewrite = rewrite_query(node.record.wiql, source.display_name, target.display_name)
                if (rewrite.text or "").strip() != (match.record.wiql or "").strip():
                    detail = f" (after rewriting: {', '.join(rewrite.steps)})" if rewrite.changed else ""
                    changes.append(f"wiql: text differs{detail}")
                if node.record.is_public != match.record.is_public:
                    changes.append(_describe_change("is_public", node.record.is_public, match.record.is_public))
            result.differences.append(
                Difference(
                    record_kind=kind,
                    difference_type=UPDATED if changes else SYNCHRONIZED,
                    key=(node.path,),
                    source_id=node.record.id,
                    target_id=match.record.id,
                    description="; ".join(changes) if changes else "In sync",
                    payload=self._payload(node),
                    changes=tuple(changes),
                )
            )

        for path_key, node in target_index.items():
            if path_key in seen:
                continue
            result.target_only.append(
                Difference(
                    record_kind=QUERY_FOLDER if node.record.is_folder else QUERY,
                    difference_type=MISSING,
                    key=(node.path,),
                    source_id=None,
                    target_id=node.record.id,
                    description=f"Only in {target.display_name}; left untouched",
                    payload=self._payload(node),
                )
            )


# ----------------------------------------------------------------------
# security groups
# ----------------------------------------------------------------------
def diff_group_members(source_group: GroupInfo, target_group: GroupInfo) -> GroupDifference:
    """Split memberships into to-add, to-remove (informational) and existing."""

    to_add = [member for member in source_group.members if target_group.find_member(member) is None]
    existing = [member for member in source_group.members if target_group.find_member(member) is not None]
    to_remove = [member for member in target_group.members if source_group.find_member(member) is None]
    return GroupDifference(
        group_name=source_group.group_name,
        members_to_add=tuple(sorted(to_add, key=lambda member: member.sort_key)),
        members_to_remove=tuple(sorted(to_remove, key=lambda member: member.sort_key)),
        existing=tuple(sorted(existing, key=lambda member: member.sort_key)),
    )


class SecurityGroupComparator(EntityComparator):
    """Compares memberships of the configured security groups.

    A group that is missing or unreadable on either side yields no
    difference and a guidance message instead of an error.
    """

    entity_type = SECURITY_GROUPS

    def _read_group(self, client: RemoteWorkspaceClient, workspace: WorkspaceRef, group_name: str) -> tuple[GroupInfo | None, str | None]:
        try:
            group = client.fetch_group_members(workspace, group_name)
        except RemoteError as exc:
            logger.warning("group '%s' in %s could not be read: %s", group_name, workspace.display_name, exc)
            return None, f"Group '{group_name}' in {workspace.display_name} could not be read: {exc}"
        if group is None:
            logger.warning("group '%s' not found or not accessible in %s", group_name, workspace.display_name)
            return None, f"Group '{group_name}' was not found or is not accessible in {workspace.display_name}"
        return group, None

    def _compare(self, source: WorkspaceRef, target: WorkspaceRef, result: ComparisonResult) -> None:
        group_names = list(self._settings.security_groups)
        if not group_names:
            return

        workers = min(self._settings.max_workers, len(group_names))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="group-read") as executor:
            source_reads = list(executor.map(lambda name: self._read_group(self._source_client, source, name), group_names))
            target_reads = list(executor.map(lambda name: self._read_group(self._target_client, target, name), group_names))

        readable = 0
        for group_name, (source_group, source_error), (target_group, target_error) in zip(group_names, source_reads, target_reads):
            if source_group is not None:
                readable += 1
            if source_group is None or target_group is None:
                result.guidance.extend(message for message in (source_error, target_error) if message)
                continue

            try:
                ensure_in_scope(source, source_group.principal_name)
                ensure_in_scope(target, target_group.principal_name)
            except CrossScopeLeak as exc:
                logger.error("isolation check failed for group '%s': %s", group_name, exc)
                result.differences.append(
                    Difference(
                        record_kind=SECURITY_GROUP,
                        difference_type=ERROR,
                        key=(group_name,),
                        source_id=source_group.descriptor,
                        target_id=target_group.descriptor,
                        description=str(exc),
                        payload=GroupDifference(group_name=group_name),
                    )
                )
                continue

            delta = diff_group_members(source_group, target_group)
            parts = [f"{len(delta.members_to_add)} to add", f"{len(delta.existing)} existing"]
            if delta.members_to_remove:
                parts.append(f"{len(delta.members_to_remove)} only in target (never removed)")
            result.differences.append(
                Difference(
                    record_kind=SECURITY_GROUP,
                    difference_type=UPDATED if delta.members_to_add else SYNCHRONIZED,
                    key=(group_name,),
                    source_id=source_group.descriptor,
                    target_id=target_group.descriptor,
                    description=", ".join(parts),
                    payload=delta,
                    changes=tuple(f"add {member}" for member in delta.members_to_add),
                )
            )

        if readable == 0:
            result.failed = True
            result.guidance.append(
                f"No security group information could be read from {source.display_name}. {PERMISSION_GUIDANCE}"
            )


COMPARATORS: tuple[type[EntityComparator], ...] = (
    WorkItemComparator,
    ClassificationNodeComparator,
    SecurityGroupComparator,
    QueryComparator,
)

__all__ = [
    "COMPARATORS",
    "ClassificationNodeComparator",
    "ClassificationPayload",
    "ComparisonResult",
    "EntityComparator",
    "QueryComparator",
    "QueryPayload",
    "SecurityGroupComparator",
    "WorkItemComparator",
    "diff_group_members",
]
