"""Replays the selected part of a :class:`Differences` snapshot on the target."""
from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

from pydantic import ValidationError

from workspace_sync.application.comparators import ClassificationPayload, QueryPayload
from workspace_sync.core.isolation import ensure_distinct_scopes, ensure_in_scope, is_cross_organization
from workspace_sync.core.name_normalize import contains_sentinel, normalize
from workspace_sync.core.query_rewriter import rewrite_query
from workspace_sync.core.schema import (
    QUERY,
    QUERY_FOLDER,
    WORK_ITEM,
    WORK_ITEM_TYPE,
    ClassificationNode,
    NodeFields,
    QueryFields,
    QueryItem,
    WorkItemFields,
    WorkItemRecord,
)
from workspace_sync.core.settings import SyncSettings
from workspace_sync.core.tree import (
    AREA_SEPARATOR,
    QUERY_SEPARATOR,
    flatten_classification,
    flatten_queries,
    parent_of,
    path_prefixes,
    rebind_path,
    split_path,
)
from workspace_sync.core.type_mapping import map_work_item_type
from workspace_sync.domain.differences import (
    CLASSIFICATION_NODES,
    ENTITY_TYPES,
    NEW,
    QUERIES,
    SECURITY_GROUPS,
    UPDATED,
    WORK_ITEMS,
    Difference,
    Differences,
    GroupDifference,
)
from workspace_sync.domain.errors import IsolationViolation, PartialApplyFailure, RemoteError
from workspace_sync.domain.operation_log import ERROR, INFO, LIFECYCLE, SKIP, OperationLog
from workspace_sync.domain.workspaces import WorkspaceRef
from workspace_sync.infrastructure.remote import RemoteWorkspaceClient

logger = logging.getLogger(__name__)

CREATE_WORK_ITEM = "CreateWorkItem"
UPDATE_WORK_ITEM = "UpdateWorkItem"
CREATE_CLASSIFICATION_NODE = "CreateClassificationNode"
RENAME_CLASSIFICATION_NODE = "RenameClassificationNode"
CREATE_QUERY_FOLDER = "CreateQueryFolder"
CREATE_QUERY = "CreateQuery"
UPDATE_QUERY = "UpdateQuery"
ADD_GROUP_MEMBER = "AddGroupMember"


@dataclass(slots=True)
class EntityCounts:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass(slots=True)
class ApplyResult:
    counts: dict[str, EntityCounts]
    operation_log: OperationLog

    @property
    def created(self) -> int:
        return sum(item.created for item in self.counts.values())

    @property
    def updated(self) -> int:
        return sum(item.updated for item in self.counts.values())

    @property
    def failed(self) -> int:
        return sum(item.failed for item in self.counts.values())

    @property
    def success(self) -> bool:
        return self.failed == 0


@dataclass(slots=True)
class _WorkerOutcome:
    entity_type: str
    counts: EntityCounts = field(default_factory=EntityCounts)
    log: OperationLog = field(default_factory=OperationLog)
    violation: IsolationViolation | None = None


@dataclass(slots=True)
class _Pass:
    """State shared by the workers of one reconciliation pass."""

    source: WorkspaceRef
    target: WorkspaceRef
    log: OperationLog
    stop: threading.Event = field(default_factory=threading.Event)
    target_types: list[str] | None = None
    types_lock: threading.Lock = field(default_factory=threading.Lock)


class SelectiveReconciler:
    """Turns selected ``New``/``Updated`` differences into remote calls.

    Records of one entity type are applied sequentially in list order (query
    folders depend on it); entity types may run concurrently through
    :meth:`apply_async`. A failing record is logged and counted, the batch
    continues. Isolation violations stop every worker and are re-raised with
    the partial operation log attached.
    """

    def __init__(
        self,
        source_client: RemoteWorkspaceClient,
        target_client: RemoteWorkspaceClient,
        settings: SyncSettings,
    ) -> None:
        self._source_client = source_client
        self._target_client = target_client
        self._settings = settings
        self._handlers: dict[str, Callable[[_Pass, Difference[Any], _WorkerOutcome], None]] = {
            WORK_ITEMS: self._apply_work_item,
            CLASSIFICATION_NODES: self._apply_classification_node,
            SECURITY_GROUPS: self._apply_group,
            QUERIES: self._apply_query,
        }

    # ------------------------------------------------------------------
    # pass lifecycle
    # ------------------------------------------------------------------
    def _begin(self, differences: Differences, target: WorkspaceRef | None) -> _Pass:
        target = target or differences.target
        log = OperationLog()
        log.record(LIFECYCLE, f"Reconciliation started: {differences.source} -> {target}", details=differences.snapshot_id)
        try:
            if normalize(target.id) != normalize(differences.target.id):
                raise IsolationViolation(
                    f"Snapshot {differences.snapshot_id} was computed for {differences.target}, not {target}"
                )
            ensure_distinct_scopes(differences.source, target)
        except IsolationViolation as exc:
            log.record(ERROR, "Reconciliation rejected", success=False, details=str(exc))
            exc.operation_log = log
            raise
        is_cross_organization(differences.source, target)
        return _Pass(source=differences.source, target=target, log=log)

    def _finish(self, state: _Pass, outcomes: list[_WorkerOutcome]) -> ApplyResult:
        counts: dict[str, EntityCounts] = {}
        violation: IsolationViolation | None = None
        for outcome in outcomes:
            counts[outcome.entity_type] = outcome.counts
            state.log.extend(outcome.log)
            if violation is None and outcome.violation is not None:
                violation = outcome.violation

        if violation is not None:
            state.log.record(LIFECYCLE, "Reconciliation aborted", success=False, details=str(violation))
            violation.operation_log = state.log
            raise violation

        result = ApplyResult(counts=counts, operation_log=state.log)
        state.log.record(
            LIFECYCLE,
            f"Reconciliation finished: {result.created} created, {result.updated} updated, {result.failed} failed",
        )
        logger.info(
            "reconciliation %s -> %s: %d created, %d updated, %d failed",
            state.source.display_name,
            state.target.display_name,
            result.created,
            result.updated,
            result.failed,
        )
        return result

    def apply(self, differences: Differences, target: WorkspaceRef | None = None) -> ApplyResult:
        """Apply the selection, one entity type after another."""

        state = self._begin(differences, target)
        outcomes = [self._run_entity(state, entity_type, differences.for_entity(entity_type)) for entity_type in ENTITY_TYPES]
        return self._finish(state, outcomes)

    async def apply_async(self, differences: Differences, target: WorkspaceRef | None = None) -> ApplyResult:
        """Apply the selection with one worker thread per entity type."""

        state = self._begin(differences, target)
        semaphore = asyncio.Semaphore(self._settings.max_workers)

        async def run(entity_type: str) -> _WorkerOutcome:
            async with semaphore:
                return await asyncio.to_thread(self._run_entity, state, entity_type, differences.for_entity(entity_type))

        outcomes = await asyncio.gather(*(run(entity_type) for entity_type in ENTITY_TYPES))
        return self._finish(state, list(outcomes))

    # ------------------------------------------------------------------
    # worker
    # ------------------------------------------------------------------
    def _is_trashed(self, diff: Difference[Any]) -> bool:
        payload = diff.payload
        if not isinstance(payload, (QueryPayload, ClassificationPayload)):
            return False
        return any(contains_sentinel(value, self._settings.trash_sentinels) for value in (payload.path, payload.name))

    def _run_entity(self, state: _Pass, entity_type: str, differences: tuple[Difference[Any], ...]) -> _WorkerOutcome:
        outcome = _WorkerOutcome(entity_type=entity_type)
        handler = self._handlers[entity_type]
        for diff in differences:
            if not diff.is_actionable:
                continue
            if state.stop.is_set():
                outcome.log.record(SKIP, f"Not applied, pass aborted: {diff.label}", record_id=diff.source_id)
                outcome.counts.skipped += 1
                continue
            if self._is_trashed(diff):
                outcome.log.record(SKIP, f"Recycle bin item excluded: {diff.label}", record_id=diff.source_id)
                outcome.counts.skipped += 1
                continue
            try:
                ensure_distinct_scopes(state.source, state.target)
                handler(state, diff, outcome)
            except IsolationViolation as exc:
                logger.error("isolation violation while applying %s: %s", diff.label, exc)
                outcome.log.record(ERROR, f"Isolation violation: {diff.label}", success=False, details=str(exc), record_id=diff.source_id)
                outcome.violation = exc
                state.stop.set()
                break
            except (RemoteError, PartialApplyFailure, ValidationError) as exc:
                logger.warning("failed to apply %s: %s", diff.label, exc)
                outcome.counts.failed += 1
                outcome.log.record(ERROR, f"Failed to apply {diff.label}", success=False, details=str(exc), record_id=diff.source_id)
        return outcome

    # ------------------------------------------------------------------
    # work items
    # ------------------------------------------------------------------
    def _target_types(self, state: _Pass, log: OperationLog) -> list[str]:
        with state.types_lock:
            if state.target_types is None:
                try:
                    state.target_types = list(self._target_client.fetch_records(state.target, WORK_ITEM_TYPE))
                except RemoteError as exc:
                    log.record(INFO, "Work item types unavailable; keeping source types", details=str(exc))
                    state.target_types = []
            return state.target_types

    @staticmethod
    def build_work_item_patch(source_item: WorkItemRecord, target_item: WorkItemRecord, target: WorkspaceRef) -> WorkItemFields:
        """Minimal patch bringing ``target_item`` in line with ``source_item``."""

        patch: dict[str, Any] = {}
        for name in ("state", "description", "assigned_to", "priority"):
            value = getattr(source_item, name)
            if value and value != getattr(target_item, name):
                patch[name] = value
        for name in ("area_path", "iteration_path"):
            value = getattr(source_item, name)
            if not value:
                continue
            desired = rebind_path(value, target.display_name)
            if normalize(desired) != normalize(getattr(target_item, name)):
                patch[name] = desired
        return WorkItemFields(**patch)

    def _apply_work_item(self, state: _Pass, diff: Difference[Any], outcome: _WorkerOutcome) -> None:
        if diff.source_id is None:
            raise PartialApplyFailure("difference has no source record id")
        log = outcome.log

        if diff.difference_type == UPDATED and not diff.target_id:
            log.record(SKIP, f"No target id known for '{diff.label}'; update skipped", record_id=diff.source_id)
            outcome.counts.skipped += 1
            return

        source_item = self._source_client.fetch_record_detail(state.source, diff.source_id)

        if diff.difference_type == NEW:
            work_item_type = map_work_item_type(source_item.work_item_type, self._target_types(state, log))
            fields = WorkItemFields(
                title=source_item.title,
                work_item_type=work_item_type,
                description=source_item.description,
                state=source_item.state,
                area_path=state.target.default_path,
                iteration_path=state.target.default_path,
            )
            new_id = self._target_client.create_record(state.target, WORK_ITEM, fields)
            details = f"source #{source_item.id}"
            if work_item_type != source_item.work_item_type:
                details += f"; type mapped from '{source_item.work_item_type}'"
            log.record(CREATE_WORK_ITEM, f"Created {work_item_type} '{source_item.title}'", details=details, record_id=new_id)
            outcome.counts.created += 1
            return

        if not diff.target_id:
            raise PartialApplyFailure("difference has no target record id")
        target_item = self._target_client.fetch_record_detail(state.target, diff.target_id)
        ensure_in_scope(state.target, target_item.team_project or target_item.area_path, record_id=target_item.id)
        patch = self.build_work_item_patch(source_item, target_item, state.target)
        if patch.is_empty():
            log.record(SKIP, f"'{source_item.title}' already up to date", record_id=target_item.id)
            outcome.counts.skipped += 1
            return
        self._target_client.update_record(state.target, WORK_ITEM, target_item.id, patch)
        log.record(
            UPDATE_WORK_ITEM,
            f"Updated '{source_item.title}'",
            details=", ".join(sorted(patch.changed())),
            record_id=target_item.id,
        )
        outcome.counts.updated += 1

    # ------------------------------------------------------------------
    # classification nodes
    # ------------------------------------------------------------------
    def _classification_paths(self, state: _Pass, structure: str) -> dict[str, ClassificationNode]:
        roots: list[ClassificationNode] = self._target_client.fetch_records(state.target, structure)
        index: dict[str, ClassificationNode] = {}
        for root in roots:
            for node in flatten_classification(root):
                index[normalize(node.path)] = node.record
        return index

    def _apply_classification_node(self, state: _Pass, diff: Difference[Any], outcome: _WorkerOutcome) -> None:
        payload: ClassificationPayload = diff.payload
        log = outcome.log

        if diff.difference_type == UPDATED:
            if not diff.target_id:
                log.record(SKIP, f"No target id known for '{payload.path}'; rename skipped", record_id=diff.source_id)
                outcome.counts.skipped += 1
                return
            self._target_client.update_record(state.target, payload.structure, diff.target_id, NodeFields(name=payload.name))
            log.record(RENAME_CLASSIFICATION_NODE, f"Renamed {payload.structure} '{payload.path}'", record_id=diff.target_id)
            outcome.counts.updated += 1
            return

        created_self = False
        for prefix in path_prefixes(payload.path, AREA_SEPARATOR):
            existing = self._classification_paths(state, payload.structure)
            if normalize(prefix) in existing:
                continue
            name = split_path(prefix, AREA_SEPARATOR)[-1]
            new_id = self._target_client.create_record(
                state.target,
                payload.structure,
                NodeFields(name=name),
                parent_ref=parent_of(prefix, AREA_SEPARATOR),
            )
            log.record(CREATE_CLASSIFICATION_NODE, f"Created {payload.structure} '{prefix}'", record_id=new_id)
            outcome.counts.created += 1
            created_self = normalize(prefix) == normalize(payload.path)
        if not created_self:
            log.record(SKIP, f"{payload.structure} '{payload.path}' already exists", record_id=diff.source_id)
            outcome.counts.skipped += 1

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------
    def _query_index(self, state: _Pass) -> dict[str, QueryItem]:
        items: list[QueryItem] = self._target_client.fetch_records(state.target, QUERY)
        return {normalize(node.path): node.record for node in flatten_queries(items)}

    def ensure_query_folders(self, state: _Pass, folder_path: str | None, outcome: _WorkerOutcome) -> bool:
        """Create missing folders of ``folder_path`` parent-before-child.

        Each check runs against a freshly fetched target hierarchy. Returns
        True when the last folder had to be created.
        """

        created_last = False
        for prefix in path_prefixes(folder_path or "", QUERY_SEPARATOR):
            existing = self._query_index(state).get(normalize(prefix))
            if existing is not None:
                if not existing.is_folder:
                    raise PartialApplyFailure(f"'{prefix}' exists in the target as a query, not a folder")
                created_last = False
                continue
            name = split_path(prefix, QUERY_SEPARATOR)[-1]
            new_id = self._target_client.create_record(
                state.target,
                QUERY_FOLDER,
                QueryFields(name=name, is_folder=True),
                parent_ref=parent_of(prefix, QUERY_SEPARATOR),
            )
            outcome.log.record(CREATE_QUERY_FOLDER, f"Created query folder '{prefix}'", record_id=new_id)
            outcome.counts.created += 1
            created_last = True
        return created_last

    def _apply_query(self, state: _Pass, diff: Difference[Any], outcome: _WorkerOutcome) -> None:
        payload: QueryPayload = diff.payload
        log = outcome.log

        if payload.is_folder:
            if not self.ensure_query_folders(state, payload.path, outcome):
                log.record(SKIP, f"Query folder '{payload.path}' already exists", record_id=diff.source_id)
                outcome.counts.skipped += 1
            return

        self.ensure_query_folders(state, payload.parent_path, outcome)
        rewrite = rewrite_query(payload.wiql, state.source.display_name, state.target.display_name)
        rewrite_note = f"rewritten ({', '.join(rewrite.steps)})" if rewrite.changed else "query text unchanged"

        existing = self._query_index(state).get(normalize(payload.path))
        if existing is None:
            new_id = self._target_client.create_record(
                state.target,
                QUERY,
                QueryFields(name=payload.name, wiql=rewrite.text, is_public=payload.is_public, is_folder=False),
                parent_ref=payload.parent_path,
            )
            log.record(CREATE_QUERY, f"Created query '{payload.path}'", details=rewrite_note, record_id=new_id)
            outcome.counts.created += 1
            return

        if existing.is_folder:
            raise PartialApplyFailure(f"'{payload.path}' exists in the target as a folder")
        if (existing.wiql or "").strip() == rewrite.text.strip() and existing.is_public == payload.is_public:
            log.record(SKIP, f"Query '{payload.path}' already up to date", record_id=existing.id)
            outcome.counts.skipped += 1
            return
        self._target_client.update_record(
            state.target,
            QUERY,
            existing.id,
            QueryFields(wiql=rewrite.text, is_public=payload.is_public),
        )
        log.record(UPDATE_QUERY, f"Updated query '{payload.path}'", details=rewrite_note, record_id=existing.id)
        outcome.counts.updated += 1

    # ------------------------------------------------------------------
    # security groups
    # ------------------------------------------------------------------
    def _apply_group(self, state: _Pass, diff: Difference[Any], outcome: _WorkerOutcome) -> None:
        payload: GroupDifference = diff.payload
        log = outcome.log

        target_group = self._target_client.fetch_group_members(state.target, payload.group_name)
        if target_group is None:
            raise PartialApplyFailure(f"group '{payload.group_name}' is not accessible in {state.target.display_name}")
        ensure_in_scope(state.target, target_group.principal_name, record_id=target_group.descriptor)

        for member in payload.members_to_remove:
            log.record(INFO, f"'{member}' is only in target group '{payload.group_name}'; not removed")

        for member in payload.members_to_add:
            if state.stop.is_set():
                break
            if target_group.find_member(member) is not None:
                log.record(SKIP, f"'{member}' is already in '{payload.group_name}'")
                outcome.counts.skipped += 1
                continue
            try:
                self._target_client.add_group_member(state.target, payload.group_name, member)
            except RemoteError as exc:
                logger.warning("could not add %s to %s: %s", member, payload.group_name, exc)
                log.record(ERROR, f"Failed to add '{member}' to '{payload.group_name}'", success=False, details=str(exc))
                outcome.counts.failed += 1
                continue
            log.record(ADD_GROUP_MEMBER, f"Added '{member}' to '{payload.group_name}'", record_id=member.descriptor)
            outcome.counts.created += 1


__all__ = ["ApplyResult", "EntityCounts", "SelectiveReconciler"]
