"""Application service tying comparison and reconciliation together."""
from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime, timezone
from typing import Iterable

from workspace_sync.application.comparators import COMPARATORS, ComparisonResult, EntityComparator
from workspace_sync.application.reconciler import ApplyResult, SelectiveReconciler
from workspace_sync.core.isolation import is_cross_organization
from workspace_sync.core.settings import SyncSettings, load_settings
from workspace_sync.domain.differences import ENTITY_TYPES, Differences
from workspace_sync.domain.errors import StaleSnapshotError
from workspace_sync.domain.workspaces import WorkspaceRef
from workspace_sync.infrastructure.guarded import TimeoutBoundClient
from workspace_sync.infrastructure.memory import InMemoryWorkspaceClient
from workspace_sync.infrastructure.remote import RemoteWorkspaceClient

logger = logging.getLogger(__name__)


class WorkspaceSyncService:
    """Analyse two workspaces, then apply a selected subset of the differences.

    ``target_client`` defaults to ``source_client`` (both workspaces in one
    organization). With ``guard_calls`` every client call is bounded by
    ``settings.call_timeout``.
    """

    def __init__(
        self,
        source_client: RemoteWorkspaceClient,
        target_client: RemoteWorkspaceClient | None = None,
        settings: SyncSettings | None = None,
        *,
        guard_calls: bool = True,
    ) -> None:
        self._settings = settings or load_settings()
        self._guards: list[TimeoutBoundClient] = []
        self._source_client = self._guard(source_client) if guard_calls else source_client
        if target_client is None or target_client is source_client:
            self._target_client = self._source_client
        else:
            self._target_client = self._guard(target_client) if guard_calls else target_client
        self._reconciler = SelectiveReconciler(self._source_client, self._target_client, self._settings)
        self._consumed: set[str] = set()
        self._consumed_lock = threading.Lock()

    def _guard(self, client: RemoteWorkspaceClient) -> TimeoutBoundClient:
        guarded = TimeoutBoundClient(
            client,
            timeout=self._settings.call_timeout,
            max_workers=self._settings.max_workers,
        )
        self._guards.append(guarded)
        return guarded

    @property
    def settings(self) -> SyncSettings:
        return self._settings

    # ------------------------------------------------------------------
    # analysis
    # ------------------------------------------------------------------
    def _resolve(self, source_id: str, target_id: str) -> tuple[WorkspaceRef, WorkspaceRef]:
        source = self._source_client.resolve_workspace(source_id)
        target = self._target_client.resolve_workspace(target_id)
        is_cross_organization(source, target)
        return source, target

    def _comparators(self) -> list[EntityComparator]:
        return [cls(self._source_client, self._target_client, self._settings) for cls in COMPARATORS]

    @staticmethod
    def _aggregate(source: WorkspaceRef, target: WorkspaceRef, results: Iterable[ComparisonResult]) -> Differences:
        by_entity = {result.entity_type: result for result in results}
        slices = {entity_type: tuple(by_entity[entity_type].differences) for entity_type in ENTITY_TYPES}
        differences = Differences(
            source=source,
            target=target,
            target_only={entity_type: tuple(by_entity[entity_type].target_only) for entity_type in ENTITY_TYPES},
            guidance={
                entity_type: tuple(by_entity[entity_type].guidance)
                for entity_type in ENTITY_TYPES
                if by_entity[entity_type].guidance
            },
            failed_kinds=frozenset(entity_type for entity_type in ENTITY_TYPES if by_entity[entity_type].failed),
            **slices,
        )
        logger.info(
            "analysed %s -> %s: %s",
            source.display_name,
            target.display_name,
            ", ".join(f"{entity}={sum(counts.values())}" for entity, counts in differences.counts().items()),
        )
        return differences

    def analyze_differences(self, source_id: str, target_id: str) -> Differences:
        """Compare the two workspaces one entity type at a time.

        Only workspace resolution can raise; comparator failures end up in
        ``Differences.guidance`` and ``failed_kinds``.
        """

        source, target = self._resolve(source_id, target_id)
        results = [comparator.compare(source, target) for comparator in self._comparators()]
        return self._aggregate(source, target, results)

    async def analyze_differences_async(self, source_id: str, target_id: str) -> Differences:
        """Like :meth:`analyze_differences`, with comparators on worker threads."""

        source, target = await asyncio.to_thread(self._resolve, source_id, target_id)
        semaphore = asyncio.Semaphore(self._settings.max_workers)

        async def run(comparator: EntityComparator) -> ComparisonResult:
            async with semaphore:
                return await asyncio.to_thread(comparator.compare, source, target)

        results = await asyncio.gather(*(run(comparator) for comparator in self._comparators()))
        return self._aggregate(source, target, results)

    # ------------------------------------------------------------------
    # reconciliation
    # ------------------------------------------------------------------
    def _claim_snapshot(self, differences: Differences) -> None:
        age = (datetime.now(timezone.utc) - differences.created_at).total_seconds()
        with self._consumed_lock:
            if differences.snapshot_id in self._consumed:
                raise StaleSnapshotError(f"snapshot {differences.snapshot_id} has already been applied")
            if age > self._settings.snapshot_max_age_seconds:
                raise StaleSnapshotError(
                    f"snapshot {differences.snapshot_id} is {age:.0f}s old "
                    f"(limit {self._settings.snapshot_max_age_seconds:.0f}s); analyse again"
                )
            self._consumed.add(differences.snapshot_id)

    def _target_for(self, differences: Differences, target_id: str | None) -> WorkspaceRef:
        if target_id is None:
            return differences.target
        return self._target_client.resolve_workspace(target_id)

    def apply_selected_changes(self, differences: Differences, target_id: str | None = None) -> ApplyResult:
        """Apply the selected records of ``differences``; each snapshot applies once."""

        self._claim_snapshot(differences)
        target = self._target_for(differences, target_id)
        return self._reconciler.apply(differences, target)

    async def apply_selected_changes_async(self, differences: Differences, target_id: str | None = None) -> ApplyResult:
        self._claim_snapshot(differences)
        if target_id is None:
            target = differences.target
        else:
            target = await asyncio.to_thread(self._target_client.resolve_workspace, target_id)
        return await self._reconciler.apply_async(differences, target)

    def close(self) -> None:
        for guarded in self._guards:
            guarded.close()
        self._guards.clear()


_service: WorkspaceSyncService | None = None


def configure_sync_service(service: WorkspaceSyncService) -> None:
    """Install the service returned by :func:`get_sync_service`."""

    global _service
    _service = service


def get_sync_service() -> WorkspaceSyncService:
    """Return the process-wide service, backed by an in-memory client by default."""

    global _service
    if _service is None:
        _service = WorkspaceSyncService(InMemoryWorkspaceClient())
    return _service


def reset_sync_service() -> None:
    """Drop the process-wide service (used in tests)."""

    global _service
    if _service is not None:
        _service.close()
    _service = None


__all__ = [
    "WorkspaceSyncService",
    "configure_sync_service",
    "get_sync_service",
    "reset_sync_service",
]
