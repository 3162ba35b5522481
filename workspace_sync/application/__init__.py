"""Application services."""

from .comparators import COMPARATORS, ComparisonResult, diff_group_members
from .reconciler import ApplyResult, EntityCounts, SelectiveReconciler
from .sync import WorkspaceSyncService, configure_sync_service, get_sync_service, reset_sync_service

__all__ = [
    "COMPARATORS",
    "ApplyResult",
    "ComparisonResult",
    "EntityCounts",
    "SelectiveReconciler",
    "WorkspaceSyncService",
    "configure_sync_service",
    "diff_group_members",
    "get_sync_service",
    "reset_sync_service",
]
