"""Domain layer definitions."""

from .differences import (
    ACTIONABLE_TYPES,
    CLASSIFICATION_NODES,
    ENTITY_TYPES,
    ERROR,
    MISSING,
    NEW,
    QUERIES,
    SECURITY_GROUPS,
    SYNCHRONIZED,
    UPDATED,
    WIKI_GUIDANCE,
    WORK_ITEMS,
    Difference,
    Differences,
    GroupDifference,
)
from .errors import (
    CrossScopeLeak,
    IsolationViolation,
    NotFound,
    PartialApplyFailure,
    PermissionDenied,
    RemoteError,
    RemoteUnavailable,
    SameScopeViolation,
    StaleSnapshotError,
    WorkspaceSyncError,
)
from .operation_log import OperationLog, OperationLogEntry
from .workspaces import WorkspaceRef

__all__ = [
    "ACTIONABLE_TYPES",
    "CLASSIFICATION_NODES",
    "ENTITY_TYPES",
    "ERROR",
    "MISSING",
    "NEW",
    "QUERIES",
    "SECURITY_GROUPS",
    "SYNCHRONIZED",
    "UPDATED",
    "WIKI_GUIDANCE",
    "WORK_ITEMS",
    "CrossScopeLeak",
    "Difference",
    "Differences",
    "GroupDifference",
    "IsolationViolation",
    "NotFound",
    "OperationLog",
    "OperationLogEntry",
    "PartialApplyFailure",
    "PermissionDenied",
    "RemoteError",
    "RemoteUnavailable",
    "SameScopeViolation",
    "StaleSnapshotError",
    "WorkspaceRef",
    "WorkspaceSyncError",
]
