"""Exception hierarchy shared by comparators, the reconciler and adapters."""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .operation_log import OperationLog


class WorkspaceSyncError(RuntimeError):
    """Base class for every error raised by the sync engine."""


class RemoteError(WorkspaceSyncError):
    """Raised when the remote workspace service rejects or fails a call."""

    retryable = False

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemoteUnavailable(RemoteError):
    """Transient failure: network error, timeout or 5xx response."""

    retryable = True


class PermissionDenied(RemoteError):
    """The credentials lack the scopes required for the call."""


class NotFound(RemoteError):
    """The workspace or record does not exist (or is not visible)."""


class IsolationViolation(WorkspaceSyncError):
    """An operation would cross workspace boundaries."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.operation_log: OperationLog | None = None


class SameScopeViolation(IsolationViolation):
    """Source and target resolve to the same workspace."""


class CrossScopeLeak(IsolationViolation):
    """A record resolved under the target scope belongs to another workspace."""


class PartialApplyFailure(WorkspaceSyncError):
    """A single record could not be applied; the batch keeps going."""

    def __init__(self, message: str, *, record_id: str | None = None) -> None:
        super().__init__(message)
        self.record_id = record_id


class StaleSnapshotError(WorkspaceSyncError):
    """A differences snapshot was already applied or is too old to replay."""


__all__ = [
    "CrossScopeLeak",
    "IsolationViolation",
    "NotFound",
    "PartialApplyFailure",
    "PermissionDenied",
    "RemoteError",
    "RemoteUnavailable",
    "SameScopeViolation",
    "StaleSnapshotError",
    "WorkspaceSyncError",
]
