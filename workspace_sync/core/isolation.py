"""Workspace isolation checks run before any mutating call."""
from __future__ import annotations

import logging

from workspace_sync.core.name_normalize import normalize
from workspace_sync.domain.errors import CrossScopeLeak, SameScopeViolation
from workspace_sync.domain.workspaces import WorkspaceRef

logger = logging.getLogger(__name__)


def ensure_distinct_scopes(source: WorkspaceRef, target: WorkspaceRef) -> None:
    """Reject copying a workspace onto itself."""

    if normalize(source.id) == normalize(target.id):
        raise SameScopeViolation(
            f"Source and target workspaces are both '{source.display_name}' (ID: {source.id}); "
            "select different workspaces."
        )


def ensure_in_scope(workspace: WorkspaceRef, resolved_name: str | None, *, record_id: str | None = None) -> None:
    """Reject a record whose principal or path does not name ``workspace``.

    A missing ``resolved_name`` carries no scope information and passes.
    """

    if not resolved_name:
        return
    if normalize(workspace.display_name) not in normalize(resolved_name):
        label = f" (record {record_id})" if record_id else ""
        raise CrossScopeLeak(
            f"'{resolved_name}'{label} does not belong to workspace '{workspace.display_name}'; "
            "the remote service returned a result outside the requested scope."
        )


def is_cross_organization(source: WorkspaceRef, target: WorkspaceRef) -> bool:
    """Log an advisory when the workspaces live on different hosts."""

    if source.host == target.host:
        return False
    logger.warning(
        "CrossOrganization: copying from %s to %s; ensure this is intentional and allowed by policy",
        source.host,
        target.host,
    )
    return True


__all__ = ["ensure_distinct_scopes", "ensure_in_scope", "is_cross_organization"]
