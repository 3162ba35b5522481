"""Domain entities identifying the workspaces being compared."""
from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urlparse


@dataclass(frozen=True, slots=True)
class WorkspaceRef:
    """A resolved project scope within a remote organization."""

    id: str
    display_name: str
    host_endpoint: str

    @property
    def host(self) -> str:
        """Organization endpoint without scheme: ``dev.azure.com/contoso``."""

        parsed = urlparse(self.host_endpoint)
        return f"{parsed.netloc}{parsed.path}".rstrip("/").lower()

    @property
    def default_path(self) -> str:
        """Root area/iteration path of the workspace."""

        return self.display_name

    def __str__(self) -> str:
        return f"{self.display_name} ({self.id})"
