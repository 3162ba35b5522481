"""Infrastructure layer exports."""

from .azure_devops import AzureDevOpsClient
from .guarded import TimeoutBoundClient
from .memory import InMemoryWorkspaceClient
from .remote import FetchOptions, RemoteWorkspaceClient

__all__ = [
    "AzureDevOpsClient",
    "FetchOptions",
    "InMemoryWorkspaceClient",
    "RemoteWorkspaceClient",
    "TimeoutBoundClient",
]
