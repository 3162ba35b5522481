"""Map a source work item type onto one the target workspace supports."""
from __future__ import annotations

from typing import Iterable

from workspace_sync.core.name_normalize import normalize

FALLBACK_TYPES: dict[str, tuple[str, ...]] = {
    "User Story": ("Story", "Feature", "Product Backlog Item", "Task"),
    "Story": ("User Story", "Feature", "Product Backlog Item", "Task"),
    "Product Backlog Item": ("User Story", "Story", "Feature", "Task"),
    "Feature": ("Epic", "User Story", "Story", "Product Backlog Item"),
    "Epic": ("Feature", "User Story", "Story"),
    "Task": ("User Story", "Story", "Product Backlog Item"),
    "Bug": ("Issue", "Task", "User Story"),
    "Issue": ("Bug", "Task", "User Story"),
}


def map_work_item_type(source_type: str, target_types: Iterable[str]) -> str:
    """Return the target type to create ``source_type`` as.

    Direct (case-insensitive) match first, then the fallback table, then the
    first type the target offers. With no target type information the source
    type is kept.
    """

    available = list(target_types)
    if not available:
        return source_type

    by_key = {normalize(name): name for name in available}
    direct = by_key.get(normalize(source_type))
    if direct:
        return direct

    for candidate in FALLBACK_TYPES.get(source_type, ()):
        match = by_key.get(normalize(candidate))
        if match:
            return match

    return available[0]
