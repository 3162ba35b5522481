"""Difference records and the immutable snapshot handed to the reconciler."""
from __future__ import annotations

import uuid
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Generic, Iterator, Literal, Mapping, TypeVar

from .workspaces import WorkspaceRef

if TYPE_CHECKING:
    from workspace_sync.core.schema import GroupMember

DifferenceType = Literal["New", "Updated", "Synchronized", "Missing", "Error"]

NEW: DifferenceType = "New"
UPDATED: DifferenceType = "Updated"
SYNCHRONIZED: DifferenceType = "Synchronized"
MISSING: DifferenceType = "Missing"
ERROR: DifferenceType = "Error"

ACTIONABLE_TYPES: frozenset[str] = frozenset({NEW, UPDATED})

# entity types, in the order they are analysed, reconciled and reported
WORK_ITEMS = "work_items"
CLASSIFICATION_NODES = "classification_nodes"
SECURITY_GROUPS = "security_groups"
QUERIES = "queries"
ENTITY_TYPES: tuple[str, ...] = (WORK_ITEMS, CLASSIFICATION_NODES, SECURITY_GROUPS, QUERIES)

WIKI_GUIDANCE = "Manual wiki comparison recommended"

PayloadT = TypeVar("PayloadT")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class Difference(Generic[PayloadT]):
    """Outcome of matching one source record against the target workspace.

    ``selected`` is never set by a comparator; callers mark records through
    :meth:`Differences.with_selection`.
    """

    record_kind: str
    difference_type: str
    key: tuple[str, ...]
    source_id: str | None
    description: str
    payload: PayloadT
    target_id: str | None = None
    changes: tuple[str, ...] = ()
    selected: bool = False

    @property
    def label(self) -> str:
        return " / ".join(part for part in self.key if part)

    @property
    def is_actionable(self) -> bool:
        return self.selected and self.difference_type in ACTIONABLE_TYPES


@dataclass(frozen=True, slots=True)
class GroupDifference:
    """Membership delta for one security group.

    ``members_to_remove`` is informational: the reconciler never removes.
    """

    group_name: str
    members_to_add: tuple["GroupMember", ...] = ()
    members_to_remove: tuple["GroupMember", ...] = ()
    existing: tuple["GroupMember", ...] = ()

    @property
    def has_changes(self) -> bool:
        return bool(self.members_to_add or self.members_to_remove)


@dataclass(frozen=True, slots=True)
class Differences:
    """Snapshot of one analysis run, consumed by a single reconciliation pass."""

    source: WorkspaceRef
    target: WorkspaceRef
    work_items: tuple[Difference[Any], ...] = ()
    classification_nodes: tuple[Difference[Any], ...] = ()
    security_groups: tuple[Difference[Any], ...] = ()
    queries: tuple[Difference[Any], ...] = ()
    target_only: Mapping[str, tuple[Difference[Any], ...]] = field(default_factory=dict)
    guidance: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    failed_kinds: frozenset[str] = frozenset()
    wiki_guidance: str = WIKI_GUIDANCE
    snapshot_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=_utcnow)

    def for_entity(self, entity_type: str) -> tuple[Difference[Any], ...]:
        if entity_type not in ENTITY_TYPES:
            raise KeyError(entity_type)
        return getattr(self, entity_type)

    def __iter__(self) -> Iterator[Difference[Any]]:
        for entity_type in ENTITY_TYPES:
            yield from self.for_entity(entity_type)

    @property
    def has_changes(self) -> bool:
        return any(diff.difference_type in ACTIONABLE_TYPES for diff in self)

    def counts(self) -> dict[str, dict[str, int]]:
        """Number of records per entity type and difference type."""

        summary: dict[str, dict[str, int]] = {}
        for entity_type in ENTITY_TYPES:
            counter = Counter(diff.difference_type for diff in self.for_entity(entity_type))
            summary[entity_type] = dict(counter)
        return summary

    def selected(self) -> list[Difference[Any]]:
        return [diff for diff in self if diff.selected]

    def with_selection(self, selector: Callable[[Difference[Any]], bool]) -> "Differences":
        """Return a copy whose ``selected`` flags come from ``selector``.

        The copy keeps the snapshot identity, so replay protection still
        applies to it.
        """

        updates = {
            entity_type: tuple(replace(diff, selected=bool(selector(diff))) for diff in self.for_entity(entity_type))
            for entity_type in ENTITY_TYPES
        }
        return replace(self, **updates)

    def select_all(self) -> "Differences":
        return self.with_selection(lambda diff: diff.difference_type in ACTIONABLE_TYPES)


__all__ = [
    "ACTIONABLE_TYPES",
    "CLASSIFICATION_NODES",
    "ENTITY_TYPES",
    "ERROR",
    "Difference",
    "DifferenceType",
    "Differences",
    "GroupDifference",
    "MISSING",
    "NEW",
    "QUERIES",
    "SECURITY_GROUPS",
    "SYNCHRONIZED",
    "UPDATED",
    "WIKI_GUIDANCE",
    "WORK_ITEMS",
]
