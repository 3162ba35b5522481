"""Append-only audit trail produced by one reconciliation pass."""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Iterator

LIFECYCLE = "Lifecycle"
SKIP = "Skip"
INFO = "Info"
ERROR = "Error"

NON_MUTATING_TYPES = frozenset({LIFECYCLE, SKIP, INFO, ERROR})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class OperationLogEntry:
    operation_type: str
    is_success: bool
    message: str
    details: str = ""
    related_record_id: str | None = None
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def is_mutation(self) -> bool:
        return self.operation_type not in NON_MUTATING_TYPES


class OperationLog:
    """Ordered, append-only list of :class:`OperationLogEntry`.

    Appends are serialised with a lock so a single log may be shared by
    several workers, although the reconciler gives each worker its own sink
    and merges them with :meth:`extend` once the workers are done.
    """

    def __init__(self, entries: Iterable[OperationLogEntry] = ()) -> None:
        self._entries: list[OperationLogEntry] = list(entries)
        self._lock = threading.Lock()

    def append(self, entry: OperationLogEntry) -> OperationLogEntry:
        with self._lock:
            self._entries.append(entry)
        return entry

    def record(
        self,
        operation_type: str,
        message: str,
        *,
        success: bool = True,
        details: str = "",
        record_id: str | None = None,
    ) -> OperationLogEntry:
        return self.append(
            OperationLogEntry(
                operation_type=operation_type,
                is_success=success,
                message=message,
                details=details,
                related_record_id=record_id,
            )
        )

    def extend(self, other: "OperationLog") -> None:
        with self._lock:
            self._entries.extend(other.entries)

    @property
    def entries(self) -> tuple[OperationLogEntry, ...]:
        with self._lock:
            return tuple(self._entries)

    @property
    def failures(self) -> list[OperationLogEntry]:
        return [entry for entry in self.entries if not entry.is_success]

    @property
    def mutations(self) -> list[OperationLogEntry]:
        return [entry for entry in self.entries if entry.is_mutation]

    def __iter__(self) -> Iterator[OperationLogEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)
