from __future__ import annotations

from pathlib import Path

import pandas as pd

from workspace_sync.domain.differences import ENTITY_TYPES, Differences

COLUMNS = [
    "entity_type",
    "record_kind",
    "difference_type",
    "key",
    "source_id",
    "target_id",
    "selected",
    "description",
]


def export_differences_csv(path: Path, differences: Differences) -> Path:
    """Write every compared record, target-only records included, one row each."""

    records = []
    for entity_type in ENTITY_TYPES:
        rows = (*differences.for_entity(entity_type), *differences.target_only.get(entity_type, ()))
        for diff in rows:
            records.append({
                "entity_type": entity_type,
                "record_kind": diff.record_kind,
                "difference_type": diff.difference_type,
                "key": diff.label,
                "source_id": diff.source_id or "",
                "target_id": diff.target_id or "",
                "selected": diff.selected,
                "description": diff.description,
            })
    df = pd.DataFrame(records, columns=COLUMNS)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)
    return path
