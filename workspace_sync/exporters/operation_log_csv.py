from __future__ import annotations

from pathlib import Path

import pandas as pd

from workspace_sync.domain.operation_log import OperationLog

COLUMNS = ["timestamp", "operation_type", "is_success", "message", "details", "related_record_id"]


def export_operation_log_csv(path: Path, log: OperationLog) -> Path:
    records = []
    for entry in log:
        records.append({
            "timestamp": entry.timestamp.isoformat(),
            "operation_type": entry.operation_type,
            "is_success": entry.is_success,
            "message": entry.message,
            "details": entry.details,
            "related_record_id": entry.related_record_id or "",
        })
    df = pd.DataFrame(records, columns=COLUMNS)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)
    return path
