from __future__ import annotations

import sys
from dataclasses import replace
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from workspace_sync.domain.differences import (
    MISSING,
    NEW,
    SYNCHRONIZED,
    UPDATED,
    WORK_ITEMS,
    Difference,
    Differences,
)
from workspace_sync.domain.operation_log import INFO, LIFECYCLE, OperationLog
from workspace_sync.domain.workspaces import WorkspaceRef

PROJ_A = WorkspaceRef(id="proj-a", display_name="ProjA", host_endpoint="https://dev.azure.com/contoso")
PROJ_B = WorkspaceRef(id="proj-b", display_name="ProjB", host_endpoint="https://dev.azure.com/contoso")


def _diff(title: str, difference_type: str) -> Difference[None]:
    return Difference(
        record_kind="work_item",
        difference_type=difference_type,
        key=(title, "Task"),
        source_id=title,
        description="",
        payload=None,
    )


def test_selection_copy_keeps_snapshot_identity():
    differences = Differences(
        source=PROJ_A,
        target=PROJ_B,
        work_items=(_diff("a", NEW), _diff("b", UPDATED), _diff("c", SYNCHRONIZED)),
    )

    selected = differences.select_all()

    assert [diff.selected for diff in selected.work_items] == [True, True, False]
    assert not any(diff.selected for diff in differences.work_items)
    assert selected.snapshot_id == differences.snapshot_id
    assert selected.counts()[WORK_ITEMS] == {NEW: 1, UPDATED: 1, SYNCHRONIZED: 1}
    assert [diff.label for diff in selected.selected()] == ["a / Task", "b / Task"]


def test_only_selected_new_or_updated_records_are_actionable():
    assert not _diff("a", NEW).is_actionable
    assert replace(_diff("a", NEW), selected=True).is_actionable
    assert replace(_diff("a", UPDATED), selected=True).is_actionable
    assert not replace(_diff("a", SYNCHRONIZED), selected=True).is_actionable
    assert not replace(_diff("a", MISSING), selected=True).is_actionable


def test_operation_log_separates_mutations_and_failures():
    log = OperationLog()
    log.record(LIFECYCLE, "started")
    log.record("CreateWorkItem", "Created Task 'a'", record_id="7")
    log.record(INFO, "note")
    log.record("CreateWorkItem", "Failed", success=False)

    merged = OperationLog()
    merged.extend(log)

    assert len(merged) == 4
    assert [entry.message for entry in merged.mutations] == ["Created Task 'a'", "Failed"]
    assert [entry.message for entry in merged.failures] == ["Failed"]
    assert merged.entries[1].related_record_id == "7"


def test_workspace_host_includes_organization():
    other = WorkspaceRef(id="x", display_name="X", host_endpoint="https://dev.azure.com/Fabrikam/")

    assert PROJ_A.host == "dev.azure.com/contoso"
    assert other.host == "dev.azure.com/fabrikam"
    assert PROJ_A.default_path == "ProjA"
