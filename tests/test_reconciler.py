from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from conftest import ALICE, BOB, CAROL, seed_workspace
from workspace_sync.application.comparators import ClassificationPayload, QueryPayload
from workspace_sync.application.reconciler import SelectiveReconciler
from workspace_sync.application.sync import WorkspaceSyncService
from workspace_sync.core.schema import AREA, ITERATION, QUERY, WORK_ITEM, WorkItemRecord
from workspace_sync.core.tree import flatten_classification, flatten_queries
from workspace_sync.domain.differences import (
    CLASSIFICATION_NODES,
    NEW,
    QUERIES,
    SECURITY_GROUPS,
    WORK_ITEMS,
    Difference,
    Differences,
)
from workspace_sync.domain.errors import CrossScopeLeak, RemoteUnavailable, SameScopeViolation
from workspace_sync.domain.operation_log import ERROR, INFO, LIFECYCLE, SKIP

ACTIVE_BUGS = (
    "SELECT [System.Id] FROM WorkItems WHERE [System.TeamProject] = 'ProjA' "
    "AND [System.AreaPath] UNDER 'ProjA\\Web' AND [System.WorkItemType] = 'Bug'"
)


def _service(client, settings) -> WorkspaceSyncService:
    return WorkspaceSyncService(client, settings=settings, guard_calls=False)


def _select(differences, entity_type):
    return differences.with_selection(lambda diff: diff in differences.for_entity(entity_type))


def _target_items(client) -> dict[str, WorkItemRecord]:
    ref = client.resolve_workspace("proj-b")
    return {item.title: item for item in client.fetch_records(ref, WORK_ITEM)}


def _target_query_paths(client) -> list[str]:
    ref = client.resolve_workspace("proj-b")
    return [node.path for node in flatten_queries(client.fetch_records(ref, QUERY))]


def test_nothing_selected_logs_lifecycle_only(client, settings):
    seed_workspace(client, "proj-a", "ProjA")
    service = _service(client, settings)
    differences = service.analyze_differences("proj-a", "proj-b")
    assert differences.has_changes

    result = service.apply_selected_changes(differences)

    assert [entry.operation_type for entry in result.operation_log] == [LIFECYCLE, LIFECYCLE]
    assert client.mutations == []
    assert result.success


def test_same_workspace_is_rejected_before_any_mutation(client, settings):
    seed_workspace(client, "proj-a", "ProjA")
    service = _service(client, settings)
    differences = service.analyze_differences("proj-a", "proj-a")

    with pytest.raises(SameScopeViolation) as excinfo:
        service.apply_selected_changes(differences.with_selection(lambda diff: True))

    assert client.mutations == []
    assert excinfo.value.operation_log is not None
    assert excinfo.value.operation_log.entries[0].operation_type == LIFECYCLE


def test_new_work_item_is_created_under_target_root_with_mapped_type(client, settings):
    client.add_work_item("proj-a", "Login page", "User Story", state="Active", description="OAuth", area_path="ProjA\\Web")
    client.set_work_item_types("proj-b", ["Epic", "Story", "Task"])
    service = _service(client, settings)
    differences = service.analyze_differences("proj-a", "proj-b")

    result = service.apply_selected_changes(_select(differences, WORK_ITEMS))

    created = _target_items(client)["Login page"]
    assert created.work_item_type == "Story"
    assert created.area_path == "ProjB"
    assert created.iteration_path == "ProjB"
    assert created.description == "OAuth"
    assert result.counts[WORK_ITEMS].created == 1
    assert "type mapped from 'User Story'" in result.operation_log.mutations[0].details


def test_updated_work_item_gets_minimal_patch_with_rebound_paths(client, settings):
    client.add_work_item("proj-a", "Login page", "User Story", state="Active", area_path="ProjA\\Web")
    client.add_work_item("proj-b", "Login page", "User Story", state="New", area_path="ProjB")
    service = _service(client, settings)
    differences = service.analyze_differences("proj-a", "proj-b")

    result = service.apply_selected_changes(_select(differences, WORK_ITEMS))

    updated = _target_items(client)["Login page"]
    assert updated.state == "Active"
    assert updated.area_path == "ProjB\\Web"
    assert result.counts[WORK_ITEMS].updated == 1
    assert result.operation_log.mutations[0].details == "area_path, state"


def test_nested_classification_node_creates_ancestors_first(client, settings):
    client.add_classification_path("proj-a", AREA, "Web\\Api\\V2")
    service = _service(client, settings)
    differences = service.analyze_differences("proj-a", "proj-b")
    deepest = differences.with_selection(lambda diff: diff.key == ("area", "Web\\Api\\V2"))

    result = service.apply_selected_changes(deepest)

    assert [entry.message for entry in result.operation_log.mutations] == [
        "Created area 'Web'",
        "Created area 'Web\\Api'",
        "Created area 'Web\\Api\\V2'",
    ]
    ref = client.resolve_workspace("proj-b")
    [root] = client.fetch_records(ref, AREA)
    assert [node.path for node in flatten_classification(root)] == ["Web", "Web\\Api", "Web\\Api\\V2"]


def test_renamed_iteration_is_applied(client, settings):
    client.add_classification_path("proj-a", ITERATION, "Sprint 1")
    client.add_classification_path("proj-b", ITERATION, "sprint 1")
    service = _service(client, settings)
    differences = service.analyze_differences("proj-a", "proj-b")

    result = service.apply_selected_changes(_select(differences, CLASSIFICATION_NODES))

    ref = client.resolve_workspace("proj-b")
    [root] = client.fetch_records(ref, ITERATION)
    assert [child.name for child in root.children] == ["Sprint 1"]
    assert result.counts[CLASSIFICATION_NODES].updated == 1


def test_query_folders_created_parent_first_and_never_duplicated(client, settings):
    client.add_query("proj-a", "Shared Queries/Team/Sprint/Active Bugs", ACTIVE_BUGS)
    service = _service(client, settings)
    differences = service.analyze_differences("proj-a", "proj-b").select_all()
    reconciler = SelectiveReconciler(client, client, settings)

    result = reconciler.apply(differences)

    assert [entry.message for entry in result.operation_log.mutations] == [
        "Created query folder 'Shared Queries/Team'",
        "Created query folder 'Shared Queries/Team/Sprint'",
        "Created query 'Shared Queries/Team/Sprint/Active Bugs'",
    ]
    target = client.resolve_workspace("proj-b")
    [query] = [
        node.record
        for node in flatten_queries(client.fetch_records(target, QUERY))
        if node.path == "Shared Queries/Team/Sprint/Active Bugs"
    ]
    assert "'ProjB'" in query.wiql
    assert "UNDER 'ProjB\\Web'" in query.wiql
    assert "ProjA" not in query.wiql

    created_before = len(client.mutations)
    paths_before = _target_query_paths(client)

    again = reconciler.apply(differences)

    assert len(client.mutations) == created_before
    assert _target_query_paths(client) == paths_before
    assert again.counts[QUERIES].created == 0
    assert again.counts[QUERIES].skipped == 3


def test_existing_query_is_updated_instead_of_duplicated(client, settings):
    client.add_query("proj-a", "Shared Queries/Bugs", "SELECT [System.Id] FROM WorkItems WHERE [System.WorkItemType] = 'Bug'")
    client.add_query("proj-b", "Shared Queries/Bugs", "SELECT [System.Id] FROM WorkItems")
    service = _service(client, settings)
    differences = service.analyze_differences("proj-a", "proj-b")

    result = service.apply_selected_changes(_select(differences, QUERIES))

    assert result.counts[QUERIES].updated == 1
    assert _target_query_paths(client).count("Shared Queries/Bugs") == 1
    assert result.operation_log.mutations[0].details == "query text unchanged"


def test_group_members_are_added_and_never_removed(client, settings):
    client.set_group("proj-a", "Contributors", [ALICE, BOB])
    client.set_group("proj-b", "Contributors", [BOB, CAROL])
    service = _service(client, settings)
    differences = service.analyze_differences("proj-a", "proj-b")

    result = service.apply_selected_changes(_select(differences, SECURITY_GROUPS))

    group = client.fetch_group_members(client.resolve_workspace("proj-b"), "Contributors")
    assert {member.email for member in group.members} == {
        "alice@example.com",
        "bob@example.com",
        "carol@example.com",
    }
    assert [op for op, _, _ in client.mutations] == ["add_member"]
    assert result.counts[SECURITY_GROUPS].created == 1
    info = [entry for entry in result.operation_log if entry.operation_type == INFO]
    assert len(info) == 1 and "Carol" in info[0].message


def test_failed_records_are_logged_and_the_batch_continues(client, settings):
    client.add_work_item("proj-a", "Login page", "Task")
    client.add_classification_path("proj-a", AREA, "Web")
    client.add_classification_path("proj-a", AREA, "Mobile")
    client.fail("proj-b", "create_record:area", RemoteUnavailable("service busy", status_code=503))
    service = _service(client, settings)
    differences = service.analyze_differences("proj-a", "proj-b").select_all()

    result = service.apply_selected_changes(differences)

    assert result.counts[CLASSIFICATION_NODES].failed == 2
    assert result.counts[WORK_ITEMS].created == 1
    assert not result.success
    failures = result.operation_log.failures
    assert [entry.operation_type for entry in failures] == [ERROR, ERROR]
    assert all("service busy" in entry.details for entry in failures)
    assert result.operation_log.entries[-1].operation_type == LIFECYCLE


def test_target_group_outside_scope_aborts_the_pass(client, settings):
    client.set_group("proj-a", "Contributors", [ALICE])
    client.set_group("proj-b", "Contributors", [BOB])
    service = _service(client, settings)
    differences = service.analyze_differences("proj-a", "proj-b")
    client.set_group("proj-b", "Contributors", [BOB], principal_name="[ProjC]\\Contributors")

    with pytest.raises(CrossScopeLeak) as excinfo:
        service.apply_selected_changes(_select(differences, SECURITY_GROUPS))

    assert client.mutations == []
    log = excinfo.value.operation_log
    assert log is not None
    assert log.entries[-1].message == "Reconciliation aborted"


def test_unselected_records_leave_no_trace(client, settings):
    client.add_work_item("proj-a", "Login page", "Task")
    client.add_classification_path("proj-a", AREA, "Web")
    service = _service(client, settings)
    differences = service.analyze_differences("proj-a", "proj-b")

    result = service.apply_selected_changes(_select(differences, WORK_ITEMS))

    assert len(result.operation_log) == 3
    assert all("Web" not in entry.message for entry in result.operation_log)
    assert result.counts[CLASSIFICATION_NODES].skipped == 0


def _trashed_selection(client, **entities) -> Differences:
    return Differences(
        source=client.resolve_workspace("proj-a"),
        target=client.resolve_workspace("proj-b"),
        **entities,
    )


def test_selected_trashed_classification_node_is_never_created(client, settings):
    node = Difference(
        record_kind=AREA,
        difference_type=NEW,
        key=("area", "Recycle Bin\\Old"),
        source_id="41",
        description="area 'Recycle Bin\\Old' does not exist in ProjB",
        payload=ClassificationPayload(structure=AREA, path="Recycle Bin\\Old", name="Old", parent_path="Recycle Bin"),
        selected=True,
    )

    result = SelectiveReconciler(client, client, settings).apply(_trashed_selection(client, classification_nodes=(node,)))

    assert client.mutations == []
    assert result.counts[CLASSIFICATION_NODES].skipped == 1
    [skip] = [entry for entry in result.operation_log if entry.operation_type == SKIP]
    assert "Recycle Bin\\Old" in skip.message


def test_selected_trashed_query_is_never_created(client, settings):
    query = Difference(
        record_kind=QUERY,
        difference_type=NEW,
        key=("Shared Queries/Trash/Stale",),
        source_id="42",
        description="query 'Shared Queries/Trash/Stale' does not exist in ProjB",
        payload=QueryPayload(
            path="Shared Queries/Trash/Stale",
            name="Stale",
            parent_path="Shared Queries/Trash",
            is_folder=False,
            wiql="SELECT [System.Id] FROM WorkItems",
        ),
        selected=True,
    )

    result = SelectiveReconciler(client, client, settings).apply(_trashed_selection(client, queries=(query,)))

    assert client.mutations == []
    assert result.counts[QUERIES].skipped == 1
    assert result.counts[QUERIES].created == 0
    assert [entry.operation_type for entry in result.operation_log].count(SKIP) == 1


def test_member_reached_through_a_nested_group_is_not_added_again(client, settings):
    client.set_group("proj-a", "Contributors", [ALICE, BOB])
    client.set_group("proj-b", "Web Team", [BOB])
    client.set_group("proj-b", "Contributors", [ALICE], nested_groups=["Web Team"])
    service = _service(client, settings)
    differences = service.analyze_differences("proj-a", "proj-b")

    [group] = differences.security_groups
    assert not group.payload.members_to_add

    result = service.apply_selected_changes(differences.select_all())

    assert client.mutations == []
    assert result.counts[SECURITY_GROUPS].created == 0
