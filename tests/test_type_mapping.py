from __future__ import annotations

import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from workspace_sync.core.type_mapping import map_work_item_type


def test_direct_match_ignores_case():
    assert map_work_item_type("user story", ["Epic", "User Story", "Task"]) == "User Story"


def test_fallback_table_is_consulted_in_order():
    assert map_work_item_type("User Story", ["Epic", "Story", "Task"]) == "Story"
    assert map_work_item_type("Bug", ["Epic", "Task", "Issue"]) == "Issue"


def test_unknown_type_takes_first_target_type():
    assert map_work_item_type("Risk", ["Epic", "Task"]) == "Epic"


def test_without_target_types_source_type_is_kept():
    assert map_work_item_type("Bug", []) == "Bug"
