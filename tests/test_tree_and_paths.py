from __future__ import annotations

import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from workspace_sync.core.schema import ClassificationNode, QueryItem
from workspace_sync.core.tree import (
    flatten_classification,
    flatten_queries,
    parent_of,
    path_prefixes,
    rebind_path,
    relative_path,
)


def _area(name: str, *children: ClassificationNode) -> ClassificationNode:
    return ClassificationNode(id=name, name=name, structure="area", children=list(children))


def test_classification_flattening_is_pre_order_and_relative():
    root = _area("ProjA", _area("Web", _area("Api"), _area("Ui")), _area("Mobile"))

    flat = flatten_classification(root)

    assert [node.path for node in flat] == ["Web", "Web\\Api", "Web\\Ui", "Mobile"]
    assert [node.depth for node in flat] == [1, 2, 2, 1]
    assert flat[1].parent_path == "Web"
    assert flat[0].parent_path is None


def test_depth_limit_stops_descent():
    root = _area("ProjA", _area("Web", _area("Api", _area("V2"))))

    flat = flatten_classification(root, max_depth=2)

    assert [node.path for node in flat] == ["Web", "Web\\Api"]


def test_very_deep_trees_do_not_recurse():
    leaf = _area("n1500")
    for index in range(1499, 0, -1):
        leaf = _area(f"n{index}", leaf)

    flat = flatten_classification(_area("ProjA", leaf))

    assert len(flat) == 1500
    assert flat[-1].depth == 1500


def test_query_paths_use_forward_slashes():
    shared = QueryItem(
        id="1",
        name="Shared Queries",
        path="Shared Queries",
        is_folder=True,
        children=[QueryItem(id="2", name="Active", path="Shared Queries/Active", wiql="SELECT 1")],
    )

    flat = flatten_queries([shared])

    assert [(node.path, node.parent_path) for node in flat] == [
        ("Shared Queries", None),
        ("Shared Queries/Active", "Shared Queries"),
    ]


def test_path_helpers():
    assert path_prefixes("Shared Queries/Team/Sprint", "/") == [
        "Shared Queries",
        "Shared Queries/Team",
        "Shared Queries/Team/Sprint",
    ]
    assert parent_of("Shared Queries/Team", "/") == "Shared Queries"
    assert parent_of("Shared Queries", "/") is None
    assert relative_path("ProjA\\Team\\Sub") == "Team\\Sub"
    assert relative_path(None) == ""


def test_rebind_path_moves_sub_path_under_target_root():
    assert rebind_path("ProjA\\Team\\Sub", "ProjB") == "ProjB\\Team\\Sub"
    assert rebind_path("ProjA", "ProjB") == "ProjB"
    assert rebind_path("", "ProjB") == "ProjB"
