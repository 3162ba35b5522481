"""Iterative flattening of classification and query hierarchies."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Iterable, TypeVar

from workspace_sync.core.schema import ClassificationNode, QueryItem

AREA_SEPARATOR = "\\"
QUERY_SEPARATOR = "/"

NodeT = TypeVar("NodeT", ClassificationNode, QueryItem)


@dataclass(frozen=True, slots=True)
class FlatNode(Generic[NodeT]):
    """One node of a flattened tree with its computed path."""

    path: str
    name: str
    depth: int
    parent_path: str | None
    record: NodeT


def _flatten(
    roots: Iterable[NodeT],
    separator: str,
    *,
    prefix: tuple[str, ...] = (),
    max_depth: int | None = None,
) -> list[FlatNode[NodeT]]:
    flat: list[FlatNode[NodeT]] = []
    stack: list[tuple[NodeT, tuple[str, ...]]] = [(root, prefix) for root in reversed(list(roots))]
    while stack:
        node, parents = stack.pop()
        segments = (*parents, node.name)
        depth = len(segments) - len(prefix)
        flat.append(
            FlatNode(
                path=separator.join(segments),
                name=node.name,
                depth=depth,
                parent_path=separator.join(parents) if parents else None,
                record=node,
            )
        )
        if max_depth is not None and depth >= max_depth:
            continue
        for child in reversed(node.children):
            stack.append((child, segments))
    return flat


def flatten_classification(root: ClassificationNode, *, max_depth: int | None = None) -> list[FlatNode[ClassificationNode]]:
    """Pre-order list of the nodes below ``root``, paths relative to the root.

    The root node itself is the workspace and is not part of the result.
    """

    return _flatten(root.children, AREA_SEPARATOR, max_depth=max_depth)


def flatten_queries(items: Iterable[QueryItem], *, max_depth: int | None = None) -> list[FlatNode[QueryItem]]:
    """Pre-order list of folders and queries with their full paths."""

    return _flatten(items, QUERY_SEPARATOR, max_depth=max_depth)


def split_path(path: str, separator: str) -> list[str]:
    return [segment for segment in path.split(separator) if segment]


def path_prefixes(path: str, separator: str) -> list[str]:
    """``"a/b/c"`` -> ``["a", "a/b", "a/b/c"]``."""

    segments = split_path(path, separator)
    return [separator.join(segments[: index + 1]) for index in range(len(segments))]


def parent_of(path: str, separator: str) -> str | None:
    segments = split_path(path, separator)
    if len(segments) <= 1:
        return None
    return separator.join(segments[:-1])


def relative_path(path: str | None, separator: str = AREA_SEPARATOR) -> str:
    """Drop the workspace root segment: ``ProjA\\Team`` -> ``Team``."""

    segments = split_path(path or "", separator)
    return separator.join(segments[1:])


def rebind_path(path: str | None, target_root: str, separator: str = AREA_SEPARATOR) -> str:
    """Re-root a classification path under ``target_root``."""

    sub_path = relative_path(path, separator)
    if not sub_path:
        return target_root
    return f"{target_root}{separator}{sub_path}"
