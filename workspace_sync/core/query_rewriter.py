"""Retarget WIQL text from the source workspace namespace to the target.

Steps run in a fixed order, each on the output of the previous one:

1. ``[System.TeamProject] = 'Src'`` (or ``[Team Project]``), case-insensitive.
2. ``[System.AreaPath]`` / ``[System.IterationPath]`` (and their friendly
   names) compared with ``UNDER`` or ``=`` against a path rooted at ``Src``.
   The operator and any sub-path are kept.
3. Any other quoted literal exactly equal to ``Src``. This can rewrite an
   unrelated string that happens to equal the workspace name; that is the
   accepted behaviour.
4. Cross-workspace directives (``@project 'Other'``) are removed.

Rewriting is not guaranteed to be idempotent when the source and target
names collide with other literals in the text.
"""
from __future__ import annotations

import re
from dataclasses import dataclass

SCOPE_FIELDS = (r"System\.TeamProject", r"Team Project")
AREA_FIELDS = (r"System\.AreaPath", r"Area Path")
ITERATION_FIELDS = (r"System\.IterationPath", r"Iteration Path")

STEP_SCOPE = "scope"
STEP_AREA_PATH = "area_path"
STEP_ITERATION_PATH = "iteration_path"
STEP_LITERAL = "literal"
STEP_CROSS_WORKSPACE = "cross_workspace"

_DIRECTIVE_RE = re.compile(r"\s*@project\s*(?:\(\s*'(?:[^']|'')*'\s*\)|'(?:[^']|'')*')", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class QueryRewrite:
    text: str
    changed: bool
    steps: tuple[str, ...] = ()


def _field_group(fields: tuple[str, ...]) -> str:
    return r"\[\s*(?:" + "|".join(fields) + r")\s*\]"


def _rewrite_scope(text: str, source: str, target: str) -> tuple[str, int]:
    pattern = re.compile(
        r"(" + _field_group(SCOPE_FIELDS) + r"\s*=\s*)'" + re.escape(source) + r"'",
        re.IGNORECASE,
    )
    return pattern.subn(lambda match: f"{match.group(1)}'{target}'", text)


def _rewrite_path(text: str, fields: tuple[str, ...], source: str, target: str) -> tuple[str, int]:
    pattern = re.compile(
        r"(" + _field_group(fields) + r"\s*(?:UNDER|=)\s*)'" + re.escape(source) + r"(\\[^']*)?'",
        re.IGNORECASE,
    )
    return pattern.subn(lambda match: f"{match.group(1)}'{target}{match.group(2) or ''}'", text)


def _rewrite_literal(text: str, source: str, target: str) -> tuple[str, int]:
    pattern = re.compile(r"'" + re.escape(source) + r"'")
    return pattern.subn(lambda _match: f"'{target}'", text)


def _strip_directives(text: str) -> tuple[str, int]:
    return _DIRECTIVE_RE.subn("", text)


def rewrite_query(text: str | None, source_namespace: str, target_namespace: str) -> QueryRewrite:
    """Rewrite ``text`` and report which steps matched."""

    original = text or ""
    if not original or not source_namespace:
        return QueryRewrite(text=original, changed=False)

    current = original
    steps: list[str] = []

    current, count = _rewrite_scope(current, source_namespace, target_namespace)
    if count:
        steps.append(STEP_SCOPE)

    current, count = _rewrite_path(current, AREA_FIELDS, source_namespace, target_namespace)
    if count:
        steps.append(STEP_AREA_PATH)

    current, count = _rewrite_path(current, ITERATION_FIELDS, source_namespace, target_namespace)
    if count:
        steps.append(STEP_ITERATION_PATH)

    current, count = _rewrite_literal(current, source_namespace, target_namespace)
    if count:
        steps.append(STEP_LITERAL)

    current, count = _strip_directives(current)
    if count:
        steps.append(STEP_CROSS_WORKSPACE)

    if not steps:
        return QueryRewrite(text=original, changed=False)
    return QueryRewrite(text=current, changed=current != original, steps=tuple(steps))


def rewrite_query_text(text: str | None, source_namespace: str, target_namespace: str) -> str:
    return rewrite_query(text, source_namespace, target_namespace).text


__all__ = ["QueryRewrite", "rewrite_query", "rewrite_query_text"]
