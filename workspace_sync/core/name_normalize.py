from __future__ import annotations

import unicodedata


def normalize(name: str | None) -> str:
    """Case-insensitive form used for record keys and identity matching."""

    if not name:
        return ""
    return unicodedata.normalize("NFKC", name).strip().casefold()


def record_key(*parts: str | None) -> tuple[str, ...]:
    return tuple(normalize(part) for part in parts)


def contains_sentinel(value: str | None, sentinels: tuple[str, ...]) -> bool:
    """True when ``value`` mentions any trash/recycle sentinel."""

    folded = normalize(value)
    if not folded:
        return False
    return any(normalize(sentinel) in folded for sentinel in sentinels if sentinel)
