"""Registry allowlist matching for image references."""

from __future__ import annotations

from collections.abc import Sequence

from .refs import ImageReference


def match(
    ref: ImageReference,
    allowed_patterns: Sequence[str],
    *,
    require_digest: bool = False,
) -> bool:
    """Return True when ``ref`` originates from one of ``allowed_patterns``.

    A pattern is ``host/segment/...``. ``*`` matches exactly one segment and
    a trailing ``/*`` matches any remainder. An empty pattern list matches
    nothing.
    """

    if require_digest and not ref.pinned:
        return False
    target = [ref.host.lower(), *ref.path.split("/")]
    return any(_match_pattern(pattern, target) for pattern in allowed_patterns)


def _match_pattern(pattern: str, target: list[str]) -> bool:
    value = pattern.strip().rstrip("/")
    if not value:
        return False
    segments = value.split("/")
    segments[0] = segments[0].lower()
    if len(segments) > 1 and segments[-1] == "*":
        prefix = segments[:-1]
        if len(target) <= len(prefix):
            return False
        return _segments_equal(prefix, target[: len(prefix)])
    if len(segments) != len(target):
        return False
    return _segments_equal(segments, target)


def _segments_equal(pattern: list[str], target: list[str]) -> bool:
    return all(expected == "*" or expected == actual for expected, actual in zip(pattern, target))
