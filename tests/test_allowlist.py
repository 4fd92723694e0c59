from __future__ import annotations

import pytest

from gate_core.allowlist import match
from gate_core.refs import parse_image_reference

DIGEST = "sha256:" + ("b" * 64)


@pytest.mark.parametrize(
    ("image", "patterns", "expected"),
    [
        ("harbor.example.com/myapp", ["harbor.example.com/*"], True),
        ("harbor.example.com/team/deep/myapp", ["harbor.example.com/*"], True),
        ("harbor.example.com/team/myapp", ["harbor.example.com/team/*"], True),
        ("harbor.example.com/other/myapp", ["harbor.example.com/team/*"], False),
        ("harbor.example.com/team/myapp", ["harbor.example.com/*/myapp"], True),
        ("harbor.example.com/team/sub/myapp", ["harbor.example.com/*/myapp"], False),
        ("ghcr.io/acme/tool", ["*/acme/tool"], True),
        ("HARBOR.example.com/myapp", ["harbor.EXAMPLE.com/myapp"], True),
        ("evil.example.com/myapp", ["harbor.example.com/*"], False),
        ("harbor.example.com.evil.io/myapp", ["harbor.example.com/*"], False),
    ],
)
def test_pattern_matching(image: str, patterns: list[str], expected: bool) -> None:
    assert match(parse_image_reference(image), patterns) is expected


def test_empty_allowlist_denies_everything() -> None:
    assert match(parse_image_reference(f"harbor.example.com/myapp@{DIGEST}"), []) is False


def test_trailing_wildcard_requires_a_remainder() -> None:
    ref = parse_image_reference("harbor.example.com/team")
    assert match(ref, ["harbor.example.com/team/*"]) is False


def test_require_digest_rejects_tag_only_references() -> None:
    patterns = ["harbor.example.com/*"]
    assert match(parse_image_reference("harbor.example.com/myapp:1.0"), patterns, require_digest=True) is False
    assert match(parse_image_reference(f"harbor.example.com/myapp@{DIGEST}"), patterns, require_digest=True) is True
