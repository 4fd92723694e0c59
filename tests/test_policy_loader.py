from __future__ import annotations

import textwrap
from datetime import timedelta
from pathlib import Path

import pytest
from cryptography.hazmat.primitives.asymmetric import ed25519

from conftest import GITHUB_ISSUER, TrustRoot, cert_pem, public_pem
from gate_core.attest import SIGNATURE_PREDICATE, SLSA_PROVENANCE_V1, key_fingerprint
from gate_core.errors import ConfigError
from gate_core.policy import Mode, Verdict, load_policy, parse_duration, policy_from_mapping
from gate_core.scan import Severity


def _indent(text: str, spaces: int) -> str:
    return textwrap.indent(text, " " * spaces)


def _write_policy(tmp_path: Path, trust_root: TrustRoot, key: ed25519.Ed25519PrivateKey) -> Path:
    (tmp_path / "keys").mkdir()
    (tmp_path / "keys" / "release.pub").write_text(public_pem(key), encoding="utf-8")
    document = f"""\
version: "2026-01-15.1"
settings:
  cache_ttl: 10m
  fetch_timeout: 2s
  max_workers: 4
trust_roots:
  fulcio:
    certificate: |
{_indent(cert_pem(trust_root.cert), 6)}
attestors:
  github:
    keyless:
      issuer: {GITHUB_ISSUER}
      subject_regexp: "https://github.com/acme/.*"
      roots: [fulcio]
    scope: ["harbor.example.com/*"]
  release:
    key_file: keys/release.pub
rules:
  - name: signed-images
    match:
      namespaces: ["prod-*"]
      kinds: [Pod, Deployment]
      images: ["harbor.example.com/*"]
    exclude:
      namespaces: [prod-sandbox]
    require_digest: true
    allowed_registries: ["harbor.example.com/*"]
    attestations:
      - name: release-signers
        attestors: [github, release]
        threshold: 2
      - attestors: [release]
        predicate_type: provenance
    scan:
      max_age: 24h
      max_severity: high
  - name: audit-everything
    mode: audit
    allowed_registries: []
"""
    path = tmp_path / "policy.yaml"
    path.write_text(document, encoding="utf-8")
    return path


def test_load_policy_from_yaml(tmp_path: Path, trust_root: TrustRoot) -> None:
    key = ed25519.Ed25519PrivateKey.generate()
    policy = load_policy(_write_policy(tmp_path, trust_root, key))

    assert policy.version == "2026-01-15.1"
    assert policy.settings.cache_ttl == timedelta(minutes=10)
    assert policy.settings.fetch_timeout == 2.0
    assert policy.settings.max_workers == 4
    assert set(policy.trust_roots) == {"fulcio"}

    signed, audit = policy.rules
    assert signed.mode is Mode.ENFORCE
    assert signed.require_digest is True
    assert signed.match.namespaces == ("prod-*",)
    assert signed.exclude is not None and signed.exclude.namespaces == ("prod-sandbox",)
    assert signed.scan is not None
    assert signed.scan.max_age == timedelta(hours=24)
    assert signed.scan.max_severity is Severity.HIGH

    release_signers, provenance = signed.attestor_sets
    assert release_signers.threshold == 2
    assert release_signers.predicate_type == SIGNATURE_PREDICATE
    assert [attestor.name for attestor in release_signers.attestors] == ["github", "release"]
    github = release_signers.attestors[0]
    assert github.keyless is not None
    assert github.keyless.roots == ("fulcio",)
    assert github.scope == ("harbor.example.com/*",)
    release = release_signers.attestors[1]
    assert release.fingerprint == key_fingerprint(key.public_key())
    assert provenance.predicate_type == SLSA_PROVENANCE_V1

    assert audit.mode is Mode.AUDIT
    assert audit.allowed_registries == ()


def test_cache_ttl_longer_than_scan_max_age_is_fatal() -> None:
    data = {
        "version": "1",
        "settings": {"cache_ttl": "2h"},
        "rules": [{"name": "fresh", "scan": {"max_age": "1h", "max_severity": "HIGH"}}],
    }
    with pytest.raises(ConfigError, match="cache ttl"):
        policy_from_mapping(data)


def test_cache_ttl_equal_to_scan_max_age_is_accepted() -> None:
    data = {
        "version": "1",
        "settings": {"cache_ttl_seconds": 3600},
        "rules": [{"name": "fresh", "scan": {"max_age": "1h"}}],
    }
    assert policy_from_mapping(data).settings.cache_ttl == timedelta(hours=1)


@pytest.mark.parametrize(
    ("data", "message"),
    [
        ({"rules": []}, "version"),
        ({"version": "1", "rules": [{"name": "a"}, {"name": "a"}]}, "duplicate rule name"),
        ({"version": "1", "rules": [{"name": "a", "mode": "warn"}]}, "mode must be"),
        ({"version": "1", "rules": [{"name": "a", "attestations": [{"attestors": ["ghost"]}]}]}, "unknown attestor"),
        ({"version": "1", "rules": [{"name": "a", "scan": {"max_severity": "SEVERE"}}]}, "unknown severity"),
        ({"version": "1", "settings": {"unmatched": "maybe"}}, "unmatched"),
        ({"version": "1", "attestors": {"x": {"keyless": {"subject": "s"}}}}, "issuer"),
        ({"version": "1", "attestors": {"x": {"key": "not a pem"}}}, "not valid PEM"),
        ({"version": "1", "attestors": {"x": {}}}, "needs a 'keyless' identity"),
        ({"version": "1", "trust_roots": {"r": "garbage"}}, "not a valid PEM certificate"),
        ({"version": "1", "rules": "nope"}, "must be a list"),
    ],
)
def test_malformed_policies_raise_config_error(data: dict, message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        policy_from_mapping(data)


def test_threshold_outside_attestor_count_is_fatal() -> None:
    key = ed25519.Ed25519PrivateKey.generate()
    data = {
        "version": "1",
        "attestors": {"release": {"key": public_pem(key)}},
        "rules": [{"name": "a", "attestations": [{"attestors": ["release"], "threshold": 2}]}],
    }
    with pytest.raises(ConfigError, match="threshold"):
        policy_from_mapping(data)


def test_declared_fingerprint_must_match_key() -> None:
    key = ed25519.Ed25519PrivateKey.generate()
    data = {"version": "1", "attestors": {"release": {"key": public_pem(key), "fingerprint": "sha256:00"}}}
    with pytest.raises(ConfigError, match="fingerprint"):
        policy_from_mapping(data)


def test_keyless_roots_must_exist() -> None:
    data = {"version": "1", "attestors": {"gh": {"keyless": {"issuer": GITHUB_ISSUER, "roots": ["missing"]}}}}
    with pytest.raises(ConfigError, match="unknown trust roots"):
        policy_from_mapping(data)


def test_invalid_subject_regexp_is_config_error() -> None:
    data = {"version": "1", "attestors": {"gh": {"keyless": {"issuer": GITHUB_ISSUER, "subject_regexp": "(unclosed"}}}}
    with pytest.raises(ConfigError, match="attestor 'gh' has invalid subject_regexp"):
        policy_from_mapping(data)


def test_environment_values_are_resolved(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GATE_POLICY_VERSION", "from-env")
    monkeypatch.setenv("GATE_UNMATCHED", "deny")
    policy = policy_from_mapping({"version": "${GATE_POLICY_VERSION}", "settings": {"unmatched": "${GATE_UNMATCHED}"}})
    assert policy.version == "from-env"
    assert policy.settings.unmatched is Verdict.DENY


def test_missing_policy_file_is_config_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="unable to read"):
        load_policy(tmp_path / "absent.yaml")


def test_invalid_yaml_is_config_error(tmp_path: Path) -> None:
    path = tmp_path / "bad.yaml"
    path.write_text("version: [unclosed", encoding="utf-8")
    with pytest.raises(ConfigError, match="not valid YAML"):
        load_policy(path)


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (90, timedelta(seconds=90)),
        ("45", timedelta(seconds=45)),
        ("30s", timedelta(seconds=30)),
        ("15m", timedelta(minutes=15)),
        ("24h", timedelta(hours=24)),
        ("7d", timedelta(days=7)),
        ("1h30m", timedelta(hours=1, minutes=30)),
        ("250ms", timedelta(milliseconds=250)),
    ],
)
def test_parse_duration(value: object, expected: timedelta) -> None:
    assert parse_duration(value) == expected


@pytest.mark.parametrize("value", ["", "soon", "5 minutes", "-5", True])
def test_parse_duration_rejects_garbage(value: object) -> None:
    with pytest.raises(ConfigError):
        parse_duration(value)
