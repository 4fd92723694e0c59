"""Build immutable ``Policy`` snapshots from YAML documents."""

from __future__ import annotations

import os
import re
from datetime import timedelta
from pathlib import Path
from typing import Any, Mapping

import yaml
from cryptography import x509

from ..attest.keys import key_fingerprint, load_public_key
from ..attest.types import Attestor, AttestorSet, KeylessIdentity, resolve_predicate
from ..errors import ConfigError, ValidationError
from ..scan import Severity
from .types import Mode, Policy, Rule, ScanRequirement, Selector, Settings, Verdict

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d)")
_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, "d": 86400}


def load_policy(path: Path | str) -> Policy:
    policy_path = Path(path).expanduser()
    try:
        raw = yaml.safe_load(policy_path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"unable to read policy file {policy_path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"policy file {policy_path} is not valid YAML: {exc}") from exc
    return policy_from_mapping(raw or {}, base_dir=policy_path.parent)


def policy_from_mapping(data: Any, *, base_dir: Path | None = None) -> Policy:
    raw = _ensure_mapping(data, "policy")
    base = base_dir or Path.cwd()

    version = _resolve_env_value(raw.get("version"))
    if version is None or str(version).strip() == "":
        raise ConfigError("policy 'version' is required")

    settings = _parse_settings(_ensure_mapping(raw.get("settings") or {}, "settings"))
    trust_roots = _parse_trust_roots(_ensure_mapping(raw.get("trust_roots") or {}, "trust_roots"), base)
    attestors = _parse_attestors(_ensure_mapping(raw.get("attestors") or {}, "attestors"), base, trust_roots)

    rules_raw = raw.get("rules") or []
    if not isinstance(rules_raw, list):
        raise ConfigError("policy 'rules' must be a list")
    rules: list[Rule] = []
    seen: set[str] = set()
    for index, item in enumerate(rules_raw):
        rule = _parse_rule(index, item, attestors, base, trust_roots)
        if rule.name in seen:
            raise ConfigError(f"duplicate rule name '{rule.name}'")
        seen.add(rule.name)
        rules.append(rule)

    policy = Policy(
        version=str(version).strip(),
        rules=tuple(rules),
        settings=settings,
        trust_roots=trust_roots,
    )
    validate_policy(policy)
    return policy


def validate_policy(policy: Policy) -> None:
    """Reject policies whose cache could outlive a scan freshness window."""

    ttl = policy.settings.cache_ttl
    for rule in policy.rules:
        if rule.scan is not None and ttl > rule.scan.max_age:
            raise ConfigError(
                f"cache ttl {ttl} exceeds scan max_age {rule.scan.max_age} of rule '{rule.name}'"
            )
        for attestor_set in rule.attestor_sets:
            if not 1 <= attestor_set.threshold <= len(attestor_set.attestors):
                raise ConfigError(
                    f"rule '{rule.name}': threshold {attestor_set.threshold} outside "
                    f"1..{len(attestor_set.attestors)}"
                )


def parse_duration(value: Any) -> timedelta:
    value = _resolve_env_value(value)
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value or "").strip().lower()
        if not text:
            raise ConfigError("empty duration")
        try:
            seconds = float(text)
        except ValueError:
            parts = _DURATION_RE.findall(text)
            if not parts or "".join(number + unit for number, unit in parts) != text:
                raise ConfigError(f"invalid duration: {value!r}") from None
            seconds = sum(float(number) * _DURATION_UNITS[unit] for number, unit in parts)
    if seconds < 0:
        raise ConfigError(f"negative duration: {value!r}")
    return timedelta(seconds=seconds)


def _parse_settings(raw: Mapping[str, Any]) -> Settings:
    defaults = Settings()
    cache_ttl = raw.get("cache_ttl", raw.get("cache_ttl_seconds"))
    fetch_timeout = raw.get("fetch_timeout", raw.get("fetch_timeout_seconds"))
    unmatched = str(_resolve_env_value(raw.get("unmatched")) or defaults.unmatched.value).strip().lower()
    if unmatched not in {Verdict.ALLOW.value, Verdict.DENY.value}:
        raise ConfigError("settings.unmatched must be one of: allow, deny")
    try:
        max_workers = int(_resolve_env_value(raw.get("max_workers", defaults.max_workers)))
    except (TypeError, ValueError) as exc:
        raise ConfigError("settings.max_workers must be an integer") from exc
    if max_workers < 1:
        raise ConfigError("settings.max_workers must be at least 1")
    return Settings(
        cache_ttl=parse_duration(cache_ttl) if cache_ttl is not None else defaults.cache_ttl,
        fetch_timeout=(
            parse_duration(fetch_timeout).total_seconds() if fetch_timeout is not None else defaults.fetch_timeout
        ),
        max_workers=max_workers,
        unmatched=Verdict(unmatched),
    )


def _parse_trust_roots(raw: Mapping[str, Any], base: Path) -> dict[str, x509.Certificate]:
    roots: dict[str, x509.Certificate] = {}
    for name, value in raw.items():
        entry = {"certificate": value} if isinstance(value, str) else _ensure_mapping(value, f"trust root '{name}'")
        pem = _pem_value(entry, "certificate", base, f"trust root '{name}'")
        try:
            roots[str(name)] = x509.load_pem_x509_certificate(pem.encode("utf-8"))
        except ValueError as exc:
            raise ConfigError(f"trust root '{name}' is not a valid PEM certificate") from exc
    return roots


def _parse_attestors(
    raw: Mapping[str, Any],
    base: Path,
    trust_roots: Mapping[str, x509.Certificate],
) -> dict[str, Attestor]:
    return {
        str(name): _parse_attestor(str(name), _ensure_mapping(value, f"attestor '{name}'"), base, trust_roots)
        for name, value in raw.items()
    }


def _parse_attestor(
    name: str,
    raw: Mapping[str, Any],
    base: Path,
    trust_roots: Mapping[str, x509.Certificate],
) -> Attestor:
    scope = _string_tuple(raw.get("scope"), f"attestor '{name}' scope")
    keyless_raw = raw.get("keyless")
    has_key = raw.get("key") is not None or raw.get("key_file") is not None
    if keyless_raw is not None and has_key:
        raise ConfigError(f"attestor '{name}' must be keyless or key-based, not both")

    if keyless_raw is not None:
        keyless = _ensure_mapping(keyless_raw, f"attestor '{name}' keyless")
        issuer = _resolve_env_value(keyless.get("issuer"))
        if not issuer:
            raise ConfigError(f"attestor '{name}' keyless identity requires 'issuer'")
        subject = _resolve_env_value(keyless.get("subject"))
        subject_regexp = _resolve_env_value(keyless.get("subject_regexp"))
        roots = _string_tuple(keyless.get("roots"), f"attestor '{name}' roots")
        missing = [root for root in roots if root not in trust_roots]
        if missing:
            raise ConfigError(f"attestor '{name}' references unknown trust roots: {', '.join(missing)}")
        try:
            identity = KeylessIdentity(
                issuer=str(issuer),
                subject=str(subject) if subject is not None else None,
                subject_regexp=str(subject_regexp) if subject_regexp is not None else None,
                roots=roots,
            )
        except re.error as exc:
            raise ConfigError(f"attestor '{name}' has invalid subject_regexp: {exc}") from exc
        return Attestor(name=name, keyless=identity, scope=scope)

    if not has_key:
        raise ConfigError(f"attestor '{name}' needs a 'keyless' identity or a 'key'")
    pem = _pem_value(raw, "key", base, f"attestor '{name}'")
    try:
        public_key = load_public_key(pem)
    except ValidationError as exc:
        raise ConfigError(f"attestor '{name}': {exc}") from exc
    fingerprint = key_fingerprint(public_key)
    declared = _resolve_env_value(raw.get("fingerprint"))
    if declared and str(declared).strip().lower() != fingerprint:
        raise ConfigError(f"attestor '{name}' fingerprint does not match its key")
    return Attestor(name=name, public_key=public_key, fingerprint=fingerprint, scope=scope)


def _parse_rule(
    index: int,
    raw: Any,
    attestors: Mapping[str, Attestor],
    base: Path,
    trust_roots: Mapping[str, x509.Certificate],
) -> Rule:
    item = _ensure_mapping(raw, f"rule #{index}")
    name = str(item.get("name") or "").strip()
    if not name:
        raise ConfigError(f"rule #{index} requires a 'name'")

    mode_raw = str(item.get("mode") or Mode.ENFORCE.value).strip().lower()
    try:
        mode = Mode(mode_raw)
    except ValueError as exc:
        raise ConfigError(f"rule '{name}': mode must be one of: enforce, audit") from exc

    allowed_raw = item.get("allowed_registries")
    allowed = None if allowed_raw is None else _string_tuple(allowed_raw, f"rule '{name}' allowed_registries")

    sets_raw = item.get("attestations") or []
    if not isinstance(sets_raw, list):
        raise ConfigError(f"rule '{name}': 'attestations' must be a list")
    attestor_sets = tuple(
        _parse_attestor_set(name, position, entry, attestors, base, trust_roots)
        for position, entry in enumerate(sets_raw)
    )

    scan = None
    if item.get("scan") is not None:
        scan_raw = _ensure_mapping(item["scan"], f"rule '{name}' scan")
        try:
            severity = Severity.parse(scan_raw.get("max_severity", "HIGH"))
        except ValidationError as exc:
            raise ConfigError(f"rule '{name}': {exc}") from exc
        scan = ScanRequirement(max_age=parse_duration(scan_raw.get("max_age", "24h")), max_severity=severity)

    exclude_raw = item.get("exclude")
    return Rule(
        name=name,
        match=_parse_selector(item.get("match") or {}, f"rule '{name}' match"),
        exclude=_parse_selector(exclude_raw, f"rule '{name}' exclude") if exclude_raw is not None else None,
        mode=mode,
        require_digest=bool(item.get("require_digest", False)),
        allowed_registries=allowed,
        attestor_sets=attestor_sets,
        scan=scan,
    )


def _parse_attestor_set(
    rule_name: str,
    position: int,
    raw: Any,
    attestors: Mapping[str, Attestor],
    base: Path,
    trust_roots: Mapping[str, x509.Certificate],
) -> AttestorSet:
    label = f"rule '{rule_name}' attestations[{position}]"
    entry = _ensure_mapping(raw, label)
    members_raw = entry.get("attestors") or []
    if not isinstance(members_raw, list) or not members_raw:
        raise ConfigError(f"{label}: 'attestors' must be a non-empty list")
    members: list[Attestor] = []
    for member in members_raw:
        if isinstance(member, str):
            if member not in attestors:
                raise ConfigError(f"{label}: unknown attestor '{member}'")
            members.append(attestors[member])
        else:
            inline = _ensure_mapping(member, label)
            inline_name = str(inline.get("name") or f"{rule_name}-{position}-{len(members)}")
            members.append(_parse_attestor(inline_name, inline, base, trust_roots))
    try:
        threshold = int(entry.get("threshold", 1))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{label}: threshold must be an integer") from exc
    return AttestorSet(
        attestors=tuple(members),
        threshold=threshold,
        predicate_type=resolve_predicate(str(entry.get("predicate_type") or "signature")),
        name=str(entry.get("name") or ""),
    )


def _parse_selector(raw: Any, label: str) -> Selector:
    entry = _ensure_mapping(raw, label)
    return Selector(
        namespaces=_string_tuple(entry.get("namespaces"), f"{label} namespaces"),
        kinds=_string_tuple(entry.get("kinds"), f"{label} kinds"),
        images=_string_tuple(entry.get("images"), f"{label} images"),
    )


def _pem_value(raw: Mapping[str, Any], key: str, base: Path, label: str) -> str:
    inline = _resolve_env_value(raw.get(key))
    if inline:
        return str(inline)
    file_value = _resolve_env_value(raw.get(f"{key}_file"))
    if not file_value:
        raise ConfigError(f"{label} requires '{key}' or '{key}_file'")
    path = Path(str(file_value)).expanduser()
    if not path.is_absolute():
        path = base / path
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"{label}: unable to read {path}: {exc}") from exc


def _string_tuple(value: Any, label: str) -> tuple[str, ...]:
    value = _resolve_env_value(value)
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, list):
        raise ConfigError(f"{label} must be a string or list of strings")
    return tuple(str(_resolve_env_value(item)) for item in value if str(item).strip())


def _ensure_mapping(data: Any, label: str) -> Mapping[str, Any]:
    if isinstance(data, Mapping):
        return data
    raise ConfigError(f"expected mapping for {label}")


def _resolve_env_value(value: Any) -> Any:
    if isinstance(value, str) and value.startswith("${") and value.endswith("}"):
        env_name = value[2:-1].strip()
        if env_name:
            return os.getenv(env_name, "")
    return value
