"""Policy, admission request and decision datatypes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from fnmatch import fnmatchcase
from typing import Any, Mapping

from cryptography import x509

from ..attest.types import AttestorSet
from ..audit import AuditRecord
from ..refs import ImageReference
from ..scan import Severity


class Mode(str, Enum):
    ENFORCE = "enforce"
    AUDIT = "audit"


class Verdict(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    AUDIT_ALLOW = "audit-allow"


@dataclass(frozen=True)
class Selector:
    """Glob selector over namespace, workload kind and image repository.

    Empty tuples match anything.
    """

    namespaces: tuple[str, ...] = ()
    kinds: tuple[str, ...] = ()
    images: tuple[str, ...] = ()

    def matches(self, namespace: str, kind: str, ref: ImageReference) -> str | None:
        if self.namespaces and not any(fnmatchcase(namespace, item) for item in self.namespaces):
            return None
        if self.kinds and not any(fnmatchcase(kind.lower(), item.lower()) for item in self.kinds):
            return None
        if not self.images:
            return "*"
        candidates = [ref.repository]
        if ref.tag:
            candidates.append(f"{ref.repository}:{ref.tag}")
        for pattern in self.images:
            if any(fnmatchcase(candidate, pattern) for candidate in candidates):
                return pattern
        return None


@dataclass(frozen=True)
class ScanRequirement:
    max_age: timedelta
    max_severity: Severity


@dataclass(frozen=True)
class Rule:
    name: str
    match: Selector = field(default_factory=Selector)
    exclude: Selector | None = None
    mode: Mode = Mode.ENFORCE
    require_digest: bool = False
    # None skips the registry check; an empty tuple denies every image.
    allowed_registries: tuple[str, ...] | None = None
    attestor_sets: tuple[AttestorSet, ...] = ()
    scan: ScanRequirement | None = None

    def applies_to(self, namespace: str, kind: str, ref: ImageReference) -> str | None:
        matched = self.match.matches(namespace, kind, ref)
        if matched is None:
            return None
        if self.exclude is not None and self.exclude.matches(namespace, kind, ref) is not None:
            return None
        return matched


@dataclass(frozen=True)
class Settings:
    cache_ttl: timedelta = timedelta(minutes=5)
    fetch_timeout: float = 5.0
    max_workers: int = 8
    unmatched: Verdict = Verdict.ALLOW


@dataclass(frozen=True)
class Policy:
    version: str
    rules: tuple[Rule, ...] = ()
    settings: Settings = field(default_factory=Settings)
    trust_roots: Mapping[str, x509.Certificate] = field(default_factory=dict, compare=False, repr=False)

    def matching_rules(self, namespace: str, kind: str, ref: ImageReference) -> list[tuple[Rule, str]]:
        matches: list[tuple[Rule, str]] = []
        for rule in self.rules:
            pattern = rule.applies_to(namespace, kind, ref)
            if pattern is not None:
                matches.append((rule, pattern))
        return matches


@dataclass(frozen=True)
class Container:
    name: str
    image: str


_POD_SPEC_PATHS: dict[str, tuple[str, ...]] = {
    "pod": ("spec",),
    "cronjob": ("spec", "jobTemplate", "spec", "template", "spec"),
}
_CONTAINER_FIELDS = ("initContainers", "containers", "ephemeralContainers")


@dataclass(frozen=True)
class AdmissionRequest:
    uid: str
    namespace: str
    kind: str
    containers: tuple[Container, ...]
    name: str = ""

    @classmethod
    def from_admission_review(cls, review: Mapping[str, Any]) -> "AdmissionRequest":
        """Extract the request from an ``admission.k8s.io/v1`` AdmissionReview."""

        request = review.get("request") if isinstance(review, Mapping) else None
        if not isinstance(request, Mapping):
            raise ValueError("admission review has no request")
        kind_info = request.get("kind")
        kind = str(kind_info.get("kind") if isinstance(kind_info, Mapping) else kind_info or "Pod")
        obj = request.get("object")
        if not isinstance(obj, Mapping):
            raise ValueError("admission request has no object")
        metadata = obj.get("metadata") if isinstance(obj.get("metadata"), Mapping) else {}
        return cls(
            uid=str(request.get("uid") or ""),
            namespace=str(request.get("namespace") or metadata.get("namespace") or "default"),
            kind=kind,
            containers=tuple(_containers_from_object(kind, obj)),
            name=str(request.get("name") or metadata.get("name") or ""),
        )


def _containers_from_object(kind: str, obj: Mapping[str, Any]) -> list[Container]:
    path = _POD_SPEC_PATHS.get(kind.lower(), ("spec", "template", "spec"))
    node: Any = obj
    for key in path:
        node = node.get(key) if isinstance(node, Mapping) else None
    if not isinstance(node, Mapping):
        return []
    containers: list[Container] = []
    for field_name in _CONTAINER_FIELDS:
        for item in node.get(field_name) or []:
            if not isinstance(item, Mapping):
                continue
            containers.append(Container(name=str(item.get("name") or ""), image=str(item.get("image") or "")))
    return containers


@dataclass(frozen=True)
class RuleOutcome:
    rule: str
    verdict: Verdict
    reason: str
    mode: Mode = Mode.ENFORCE


@dataclass(frozen=True)
class ImageDecision:
    """Outcome for one image digest under one policy version; never mutated."""

    image: str
    digest: str | None
    policy_version: str
    verdict: Verdict
    outcomes: tuple[RuleOutcome, ...] = ()
    container: str = ""

    @property
    def reasons(self) -> tuple[str, ...]:
        return tuple(outcome.reason for outcome in self.outcomes if outcome.verdict is not Verdict.ALLOW)


@dataclass(frozen=True)
class Decision:
    uid: str
    verdict: Verdict
    policy_version: str
    images: tuple[ImageDecision, ...]
    reasons: tuple[str, ...]
    audit: AuditRecord | None = field(default=None, compare=False)

    @property
    def allowed(self) -> bool:
        return self.verdict is not Verdict.DENY

    @property
    def message(self) -> str:
        return "; ".join(self.reasons)

    def to_admission_response(self) -> dict[str, Any]:
        response: dict[str, Any] = {"uid": self.uid, "allowed": self.allowed}
        if self.allowed:
            if self.reasons:
                response["warnings"] = list(self.reasons)
        else:
            response["status"] = {"code": 403, "reason": "Forbidden", "message": self.message}
        return response
