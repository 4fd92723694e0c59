"""Attestation datatypes."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric.types import PublicKeyTypes

SIGNATURE_PREDICATE = "https://sigstore.dev/cosign/sign/v1"
SLSA_PROVENANCE_V1 = "https://slsa.dev/provenance/v1"
SLSA_PROVENANCE_V02 = "https://slsa.dev/provenance/v0.2"
VULN_PREDICATE = "https://cosign.sigstore.dev/attestation/vuln/v1"
CYCLONEDX_PREDICATE = "https://cyclonedx.org/bom"
SPDX_PREDICATE = "https://spdx.dev/Document"

IN_TOTO_PAYLOAD_TYPE = "application/vnd.in-toto+json"
SIMPLE_SIGNING_PAYLOAD_TYPE = "application/vnd.dev.cosign.simplesigning.v1+json"

PREDICATE_ALIASES: dict[str, str] = {
    "signature": SIGNATURE_PREDICATE,
    "provenance": SLSA_PROVENANCE_V1,
    "slsa": SLSA_PROVENANCE_V1,
    "slsa-v0.2": SLSA_PROVENANCE_V02,
    "vuln": VULN_PREDICATE,
    "cyclonedx": CYCLONEDX_PREDICATE,
    "spdx": SPDX_PREDICATE,
}


def resolve_predicate(value: str) -> str:
    return PREDICATE_ALIASES.get(value.strip().lower(), value.strip())


@dataclass(frozen=True)
class KeylessIdentity:
    issuer: str
    subject: str | None = None
    subject_regexp: str | None = None
    roots: tuple[str, ...] = ()
    pattern: re.Pattern[str] | None = field(default=None, init=False, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.subject_regexp is not None:
            object.__setattr__(self, "pattern", re.compile(self.subject_regexp))

    def matches(self, subjects: list[str], issuer: str | None) -> bool:
        if issuer != self.issuer:
            return False
        if self.subject is not None:
            return self.subject in subjects
        if self.pattern is not None:
            return any(self.pattern.fullmatch(candidate) for candidate in subjects)
        return True


@dataclass(frozen=True)
class Attestor:
    name: str
    keyless: KeylessIdentity | None = None
    public_key: PublicKeyTypes | None = field(default=None, compare=False, repr=False)
    fingerprint: str | None = None
    scope: tuple[str, ...] = ()

    @property
    def kind(self) -> str:
        return "keyless" if self.keyless is not None else "key"


@dataclass(frozen=True)
class AttestorSet:
    attestors: tuple[Attestor, ...]
    threshold: int = 1
    predicate_type: str = SIGNATURE_PREDICATE
    name: str = ""

    @property
    def label(self) -> str:
        if self.name:
            return self.name
        return ",".join(attestor.name for attestor in self.attestors)


@dataclass(frozen=True)
class Attestation:
    """One DSSE envelope attached to an image digest."""

    digest: str
    predicate_type: str
    payload: bytes
    signature: bytes
    payload_type: str = IN_TOTO_PAYLOAD_TYPE
    certificate: x509.Certificate | None = field(default=None, compare=False, repr=False)
    key_id: str | None = None
    signed_at: datetime | None = None


@dataclass(frozen=True)
class VerifyResult:
    satisfied: bool
    matched_attestors: tuple[Attestor, ...] = ()
    errors: tuple[str, ...] = ()
    # one summary line per attestor set that was not satisfied
    unsatisfied: tuple[str, ...] = ()
    transient: bool = False
