"""Attestation model and verification."""

from .envelope import attestation_from_envelope, pae, signed_bytes, statement_subjects
from .keys import certificate_identity, key_fingerprint, load_public_key, verify_signature
from .types import (
    IN_TOTO_PAYLOAD_TYPE,
    SIGNATURE_PREDICATE,
    SIMPLE_SIGNING_PAYLOAD_TYPE,
    SLSA_PROVENANCE_V1,
    Attestation,
    Attestor,
    AttestorSet,
    KeylessIdentity,
    VerifyResult,
    resolve_predicate,
)
from .verifier import AttestationVerifier

__all__ = [
    "Attestation",
    "Attestor",
    "AttestorSet",
    "AttestationVerifier",
    "KeylessIdentity",
    "VerifyResult",
    "IN_TOTO_PAYLOAD_TYPE",
    "SIMPLE_SIGNING_PAYLOAD_TYPE",
    "SIGNATURE_PREDICATE",
    "SLSA_PROVENANCE_V1",
    "attestation_from_envelope",
    "certificate_identity",
    "key_fingerprint",
    "load_public_key",
    "pae",
    "resolve_predicate",
    "signed_bytes",
    "statement_subjects",
    "verify_signature",
]
