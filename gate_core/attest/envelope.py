"""DSSE envelope and statement handling."""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import replace
from datetime import datetime
from typing import Any, Mapping

from cryptography import x509

from ..errors import ValidationError
from ..refs import normalize_digest
from ..scan import parse_timestamp
from .types import (
    IN_TOTO_PAYLOAD_TYPE,
    SIGNATURE_PREDICATE,
    SIMPLE_SIGNING_PAYLOAD_TYPE,
    Attestation,
    resolve_predicate,
)


def pae(payload_type: str, payload: bytes) -> bytes:
    """DSSE pre-authentication encoding; this is the byte string that gets signed."""

    kind = payload_type.encode("utf-8")
    return b"DSSEv1 %d %s %d %s" % (len(kind), kind, len(payload), payload)


def signed_bytes(attestation: Attestation) -> bytes:
    """Cosign signs simple-signing payloads as-is; everything else is signed over PAE."""

    if attestation.payload_type == SIMPLE_SIGNING_PAYLOAD_TYPE:
        return attestation.payload
    return pae(attestation.payload_type, attestation.payload)


def statement_subjects(attestation: Attestation) -> tuple[str, list[str]]:
    """Return the predicate type the payload claims and the digests it is bound to."""

    try:
        document = json.loads(attestation.payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationError("attestation payload is not valid JSON") from exc
    if not isinstance(document, dict):
        raise ValidationError("attestation payload must be a JSON object")

    if attestation.payload_type == SIMPLE_SIGNING_PAYLOAD_TYPE:
        critical = document.get("critical")
        image = critical.get("image") if isinstance(critical, dict) else None
        digest = image.get("docker-manifest-digest") if isinstance(image, dict) else None
        if not isinstance(digest, str):
            raise ValidationError("simple-signing payload missing docker-manifest-digest")
        return SIGNATURE_PREDICATE, [normalize_digest(digest)]

    if attestation.payload_type != IN_TOTO_PAYLOAD_TYPE:
        raise ValidationError(f"unsupported payload type: {attestation.payload_type}")
    predicate_type = document.get("predicateType")
    if not isinstance(predicate_type, str) or not predicate_type:
        raise ValidationError("in-toto statement missing predicateType")
    digests: list[str] = []
    for subject in document.get("subject") or []:
        if not isinstance(subject, dict):
            continue
        subject_digest = subject.get("digest")
        if not isinstance(subject_digest, dict):
            continue
        token = subject_digest.get("sha256")
        if not isinstance(token, str):
            continue
        try:
            digests.append(normalize_digest(token))
        except ValidationError:
            continue
    return predicate_type, digests


def attestation_from_envelope(
    digest: str,
    envelope: Mapping[str, Any],
    *,
    certificate: str | None = None,
    signed_at: Any = None,
) -> Attestation:
    """Decode a DSSE JSON envelope (``payloadType``, ``payload``, ``signatures``)."""

    if not isinstance(envelope, Mapping):
        raise ValidationError("attestation envelope must be a mapping")
    payload_type = str(envelope.get("payloadType") or IN_TOTO_PAYLOAD_TYPE)
    payload = _b64(envelope.get("payload"), "payload")
    signatures = envelope.get("signatures")
    if not isinstance(signatures, list) or not signatures or not isinstance(signatures[0], Mapping):
        raise ValidationError("attestation envelope has no signatures")
    first = signatures[0]
    signature = _b64(first.get("sig"), "signature")
    key_id = str(first.get("keyid") or "").strip() or None

    cert_text = certificate or first.get("cert") or envelope.get("certificate")
    cert = load_certificate(str(cert_text)) if cert_text else None

    attestation = Attestation(
        digest=normalize_digest(digest),
        predicate_type="",
        payload=payload,
        signature=signature,
        payload_type=payload_type,
        certificate=cert,
        key_id=key_id,
        signed_at=_optional_timestamp(signed_at),
    )
    predicate_type = envelope.get("predicateType")
    if not isinstance(predicate_type, str) or not predicate_type:
        predicate_type, _ = statement_subjects(attestation)
    return replace(attestation, predicate_type=resolve_predicate(predicate_type))


def load_certificate(pem: str) -> x509.Certificate:
    try:
        return x509.load_pem_x509_certificate(pem.encode("utf-8"))
    except ValueError as exc:
        raise ValidationError("attestation certificate is not valid PEM") from exc


def _b64(value: Any, label: str) -> bytes:
    if not isinstance(value, str) or not value:
        raise ValidationError(f"attestation envelope missing {label}")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError(f"attestation {label} is not valid base64") from exc


def _optional_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    return parse_timestamp(value)
