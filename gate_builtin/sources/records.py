"""Decode attestation and scan report documents shared by the adapters."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from gate_core.attest import Attestation, attestation_from_envelope
from gate_core.errors import ValidationError
from gate_core.scan import ScanReport

logger = logging.getLogger(__name__)


def attestation_from_record(digest: str, record: Mapping[str, Any]) -> Attestation:
    """Accept either a bare DSSE envelope or ``{"envelope", "certificate", "signed_at"}``."""

    if not isinstance(record, Mapping):
        raise ValidationError("attestation record must be a mapping")
    envelope = record.get("envelope", record)
    if not isinstance(envelope, Mapping):
        raise ValidationError("attestation record 'envelope' must be a mapping")
    certificate = record.get("certificate")
    return attestation_from_envelope(
        digest,
        envelope,
        certificate=str(certificate) if certificate else None,
        signed_at=record.get("signed_at") or record.get("integrated_time"),
    )


def attestations_from_document(digest: str, document: Any) -> list[Attestation]:
    if isinstance(document, Mapping):
        items = document.get("attestations")
        if items is None:
            items = [document]
    else:
        items = document
    if not isinstance(items, list):
        raise ValidationError("attestation document must be a list or contain 'attestations'")
    results: list[Attestation] = []
    for index, item in enumerate(items):
        try:
            results.append(attestation_from_record(digest, item))
        except ValidationError as exc:
            # a malformed candidate cannot satisfy any attestor; keep the others
            logger.warning("skipping attestation #%s for %s: %s", index, digest, exc)
    return results


def scan_report_from_document(digest: str, document: Any) -> ScanReport:
    if not isinstance(document, Mapping):
        raise ValidationError("scan report document must be a mapping")
    if "Results" in document or "SchemaVersion" in document:
        return ScanReport.from_trivy(document, digest=digest)
    payload = dict(document)
    payload.setdefault("digest", digest)
    return ScanReport.from_dict(payload)
