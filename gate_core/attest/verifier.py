"""Attestation verification against attestor sets and trust roots."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING

from cryptography import x509

from .. import allowlist
from ..errors import FetchError, ValidationError
from ..refs import ImageReference
from .envelope import signed_bytes, statement_subjects
from .keys import certificate_identity, verify_issued_by, verify_signature, verify_validity
from .types import Attestation, Attestor, AttestorSet, KeylessIdentity, VerifyResult, resolve_predicate

if TYPE_CHECKING:
    from ..sources import AttestationSource, FetchRunner

logger = logging.getLogger(__name__)


class AttestationVerifier:
    """Check that every required attestor set is satisfied for an image digest."""

    def __init__(
        self,
        trust_roots: Mapping[str, x509.Certificate] | None = None,
        *,
        runner: "FetchRunner | None" = None,
        timeout: float = 5.0,
    ) -> None:
        self.trust_roots = dict(trust_roots or {})
        self.runner = runner
        self.timeout = timeout

    def verify(
        self,
        digest: str,
        attestor_sets: Sequence[AttestorSet],
        source: "AttestationSource | None",
        *,
        image: ImageReference | None = None,
    ) -> VerifyResult:
        if not attestor_sets:
            return VerifyResult(satisfied=True)
        if source is None:
            return VerifyResult(
                satisfied=False,
                errors=("no attestation source configured",),
                unsatisfied=("no attestation source configured",),
            )
        try:
            candidates = self._fetch(source, digest)
        except (FetchError, ValidationError) as exc:
            message = f"attestation fetch failed: {exc}"
            return VerifyResult(satisfied=False, errors=(message,), unsatisfied=(message,), transient=True)
        return self.verify_candidates(digest, attestor_sets, candidates, image=image)

    def verify_candidates(
        self,
        digest: str,
        attestor_sets: Sequence[AttestorSet],
        candidates: Sequence[Attestation],
        *,
        image: ImageReference | None = None,
    ) -> VerifyResult:
        candidates = list(candidates)
        matched_all: list[Attestor] = []
        errors: list[str] = []
        unsatisfied: list[str] = []
        for attestor_set in attestor_sets:
            matched = self._match_set(digest, attestor_set, candidates, image, errors)
            for attestor in matched:
                if attestor not in matched_all:
                    matched_all.append(attestor)
            if len(matched) >= attestor_set.threshold:
                continue
            if not matched:
                message = f"no matching attestor in set '{attestor_set.label}'"
            else:
                message = (
                    f"attestor threshold not met in set '{attestor_set.label}': "
                    f"{len(matched)} of {attestor_set.threshold} required"
                )
            unsatisfied.append(message)
            errors.append(message)
        return VerifyResult(
            satisfied=not unsatisfied,
            matched_attestors=tuple(matched_all),
            errors=tuple(errors),
            unsatisfied=tuple(unsatisfied),
        )

    def check_candidate(self, digest: str, attestor: Attestor, predicate_type: str, candidate: Attestation) -> None:
        """Raise ``ValidationError`` unless ``candidate`` satisfies ``attestor``."""

        if candidate.digest != digest:
            raise ValidationError("attestation is bound to a different digest")
        required = resolve_predicate(predicate_type)
        if resolve_predicate(candidate.predicate_type) != required:
            raise ValidationError(f"predicate type {candidate.predicate_type} is not {required}")
        claimed, subjects = statement_subjects(candidate)
        if resolve_predicate(claimed) != required:
            raise ValidationError(f"statement predicate {claimed} is not {required}")
        if digest not in subjects:
            raise ValidationError("statement subject does not include the image digest")

        if attestor.keyless is not None:
            self._verify_keyless(attestor.keyless, candidate)
        else:
            self._verify_key(attestor, candidate)

    def _fetch(self, source: "AttestationSource", digest: str) -> list[Attestation]:
        if self.runner is not None:
            result = self.runner.call("attestation fetch", source.fetch, digest, timeout=self.timeout)
        else:
            result = source.fetch(digest, timeout=self.timeout)
        return list(result or [])

    def _match_set(
        self,
        digest: str,
        attestor_set: AttestorSet,
        candidates: list[Attestation],
        image: ImageReference | None,
        errors: list[str],
    ) -> list[Attestor]:
        matched: list[Attestor] = []
        for attestor in attestor_set.attestors:
            if len(matched) >= attestor_set.threshold:
                break
            if image is not None and attestor.scope and not allowlist.match(image, attestor.scope):
                errors.append(f"attestor '{attestor.name}' is not trusted for {image.repository}")
                continue
            problems: list[str] = []
            for candidate in candidates:
                try:
                    self.check_candidate(digest, attestor, attestor_set.predicate_type, candidate)
                except ValidationError as exc:
                    problems.append(str(exc))
                    continue
                logger.debug("%s attestor %s matched digest=%s", attestor.kind, attestor.name, digest)
                matched.append(attestor)
                break
            else:
                if problems:
                    unique = list(dict.fromkeys(problems))
                    errors.append(f"attestor '{attestor.name}': {'; '.join(unique)}")
                    logger.debug("attestor %s rejected %s candidate(s): %s", attestor.name, len(problems), unique)
        return matched

    def _verify_keyless(self, identity: KeylessIdentity, candidate: Attestation) -> None:
        cert = candidate.certificate
        if cert is None:
            raise ValidationError("attestation has no signing certificate")
        if candidate.signed_at is None:
            raise ValidationError("keyless attestation has no signing time")
        if identity.roots:
            roots = [self.trust_roots[name] for name in identity.roots if name in self.trust_roots]
        else:
            roots = list(self.trust_roots.values())
        if not roots:
            raise ValidationError("no trust roots configured for keyless attestor")
        verify_issued_by(cert, roots)
        verify_validity(cert, candidate.signed_at)
        subjects, issuer = certificate_identity(cert)
        if not identity.matches(subjects, issuer):
            raise ValidationError(f"certificate identity {subjects} from issuer {issuer} does not match")
        verify_signature(cert.public_key(), candidate.signature, signed_bytes(candidate))

    def _verify_key(self, attestor: Attestor, candidate: Attestation) -> None:
        if attestor.public_key is None:
            raise ValidationError("attestor has no public key")
        if candidate.key_id and attestor.fingerprint and candidate.key_id != attestor.fingerprint:
            raise ValidationError("key id does not match attestor fingerprint")
        verify_signature(attestor.public_key, candidate.signature, signed_bytes(candidate))
