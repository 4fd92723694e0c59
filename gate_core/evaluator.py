"""Combine allowlist, attestation and scan checks into admission decisions."""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from . import allowlist
from .attest.types import Attestation, AttestorSet, VerifyResult
from .attest.verifier import AttestationVerifier
from .audit import AuditImage, AuditRecord, emit
from .cache import DecisionCache, utc_now
from .errors import FetchError, ValidationError
from .policy.types import (
    AdmissionRequest,
    Container,
    Decision,
    ImageDecision,
    Mode,
    Policy,
    Rule,
    RuleOutcome,
    Verdict,
)
from .refs import ImageReference, parse_image_reference
from .scan import ScanReport, check, remaining_freshness
from .sources import AttestationSource, DigestResolver, FetchRunner, ScanReportSource

logger = logging.getLogger(__name__)

REFERENCE_CHECK = "image-reference"
RESOLUTION_CHECK = "digest-resolution"
UNMATCHED_CHECK = "unmatched"


@dataclass(frozen=True)
class _ImageResult:
    decision: ImageDecision
    fatal: bool = False
    cached: bool = False


class PolicyEvaluator:
    """Evaluate admission requests against an immutable ``Policy``.

    Safe for concurrent use: the only shared mutable state is the decision
    cache, which synchronizes itself. Collaborator calls run through a
    bounded pool with the policy's fetch timeout; any failure there is a
    deny reason, never an exception out of ``evaluate``.
    """

    def __init__(
        self,
        *,
        attestations: AttestationSource | None = None,
        scans: ScanReportSource | None = None,
        resolver: DigestResolver | None = None,
        cache: DecisionCache | None = None,
        clock: Callable[[], datetime] | None = None,
        max_workers: int = 8,
    ) -> None:
        self.attestations = attestations
        self.scans = scans
        self.resolver = resolver
        self.cache = cache
        self._clock = clock or utc_now
        self._runner = FetchRunner(max_workers=max_workers)

    @property
    def max_workers(self) -> int:
        return self._runner.max_workers

    def resize(self, max_workers: int) -> None:
        """Swap in a fetch pool of a new size; calls already queued finish on the old one."""

        if max(int(max_workers), 1) == self._runner.max_workers:
            return
        previous, self._runner = self._runner, FetchRunner(max_workers=max_workers)
        logger.info("fetch pool resized max_workers=%s previous=%s", self._runner.max_workers, previous.max_workers)
        previous.close(cancel_pending=False)

    def close(self) -> None:
        self._runner.close()

    def evaluate(self, request: AdmissionRequest, policy: Policy) -> Decision:
        now = self._clock()
        results = [self._evaluate_container(request, container, policy, now) for container in request.containers]
        images = tuple(result.decision for result in results)

        denied = any(result.fatal or result.decision.verdict is Verdict.DENY for result in results)
        verdict = Verdict.DENY if denied else Verdict.ALLOW
        reasons = [
            _format_reason(image, outcome)
            for image in images
            for outcome in image.outcomes
            if outcome.verdict is not Verdict.ALLOW
        ]
        if verdict is Verdict.DENY and not reasons:
            reasons.append("request denied without a recorded reason")

        audit = AuditRecord(
            uid=request.uid,
            namespace=request.namespace,
            kind=request.kind,
            name=request.name,
            verdict=verdict.value,
            policy_version=policy.version,
            evaluated_at=now,
            images=tuple(
                AuditImage(
                    container=result.decision.container,
                    image=result.decision.image,
                    digest=result.decision.digest,
                    verdict=result.decision.verdict.value,
                    reasons=result.decision.reasons,
                    cached=result.cached,
                )
                for result in results
            ),
            reasons=tuple(reasons),
        )
        emit(audit)
        return Decision(
            uid=request.uid,
            verdict=verdict,
            policy_version=policy.version,
            images=images,
            reasons=tuple(reasons),
            audit=audit,
        )

    def _evaluate_container(
        self,
        request: AdmissionRequest,
        container: Container,
        policy: Policy,
        now: datetime,
    ) -> _ImageResult:
        try:
            ref = parse_image_reference(container.image)
        except ValidationError as exc:
            outcome = RuleOutcome(rule=REFERENCE_CHECK, verdict=Verdict.DENY, reason=f"invalid image reference: {exc}")
            return _ImageResult(_image_decision(container, container.image, None, policy, [outcome]), fatal=True)

        matches = policy.matching_rules(request.namespace, request.kind, ref)
        outcomes: list[RuleOutcome] = []
        active = matches
        if not ref.pinned:
            for rule, _ in matches:
                if rule.require_digest:
                    outcomes.append(_failure(rule, "image reference is not pinned by digest"))
            active = [(rule, pattern) for rule, pattern in matches if not rule.require_digest]
            if matches and not active:
                return _ImageResult(_image_decision(container, str(ref), None, policy, outcomes))
            # unmatched images are resolved too; every decision is keyed by digest
            try:
                ref = ref.with_digest(self._resolve(ref, policy))
            except (FetchError, ValidationError) as exc:
                logger.warning("digest resolution failed image=%s: %s", ref, exc)
                outcomes.append(
                    RuleOutcome(rule=RESOLUTION_CHECK, verdict=Verdict.DENY, reason=f"unable to resolve image digest: {exc}")
                )
                return _ImageResult(_image_decision(container, str(ref), None, policy, outcomes), fatal=True)

        if not matches:
            return _ImageResult(_image_decision(container, str(ref), ref.digest, policy, [_unmatched(policy)]))

        digest = ref.digest or ""
        scope = _scope_key(ref, [rule for rule, _ in active])
        cached: ImageDecision | None = None
        if self.cache is not None:
            cached, hit = self.cache.get(digest, policy.version, scope=scope)
            if hit and cached is not None:
                logger.debug("decision cache hit digest=%s version=%s", digest, policy.version)
                decision = _image_decision(container, str(ref), digest, policy, [*outcomes, *cached.outcomes])
                return _ImageResult(decision, cached=True)

        context = _ImageContext(self, ref, policy, now)
        rule_outcomes: list[RuleOutcome] = []
        for rule, pattern in active:
            logger.debug("evaluating rule=%s image=%s pattern=%s", rule.name, ref, pattern)
            rule_outcomes.extend(self._evaluate_rule(rule, context))

        if self.cache is not None and not context.transient:
            ttl = policy.settings.cache_ttl
            if context.freshness is not None:
                ttl = min(ttl, context.freshness)
            computed = _image_decision(container, ref.repository, digest, policy, rule_outcomes)
            self.cache.put(digest, policy.version, computed, ttl, scope=scope)

        return _ImageResult(_image_decision(container, str(ref), digest, policy, [*outcomes, *rule_outcomes]))

    def _evaluate_rule(self, rule: Rule, context: "_ImageContext") -> list[RuleOutcome]:
        ref = context.ref
        failures: list[str] = []

        if rule.allowed_registries is not None:
            if not rule.allowed_registries:
                failures.append("registry allowlist is empty")
            elif not allowlist.match(ref, rule.allowed_registries, require_digest=rule.require_digest):
                failures.append(f"registry {ref.repository} is not in the allowlist")

        if rule.attestor_sets:
            result = context.verify(rule.attestor_sets)
            if not result.satisfied:
                failures.extend(result.unsatisfied or ("attestation verification failed",))

        if rule.scan is not None:
            report, error = context.scan_report()
            if error is not None:
                failures.append(f"scan report fetch failed: {error}")
            else:
                ok, reason = check(report, rule.scan.max_age, rule.scan.max_severity, now=context.now, digest=ref.digest)
                if not ok:
                    failures.append(reason)
                elif report is not None:
                    context.note_freshness(remaining_freshness(report, rule.scan.max_age, now=context.now))

        if not failures:
            return [RuleOutcome(rule=rule.name, verdict=Verdict.ALLOW, reason="requirements satisfied", mode=rule.mode)]
        return [_failure(rule, failure) for failure in failures]

    def _resolve(self, ref: ImageReference, policy: Policy) -> str:
        if self.resolver is None:
            raise FetchError("no digest resolver configured")
        return self._runner.call(
            "digest resolution", self.resolver.resolve, ref, timeout=policy.settings.fetch_timeout
        )

    def _fetch_attestations(self, digest: str, policy: Policy) -> list[Attestation]:
        if self.attestations is None:
            raise FetchError("no attestation source configured")
        result = self._runner.call(
            "attestation fetch", self.attestations.fetch, digest, timeout=policy.settings.fetch_timeout
        )
        return list(result or [])

    def _fetch_scan(self, digest: str, policy: Policy) -> ScanReport | None:
        if self.scans is None:
            raise FetchError("no scan report source configured")
        return self._runner.call("scan report fetch", self.scans.fetch, digest, timeout=policy.settings.fetch_timeout)


class _ImageContext:
    """Per-image memo so each collaborator is asked at most once per evaluation."""

    def __init__(self, evaluator: PolicyEvaluator, ref: ImageReference, policy: Policy, now: datetime) -> None:
        self.evaluator = evaluator
        self.ref = ref
        self.policy = policy
        self.now = now
        self.transient = False
        self.freshness: timedelta | None = None
        self._verifier = AttestationVerifier(policy.trust_roots, timeout=policy.settings.fetch_timeout)
        self._attestations: list[Attestation] | None = None
        self._attestation_error: str | None = None
        self._scan_loaded = False
        self._scan: ScanReport | None = None
        self._scan_error: str | None = None

    def verify(self, attestor_sets: tuple[AttestorSet, ...]) -> VerifyResult:
        digest = self.ref.digest or ""
        if self._attestations is None and self._attestation_error is None:
            try:
                self._attestations = self.evaluator._fetch_attestations(digest, self.policy)
            except (FetchError, ValidationError) as exc:
                logger.warning("attestation fetch failed digest=%s: %s", digest, exc)
                self._attestation_error = str(exc)
                self.transient = True
        if self._attestation_error is not None:
            message = f"attestation fetch failed: {self._attestation_error}"
            return VerifyResult(satisfied=False, errors=(message,), unsatisfied=(message,), transient=True)
        result = self._verifier.verify_candidates(digest, attestor_sets, self._attestations or [], image=self.ref)
        for error in result.errors:
            logger.debug("attestation check digest=%s: %s", digest, error)
        return result

    def scan_report(self) -> tuple[ScanReport | None, str | None]:
        if not self._scan_loaded:
            self._scan_loaded = True
            try:
                self._scan = self.evaluator._fetch_scan(self.ref.digest or "", self.policy)
            except (FetchError, ValidationError) as exc:
                logger.warning("scan report fetch failed digest=%s: %s", self.ref.digest, exc)
                self._scan_error = str(exc)
                self.transient = True
        return self._scan, self._scan_error

    def note_freshness(self, remaining: timedelta) -> None:
        if self.freshness is None or remaining < self.freshness:
            self.freshness = remaining


def _failure(rule: Rule, reason: str) -> RuleOutcome:
    verdict = Verdict.DENY if rule.mode is Mode.ENFORCE else Verdict.AUDIT_ALLOW
    return RuleOutcome(rule=rule.name, verdict=verdict, reason=reason, mode=rule.mode)


def _unmatched(policy: Policy) -> RuleOutcome:
    if policy.settings.unmatched is Verdict.DENY:
        return RuleOutcome(rule=UNMATCHED_CHECK, verdict=Verdict.DENY, reason="no policy rule matches this image")
    return RuleOutcome(rule=UNMATCHED_CHECK, verdict=Verdict.ALLOW, reason="no policy rule matches this image")


def _combine(outcomes: list[RuleOutcome]) -> Verdict:
    verdicts = {outcome.verdict for outcome in outcomes}
    if Verdict.DENY in verdicts:
        return Verdict.DENY
    if Verdict.AUDIT_ALLOW in verdicts:
        return Verdict.AUDIT_ALLOW
    return Verdict.ALLOW


def _image_decision(
    container: Container,
    image: str,
    digest: str | None,
    policy: Policy,
    outcomes: list[RuleOutcome],
) -> ImageDecision:
    return ImageDecision(
        image=image,
        digest=digest,
        policy_version=policy.version,
        verdict=_combine(outcomes),
        outcomes=tuple(outcomes),
        container=container.name,
    )


def _format_reason(image: ImageDecision, outcome: RuleOutcome) -> str:
    prefix = "[audit] " if outcome.verdict is Verdict.AUDIT_ALLOW else ""
    return f"{prefix}{image.image}: {outcome.rule}: {outcome.reason}"


def _scope_key(ref: ImageReference, rules: list[Rule]) -> str:
    payload = json.dumps([ref.repository, [rule.name for rule in rules]])
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]
