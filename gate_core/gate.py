"""Host-facing facade: active policy plus evaluator."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Mapping

from .cache import DecisionCache
from .evaluator import PolicyEvaluator
from .policy.store import PolicyStore
from .policy.types import AdmissionRequest, Decision, Policy
from .sources import AttestationSource, DigestResolver, ScanReportSource

logger = logging.getLogger(__name__)

ADMISSION_API_VERSION = "admission.k8s.io/v1"


class AdmissionGate:
    def __init__(
        self,
        store: PolicyStore,
        *,
        attestations: AttestationSource | None = None,
        scans: ScanReportSource | None = None,
        resolver: DigestResolver | None = None,
        cache: DecisionCache | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.cache = cache if cache is not None else DecisionCache(clock=clock)
        self.evaluator = PolicyEvaluator(
            attestations=attestations,
            scans=scans,
            resolver=resolver,
            cache=self.cache,
            clock=clock,
            max_workers=store.current().settings.max_workers,
        )

    @classmethod
    def from_policy_file(cls, path: Path | str, **kwargs: Any) -> "AdmissionGate":
        return cls(PolicyStore.from_file(path), **kwargs)

    def admit(self, request: AdmissionRequest) -> Decision:
        return self.evaluator.evaluate(request, self.store.current())

    def review(self, admission_review: Mapping[str, Any]) -> dict[str, Any]:
        """Answer an AdmissionReview document with an AdmissionReview response."""

        try:
            request = AdmissionRequest.from_admission_review(admission_review)
        except ValueError as exc:
            logger.warning("malformed admission review: %s", exc)
            uid = ""
            raw_request = admission_review.get("request") if isinstance(admission_review, Mapping) else None
            if isinstance(raw_request, Mapping):
                uid = str(raw_request.get("uid") or "")
            response = {
                "uid": uid,
                "allowed": False,
                "status": {"code": 400, "reason": "BadRequest", "message": f"malformed admission review: {exc}"},
            }
        else:
            response = self.admit(request).to_admission_response()
        return {"apiVersion": ADMISSION_API_VERSION, "kind": "AdmissionReview", "response": response}

    def reload(self, path: Path | str) -> Policy:
        policy = self.store.load_file(path)
        self.evaluator.resize(policy.settings.max_workers)
        return policy

    def close(self) -> None:
        self.evaluator.close()
