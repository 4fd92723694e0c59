"""Audit records emitted for every admission decision."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

audit_logger = logging.getLogger("gate_core.audit")


@dataclass(frozen=True)
class AuditImage:
    container: str
    image: str
    digest: str | None
    verdict: str
    reasons: tuple[str, ...] = ()
    cached: bool = False


@dataclass(frozen=True)
class AuditRecord:
    uid: str
    namespace: str
    kind: str
    name: str
    verdict: str
    policy_version: str
    evaluated_at: datetime
    images: tuple[AuditImage, ...] = ()
    reasons: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["evaluated_at"] = self.evaluated_at.isoformat()
        payload["images"] = [asdict(image) for image in self.images]
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)


def emit(record: AuditRecord) -> None:
    audit_logger.info("admission decision %s", record.to_json())
