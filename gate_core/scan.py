"""Vulnerability scan reports and the freshness/severity check."""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import IntEnum
from typing import Any, Mapping

from .errors import ValidationError
from .refs import normalize_digest


class Severity(IntEnum):
    NONE = 0
    UNKNOWN = 1
    LOW = 2
    MEDIUM = 3
    HIGH = 4
    CRITICAL = 5

    @classmethod
    def parse(cls, value: Any) -> "Severity":
        if isinstance(value, Severity):
            return value
        name = str(value or "").strip().upper()
        if name == "NEGLIGIBLE":
            return cls.LOW
        try:
            return cls[name]
        except KeyError as exc:
            raise ValidationError(f"unknown severity level: {value!r}") from exc


@dataclass(frozen=True)
class ScanReport:
    digest: str
    scanned_at: datetime
    counts: Mapping[Severity, int] = field(default_factory=dict)
    scanner: str | None = None

    @property
    def max_severity(self) -> Severity:
        found = [severity for severity, count in self.counts.items() if count > 0]
        return max(found, default=Severity.NONE)

    def count(self, severity: Severity) -> int:
        return int(self.counts.get(severity, 0))

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ScanReport":
        """Build a report from the gate's own JSON shape.

        ``{"digest": ..., "scanned_at": ISO-8601, "counts": {"HIGH": 2}}``
        """

        if not isinstance(payload, Mapping):
            raise ValidationError("scan report must be a mapping")
        digest = payload.get("digest")
        if not isinstance(digest, str):
            raise ValidationError("scan report missing 'digest'")
        counts_raw = payload.get("counts") or {}
        if not isinstance(counts_raw, Mapping):
            raise ValidationError("scan report 'counts' must be a mapping")
        counts: dict[Severity, int] = {}
        for name, value in counts_raw.items():
            severity = Severity.parse(name)
            try:
                counts[severity] = counts.get(severity, 0) + int(value)
            except (TypeError, ValueError) as exc:
                raise ValidationError(f"invalid count for severity {name!r}") from exc
        scanner = payload.get("scanner")
        return cls(
            digest=normalize_digest(digest),
            scanned_at=parse_timestamp(payload.get("scanned_at")),
            counts=counts,
            scanner=str(scanner) if scanner is not None else None,
        )

    @classmethod
    def from_trivy(cls, document: Mapping[str, Any], *, digest: str | None = None) -> "ScanReport":
        """Build a report from ``trivy image --format json`` output."""

        if not isinstance(document, Mapping):
            raise ValidationError("trivy report must be a mapping")
        if digest is None:
            digest = _trivy_digest(document)
        if digest is None:
            raise ValidationError("trivy report does not name an image digest")

        counts: dict[Severity, int] = {}
        results = document.get("Results") or []
        if not isinstance(results, list):
            raise ValidationError("trivy report 'Results' must be a list")
        for result in results:
            if not isinstance(result, Mapping):
                continue
            for vuln in result.get("Vulnerabilities") or []:
                if not isinstance(vuln, Mapping):
                    continue
                try:
                    severity = Severity.parse(vuln.get("Severity"))
                except ValidationError:
                    severity = Severity.UNKNOWN
                counts[severity] = counts.get(severity, 0) + 1
        return cls(
            digest=normalize_digest(digest),
            scanned_at=parse_timestamp(document.get("CreatedAt")),
            counts=counts,
            scanner="trivy",
        )


def check(
    report: ScanReport | None,
    max_age: timedelta,
    max_severity: Severity,
    *,
    now: datetime,
    digest: str | None = None,
) -> tuple[bool, str]:
    if report is None:
        return False, "no scan report"
    if digest is not None and report.digest != digest:
        return False, "scan report digest mismatch"
    age = now - report.scanned_at
    if age > max_age:
        return False, f"scan stale: report is {_format_age(age)} old, limit {_format_age(max_age)}"
    found = report.max_severity
    if found > max_severity:
        return False, (
            f"severity {found.name} exceeds {max_severity.name} "
            f"({report.count(found)} {found.name} finding(s))"
        )
    return True, "scan ok"


def remaining_freshness(report: ScanReport, max_age: timedelta, *, now: datetime) -> timedelta:
    return max(max_age - (now - report.scanned_at), timedelta(0))


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = f"{text[:-1]}+00:00"
        # trivy emits nanosecond precision which fromisoformat rejects
        if "." in text:
            head, _, tail = text.partition(".")
            frac = "".join(itertools.takewhile(str.isdigit, tail))
            zone = tail[len(frac) :]
            text = f"{head}.{frac[:6].ljust(6, '0')}{zone}"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValidationError(f"invalid timestamp: {value!r}") from exc
    else:
        raise ValidationError("missing timestamp")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _trivy_digest(document: Mapping[str, Any]) -> str | None:
    metadata = document.get("Metadata")
    if not isinstance(metadata, Mapping):
        return None
    for item in metadata.get("RepoDigests") or []:
        if isinstance(item, str) and "@" in item:
            return item.split("@", 1)[1]
    return None


def _format_age(age: timedelta) -> str:
    seconds = int(age.total_seconds())
    if seconds % 3600 == 0:
        return f"{seconds // 3600}h"
    if seconds % 60 == 0:
        return f"{seconds // 60}m"
    return f"{seconds}s"
