"""In-memory collaborators for tests and embedding hosts."""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from gate_core.attest import Attestation
from gate_core.errors import FetchError
from gate_core.refs import ImageReference
from gate_core.scan import ScanReport


class StaticAttestationSource:
    def __init__(self, attestations: Iterable[Attestation] = (), *, error: Exception | None = None) -> None:
        self._by_digest: dict[str, list[Attestation]] = {}
        for attestation in attestations:
            self._by_digest.setdefault(attestation.digest, []).append(attestation)
        self.error = error
        self.calls: list[str] = []

    def add(self, attestation: Attestation) -> None:
        self._by_digest.setdefault(attestation.digest, []).append(attestation)

    def fetch(self, digest: str, *, timeout: float) -> list[Attestation]:
        self.calls.append(digest)
        if self.error is not None:
            raise self.error
        return list(self._by_digest.get(digest, []))


class StaticScanReportSource:
    def __init__(self, reports: Iterable[ScanReport] = (), *, error: Exception | None = None) -> None:
        self._by_digest = {report.digest: report for report in reports}
        self.error = error
        self.calls: list[str] = []

    def fetch(self, digest: str, *, timeout: float) -> ScanReport | None:
        self.calls.append(digest)
        if self.error is not None:
            raise self.error
        return self._by_digest.get(digest)


class StaticDigestResolver:
    """Resolve ``repository:tag`` strings from a fixed mapping."""

    def __init__(self, digests: Mapping[str, str]) -> None:
        self._digests = dict(digests)

    def resolve(self, ref: ImageReference, *, timeout: float) -> str:
        key = f"{ref.repository}:{ref.tag or 'latest'}"
        digest = self._digests.get(key)
        if digest is None:
            raise FetchError(f"no digest known for {key}")
        return digest
