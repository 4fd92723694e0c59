"""HTTP collaborators built on ``requests``."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import requests
from requests.exceptions import RequestException, Timeout

from gate_core.attest import Attestation
from gate_core.errors import FetchError
from gate_core.refs import ImageReference
from gate_core.scan import ScanReport

from .records import attestations_from_document, scan_report_from_document

logger = logging.getLogger(__name__)

MANIFEST_ACCEPT = ", ".join(
    (
        "application/vnd.oci.image.index.v1+json",
        "application/vnd.oci.image.manifest.v1+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
        "application/vnd.docker.distribution.manifest.v2+json",
    )
)


def _error_body_snippet(response: requests.Response, max_chars: int = 200) -> str:
    body = response.text or ""
    compact = " ".join(body.split())
    return compact[:max_chars]


class _JsonHttpSource:
    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.headers = {"Accept": "application/json"}
        if token:
            self.headers["Authorization"] = f"Bearer {token}"

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _get_json(self, path: str, *, timeout: float) -> Any | None:
        url = self._url(path)
        try:
            response = self.session.get(url, headers=self.headers, timeout=timeout)
        except Timeout as exc:
            raise FetchError(f"GET {url} timed out after {timeout:.1f}s") from exc
        except RequestException as exc:
            raise FetchError(f"GET {url} failed: {exc}") from exc
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise FetchError(f"GET {url} returned {response.status_code}: {_error_body_snippet(response)}")
        try:
            return response.json()
        except ValueError as exc:
            raise FetchError(f"GET {url} returned invalid JSON") from exc


class HttpAttestationSource(_JsonHttpSource):
    """``GET <base>/v1/attestations/<digest>``; 404 means no attestations."""

    def fetch(self, digest: str, *, timeout: float) -> list[Attestation]:
        document = self._get_json(f"/v1/attestations/{quote(digest, safe='')}", timeout=timeout)
        if document is None:
            return []
        return attestations_from_document(digest, document)


class HttpScanReportSource(_JsonHttpSource):
    """``GET <base>/v1/scans/<digest>``; 404 means no report."""

    def fetch(self, digest: str, *, timeout: float) -> ScanReport | None:
        document = self._get_json(f"/v1/scans/{quote(digest, safe='')}", timeout=timeout)
        if document is None:
            return None
        return scan_report_from_document(digest, document)


class RegistryDigestResolver:
    """Resolve tags through the OCI distribution API (``HEAD /v2/<name>/manifests/<tag>``)."""

    def __init__(
        self,
        *,
        scheme: str = "https",
        token: str | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.scheme = scheme
        self.token = token
        self.session = session or requests.Session()

    def resolve(self, ref: ImageReference, *, timeout: float) -> str:
        host = "registry-1.docker.io" if ref.host == "docker.io" else ref.host
        url = f"{self.scheme}://{host}/v2/{ref.path}/manifests/{ref.tag or 'latest'}"
        headers = {"Accept": MANIFEST_ACCEPT}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            response = self.session.head(url, headers=headers, timeout=timeout, allow_redirects=True)
        except Timeout as exc:
            raise FetchError(f"HEAD {url} timed out after {timeout:.1f}s") from exc
        except RequestException as exc:
            raise FetchError(f"HEAD {url} failed: {exc}") from exc
        if response.status_code >= 400:
            raise FetchError(f"HEAD {url} returned {response.status_code}")
        digest = response.headers.get("Docker-Content-Digest")
        if not digest:
            raise FetchError(f"HEAD {url} did not return a Docker-Content-Digest header")
        logger.debug("resolved %s to %s", ref, digest)
        return digest
