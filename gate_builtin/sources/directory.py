"""Collaborators backed by a local directory of JSON documents.

Layout::

    <root>/<digest with ':' replaced by '_'>/attestations/*.json
    <root>/<digest with ':' replaced by '_'>/scan.json
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from gate_core.attest import Attestation
from gate_core.errors import FetchError
from gate_core.scan import ScanReport

from .records import attestations_from_document, scan_report_from_document

logger = logging.getLogger(__name__)


def digest_dir(root: Path, digest: str) -> Path:
    key = "".join(ch if ch.isalnum() or ch in ("-", "_", ".") else "_" for ch in digest)
    return root / key


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise FetchError(f"unable to read {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise FetchError(f"invalid JSON in {path}: {exc}") from exc


class DirectoryAttestationSource:
    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).expanduser()

    def fetch(self, digest: str, *, timeout: float) -> list[Attestation]:
        folder = digest_dir(self.root, digest) / "attestations"
        if not folder.is_dir():
            return []
        results: list[Attestation] = []
        for path in sorted(folder.glob("*.json")):
            results.extend(attestations_from_document(digest, _read_json(path)))
        logger.debug("loaded %s attestation(s) for %s from %s", len(results), digest, folder)
        return results


class DirectoryScanReportSource:
    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).expanduser()

    def fetch(self, digest: str, *, timeout: float) -> ScanReport | None:
        path = digest_dir(self.root, digest) / "scan.json"
        if not path.exists():
            return None
        return scan_report_from_document(digest, _read_json(path))
