"""Container image reference parsing."""

from __future__ import annotations

import re
from dataclasses import dataclass

from .errors import ValidationError

DEFAULT_REGISTRY = "docker.io"
_DIGEST_RE = re.compile(r"^sha256:[a-f0-9]{64}$")
_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
_PATH_SEGMENT_RE = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")


@dataclass(frozen=True)
class ImageReference:
    host: str
    path: str
    tag: str | None = None
    digest: str | None = None

    @property
    def repository(self) -> str:
        return f"{self.host}/{self.path}"

    @property
    def pinned(self) -> bool:
        return self.digest is not None

    def with_digest(self, digest: str) -> "ImageReference":
        return ImageReference(host=self.host, path=self.path, tag=self.tag, digest=normalize_digest(digest))

    def __str__(self) -> str:
        text = self.repository
        if self.tag:
            text = f"{text}:{self.tag}"
        if self.digest:
            text = f"{text}@{self.digest}"
        return text


def normalize_digest(value: str) -> str:
    digest = value.strip().lower()
    if not digest.startswith("sha256:"):
        digest = f"sha256:{digest}"
    if not _DIGEST_RE.match(digest):
        raise ValidationError(f"invalid image digest: {value!r}")
    return digest


def parse_image_reference(text: str) -> ImageReference:
    raw = (text or "").strip()
    if not raw:
        raise ValidationError("empty image reference")

    digest: str | None = None
    if "@" in raw:
        raw, digest_part = raw.split("@", 1)
        digest = normalize_digest(digest_part)

    tag: str | None = None
    slash_index = raw.rfind("/")
    colon_index = raw.rfind(":")
    if colon_index > slash_index:
        raw, tag = raw[:colon_index], raw[colon_index + 1 :]
        if not _TAG_RE.match(tag):
            raise ValidationError(f"invalid image tag in reference: {text!r}")

    parts = raw.split("/")
    if len(parts) > 1 and _looks_like_host(parts[0]):
        host, segments = parts[0].lower(), parts[1:]
    else:
        host, segments = DEFAULT_REGISTRY, parts
    if host == DEFAULT_REGISTRY and len(segments) == 1:
        segments = ["library", *segments]

    for segment in segments:
        if not _PATH_SEGMENT_RE.match(segment):
            raise ValidationError(f"invalid repository path in reference: {text!r}")
    return ImageReference(host=host, path="/".join(segments), tag=tag, digest=digest)


def _looks_like_host(segment: str) -> bool:
    return "." in segment or ":" in segment or segment == "localhost"
