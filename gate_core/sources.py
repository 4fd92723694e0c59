"""Collaborator protocols and the bounded fetch runner."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, Protocol, TypeVar

from .attest.types import Attestation
from .errors import FetchError, ValidationError
from .refs import ImageReference
from .scan import ScanReport

logger = logging.getLogger(__name__)
T = TypeVar("T")


class AttestationSource(Protocol):
    def fetch(self, digest: str, *, timeout: float) -> list[Attestation]: ...


class ScanReportSource(Protocol):
    def fetch(self, digest: str, *, timeout: float) -> ScanReport | None: ...


class DigestResolver(Protocol):
    def resolve(self, ref: ImageReference, *, timeout: float) -> str: ...


class FetchRunner:
    """Run collaborator calls on a bounded pool and enforce the caller timeout.

    A collaborator that ignores its ``timeout`` argument still cannot stall an
    evaluation: the wait on its future is bounded and expiry becomes a
    ``FetchError``. Any unexpected exception is converted the same way.
    """

    def __init__(self, max_workers: int = 8) -> None:
        self.max_workers = max(int(max_workers), 1)
        self._pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="gate-fetch")

    def call(self, label: str, fn: Callable[..., T], *args: Any, timeout: float) -> T:
        timeout = max(float(timeout), 0.0)
        try:
            future = self._pool.submit(fn, *args, timeout=timeout)
            return future.result(timeout=timeout)
        except FutureTimeout as exc:
            future.cancel()
            logger.debug("%s timed out after %.1fs", label, timeout)
            raise FetchError(f"timed out after {timeout:.1f}s") from exc
        except (FetchError, ValidationError):
            raise
        except Exception as exc:
            logger.debug("%s failed: %s", label, exc)
            raise FetchError(f"{type(exc).__name__}: {exc}") from exc

    def close(self, *, cancel_pending: bool = True) -> None:
        self._pool.shutdown(wait=False, cancel_futures=cancel_pending)
