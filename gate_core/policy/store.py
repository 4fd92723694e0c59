"""Holder for the active policy snapshot."""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from .loader import load_policy
from .types import Policy

logger = logging.getLogger(__name__)


class PolicyStore:
    """Publishes whole ``Policy`` snapshots.

    Readers take the current reference without locking; a reload builds the
    new snapshot first and then swaps the single reference, so no reader can
    observe a partially loaded policy. The lock only serializes writers.
    """

    def __init__(self, policy: Policy) -> None:
        self._policy = policy
        self._write_lock = threading.Lock()

    def current(self) -> Policy:
        return self._policy

    @property
    def version(self) -> str:
        return self._policy.version

    def replace(self, policy: Policy) -> Policy:
        with self._write_lock:
            previous = self._policy
            self._policy = policy
        logger.info("policy replaced version=%s previous=%s", policy.version, previous.version)
        return previous

    def load_file(self, path: Path | str) -> Policy:
        """Load and publish a policy file; a ``ConfigError`` leaves the current policy active."""

        policy = load_policy(path)
        self.replace(policy)
        return policy

    @classmethod
    def from_file(cls, path: Path | str) -> "PolicyStore":
        return cls(load_policy(path))
