"""Time-bounded cache of per-image decisions."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from .policy.types import ImageDecision

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class CacheStats:
    entries: int
    hits: int
    misses: int
    expired: int


@dataclass(frozen=True)
class _Entry:
    decision: ImageDecision
    expires_at: datetime


class DecisionCache:
    """Decisions keyed by ``(digest, policy_version, scope)`` with a fixed expiry.

    Expiry is time based only; reads never extend an entry. A new policy
    version never sees entries written under an older one. Concurrent misses
    on the same key are not coalesced.
    """

    def __init__(self, *, clock: Clock | None = None, max_entries: int = 10_000) -> None:
        self._clock = clock or utc_now
        self._max_entries = max(int(max_entries), 1)
        self._entries: dict[tuple[str, str, str], _Entry] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._expired = 0

    def get(self, digest: str, policy_version: str, *, scope: str = "") -> tuple[ImageDecision | None, bool]:
        key = (digest, policy_version, scope)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None, False
            if now >= entry.expires_at:
                del self._entries[key]
                self._expired += 1
                self._misses += 1
                return None, False
            self._hits += 1
            return entry.decision, True

    def put(
        self,
        digest: str,
        policy_version: str,
        decision: ImageDecision,
        ttl: timedelta,
        *,
        scope: str = "",
    ) -> None:
        if ttl <= timedelta(0):
            return
        entry = _Entry(decision=decision, expires_at=self._clock() + ttl)
        with self._lock:
            self._entries[(digest, policy_version, scope)] = entry
            if len(self._entries) > self._max_entries:
                self._evict_locked()

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [key for key, entry in self._entries.items() if now >= entry.expires_at]
            for key in stale:
                del self._entries[key]
            self._expired += len(stale)
            return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                entries=len(self._entries),
                hits=self._hits,
                misses=self._misses,
                expired=self._expired,
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _evict_locked(self) -> None:
        # drop the entries closest to expiry first
        overflow = len(self._entries) - self._max_entries
        ordered = sorted(self._entries.items(), key=lambda item: item[1].expires_at)
        for key, _ in ordered[:overflow]:
            del self._entries[key]
