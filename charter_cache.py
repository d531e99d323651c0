"""
Charter Instance Cache
======================
Per-principal, single-slot store bridging `prepare` and `finalize`.

  - At most one live record per principal.
  - `put` overwrites (last writer wins, no merge) and hands back what it replaced.
  - `take` is read-then-delete under one lock; a missing record raises
    MissingCacheError.
  - Optional TTL: an expired record reads as absent. 0 disables expiry.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, List, Optional, Tuple, TypeVar

import structlog

from charter_acl import AppHandle
from charter_errors import MissingCacheError

log = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class CachedInstance:
    """Partially built organization left by `prepare`."""
    dao: AppHandle
    acl: AppHandle
    script_registry: AppHandle
    agent: AppHandle
    token_wrapper: AppHandle
    voting_aggregator: AppHandle
    external_asset: str
    settings: Dict[str, Any] = field(default_factory=dict)

    def components(self) -> List[AppHandle]:
        return [self.dao, self.agent, self.token_wrapper, self.voting_aggregator]


@dataclass(frozen=True)
class CachedToken:
    """Token deployed by the legacy `new_token`, waiting for `new_instance`."""
    token: AppHandle
    name: str
    symbol: str


@dataclass
class _Slot(Generic[T]):
    record: T
    stored_at: float


class InstanceCache(Generic[T]):

    def __init__(self, ttl_seconds: float = 0, clock: Callable[[], float] = time.monotonic,
                 name: str = "instance"):
        self.ttl_seconds = ttl_seconds
        self.name = name
        self._clock = clock
        self._lock = threading.Lock()
        self._slots: Dict[str, _Slot[T]] = {}

    @staticmethod
    def _key(principal: str) -> str:
        return principal.lower()

    def _expired(self, slot: _Slot) -> bool:
        return bool(self.ttl_seconds) and self._clock() - slot.stored_at > self.ttl_seconds

    def put(self, principal: str, record: T) -> Optional[T]:
        """Store `record` for `principal`, returning the live record it replaced, if any."""
        key = self._key(principal)
        with self._lock:
            previous = self._slots.get(key)
            self._slots[key] = _Slot(record, self._clock())
        if previous is not None and not self._expired(previous):
            log.info("instance_cache_overwritten", cache=self.name, principal=key)
            return previous.record
        return None

    def peek(self, principal: str) -> Optional[T]:
        with self._lock:
            slot = self._slots.get(self._key(principal))
        if slot is None or self._expired(slot):
            return None
        return slot.record

    def has(self, principal: str) -> bool:
        return self.peek(principal) is not None

    def take(self, principal: str) -> T:
        """Remove and return the principal's record."""
        with self._lock:
            slot = self._slots.pop(self._key(principal), None)
        if slot is None or self._expired(slot):
            raise MissingCacheError()
        return slot.record

    def discard(self, principal: str):
        with self._lock:
            self._slots.pop(self._key(principal), None)

    def purge_expired(self) -> List[Tuple[str, T]]:
        """Drop every expired record; returns what was dropped."""
        if not self.ttl_seconds:
            return []
        with self._lock:
            dead = [(k, s) for k, s in self._slots.items() if self._expired(s)]
            for k, _ in dead:
                del self._slots[k]
        if dead:
            log.info("instance_cache_purged", cache=self.name, count=len(dead))
        return [(k, s.record) for k, s in dead]

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for s in self._slots.values() if not self._expired(s))
