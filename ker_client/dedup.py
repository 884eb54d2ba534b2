"""
Delivery deduplication

Suppresses duplicate outbound sends and duplicate inbound processing within a
fixed TTL window. Entries live in an insertion-ordered map keyed by
idempotency key; because the TTL is fixed and entries are never refreshed,
insertion order is also expiry order, so a sweep only ever pops from the
front.
"""

import time
import logging
from collections import OrderedDict
from typing import Callable, Dict
from dataclasses import dataclass


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DedupEntry:
    idempotency_key: str
    first_seen_at: float


class _TTLIndex:
    """Idempotency keys indexed by first-seen time"""

    def __init__(self):
        self.entries: "OrderedDict[str, DedupEntry]" = OrderedDict()

    def live(self, key: str, now: float, ttl: float) -> bool:
        entry = self.entries.get(key)
        return entry is not None and now - entry.first_seen_at < ttl

    def record(self, key: str, now: float):
        # A stale entry for the same key is replaced and moves to the back
        self.entries.pop(key, None)
        self.entries[key] = DedupEntry(key, now)

    def sweep(self, now: float, ttl: float) -> int:
        removed = 0
        while self.entries:
            key, entry = next(iter(self.entries.items()))
            if now - entry.first_seen_at < ttl:
                break
            del self.entries[key]
            removed += 1
        return removed


class DeliveryDeduplicator:
    """
    Gates outbound sends and inbound processing by idempotency key.

    Args:
        ttl_seconds: Dedup window
        sweep_interval: Run an eviction sweep every N gate operations
        clock: Monotonic clock returning seconds
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        sweep_interval: int = 64,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if sweep_interval < 1:
            raise ValueError("sweep_interval must be at least 1")
        self.ttl_seconds = ttl_seconds
        self.sweep_interval = sweep_interval
        self.clock = clock
        self._outbound = _TTLIndex()
        self._inbound = _TTLIndex()
        self._operations = 0

    def should_send(self, idempotency_key: str) -> bool:
        """
        Claim an outbound send.

        Returns:
            True (and records the key) if no unexpired entry exists, else False
        """
        return self._gate(self._outbound, idempotency_key)

    def should_process(self, idempotency_key: str) -> bool:
        """Inbound mirror of should_send, absorbing transport redelivery"""
        return self._gate(self._inbound, idempotency_key)

    def release_send(self, idempotency_key: str):
        """
        Drop an outbound claim after a failed send so a retry can go out.
        """
        self._outbound.entries.pop(idempotency_key, None)

    def release_process(self, idempotency_key: str):
        """Drop an inbound claim so a redelivery of the same notice is handled again"""
        self._inbound.entries.pop(idempotency_key, None)

    def sweep(self) -> int:
        """
        Evict expired entries from both directions.

        Returns:
            Number of entries removed
        """
        now = self.clock()
        removed = self._outbound.sweep(now, self.ttl_seconds) + self._inbound.sweep(now, self.ttl_seconds)
        if removed:
            logger.debug("Dedup sweep evicted %d entries", removed)
        return removed

    def stats(self) -> Dict[str, int]:
        return {
            'outbound': len(self._outbound.entries),
            'inbound': len(self._inbound.entries),
        }

    def _gate(self, index: _TTLIndex, key: str) -> bool:
        self._operations += 1
        if self._operations % self.sweep_interval == 0:
            self.sweep()

        now = self.clock()
        if index.live(key, now, self.ttl_seconds):
            return False
        index.record(key, now)
        return True
