"""Inbound message deduplication.

Chat platforms deliver events at least once; Slack in particular re-sends an
event when the ack is slow. The dispatcher drops any message id seen within
the TTL window.
"""

from __future__ import annotations

import time
from collections.abc import Callable

from clawbridge.config import DedupConfig


class MessageDeduplicator:
    """Bounded, TTL-swept set of recently seen message ids.

    Expired entries are swept on every check. Past ``max_entries`` the oldest
    inserted id is dropped first. A re-seen id moves to the newest position.
    """

    def __init__(
        self,
        max_entries: int = 1000,
        ttl_seconds: float = 1800.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max = max(1, max_entries)
        self._ttl = ttl_seconds
        self._clock = clock
        self._seen: dict[str, float] = {}  # message id → last-seen time, insertion ordered

    @classmethod
    def from_config(cls, cfg: DedupConfig) -> MessageDeduplicator:
        return cls(cfg.max_entries, cfg.ttl_seconds)

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, message_id: str) -> bool:
        ts = self._seen.get(message_id)
        return ts is not None and self._clock() - ts <= self._ttl

    def is_duplicate(self, message_id: str) -> bool:
        self._sweep()
        return message_id in self._seen

    def mark_seen(self, message_id: str) -> None:
        self._seen.pop(message_id, None)
        while len(self._seen) >= self._max:
            del self._seen[next(iter(self._seen))]
        self._seen[message_id] = self._clock()

    def check_and_mark(self, message_id: str) -> bool:
        """Return True if *message_id* was already seen; record it either way."""
        duplicate = self.is_duplicate(message_id)
        self.mark_seen(message_id)
        return duplicate

    def _sweep(self) -> None:
        now = self._clock()
        expired = [mid for mid, ts in self._seen.items() if now - ts > self._ttl]
        for mid in expired:
            del self._seen[mid]
