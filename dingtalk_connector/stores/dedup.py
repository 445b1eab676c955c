"""Message deduplication store.

Combines two guards keyed by ``<account_id>:<msg_id>``:

- a TTL record: a key marked processed is rejected for ``ttl`` seconds,
  even after processing finished;
- an in-flight set: a key currently being processed is rejected outright
  (never queued).

The store is shared by every connection in the process, so the in-flight
guard also covers a fast stop/restart of the same account.
"""

import time
from typing import Callable

from loguru import logger


DEDUP_TTL_SECONDS = 5 * 60
SWEEP_THRESHOLD = 5000


class DedupStore:
    """Time-boxed record of processed message keys plus an in-flight guard."""

    def __init__(
        self,
        ttl: float = DEDUP_TTL_SECONDS,
        sweep_threshold: int = SWEEP_THRESHOLD,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl = ttl
        self.sweep_threshold = sweep_threshold
        self._clock = clock
        self._processed: dict[str, float] = {}
        self._inflight: set[str] = set()

    @staticmethod
    def make_key(account_id: str, msg_id: str) -> str:
        return f"{account_id}:{msg_id}"

    def is_duplicate(self, key: str) -> bool:
        """Whether ``key`` was marked processed within the TTL window."""
        seen_at = self._processed.get(key)
        if seen_at is None:
            return False
        if self._clock() - seen_at > self.ttl:
            del self._processed[key]
            return False
        return True

    def should_process(self, key: str) -> bool:
        """
        Claim ``key`` for processing.

        Returns False if the key is within its TTL window or in flight;
        otherwise marks it processed and in flight and returns True.
        """
        if self.is_duplicate(key):
            logger.debug(f"Dedup TTL skip: {key}")
            return False
        if key in self._inflight:
            logger.debug(f"Dedup in-flight skip: {key}")
            return False

        self._processed[key] = self._clock()
        self._inflight.add(key)
        if len(self._processed) > self.sweep_threshold:
            self.sweep()
        return True

    def release(self, key: str) -> None:
        """Clear the in-flight marker. The TTL record is kept."""
        self._inflight.discard(key)

    def sweep(self) -> int:
        """Drop expired TTL records. Returns the number removed."""
        cutoff = self._clock() - self.ttl
        expired = [k for k, ts in self._processed.items() if ts < cutoff]
        for k in expired:
            del self._processed[k]
        if expired:
            logger.debug(f"Dedup sweep removed {len(expired)} expired key(s)")
        return len(expired)

    def is_inflight(self, key: str) -> bool:
        return key in self._inflight

    def __len__(self) -> int:
        return len(self._processed)
