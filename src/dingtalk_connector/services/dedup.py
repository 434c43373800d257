"""Drop robot callbacks DingTalk redelivers after a slow acknowledgement."""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class MessageDeduplicator:
    """Remember message ids for ``ttl_seconds``; a TTL of 0 disables the check."""

    def __init__(
        self,
        ttl_seconds: float = 300,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._seen: OrderedDict[str, float] = OrderedDict()

    def __len__(self) -> int:
        return len(self._seen)

    def _evict(self, now: float) -> None:
        # Insertion order equals expiry order since the TTL is fixed
        while self._seen:
            msg_id, seen_at = next(iter(self._seen.items()))
            if now - seen_at < self._ttl:
                break
            del self._seen[msg_id]

    def check_and_remember(self, msg_id: Optional[str]) -> bool:
        """Return True the first time ``msg_id`` is seen inside the window."""

        if not msg_id or self._ttl <= 0:
            return True
        now = self._clock()
        self._evict(now)
        if msg_id in self._seen:
            logger.info("Dropping duplicate message %s", msg_id)
            return False
        self._seen[msg_id] = now
        return True


__all__ = ["MessageDeduplicator"]
