"""Map DingTalk conversations onto gateway session keys."""

from __future__ import annotations

import logging
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)

SESSION_PREFIX = "dingtalk-connector"
RESET_COMMANDS = frozenset({"/new", "/reset"})


def peer_key(is_group: bool, conversation_id: Optional[str], sender_id: Optional[str]) -> str:
    """Group chats share one session; direct chats are keyed by sender."""

    if is_group and conversation_id:
        return f"{SESSION_PREFIX}:group:{conversation_id}"
    return f"{SESSION_PREFIX}:dm:{sender_id or 'unknown'}"


def is_reset_command(text: str) -> bool:
    return text.strip().lower() in RESET_COMMANDS


@dataclass
class _SessionState:
    key: str
    last_active: float


class SessionRouter:
    """Hand out the active session key per peer.

    Each session key is the peer key plus a random suffix. An explicit reset
    or an idle gap longer than ``timeout_minutes`` moves the peer to a new key,
    which the gateway treats as a fresh conversation. Idle peers are dropped
    from memory once expired. A timeout of 0 disables expiry.
    """

    def __init__(
        self,
        timeout_minutes: int = 30,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._timeout = timeout_minutes * 60
        self._clock = clock
        # Least recently active first
        self._sessions: OrderedDict[str, _SessionState] = OrderedDict()

    def __len__(self) -> int:
        return len(self._sessions)

    def _evict(self, now: float) -> None:
        if not self._timeout:
            return
        while self._sessions:
            peer, state = next(iter(self._sessions.items()))
            if now - state.last_active <= self._timeout:
                break
            logger.info("Session %s idle for %.0fs, expired", state.key, now - state.last_active)
            del self._sessions[peer]

    def resolve(self, peer: str) -> str:
        now = self._clock()
        self._evict(now)
        state = self._sessions.get(peer)
        if state is None:
            state = _SessionState(key=self._fresh_key(peer), last_active=now)
            self._sessions[peer] = state
        state.last_active = now
        self._sessions.move_to_end(peer)
        return state.key

    def reset(self, peer: str) -> str:
        now = self._clock()
        self._evict(now)
        key = self._fresh_key(peer)
        self._sessions[peer] = _SessionState(key=key, last_active=now)
        self._sessions.move_to_end(peer)
        logger.info("Session reset for %s, new key %s", peer, key)
        return key

    def current(self, peer: str) -> Optional[str]:
        state = self._sessions.get(peer)
        return state.key if state else None

    @staticmethod
    def _fresh_key(peer: str) -> str:
        return f"{peer}:{uuid.uuid4().hex[:8]}"


__all__ = ["RESET_COMMANDS", "SessionRouter", "is_reset_command", "peer_key"]
