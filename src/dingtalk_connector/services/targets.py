"""Delivery targets for cards and robot messages."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal, Optional, Union

_CHANNEL_PREFIX_RE = re.compile(r"^(dingtalk-connector|dingtalk|dd|ding):", re.IGNORECASE)


@dataclass(frozen=True)
class UserTarget:
    user_id: str
    kind: Literal["user"] = "user"

    def describe(self) -> str:
        return f"user {self.user_id}"


@dataclass(frozen=True)
class GroupTarget:
    conversation_id: str
    kind: Literal["group"] = "group"

    def describe(self) -> str:
        return f"group {self.conversation_id}"


DeliveryTarget = Union[UserTarget, GroupTarget]


def resolve_target(
    conversation_type: Optional[str],
    conversation_id: Optional[str],
    sender_id: Optional[str],
) -> DeliveryTarget:
    """Group conversations ("2") go to the group, everything else to the sender."""

    if conversation_type == "2" and conversation_id:
        return GroupTarget(conversation_id=conversation_id)
    if not sender_id:
        raise ValueError("Cannot resolve a delivery target without a sender id")
    return UserTarget(user_id=sender_id)


def normalize_target(raw: str) -> Optional[str]:
    """Drop a channel prefix; ids are base64 so case is preserved."""

    if not raw:
        return None
    return _CHANNEL_PREFIX_RE.sub("", raw.strip())


def parse_target(raw: str) -> DeliveryTarget:
    """Parse ``user:<id>``, ``group:<conversationId>`` or a bare user id."""

    value = normalize_target(raw)
    if not value:
        raise ValueError("Target is required. Format: user:<userId> or group:<conversationId>")
    if value.startswith("group:"):
        target: DeliveryTarget = GroupTarget(conversation_id=value[len("group:") :])
    elif value.startswith("user:"):
        target = UserTarget(user_id=value[len("user:") :])
    else:
        target = UserTarget(user_id=value)

    if not (target.conversation_id if isinstance(target, GroupTarget) else target.user_id):
        raise ValueError(f"Target {raw!r} is missing an id")
    return target


__all__ = [
    "DeliveryTarget",
    "GroupTarget",
    "UserTarget",
    "normalize_target",
    "parse_target",
    "resolve_target",
]
