"""Per-message logging context.

Every inbound robot message is processed in its own task. The message id is
stored in a context variable once, at the top of that task, and a logging
filter copies it onto each record so handlers can format ``%(msg_id)s``.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

_ctx_msg_id: ContextVar[str] = ContextVar("dingtalk_msg_id", default="-")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s [%(msg_id)s]: %(message)s"


class MessageContextFilter(logging.Filter):
    """Adds the current message id to every LogRecord."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg_id = _ctx_msg_id.get()
        return True


def current_message_id() -> str:
    return _ctx_msg_id.get()


@contextmanager
def message_context(msg_id: str | None) -> Iterator[None]:
    """Bind ``msg_id`` to log records emitted inside the block."""

    token = _ctx_msg_id.set(msg_id or "-")
    try:
        yield
    finally:
        _ctx_msg_id.reset(token)


__all__ = [
    "LOG_FORMAT",
    "MessageContextFilter",
    "current_message_id",
    "message_context",
]
