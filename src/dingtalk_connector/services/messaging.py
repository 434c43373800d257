"""Plain (non-card) message delivery.

Two routes reach a DingTalk user:

* the session webhook that arrives with an inbound message. It is a one-shot
  reply channel and stops being usable once the card flow has replied.
* the robot messaging API (``oToMessages/batchSend`` and
  ``groupMessages/send``), keyed by the app credentials and a user or group.

`ReplyDispatcher` and `ProactiveDispatcher` expose the same methods over
those two routes so media post-processing does not care which one it has.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Literal, Optional, Sequence

from .dingtalk_api import DingTalkAPI, DingTalkAPIError
from .targets import DeliveryTarget, GroupTarget

logger = logging.getLogger(__name__)

MsgType = Literal["text", "markdown", "link", "actionCard", "image"]

USER_SEND_PATH = "/v1.0/robot/oToMessages/batchSend"
GROUP_SEND_PATH = "/v1.0/robot/groupMessages/send"

_MARKDOWN_HINT_RE = re.compile(r"^[#*>-]|[*_`#\[\]]")
_TITLE_STRIP_RE = re.compile(r"^[#*\s\->]+")


class DispatchError(RuntimeError):
    """Raised when DingTalk refuses or fails to deliver a message."""


def looks_like_markdown(text: str) -> bool:
    return bool(_MARKDOWN_HINT_RE.search(text)) or "\n" in text


def markdown_title(text: str, default: str = "Moltbot") -> str:
    first_line = text.split("\n", 1)[0]
    return _TITLE_STRIP_RE.sub("", first_line)[:20] or default


def build_msg_payload(
    msg_type: MsgType, content: str, title: Optional[str] = None
) -> tuple[str, dict[str, Any]]:
    """Map a message type onto the robot API ``msgKey`` and ``msgParam``.

    Raises `ValueError` when a link or actionCard body is not a JSON object.
    """

    if msg_type == "markdown":
        return "sampleMarkdown", {
            "title": title or markdown_title(content, "Message"),
            "text": content,
        }
    if msg_type in ("link", "actionCard"):
        try:
            param = json.loads(content)
        except json.JSONDecodeError as exc:
            raise ValueError(
                f"Invalid {msg_type} message format, expected JSON"
            ) from exc
        if not isinstance(param, dict):
            raise ValueError(f"Invalid {msg_type} message format, expected JSON")
        key = "sampleLink" if msg_type == "link" else "sampleActionCard"
        return key, param
    if msg_type == "image":
        return "sampleImageMsg", {"photoURL": content}
    return "sampleText", {"content": content}


async def send_robot_message(
    api: DingTalkAPI,
    *,
    msg_key: str,
    msg_param: dict[str, Any],
    user_ids: Sequence[str] = (),
    conversation_id: Optional[str] = None,
) -> str:
    """Send through the robot API and return its ``processQueryKey``."""

    body: dict[str, Any] = {
        "robotCode": api.robot_code,
        "msgKey": msg_key,
        "msgParam": json.dumps(msg_param, ensure_ascii=False),
    }
    if conversation_id:
        body["openConversationId"] = conversation_id
        path = GROUP_SEND_PATH
    else:
        body["userIds"] = list(user_ids)
        path = USER_SEND_PATH

    try:
        response = await api.request("POST", path, body)
    except DingTalkAPIError as exc:
        raise DispatchError(str(exc.detail)) from exc

    query_key = response.get("processQueryKey")
    if not query_key:
        raise DispatchError(response.get("message") or f"Unexpected response: {response}")
    return query_key


class Dispatcher(ABC):
    """Delivery route used by the media post-processors and plain replies."""

    label = "reply"

    @abstractmethod
    async def send_text(self, text: str, *, at_user_id: Optional[str] = None) -> None: ...

    @abstractmethod
    async def send_markdown(
        self, title: str, text: str, *, at_user_id: Optional[str] = None
    ) -> None: ...

    @abstractmethod
    async def send_video(
        self, video_media_id: str, pic_media_id: str, duration_seconds: int
    ) -> None: ...

    @abstractmethod
    async def send_voice(self, media_id: str, duration_ms: int) -> None: ...

    @abstractmethod
    async def send_file(self, media_id: str, file_name: str, file_type: str) -> None: ...

    async def send_auto(self, text: str, *, at_user_id: Optional[str] = None) -> None:
        """Pick markdown for structured text and plain text otherwise."""

        if looks_like_markdown(text):
            await self.send_markdown(markdown_title(text), text, at_user_id=at_user_id)
        else:
            await self.send_text(text, at_user_id=at_user_id)


def _video_param(video_media_id: str, pic_media_id: str, duration_seconds: int) -> dict[str, str]:
    return {
        "duration": str(duration_seconds),
        "videoMediaId": video_media_id,
        "videoType": "mp4",
        "picMediaId": pic_media_id,
    }


class ReplyDispatcher(Dispatcher):
    """Reply through the inbound message's session webhook."""

    label = "reply"

    def __init__(self, api: DingTalkAPI, session_webhook: str) -> None:
        self._api = api
        self._webhook = session_webhook

    async def _post(self, payload: dict[str, Any]) -> None:
        if not self._webhook:
            raise DispatchError("No session webhook available for reply")
        try:
            response = await self._api.request("POST", self._webhook, payload)
        except DingTalkAPIError as exc:
            raise DispatchError(str(exc.detail)) from exc
        if response.get("success") is False:
            raise DispatchError(f"Webhook rejected {payload['msgtype']}: {response}")
        logger.info("Webhook %s message sent", payload["msgtype"])

    @staticmethod
    def _at(payload: dict[str, Any], at_user_id: Optional[str]) -> dict[str, Any]:
        if at_user_id:
            payload["at"] = {"atUserIds": [at_user_id], "isAtAll": False}
        return payload

    async def send_text(self, text: str, *, at_user_id: Optional[str] = None) -> None:
        payload = {"msgtype": "text", "text": {"content": text}}
        await self._post(self._at(payload, at_user_id))

    async def send_markdown(
        self, title: str, text: str, *, at_user_id: Optional[str] = None
    ) -> None:
        if at_user_id:
            text = f"{text} @{at_user_id}"
        payload = {"msgtype": "markdown", "markdown": {"title": title, "text": text}}
        await self._post(self._at(payload, at_user_id))

    async def send_video(
        self, video_media_id: str, pic_media_id: str, duration_seconds: int
    ) -> None:
        await self._post(
            {
                "msgtype": "video",
                "video": _video_param(video_media_id, pic_media_id, duration_seconds),
            }
        )

    async def send_voice(self, media_id: str, duration_ms: int) -> None:
        await self._post(
            {"msgtype": "voice", "voice": {"mediaId": media_id, "duration": str(duration_ms)}}
        )

    async def send_file(self, media_id: str, file_name: str, file_type: str) -> None:
        await self._post(
            {
                "msgtype": "file",
                "file": {"mediaId": media_id, "fileName": file_name, "fileType": file_type},
            }
        )


class ProactiveDispatcher(Dispatcher):
    """Send to a fixed user or group through the robot messaging API."""

    label = "proactive"

    def __init__(self, api: DingTalkAPI, target: DeliveryTarget) -> None:
        self._api = api
        self.target = target

    async def send(self, msg_key: str, msg_param: dict[str, Any]) -> str:
        if isinstance(self.target, GroupTarget):
            query_key = await send_robot_message(
                self._api,
                msg_key=msg_key,
                msg_param=msg_param,
                conversation_id=self.target.conversation_id,
            )
        else:
            query_key = await send_robot_message(
                self._api,
                msg_key=msg_key,
                msg_param=msg_param,
                user_ids=[self.target.user_id],
            )
        logger.info(
            "Robot %s sent to %s (processQueryKey=%s)",
            msg_key,
            self.target.describe(),
            query_key,
        )
        return query_key

    async def send_text(self, text: str, *, at_user_id: Optional[str] = None) -> None:
        await self.send("sampleText", {"content": text})

    async def send_markdown(
        self, title: str, text: str, *, at_user_id: Optional[str] = None
    ) -> None:
        await self.send("sampleMarkdown", {"title": title, "text": text})

    async def send_video(
        self, video_media_id: str, pic_media_id: str, duration_seconds: int
    ) -> None:
        await self.send(
            "sampleVideo", _video_param(video_media_id, pic_media_id, duration_seconds)
        )

    async def send_voice(self, media_id: str, duration_ms: int) -> None:
        await self.send("sampleAudio", {"mediaId": media_id, "duration": str(duration_ms)})

    async def send_file(self, media_id: str, file_name: str, file_type: str) -> None:
        await self.send(
            "sampleFile",
            {"mediaId": media_id, "fileName": file_name, "fileType": file_type},
        )


__all__ = [
    "DispatchError",
    "Dispatcher",
    "GROUP_SEND_PATH",
    "MsgType",
    "ProactiveDispatcher",
    "ReplyDispatcher",
    "USER_SEND_PATH",
    "build_msg_payload",
    "looks_like_markdown",
    "markdown_title",
    "send_robot_message",
]
