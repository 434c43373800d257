"""Pydantic models for inbound robot callbacks."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class TextContent(BaseModel):
    content: str = ""


class InboundMessage(BaseModel):
    """A message delivered to the robot, as posted by DingTalk."""

    msgtype: str = "text"
    text: Optional[TextContent] = None
    content: Optional[Dict[str, Any]] = None
    conversation_type: Optional[str] = Field(default=None, alias="conversationType")
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    sender_staff_id: Optional[str] = Field(default=None, alias="senderStaffId")
    sender_id_raw: Optional[str] = Field(default=None, alias="senderId")
    sender_nick: Optional[str] = Field(default=None, alias="senderNick")
    session_webhook: Optional[str] = Field(default=None, alias="sessionWebhook")
    msg_id: Optional[str] = Field(default=None, alias="msgId")
    robot_code: Optional[str] = Field(default=None, alias="robotCode")

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    @property
    def is_group(self) -> bool:
        return self.conversation_type == "2"

    @property
    def sender_id(self) -> Optional[str]:
        """Staff id when the sender is an org member, else the opaque sender id."""
        return self.sender_staff_id or self.sender_id_raw

    def extract_text(self) -> str:
        """Project the payload onto the text forwarded to the model."""

        msgtype = self.msgtype
        content = self.content or {}
        if msgtype == "text":
            return (self.text.content if self.text else "").strip()
        if msgtype == "richText":
            parts: List[Dict[str, Any]] = content.get("richText") or []
            joined = "".join(
                str(part.get("text", ""))
                for part in parts
                if isinstance(part, dict) and part.get("type") == "text"
            )
            return joined or "[富文本消息]"
        if msgtype == "picture":
            return "[图片]"
        if msgtype == "audio":
            return content.get("recognition") or "[语音消息]"
        if msgtype == "video":
            return "[视频]"
        if msgtype == "file":
            return f"[文件: {content.get('fileName') or '文件'}]"
        if self.text and self.text.content:
            return self.text.content.strip()
        return f"[{msgtype}消息]"


class CallbackAck(BaseModel):
    status: str = "ok"
    duplicate: bool = False
