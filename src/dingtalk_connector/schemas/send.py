"""Request and response models for proactive sends."""

from __future__ import annotations

from typing import List, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from ..services.messaging import MsgType


class _SendOptions(BaseModel):
    content: str
    msg_type: Optional[MsgType] = Field(default=None, alias="msgType")
    title: Optional[str] = None
    use_ai_card: bool = Field(default=True, alias="useAICard")
    fallback_to_normal: bool = Field(default=True, alias="fallbackToNormal")

    model_config = ConfigDict(populate_by_name=True)


class SendRequest(_SendOptions):
    """Send to ``user:<id>``, ``group:<conversationId>`` or a bare user id."""

    target: str
    content: str = Field(validation_alias=AliasChoices("content", "message"))


class SendToUserRequest(_SendOptions):
    user_ids: Union[str, List[str]] = Field(alias="userIds")

    @field_validator("user_ids")
    @classmethod
    def _as_list(cls, value: Union[str, List[str]]) -> List[str]:
        if isinstance(value, str):
            value = [value]
        cleaned = [item.strip() for item in value if item and item.strip()]
        if not cleaned:
            raise ValueError("userIds cannot be empty")
        return cleaned


class SendToGroupRequest(_SendOptions):
    open_conversation_id: str = Field(alias="openConversationId", min_length=1)


class SendResult(BaseModel):
    """Outcome of a proactive send."""

    ok: bool
    process_query_key: Optional[str] = Field(default=None, alias="processQueryKey")
    card_instance_id: Optional[str] = Field(default=None, alias="cardInstanceId")
    error: Optional[str] = None
    used_ai_card: bool = Field(default=False, alias="usedAICard")

    model_config = ConfigDict(populate_by_name=True)


__all__ = ["SendRequest", "SendResult", "SendToGroupRequest", "SendToUserRequest"]
