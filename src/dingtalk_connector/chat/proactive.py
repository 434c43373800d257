"""Proactive (bot-initiated) sends to users and groups.

Each send first tries a one-shot AI card: media in the content is uploaded
and dispatched, then a card is created and finished with the remaining text.
If the card cannot be created the text goes out as a plain robot message,
unless the caller disabled the fallback. Cards are single-recipient, so a
send to several users always uses the plain route.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence, Union

from ..config import ConfigurationError, Settings
from ..media.processors import MediaPostProcessor
from ..media.uploader import MediaUploader
from ..schemas.send import SendResult
from ..services.cards import AICardController
from ..services.dingtalk_api import DingTalkAPI, DingTalkAPIError
from ..services.messaging import (
    DispatchError,
    MsgType,
    ProactiveDispatcher,
    build_msg_payload,
    looks_like_markdown,
    send_robot_message,
)
from ..services.targets import DeliveryTarget, GroupTarget, UserTarget, parse_target
from .orchestrator import media_upload_token

logger = logging.getLogger(__name__)


class ProactiveSender:
    def __init__(
        self,
        settings: Settings,
        api: DingTalkAPI,
        *,
        cards: Optional[AICardController] = None,
        media: Optional[MediaPostProcessor] = None,
    ) -> None:
        self._settings = settings
        self._api = api
        self._cards = cards or AICardController(api)
        self._media = media or MediaPostProcessor(
            MediaUploader(api.http, settings.oapi_base),
            max_bytes=settings.media_max_size_bytes,
        )

    async def send_to_user(
        self,
        user_ids: Union[str, Sequence[str]],
        content: str,
        *,
        msg_type: Optional[MsgType] = None,
        title: Optional[str] = None,
        use_ai_card: bool = True,
        fallback_to_normal: bool = True,
    ) -> SendResult:
        ids = [user_ids] if isinstance(user_ids, str) else list(user_ids)
        ids = [user_id for user_id in ids if user_id]
        if not ids:
            return SendResult(ok=False, error="userIds cannot be empty")

        if use_ai_card and len(ids) == 1:
            logger.info("Trying AI card for user %s", ids[0])
            result, content = await self._send_card(UserTarget(user_id=ids[0]), content)
            if result.ok or not fallback_to_normal:
                return result
            logger.warning("AI card send failed (%s), using a plain message", result.error)
        elif use_ai_card:
            logger.info("AI card is single-recipient, sending plain to %d users", len(ids))

        return await self._send_plain(content, msg_type, title, user_ids=ids)

    async def send_to_group(
        self,
        conversation_id: str,
        content: str,
        *,
        msg_type: Optional[MsgType] = None,
        title: Optional[str] = None,
        use_ai_card: bool = True,
        fallback_to_normal: bool = True,
    ) -> SendResult:
        if not conversation_id:
            return SendResult(ok=False, error="openConversationId cannot be empty")

        if use_ai_card:
            logger.info("Trying AI card for group %s", conversation_id)
            result, content = await self._send_card(
                GroupTarget(conversation_id=conversation_id), content
            )
            if result.ok or not fallback_to_normal:
                return result
            logger.warning("AI card send failed (%s), using a plain message", result.error)

        return await self._send_plain(
            content, msg_type, title, conversation_id=conversation_id
        )

    async def send_proactive(
        self,
        target: Union[str, DeliveryTarget],
        content: str,
        *,
        msg_type: Optional[MsgType] = None,
        title: Optional[str] = None,
        use_ai_card: bool = True,
        fallback_to_normal: bool = True,
    ) -> SendResult:
        """Send to a parsed target, choosing markdown for structured text.

        Raises `ConfigurationError` when ``target`` cannot be parsed.
        """

        if isinstance(target, str):
            try:
                target = parse_target(target)
            except ValueError as exc:
                raise ConfigurationError(str(exc)) from exc

        if msg_type is None and looks_like_markdown(content):
            msg_type = "markdown"

        if isinstance(target, GroupTarget):
            return await self.send_to_group(
                target.conversation_id,
                content,
                msg_type=msg_type,
                title=title,
                use_ai_card=use_ai_card,
                fallback_to_normal=fallback_to_normal,
            )
        return await self.send_to_user(
            target.user_id,
            content,
            msg_type=msg_type,
            title=title,
            use_ai_card=use_ai_card,
            fallback_to_normal=fallback_to_normal,
        )

    async def _send_card(
        self, target: DeliveryTarget, content: str
    ) -> tuple[SendResult, str]:
        """Return the card result and the post-processed text for any fallback."""

        dispatcher = ProactiveDispatcher(self._api, target)
        token = await media_upload_token(self._settings, self._api)
        processed = await self._media.process(content, dispatcher, token)
        if not processed.strip():
            logger.info("Content was media only, no card needed")
            return SendResult(ok=True, used_ai_card=False), processed

        card = await self._cards.create(target)
        if card is None:
            return SendResult(ok=False, error="Failed to create AI Card"), processed
        try:
            await self._cards.finalize(card, processed)
        except DingTalkAPIError as exc:
            logger.error("AI card finish failed for %s: %s", target.describe(), exc)
            return SendResult(ok=False, error=str(exc.detail)), processed

        logger.info(
            "AI card sent to %s, cardInstanceId=%s",
            target.describe(),
            card.card_instance_id,
        )
        return (
            SendResult(ok=True, card_instance_id=card.card_instance_id, used_ai_card=True),
            processed,
        )

    async def _send_plain(
        self,
        content: str,
        msg_type: Optional[MsgType],
        title: Optional[str],
        *,
        user_ids: Sequence[str] = (),
        conversation_id: Optional[str] = None,
    ) -> SendResult:
        try:
            msg_key, msg_param = build_msg_payload(msg_type or "text", content, title)
        except ValueError as exc:
            return SendResult(ok=False, error=str(exc))

        try:
            query_key = await send_robot_message(
                self._api,
                msg_key=msg_key,
                msg_param=msg_param,
                user_ids=user_ids,
                conversation_id=conversation_id,
            )
        except DispatchError as exc:
            logger.error("Plain send failed: %s", exc)
            return SendResult(ok=False, error=str(exc))

        logger.info("Plain %s sent, processQueryKey=%s", msg_key, query_key)
        return SendResult(ok=True, process_query_key=query_key)


__all__ = ["ProactiveSender"]
