"""Per-message pipeline: gateway stream in, AI card or plain reply out."""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from ..config import Settings
from ..gateway import GatewayClient
from ..logging_context import message_context
from ..media.markers import build_media_system_prompt, strip_media_markers
from ..media.processors import MediaPostProcessor
from ..media.uploader import MediaUploader
from ..schemas.events import InboundMessage
from ..services.cards import (
    CARD_UPDATE_INTERVAL_SECONDS,
    AICardController,
    CardInstance,
    CardStreamWriter,
)
from ..services.dingtalk_api import DingTalkAPI
from ..services.messaging import DispatchError, ProactiveDispatcher, ReplyDispatcher
from ..services.sessions import SessionRouter, is_reset_command, peer_key
from ..services.targets import DeliveryTarget, resolve_target

logger = logging.getLogger(__name__)

MEDIA_ONLY_REPLY = "✅ 媒体已发送"
NO_RESPONSE_REPLY = "（无响应）"
SESSION_RESET_REPLY = "✅ 已开启新会话"


def error_reply(exc: BaseException) -> str:
    return f"抱歉，处理请求时出错: {exc}"


def build_system_prompts(settings: Settings) -> list[str]:
    prompts: list[str] = []
    if settings.enable_media_upload:
        prompts.append(build_media_system_prompt())
    if settings.system_prompt:
        prompts.append(settings.system_prompt)
    return prompts


async def media_upload_token(settings: Settings, api: DingTalkAPI) -> Optional[str]:
    """Fetch the oapi token used for uploads, or None when uploads are off."""

    if not settings.enable_media_upload:
        logger.info("Media upload disabled, skipping upload token")
        return None
    token = await api.oapi_token()
    logger.info("Upload token %s", "acquired" if token else "unavailable")
    return token


class MessageOrchestrator:
    """Run one inbound robot message through the gateway and reply."""

    def __init__(
        self,
        settings: Settings,
        api: DingTalkAPI,
        gateway: GatewayClient,
        *,
        cards: Optional[AICardController] = None,
        media: Optional[MediaPostProcessor] = None,
        sessions: Optional[SessionRouter] = None,
        card_interval: float = CARD_UPDATE_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._api = api
        self._gateway = gateway
        self._cards = cards or AICardController(api)
        self._media = media or MediaPostProcessor(
            MediaUploader(api.http, settings.oapi_base),
            max_bytes=settings.media_max_size_bytes,
        )
        self._sessions = sessions or SessionRouter(settings.session_timeout_minutes)
        self._card_interval = card_interval
        self._clock = clock

    @property
    def sessions(self) -> SessionRouter:
        return self._sessions

    async def handle(self, message: InboundMessage) -> None:
        with message_context(message.msg_id):
            await self._handle(message)

    async def _handle(self, message: InboundMessage) -> None:
        text = message.extract_text()
        if not text:
            logger.info("Ignoring %s message with no text", message.msgtype)
            return

        sender_id = message.sender_id
        logger.info(
            "Received message from=%s text=%r",
            message.sender_nick or "Unknown",
            text[:50],
        )

        reply = ReplyDispatcher(self._api, message.session_webhook or "")
        at_user_id = sender_id if message.is_group else None
        peer = peer_key(message.is_group, message.conversation_id, sender_id)

        if is_reset_command(text):
            self._sessions.reset(peer)
            try:
                await reply.send_text(SESSION_RESET_REPLY, at_user_id=at_user_id)
            except DispatchError as exc:
                logger.error("Session reset confirmation failed: %s", exc)
            return

        session_key = self._sessions.resolve(peer)
        logger.info("Session key=%s", session_key)
        system_prompts = build_system_prompts(self._settings)
        token = await media_upload_token(self._settings, self._api)

        try:
            target: Optional[DeliveryTarget] = resolve_target(
                message.conversation_type, message.conversation_id, sender_id
            )
        except ValueError as exc:
            logger.warning("No card target: %s", exc)
            target = None

        card = await self._cards.create(target) if target is not None else None
        if card is not None and target is not None:
            logger.info("AI card created: %s", card.card_instance_id)
            await self._reply_with_card(
                card, target, text, system_prompts, session_key, token
            )
        else:
            logger.warning("AI card unavailable, replying with a plain message")
            await self._reply_plain(
                reply, at_user_id, text, system_prompts, session_key, token
            )

    async def _reply_with_card(
        self,
        card: CardInstance,
        target: DeliveryTarget,
        text: str,
        system_prompts: list[str],
        session_key: str,
        token: Optional[str],
    ) -> None:
        writer = CardStreamWriter(
            self._cards, card, interval=self._card_interval, clock=self._clock
        )
        accumulated = ""
        chunk_count = 0
        try:
            async for fragment in self._gateway.stream_text(
                text, system_prompts, session_key, self._settings.gateway_auth
            ):
                accumulated += fragment
                chunk_count += 1
                await writer.push(strip_media_markers(accumulated))

            logger.info(
                "Gateway stream complete: %d chunks, %d chars, %d card updates",
                chunk_count,
                len(accumulated),
                writer.updates_sent,
            )
            # The session webhook is single-use once a card exists
            dispatcher = ProactiveDispatcher(self._api, target)
            accumulated = await self._media.process(accumulated, dispatcher, token)

            final_content = accumulated.strip()
            if not final_content:
                logger.info("Reply was media only")
                final_content = MEDIA_ONLY_REPLY
            await writer.finalize(final_content)
        except Exception as exc:
            logger.error("Card reply failed: %s", exc, exc_info=True)
            interrupted = f"{strip_media_markers(accumulated)}\n\n⚠️ 响应中断: {exc}"
            try:
                await writer.finalize(interrupted)
            except Exception as finish_exc:
                logger.error("Finishing card after failure also failed: %s", finish_exc)

    async def _reply_plain(
        self,
        reply: ReplyDispatcher,
        at_user_id: Optional[str],
        text: str,
        system_prompts: list[str],
        session_key: str,
        token: Optional[str],
    ) -> None:
        try:
            full_response = await self._gateway.collect_text(
                text, system_prompts, session_key, self._settings.gateway_auth
            )
            full_response = await self._media.process(full_response, reply, token)
            await reply.send_auto(full_response or NO_RESPONSE_REPLY, at_user_id=at_user_id)
            logger.info("Plain reply sent, %d chars", len(full_response))
        except Exception as exc:
            logger.error("Plain reply failed: %s", exc)
            try:
                await reply.send_text(error_reply(exc), at_user_id=at_user_id)
            except DispatchError as send_exc:
                logger.error("Error reply could not be delivered: %s", send_exc)


__all__ = [
    "MEDIA_ONLY_REPLY",
    "MessageOrchestrator",
    "NO_RESPONSE_REPLY",
    "build_system_prompts",
    "error_reply",
    "media_upload_token",
]
