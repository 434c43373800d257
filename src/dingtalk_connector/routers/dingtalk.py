"""DingTalk robot callback and proactive send routes."""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import time
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request

from ..chat.orchestrator import MessageOrchestrator
from ..chat.proactive import ProactiveSender
from ..config import ConfigurationError, Settings
from ..schemas.events import CallbackAck, InboundMessage
from ..schemas.send import SendRequest, SendResult, SendToGroupRequest, SendToUserRequest
from ..services.dedup import MessageDeduplicator
from ..services.dingtalk_api import DingTalkAPI, DingTalkAPIError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/dingtalk", tags=["dingtalk"])

# DingTalk rejects callbacks older than one hour; mirror that window
SIGNATURE_MAX_AGE_MS = 60 * 60 * 1000


def compute_signature(timestamp: str, secret: str) -> str:
    string_to_sign = f"{timestamp}\n{secret}"
    digest = hmac.new(
        secret.encode("utf-8"), string_to_sign.encode("utf-8"), hashlib.sha256
    ).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_signature(
    timestamp: Optional[str],
    sign: Optional[str],
    secret: str,
    *,
    now_ms: Optional[int] = None,
) -> bool:
    if not timestamp or not sign:
        return False
    try:
        sent_at = int(timestamp)
    except ValueError:
        return False
    now = now_ms if now_ms is not None else int(time.time() * 1000)
    if abs(now - sent_at) > SIGNATURE_MAX_AGE_MS:
        return False
    return hmac.compare_digest(compute_signature(timestamp, secret), sign)


def _state(request: Request, name: str, label: str) -> Any:
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(status_code=500, detail=f"{label} unavailable")
    return value


def get_settings_from_app(request: Request) -> Settings:
    return _state(request, "settings", "Settings")


def get_orchestrator(request: Request) -> MessageOrchestrator:
    return _state(request, "message_orchestrator", "Message orchestrator")


def get_proactive_sender(request: Request) -> ProactiveSender:
    return _state(request, "proactive_sender", "Proactive sender")


def get_deduplicator(request: Request) -> MessageDeduplicator:
    return _state(request, "deduplicator", "Message deduplicator")


def get_dingtalk_api(request: Request) -> DingTalkAPI:
    return _state(request, "dingtalk_api", "DingTalk API")


@router.post("/callback", response_model=CallbackAck)
async def robot_callback(
    message: InboundMessage,
    background_tasks: BackgroundTasks,
    timestamp: Optional[str] = Header(default=None),
    sign: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings_from_app),
    orchestrator: MessageOrchestrator = Depends(get_orchestrator),
    deduplicator: MessageDeduplicator = Depends(get_deduplicator),
) -> CallbackAck:
    """Acknowledge a robot message at once and answer it in the background."""

    if settings.verify_signature and not verify_signature(
        timestamp, sign, settings.client_secret.get_secret_value()
    ):
        logger.warning("Rejected callback with invalid signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    if not deduplicator.check_and_remember(message.msg_id):
        return CallbackAck(duplicate=True)

    background_tasks.add_task(orchestrator.handle, message)
    return CallbackAck()


@router.post("/send", response_model=SendResult)
async def send(
    payload: SendRequest,
    sender: ProactiveSender = Depends(get_proactive_sender),
) -> SendResult:
    try:
        return await sender.send_proactive(
            payload.target,
            payload.content,
            msg_type=payload.msg_type,
            title=payload.title,
            use_ai_card=payload.use_ai_card,
            fallback_to_normal=payload.fallback_to_normal,
        )
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.post("/send-to-user", response_model=SendResult)
async def send_to_user(
    payload: SendToUserRequest,
    sender: ProactiveSender = Depends(get_proactive_sender),
) -> SendResult:
    return await sender.send_to_user(
        payload.user_ids,
        payload.content,
        msg_type=payload.msg_type,
        title=payload.title,
        use_ai_card=payload.use_ai_card,
        fallback_to_normal=payload.fallback_to_normal,
    )


@router.post("/send-to-group", response_model=SendResult)
async def send_to_group(
    payload: SendToGroupRequest,
    sender: ProactiveSender = Depends(get_proactive_sender),
) -> SendResult:
    return await sender.send_to_group(
        payload.open_conversation_id,
        payload.content,
        msg_type=payload.msg_type,
        title=payload.title,
        use_ai_card=payload.use_ai_card,
        fallback_to_normal=payload.fallback_to_normal,
    )


@router.get("/status")
async def status(
    api: DingTalkAPI = Depends(get_dingtalk_api),
) -> dict[str, Any]:
    """Check that the configured credentials can obtain an access token."""

    try:
        await api.access_token()
    except DingTalkAPIError as exc:
        return {"ok": False, "clientId": api.robot_code, "error": str(exc.detail)}
    return {"ok": True, "clientId": api.robot_code}


__all__ = ["compute_signature", "router", "verify_signature"]
