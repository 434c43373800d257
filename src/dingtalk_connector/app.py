"""Application factory for the DingTalk connector service."""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import httpx
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .chat.orchestrator import MessageOrchestrator
from .chat.proactive import ProactiveSender
from .config import Settings, get_settings
from .gateway import GatewayClient
from .logging_context import LOG_FORMAT, MessageContextFilter
from .routers.dingtalk import router as dingtalk_router
from .services.dedup import MessageDeduplicator
from .services.dingtalk_api import DISPATCH_TIMEOUT_SECONDS, DingTalkAPI

logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    """Configure logging based on LOG_LEVEL environment variable."""
    # Load .env file first to ensure LOG_FILE is available
    load_dotenv()

    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_str, logging.INFO)

    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    context_filter = MessageContextFilter()
    handlers: list[logging.Handler] = []

    log_file = os.getenv("LOG_FILE")
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))

    handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setFormatter(formatter)
        # Filters on handlers also see records propagated from child loggers
        handler.addFilter(context_filter)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    logging.getLogger("dingtalk_connector").setLevel(log_level)
    logging.getLogger("uvicorn").setLevel(log_level)
    logging.getLogger("uvicorn.access").setLevel(log_level)
    logging.getLogger("uvicorn.error").setLevel(log_level)

    # Quiet noisy third-party libraries unless debugging
    if log_level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)


def create_app(
    settings: Optional[Settings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    _configure_logging()

    settings = settings or get_settings()
    owns_client = http_client is None
    client = http_client or httpx.AsyncClient(
        timeout=httpx.Timeout(DISPATCH_TIMEOUT_SECONDS),
        http2=True,
    )

    api = DingTalkAPI(settings, client)
    gateway = GatewayClient(settings)
    orchestrator = MessageOrchestrator(settings, api, gateway)
    proactive_sender = ProactiveSender(settings, api)
    deduplicator = MessageDeduplicator(settings.dedup_ttl_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "DingTalk connector started: clientId=%s gateway=%s media_upload=%s",
            settings.client_id,
            settings.gateway_base_url,
            settings.enable_media_upload,
        )
        try:
            yield
        finally:
            # Add timeout to prevent hanging during shutdown (especially in tests)
            try:
                await asyncio.wait_for(gateway.aclose(), timeout=10.0)
            except asyncio.TimeoutError:
                logger.warning("Gateway client shutdown timed out after 10s")
            if owns_client:
                await client.aclose()

    app = FastAPI(
        title="DingTalk Connector",
        version="0.1.0",
        description="Bridges a DingTalk robot to an OpenAI-compatible LLM gateway.",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.dingtalk_api = api
    app.state.message_orchestrator = orchestrator
    app.state.proactive_sender = proactive_sender
    app.state.deduplicator = deduplicator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(dingtalk_router)

    @app.get("/health", tags=["health"])
    async def healthcheck() -> dict[str, str | bool]:
        return {
            "status": "ok",
            "gateway_model": settings.gateway_model,
            "media_upload": settings.enable_media_upload,
        }

    return app


__all__ = ["create_app"]
