"""Streaming client for the LLM gateway's OpenAI-compatible endpoint."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncGenerator, Optional, Sequence

import httpx

from .config import Settings

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


class GatewayError(Exception):
    """Wrap transport or API failures when communicating with the gateway."""

    def __init__(self, status_code: int, detail: Any):
        super().__init__(f"Gateway error: {status_code} - {detail}")
        self.status_code = status_code
        self.detail = detail


def build_messages(user_content: str, system_prompts: Sequence[str]) -> list[dict[str, str]]:
    messages = [{"role": "system", "content": prompt} for prompt in system_prompts]
    messages.append({"role": "user", "content": user_content})
    return messages


class GatewayClient:
    """Open one streaming completion per call and yield text deltas."""

    _client_lock: asyncio.Lock = asyncio.Lock()
    _client_pool: dict[tuple[str, float], httpx.AsyncClient] = {}

    def __init__(
        self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None
    ):
        self._settings = settings
        self._http_client = http_client

    @property
    def _base_url(self) -> str:
        return str(self._settings.gateway_base_url).rstrip("/")

    def _client_key(self) -> tuple[str, float]:
        return (self._base_url, float(self._settings.gateway_timeout))

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is not None:
            return self._http_client

        key = self._client_key()
        client = self.__class__._client_pool.get(key)
        if client is not None:
            return client

        async with self.__class__._client_lock:
            client = self.__class__._client_pool.get(key)
            if client is None:
                timeout = httpx.Timeout(self._settings.gateway_timeout, connect=10.0)
                client = httpx.AsyncClient(timeout=timeout)
                self.__class__._client_pool[key] = client
        return client

    @staticmethod
    def _headers(auth: Optional[str]) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        if auth:
            headers["Authorization"] = f"Bearer {auth}"
        return headers

    async def stream_text(
        self,
        user_content: str,
        system_prompts: Sequence[str],
        session_key: str,
        auth: Optional[str] = None,
    ) -> AsyncGenerator[str, None]:
        """Yield content fragments until ``[DONE]`` or the connection closes."""

        url = f"{self._base_url}/v1/chat/completions"
        messages = build_messages(user_content, system_prompts)
        payload = {
            "model": self._settings.gateway_model,
            "messages": messages,
            "stream": True,
            "user": session_key,
        }
        logger.info(
            "POST %s session=%s messages=%d", url, session_key, len(messages)
        )

        client = await self._get_http_client()
        try:
            async with client.stream(
                "POST", url, headers=self._headers(auth), json=payload
            ) as response:
                if not response.is_success:
                    body = await response.aread()
                    detail = self._extract_error_detail(body)
                    logger.error("Gateway responded %s: %s", response.status_code, detail)
                    raise GatewayError(response.status_code, detail)

                async for data in self._iter_data(response):
                    if data == DONE_SENTINEL:
                        return
                    fragment = self._extract_fragment(data)
                    if fragment:
                        yield fragment
        except httpx.HTTPError as exc:
            raise GatewayError(502, str(exc)) from exc

    async def collect_text(
        self,
        user_content: str,
        system_prompts: Sequence[str],
        session_key: str,
        auth: Optional[str] = None,
    ) -> str:
        fragments = [
            fragment
            async for fragment in self.stream_text(
                user_content, system_prompts, session_key, auth
            )
        ]
        return "".join(fragments)

    async def aclose(self) -> None:
        if self._http_client is None:
            await self.__class__.aclose_shared()

    @classmethod
    async def aclose_shared(cls) -> None:
        async with cls._client_lock:
            clients = list(cls._client_pool.values())
            cls._client_pool.clear()
        for client in clients:
            await client.aclose()

    @staticmethod
    async def _iter_data(response: httpx.Response) -> AsyncGenerator[str, None]:
        async for line in response.aiter_lines():
            if not line.startswith("data:"):
                continue
            yield line[len("data:") :].strip()

    @staticmethod
    def _extract_fragment(data: str) -> Optional[str]:
        try:
            chunk = json.loads(data)
            content = chunk["choices"][0]["delta"].get("content")
        except (json.JSONDecodeError, KeyError, IndexError, TypeError, AttributeError):
            logger.debug("Skipping unparseable stream frame: %.200s", data)
            return None
        return content if isinstance(content, str) else None

    @staticmethod
    def _extract_error_detail(raw: bytes) -> Any:
        if not raw:
            return "(no body)"
        text = raw.decode("utf-8", errors="ignore")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return text
        if isinstance(payload, dict):
            return payload.get("error") or payload
        return payload


__all__ = ["GatewayClient", "GatewayError", "build_messages"]
