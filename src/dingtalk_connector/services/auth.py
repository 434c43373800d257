"""Access token caching for the DingTalk open APIs.

Two token families are in play: the v1.0 API token used for cards, robot
messages and webhook replies, and the legacy ``oapi`` token required by the
media upload endpoint. Each is held in its own single-slot cache.

Concurrent callers that arrive while a token is being refreshed may each
issue a fetch. The token endpoints are idempotent, so the duplicate request
is tolerated rather than serialised behind a lock.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

logger = logging.getLogger(__name__)

TOKEN_EXPIRY_SKEW_MS = 60_000
TOKEN_TIMEOUT_SECONDS = 10.0


class TokenFetchError(RuntimeError):
    """Raised when the token endpoint returns an unusable response."""


@dataclass(frozen=True)
class Credential:
    token: str
    expires_at_ms: int

    def is_valid(self, now_ms: int, skew_ms: int = TOKEN_EXPIRY_SKEW_MS) -> bool:
        return now_ms + skew_ms < self.expires_at_ms


def _now_ms() -> int:
    return int(time.time() * 1000)


class CredentialCache(ABC):
    """Memoise a bearer token until shortly before it expires."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str,
        *,
        clock: Callable[[], int] = _now_ms,
        skew_ms: int = TOKEN_EXPIRY_SKEW_MS,
    ) -> None:
        self._http = http_client
        self._base_url = base_url.rstrip("/")
        self._clock = clock
        self._skew_ms = skew_ms
        self._credential: Credential | None = None

    @property
    def credential(self) -> Credential | None:
        return self._credential

    def invalidate(self) -> None:
        self._credential = None

    async def get_token(self, app_key: str, app_secret: str) -> str:
        """Return the cached token, refreshing it when inside the expiry skew."""

        now = self._clock()
        cached = self._credential
        if cached is not None and cached.is_valid(now, self._skew_ms):
            return cached.token

        token, ttl_seconds = await self._fetch(app_key, app_secret)
        self._credential = Credential(token=token, expires_at_ms=now + ttl_seconds * 1000)
        logger.debug(
            "%s refreshed, valid for %ss", self.__class__.__name__, ttl_seconds
        )
        return token

    @abstractmethod
    async def _fetch(self, app_key: str, app_secret: str) -> tuple[str, int]:
        """Return the token and its lifetime in seconds."""


class AccessTokenCache(CredentialCache):
    """Token for ``api.dingtalk.com`` (cards, robot messages, webhooks)."""

    async def _fetch(self, app_key: str, app_secret: str) -> tuple[str, int]:
        response = await self._http.post(
            f"{self._base_url}/v1.0/oauth2/accessToken",
            json={"appKey": app_key, "appSecret": app_secret},
            timeout=TOKEN_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        body = response.json()
        token = body.get("accessToken")
        if not token:
            raise TokenFetchError(f"accessToken missing from response: {body}")
        return token, int(body.get("expireIn") or 0)


class OapiTokenCache(CredentialCache):
    """Token for ``oapi.dingtalk.com`` (media upload)."""

    async def _fetch(self, app_key: str, app_secret: str) -> tuple[str, int]:
        response = await self._http.get(
            f"{self._base_url}/gettoken",
            params={"appkey": app_key, "appsecret": app_secret},
            timeout=TOKEN_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        body = response.json()
        if body.get("errcode") != 0 or not body.get("access_token"):
            raise TokenFetchError(f"gettoken failed: {body}")
        return body["access_token"], int(body.get("expires_in") or 0)

    async def try_get_token(self, app_key: str, app_secret: str) -> Optional[str]:
        """Like `get_token` but returns ``None`` instead of raising."""

        try:
            return await self.get_token(app_key, app_secret)
        except (httpx.HTTPError, TokenFetchError, ValueError) as exc:
            logger.warning("Unable to obtain oapi token: %s", exc)
            return None


__all__ = [
    "AccessTokenCache",
    "Credential",
    "CredentialCache",
    "OapiTokenCache",
    "TOKEN_EXPIRY_SKEW_MS",
    "TokenFetchError",
]
