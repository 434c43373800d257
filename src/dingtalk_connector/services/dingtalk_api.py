"""Thin authenticated wrapper over the DingTalk v1.0 open API."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from ..config import Settings
from .auth import AccessTokenCache, OapiTokenCache, TokenFetchError

logger = logging.getLogger(__name__)

DISPATCH_TIMEOUT_SECONDS = 10.0
TOKEN_HEADER = "x-acs-dingtalk-access-token"


class DingTalkAPIError(Exception):
    """Wrap transport or API failures when calling DingTalk."""

    def __init__(self, status_code: int, detail: Any):
        super().__init__(str(detail))
        self.status_code = status_code
        self.detail = detail


class DingTalkAPI:
    """Owns the HTTP client and both token caches for one robot account."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        *,
        access_tokens: Optional[AccessTokenCache] = None,
        oapi_tokens: Optional[OapiTokenCache] = None,
    ) -> None:
        self.settings = settings
        self.http = http_client
        self.access_tokens = access_tokens or AccessTokenCache(
            http_client, settings.api_base
        )
        self.oapi_tokens = oapi_tokens or OapiTokenCache(
            http_client, settings.oapi_base
        )

    @property
    def robot_code(self) -> str:
        return self.settings.client_id

    async def access_token(self) -> str:
        try:
            return await self.access_tokens.get_token(
                self.settings.client_id, self.settings.client_secret.get_secret_value()
            )
        except httpx.HTTPStatusError as exc:
            raise DingTalkAPIError(
                exc.response.status_code, self._extract_error_detail(exc.response)
            ) from exc
        except (httpx.HTTPError, TokenFetchError, ValueError) as exc:
            raise DingTalkAPIError(502, f"Access token unavailable: {exc}") from exc

    async def oapi_token(self) -> Optional[str]:
        return await self.oapi_tokens.try_get_token(
            self.settings.client_id, self.settings.client_secret.get_secret_value()
        )

    def headers(self, token: str) -> dict[str, str]:
        return {TOKEN_HEADER: token, "Content-Type": "application/json"}

    async def request(
        self,
        method: str,
        url: str,
        payload: dict[str, Any],
        *,
        token: Optional[str] = None,
        timeout: float = DISPATCH_TIMEOUT_SECONDS,
    ) -> dict[str, Any]:
        """Send ``payload`` as JSON and return the decoded response body.

        ``url`` may be absolute (session webhooks) or a path on the API host.
        """

        if token is None:
            token = await self.access_token()
        if not url.startswith("http"):
            url = f"{self.settings.api_base}{url}"

        try:
            response = await self.http.request(
                method,
                url,
                json=payload,
                headers=self.headers(token),
                timeout=timeout,
            )
        except httpx.HTTPError as exc:
            raise DingTalkAPIError(502, str(exc)) from exc

        if response.status_code >= 400:
            raise DingTalkAPIError(
                response.status_code, self._extract_error_detail(response)
            )
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {"data": body}

    @staticmethod
    def _extract_error_detail(response: httpx.Response) -> Any:
        if not response.content:
            return f"DingTalk returned HTTP {response.status_code} with an empty body."
        try:
            payload = response.json()
        except ValueError:
            return response.text
        if isinstance(payload, dict):
            return payload.get("message") or payload
        return payload


__all__ = ["DISPATCH_TIMEOUT_SECONDS", "DingTalkAPI", "DingTalkAPIError"]
