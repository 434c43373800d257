import json
import pathlib
import sys
from typing import Any, Callable, Optional

import httpx
import pytest
from pydantic import SecretStr

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from dingtalk_connector.config import Settings  # noqa: E402
from dingtalk_connector.services.dingtalk_api import DingTalkAPI  # noqa: E402

Handler = Callable[[httpx.Request], httpx.Response]


class DingTalkStub:
    """Route requests by method and path, recording every call."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], Handler] = {}
        self._media_counter = 0

        self.add("POST", "/v1.0/oauth2/accessToken", json={"accessToken": "api-token", "expireIn": 7200})
        self.add("GET", "/gettoken", json={"errcode": 0, "access_token": "oapi-token", "expires_in": 7200})
        self.add("POST", "/v1.0/card/instances", json={"success": True})
        self.add("POST", "/v1.0/card/instances/deliver", json={"success": True})
        self.add("PUT", "/v1.0/card/instances", json={"success": True})
        self.add("PUT", "/v1.0/card/streaming", json={"success": True})
        self.add("POST", "/v1.0/robot/oToMessages/batchSend", json={"processQueryKey": "pqk-user"})
        self.add("POST", "/v1.0/robot/groupMessages/send", json={"processQueryKey": "pqk-group"})
        self.add("POST", "/robot/sendBySession", json={"errcode": 0})
        self.add("POST", "/media/upload", handler=self._upload)

    def _upload(self, request: httpx.Request) -> httpx.Response:
        self._media_counter += 1
        return httpx.Response(
            200, json={"errcode": 0, "media_id": f"@media-{self._media_counter}"}
        )

    def add(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        status_code: int = 200,
        handler: Optional[Handler] = None,
    ) -> None:
        if handler is None:
            body = json

            def handler(request: httpx.Request) -> httpx.Response:
                return httpx.Response(status_code, json=body)

        self.routes[(method, path)] = handler

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"message": f"no route for {request.url.path}"})
        return handler(request)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.method == method and request.url.path == path
        ]

    def bodies(self, method: str, path: str) -> list[dict[str, Any]]:
        return [json.loads(request.content) for request in self.calls(method, path)]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "client_id": "ding-app",
        "client_secret": SecretStr("ding-secret"),
        "verify_signature": False,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def dingtalk() -> DingTalkStub:
    return DingTalkStub()


@pytest.fixture
def api(settings: Settings, dingtalk: DingTalkStub) -> DingTalkAPI:
    return DingTalkAPI(settings, dingtalk.client())
