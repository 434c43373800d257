import httpx
import pytest

from dingtalk_connector.services.auth import (
    AccessTokenCache,
    Credential,
    CredentialCache,
    OapiTokenCache,
)
from dingtalk_connector.services.dingtalk_api import DingTalkAPI, DingTalkAPIError


class FakeClock:
    def __init__(self, now_ms: int = 1_000_000) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms


def test_credential_validity_respects_skew() -> None:
    credential = Credential(token="t", expires_at_ms=100_000)

    assert credential.is_valid(now_ms=39_999, skew_ms=60_000)
    assert not credential.is_valid(now_ms=40_000, skew_ms=60_000)


def test_credential_cache_requires_a_fetch_implementation() -> None:
    with pytest.raises(TypeError):
        CredentialCache(None, "https://api.dingtalk.com")  # type: ignore[abstract,arg-type]


@pytest.mark.asyncio
async def test_access_token_reused_until_skew(dingtalk) -> None:
    clock = FakeClock()
    cache = AccessTokenCache(dingtalk.client(), "https://api.dingtalk.com", clock=clock)

    first = await cache.get_token("key", "secret")
    second = await cache.get_token("key", "secret")

    assert first == second == "api-token"
    assert len(dingtalk.calls("POST", "/v1.0/oauth2/accessToken")) == 1
    assert dingtalk.bodies("POST", "/v1.0/oauth2/accessToken")[0] == {
        "appKey": "key",
        "appSecret": "secret",
    }

    # 7200s lifetime minus the 60s skew
    clock.now_ms += (7200 - 60) * 1000
    await cache.get_token("key", "secret")
    assert len(dingtalk.calls("POST", "/v1.0/oauth2/accessToken")) == 2


@pytest.mark.asyncio
async def test_invalidate_forces_refetch(dingtalk) -> None:
    cache = AccessTokenCache(dingtalk.client(), "https://api.dingtalk.com")

    await cache.get_token("key", "secret")
    cache.invalidate()
    assert cache.credential is None
    await cache.get_token("key", "secret")

    assert len(dingtalk.calls("POST", "/v1.0/oauth2/accessToken")) == 2


@pytest.mark.asyncio
async def test_oapi_token_uses_query_credentials(dingtalk) -> None:
    cache = OapiTokenCache(dingtalk.client(), "https://oapi.dingtalk.com")

    token = await cache.try_get_token("key", "secret")

    assert token == "oapi-token"
    request = dingtalk.calls("GET", "/gettoken")[0]
    assert request.url.params["appkey"] == "key"
    assert request.url.params["appsecret"] == "secret"


@pytest.mark.asyncio
async def test_oapi_token_error_code_returns_none(dingtalk) -> None:
    dingtalk.add("GET", "/gettoken", json={"errcode": 40001, "errmsg": "invalid"})
    cache = OapiTokenCache(dingtalk.client(), "https://oapi.dingtalk.com")

    assert await cache.try_get_token("key", "secret") is None
    assert cache.credential is None


@pytest.mark.asyncio
async def test_oapi_token_transport_error_returns_none() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("boom", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    cache = OapiTokenCache(client, "https://oapi.dingtalk.com")

    assert await cache.try_get_token("key", "secret") is None


@pytest.mark.asyncio
async def test_api_access_token_failure_raises_api_error(settings, dingtalk) -> None:
    dingtalk.add(
        "POST", "/v1.0/oauth2/accessToken", status_code=400, json={"message": "bad appKey"}
    )
    api = DingTalkAPI(settings, dingtalk.client())

    with pytest.raises(DingTalkAPIError) as exc_info:
        await api.access_token()

    assert exc_info.value.status_code == 400
    assert exc_info.value.detail == "bad appKey"
