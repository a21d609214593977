from __future__ import annotations

import json

import httpx
import pytest

from consult_core import (
    ACCESS_TOKEN_COOKIE,
    REFRESH_TOKEN_COOKIE,
    SessionCookieJar,
    SupabaseIdentityProvider,
    UpstreamGenerationError,
)


def _set_cookie_headers(response) -> list[str]:
    return response.headers.get_list("set-cookie")


def _chat_payload() -> dict:
    return {"messages": [{"role": "user", "content": "Hello"}]}


def test_cookie_mutations_reach_successful_reply(client, fake_model, fake_identity):
    fake_identity.refresh_session_on_resolve = True
    response = client.post("/chat", json=_chat_payload())
    assert response.status_code == 200
    cookies = " ".join(_set_cookie_headers(response))
    assert f"{ACCESS_TOKEN_COOKIE}=refreshed-access" in cookies
    assert f"{REFRESH_TOKEN_COOKIE}=refreshed-refresh" in cookies


def test_cookie_mutations_reach_streamed_reply(client, fake_model, fake_identity):
    fake_identity.refresh_session_on_resolve = True
    response = client.post("/chat", json={**_chat_payload(), "stream": True})
    assert response.status_code == 200
    assert f"{ACCESS_TOKEN_COOKIE}=refreshed-access" in " ".join(_set_cookie_headers(response))


def test_cookie_mutations_reach_rate_limited_reply(client, fake_model, fake_identity):
    fake_identity.refresh_session_on_resolve = True
    headers = {"X-Forwarded-For": "7.7.7.7"}
    last = None
    for _ in range(10):
        last = client.post("/chat", headers=headers, json=_chat_payload())
    assert last is not None
    assert last.status_code == 429
    assert f"{ACCESS_TOKEN_COOKIE}=refreshed-access" in " ".join(_set_cookie_headers(last))


def test_cookie_mutations_reach_upstream_failure(client, fake_model, fake_identity):
    fake_identity.refresh_session_on_resolve = True
    fake_model.generate_error = UpstreamGenerationError("Rate limit exceeded: please slow down", category="rate_limited")
    response = client.post("/chat", json=_chat_payload())
    assert response.status_code == 500
    assert response.json() == {"error": "Rate limit exceeded: please slow down"}
    assert f"{ACCESS_TOKEN_COOKIE}=refreshed-access" in " ".join(_set_cookie_headers(response))


def test_cookie_jar_reads_pending_mutations_first():
    jar = SessionCookieJar({ACCESS_TOKEN_COOKIE: "old", REFRESH_TOKEN_COOKIE: "r1"})
    assert jar.get(ACCESS_TOKEN_COOKIE) == "old"
    jar.store_session("new", "r2", 120)
    assert jar.get(ACCESS_TOKEN_COOKIE) == "new"
    jar.clear_session()
    assert jar.get(ACCESS_TOKEN_COOKIE) is None
    assert [op.kind for op in jar.ops] == ["set", "set", "remove", "remove"]


def _provider(handler) -> SupabaseIdentityProvider:
    return SupabaseIdentityProvider(
        "https://auth.example.test",
        "anon-key",
        transport=httpx.MockTransport(handler),
    )


def _user_payload(user_id: str = "user-1") -> dict:
    return {"id": user_id, "email": "patient@example.test", "email_confirmed_at": "2026-01-02T00:00:00Z"}


def test_bearer_token_resolves_user():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        assert request.url.path == "/auth/v1/user"
        assert request.headers["apikey"] == "anon-key"
        if request.headers["authorization"] == "Bearer good":
            return httpx.Response(200, json=_user_payload())
        return httpx.Response(401, json={"msg": "invalid JWT"})

    provider = _provider(handler)
    jar = SessionCookieJar()
    user = provider.resolve("Bearer good", jar)
    assert user is not None
    assert user.id == "user-1"
    assert provider.resolve("Bearer bad", jar) is None
    assert jar.ops == []
    assert len(seen) == 2


@pytest.mark.parametrize("authorization", [None, "", "Basic abc", "Bearer "])
def test_missing_credentials_resolve_anonymous_without_calls(authorization):
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no provider call expected")

    assert _provider(handler).resolve(authorization, SessionCookieJar()) is None


def test_expired_cookie_session_is_refreshed():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/auth/v1/user":
            return httpx.Response(401, json={"msg": "JWT expired"})
        assert request.url.path == "/auth/v1/token"
        assert request.url.params["grant_type"] == "refresh_token"
        assert json.loads(request.content) == {"refresh_token": "refresh-1"}
        return httpx.Response(
            200,
            json={
                "access_token": "access-2",
                "refresh_token": "refresh-2",
                "expires_in": 3600,
                "user": _user_payload("user-9"),
            },
        )

    jar = SessionCookieJar({ACCESS_TOKEN_COOKIE: "access-1", REFRESH_TOKEN_COOKIE: "refresh-1"})
    user = _provider(handler).resolve(None, jar)
    assert user is not None
    assert user.id == "user-9"
    assert [(op.kind, op.name, op.value) for op in jar.ops] == [
        ("set", ACCESS_TOKEN_COOKIE, "access-2"),
        ("set", REFRESH_TOKEN_COOKIE, "refresh-2"),
    ]


def test_rejected_refresh_clears_session_cookies():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/auth/v1/user":
            return httpx.Response(401, json={"msg": "JWT expired"})
        return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Refresh Token Not Found"})

    jar = SessionCookieJar({ACCESS_TOKEN_COOKIE: "access-1", REFRESH_TOKEN_COOKIE: "refresh-1"})
    assert _provider(handler).resolve(None, jar) is None
    assert [(op.kind, op.name) for op in jar.ops] == [
        ("remove", ACCESS_TOKEN_COOKIE),
        ("remove", REFRESH_TOKEN_COOKIE),
    ]


def test_unreachable_provider_resolves_anonymous():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    assert _provider(handler).resolve("Bearer good", SessionCookieJar()) is None


def test_unconfigured_provider_resolves_anonymous():
    provider = SupabaseIdentityProvider(None, None)
    assert provider.configured is False
    assert provider.resolve("Bearer anything", SessionCookieJar()) is None
