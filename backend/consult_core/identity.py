from __future__ import annotations

import logging
from typing import Any

import httpx

from .cookies import ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE, SessionCookieJar
from .errors import AuthProviderError, UpstreamUnavailableError
from .models import AuthUser, SessionTokens
from .upstream import json_object, provider_error_message

logger = logging.getLogger(__name__)


def bearer_token(authorization: str | None) -> str | None:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    token = authorization[len("Bearer ") :].strip()
    return token or None


class SupabaseIdentityProvider:
    """Client for a GoTrue-compatible auth REST API.

    ``resolve`` never raises: a missing, invalid or unverifiable session is the
    anonymous outcome.
    """

    def __init__(
        self,
        base_url: str | None,
        anon_key: str | None,
        *,
        timeout_seconds: float = 8.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.anon_key = anon_key or ""
        self._timeout = httpx.Timeout(timeout_seconds, connect=5.0)
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.anon_key)

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=f"{self.base_url}/auth/v1",
            timeout=self._timeout,
            transport=self._transport,
            headers={"apikey": self.anon_key},
        )

    def resolve(self, authorization: str | None, jar: SessionCookieJar) -> AuthUser | None:
        if not self.configured:
            return None
        token = bearer_token(authorization)
        if token:
            return self._safe_get_user(token)

        access_token = jar.get(ACCESS_TOKEN_COOKIE)
        refresh_token = jar.get(REFRESH_TOKEN_COOKIE)
        if not access_token and not refresh_token:
            return None
        if access_token:
            user = self._safe_get_user(access_token)
            if user:
                return user
        if not refresh_token:
            jar.clear_session()
            return None
        try:
            tokens, user = self.refresh_session(refresh_token)
        except (AuthProviderError, httpx.HTTPError) as exc:
            logger.info("session refresh rejected: %s", exc)
            jar.clear_session()
            return None
        jar.store_session(tokens.access_token, tokens.refresh_token, tokens.expires_in)
        return user

    def _safe_get_user(self, access_token: str) -> AuthUser | None:
        try:
            return self.get_user(access_token)
        except httpx.HTTPError as exc:
            logger.warning("identity provider unreachable: %s", exc)
            return None

    def get_user(self, access_token: str) -> AuthUser | None:
        with self._client() as client:
            response = client.get("/user", headers={"Authorization": f"Bearer {access_token}"})
        if response.status_code >= 400:
            return None
        return AuthUser.from_payload(json_object(response))

    def refresh_session(self, refresh_token: str) -> tuple[SessionTokens, AuthUser | None]:
        return self._token_grant("refresh_token", {"refresh_token": refresh_token})

    def sign_in_with_password(self, email: str, password: str) -> tuple[SessionTokens, AuthUser | None]:
        self._ensure_configured()
        return self._token_grant("password", {"email": email, "password": password})

    def send_magic_link(self, email: str, *, redirect_to: str | None = None) -> None:
        self._ensure_configured()
        params = {"redirect_to": redirect_to} if redirect_to else None
        with self._client() as client:
            response = client.post("/otp", params=params, json={"email": email, "create_user": True})
        if response.status_code >= 400:
            raise AuthProviderError(provider_error_message(response), status_code=400)

    def sign_out(self, access_token: str) -> None:
        if not self.configured:
            return
        with self._client() as client:
            response = client.post("/logout", headers={"Authorization": f"Bearer {access_token}"})
        if response.status_code >= 400:
            logger.info("provider sign-out returned HTTP %s", response.status_code)

    def _token_grant(self, grant_type: str, body: dict[str, Any]) -> tuple[SessionTokens, AuthUser | None]:
        with self._client() as client:
            response = client.post("/token", params={"grant_type": grant_type}, json=body)
        if response.status_code >= 400:
            raise AuthProviderError(provider_error_message(response), status_code=401)
        payload = json_object(response)
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise AuthProviderError("Auth provider returned no session.", status_code=401)
        tokens = SessionTokens(
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            expires_in=payload.get("expires_in") if isinstance(payload.get("expires_in"), int) else None,
        )
        user_payload = payload.get("user")
        user = AuthUser.from_payload(user_payload) if isinstance(user_payload, dict) else None
        return tokens, user

    def _ensure_configured(self) -> None:
        if not self.configured:
            raise UpstreamUnavailableError("Identity provider is not configured.")
