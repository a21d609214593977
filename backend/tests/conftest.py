from __future__ import annotations

import importlib
import sys
from pathlib import Path
from typing import Any, Callable

import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from consult_core import AuthUser, SessionCookieJar, VerificationResult, bearer_token  # noqa: E402


class FakeStream:
    def __init__(self, chunks: list[str], error: Exception | None = None) -> None:
        self._chunks = list(chunks)
        self._error = error
        self.closed = False

    def __iter__(self):
        for chunk in self._chunks:
            yield chunk
        if self._error is not None:
            raise self._error

    def close(self) -> None:
        self.closed = True


class FakeModel:
    def __init__(self) -> None:
        self.verified = True
        self.verify_error: str | None = None
        self.reply = "stubbed reply"
        self.chunks = ["hello ", "world"]
        self.generate_error: Exception | None = None
        self.open_error: Exception | None = None
        self.stream_error: Exception | None = None
        self.verify_calls = 0
        self.calls: list[tuple[str, str]] = []
        self.streams: list[FakeStream] = []

    def ensure_verified(self) -> VerificationResult:
        self.verify_calls += 1
        return VerificationResult(ok=self.verified, error=self.verify_error, model="gemini-2.5-flash")

    def generate_text(self, prompt: str, **kwargs: Any) -> str:
        self.calls.append(("generate", prompt))
        if self.generate_error is not None:
            raise self.generate_error
        return self.reply

    def open_stream(self, prompt: str) -> FakeStream:
        self.calls.append(("stream", prompt))
        if self.open_error is not None:
            raise self.open_error
        stream = FakeStream(self.chunks, self.stream_error)
        self.streams.append(stream)
        return stream


class FakeIdentity:
    configured = True

    def __init__(self) -> None:
        self.users: dict[str, AuthUser] = {}
        self.refresh_session_on_resolve = False

    def add_user(self, user_id: str, *, confirmed: bool = True) -> str:
        token = f"token-{user_id}"
        self.users[token] = AuthUser(
            id=user_id,
            email=f"{user_id}@example.test",
            email_confirmed_at="2026-01-01T00:00:00Z" if confirmed else None,
        )
        return token

    def resolve(self, authorization: str | None, jar: SessionCookieJar) -> AuthUser | None:
        if self.refresh_session_on_resolve:
            jar.store_session("refreshed-access", "refreshed-refresh", 3600)
        token = bearer_token(authorization)
        if not token:
            return None
        return self.users.get(token)


@pytest.fixture
def backend_module(tmp_path, monkeypatch):
    db_path = tmp_path / "consult-test.sqlite"
    monkeypatch.setenv("CONSULT_DB_PATH", str(db_path))
    monkeypatch.setenv("GEMINI_API_KEY", "test-gemini-key")
    monkeypatch.setenv("SUPABASE_URL", "https://auth.example.test")
    monkeypatch.setenv("SUPABASE_ANON_KEY", "anon-test-key")
    monkeypatch.setenv("CONSULT_RATE_LIMIT_AUTH", "20")
    monkeypatch.setenv("CONSULT_RATE_LIMIT_ANON", "10")

    if "main" in sys.modules:
        module = importlib.reload(sys.modules["main"])
    else:
        module = importlib.import_module("main")
    return module


@pytest.fixture
def fake_model(backend_module, monkeypatch) -> FakeModel:
    model = FakeModel()
    monkeypatch.setattr(backend_module.container, "model", model)
    return model


@pytest.fixture
def fake_identity(backend_module, monkeypatch) -> FakeIdentity:
    identity = FakeIdentity()
    monkeypatch.setattr(backend_module.container, "identity", identity)
    return identity


@pytest.fixture
def client(backend_module):
    with TestClient(backend_module.app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers(fake_identity) -> Callable[[str], dict[str, str]]:
    def _make(user_id: str) -> dict[str, str]:
        token = fake_identity.add_user(user_id)
        return {"Authorization": f"Bearer {token}"}

    return _make
