from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Iterator

import httpx

from .config import DEFAULT_GEMINI_API_BASE, DEFAULT_GEMINI_MODEL
from .errors import UpstreamGenerationError, UpstreamTimeoutError
from .upstream import json_object, provider_error_message, redact

logger = logging.getLogger(__name__)

MISSING_KEY_MESSAGE = "Missing Google/Gemini API key"
SERVER_ERROR_MESSAGE = "Upstream model service error"
DEFAULT_GENERATION_CONFIG = {"temperature": 0.7, "maxOutputTokens": 2048}
_PROBE_TEXT = "health-check"


@dataclass(frozen=True)
class VerificationResult:
    ok: bool
    error: str | None
    model: str | None


def _contents(prompt: str) -> list[dict[str, Any]]:
    return [{"role": "user", "parts": [{"text": prompt}]}]


def coerce_candidate_text(payload: dict[str, Any]) -> str:
    candidates = payload.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return ""
    first = candidates[0] if isinstance(candidates[0], dict) else {}
    content = first.get("content")
    if not isinstance(content, dict):
        return ""
    parts = content.get("parts")
    if not isinstance(parts, list):
        return ""
    chunks: list[str] = []
    for part in parts:
        if isinstance(part, dict) and isinstance(part.get("text"), str):
            chunks.append(part["text"])
    return "".join(chunks)


def normalize_status_error(status_code: int, message: str) -> UpstreamGenerationError:
    if status_code in {401, 403}:
        return UpstreamGenerationError("Unauthorized: invalid or missing API key", category="unauthorized")
    if status_code == 429:
        return UpstreamGenerationError("Rate limit exceeded: please slow down", category="rate_limited")
    if status_code >= 500:
        return UpstreamGenerationError(SERVER_ERROR_MESSAGE, category="server")
    return UpstreamGenerationError(message, category="unknown")


class GeminiTextStream:
    """Incremental reply fragments from one ``streamGenerateContent`` call.

    Iterates once; the upstream connection is released when iteration ends,
    fails, or the consumer closes the stream early.
    """

    def __init__(self, client: httpx.Client, response: httpx.Response, *, api_key: str | None = None) -> None:
        self._client = client
        self._response = response
        self._api_key = api_key
        self._consumed = False
        self._closed = False

    def __iter__(self) -> Iterator[str]:
        if self._consumed:
            raise RuntimeError("Model stream has already been consumed.")
        self._consumed = True
        try:
            for line in self._response.iter_lines():
                delta = self._parse_line(line)
                if delta:
                    yield delta
        except httpx.HTTPError as exc:
            logger.warning("model stream interrupted: %s", redact(str(exc), self._api_key))
            raise UpstreamGenerationError(SERVER_ERROR_MESSAGE, category="server") from exc
        finally:
            self.close()

    @staticmethod
    def _parse_line(line: str) -> str:
        line = line.strip()
        if not line.startswith("data:"):
            return ""
        raw = line[len("data:") :].strip()
        if not raw or raw == "[DONE]":
            return ""
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("skipping unparseable model stream chunk")
            return ""
        if not isinstance(payload, dict):
            return ""
        return coerce_candidate_text(payload)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._response.close()
        self._client.close()


class GeminiBridge:
    def __init__(
        self,
        api_key: str | None,
        *,
        model: str = DEFAULT_GEMINI_MODEL,
        base_url: str = DEFAULT_GEMINI_API_BASE,
        timeout_seconds: float = 30.0,
        generation_config: dict[str, Any] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.generation_config = dict(generation_config or DEFAULT_GENERATION_CONFIG)
        self._transport = transport
        self._verified = False
        self._last_error: str | None = None
        self._lock = threading.Lock()

    def _url(self, method: str) -> str:
        return f"{self.base_url}/models/{self.model}:{method}"

    def _headers(self) -> dict[str, str]:
        return {"x-goog-api-key": str(self.api_key), "Content-Type": "application/json"}

    def _client(self, timeout: httpx.Timeout) -> httpx.Client:
        return httpx.Client(timeout=timeout, transport=self._transport)

    def _body(self, prompt: str) -> dict[str, Any]:
        return {"contents": _contents(prompt), "generationConfig": self.generation_config}

    def _transport_error(self, exc: httpx.HTTPError) -> UpstreamGenerationError:
        logger.warning("model request failed: %s", redact(str(exc), self.api_key))
        return UpstreamGenerationError(SERVER_ERROR_MESSAGE, category="server")

    def ensure_verified(self) -> VerificationResult:
        if not self.api_key:
            with self._lock:
                self._verified = False
                self._last_error = MISSING_KEY_MESSAGE
            return VerificationResult(ok=False, error=MISSING_KEY_MESSAGE, model=None)
        with self._lock:
            if self._verified:
                return VerificationResult(ok=True, error=None, model=self.model)
            try:
                with self._client(httpx.Timeout(10.0, connect=5.0)) as client:
                    response = client.post(
                        self._url("countTokens"),
                        headers=self._headers(),
                        json={"contents": _contents(_PROBE_TEXT)},
                    )
            except httpx.HTTPError as exc:
                self._verified = False
                self._last_error = redact(str(exc) or "Verification failed", self.api_key)
                return VerificationResult(ok=False, error=self._last_error, model=self.model)
            if response.status_code >= 400:
                self._verified = False
                self._last_error = redact(provider_error_message(response), self.api_key)
                return VerificationResult(ok=False, error=self._last_error, model=self.model)
            self._verified = True
            self._last_error = None
            return VerificationResult(ok=True, error=None, model=self.model)

    def generate_text(self, prompt: str, *, timeout_seconds: float | None = None) -> str:
        if not self.api_key:
            raise UpstreamGenerationError(MISSING_KEY_MESSAGE, category="unauthorized")
        seconds = timeout_seconds if timeout_seconds is not None else self.timeout_seconds
        try:
            with self._client(httpx.Timeout(seconds, connect=8.0)) as client:
                response = client.post(self._url("generateContent"), headers=self._headers(), json=self._body(prompt))
        except httpx.TimeoutException as exc:
            raise UpstreamTimeoutError() from exc
        except httpx.HTTPError as exc:
            raise self._transport_error(exc) from exc
        if response.status_code >= 400:
            raise normalize_status_error(
                response.status_code,
                redact(provider_error_message(response), self.api_key),
            )
        payload = json_object(response)
        feedback = payload.get("promptFeedback")
        if not payload.get("candidates") and isinstance(feedback, dict) and feedback.get("blockReason"):
            raise UpstreamGenerationError(f"Response blocked: {feedback['blockReason']}", category="blocked")
        return coerce_candidate_text(payload)

    def open_stream(self, prompt: str) -> GeminiTextStream:
        if not self.api_key:
            raise UpstreamGenerationError(MISSING_KEY_MESSAGE, category="unauthorized")
        client = self._client(httpx.Timeout(None, connect=8.0))
        request = client.build_request(
            "POST",
            self._url("streamGenerateContent"),
            params={"alt": "sse"},
            headers=self._headers(),
            json=self._body(prompt),
        )
        try:
            response = client.send(request, stream=True)
        except httpx.HTTPError as exc:
            client.close()
            raise self._transport_error(exc) from exc
        if response.status_code >= 400:
            try:
                response.read()
                message = redact(provider_error_message(response), self.api_key)
            finally:
                response.close()
                client.close()
            raise normalize_status_error(response.status_code, message)
        return GeminiTextStream(client, response, api_key=self.api_key)
