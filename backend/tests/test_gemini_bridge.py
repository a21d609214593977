from __future__ import annotations

import json

import httpx
import pytest

from consult_core import GeminiBridge, UpstreamGenerationError, UpstreamTimeoutError

API_KEY = "secret-gemini-key"
BASE_URL = "https://gemini.example.test/v1beta"


def _bridge(handler, *, api_key: str | None = API_KEY) -> GeminiBridge:
    return GeminiBridge(
        api_key,
        model="gemini-2.5-flash",
        base_url=BASE_URL,
        transport=httpx.MockTransport(handler),
    )


def _candidate(text: str) -> dict:
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}


def _sse_body(*chunks: str) -> bytes:
    return "".join(f"data: {chunk}\r\n\r\n" for chunk in chunks).encode("utf-8")


def test_verification_probe_is_cached_after_success():
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        assert request.url.path.endswith("/models/gemini-2.5-flash:countTokens")
        assert request.headers["x-goog-api-key"] == API_KEY
        return httpx.Response(200, json={"totalTokens": 2})

    bridge = _bridge(handler)
    first = bridge.ensure_verified()
    second = bridge.ensure_verified()
    assert first.ok and second.ok
    assert first.model == "gemini-2.5-flash"
    assert len(calls) == 1


def test_failed_verification_is_retried_on_next_call():
    statuses = [403, 200]

    def handler(request: httpx.Request) -> httpx.Response:
        status = statuses.pop(0)
        if status == 403:
            return httpx.Response(403, json={"error": {"message": f"API key {API_KEY} not valid"}})
        return httpx.Response(200, json={"totalTokens": 2})

    bridge = _bridge(handler)
    failed = bridge.ensure_verified()
    assert failed.ok is False
    assert API_KEY not in (failed.error or "")
    assert "not valid" in (failed.error or "")
    assert bridge.ensure_verified().ok is True
    assert statuses == []


def test_missing_key_fails_without_network():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    result = _bridge(handler, api_key=None).ensure_verified()
    assert result.ok is False
    assert result.error == "Missing Google/Gemini API key"
    assert result.model is None


def test_generate_text_returns_candidate_text():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith(":generateContent")
        body = json.loads(request.content)
        assert body["contents"][0]["parts"][0]["text"] == "prompt text"
        return httpx.Response(
            200,
            json={"candidates": [{"content": {"parts": [{"text": "Rest "}, {"text": "and hydrate."}]}}]},
        )

    assert _bridge(handler).generate_text("prompt text") == "Rest and hydrate."


@pytest.mark.parametrize(
    ("status", "expected"),
    [
        (401, "Unauthorized: invalid or missing API key"),
        (403, "Unauthorized: invalid or missing API key"),
        (429, "Rate limit exceeded: please slow down"),
        (503, "Upstream model service error"),
    ],
)
def test_generate_text_normalizes_status_errors(status, expected):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={"error": {"message": "provider detail"}})

    with pytest.raises(UpstreamGenerationError) as excinfo:
        _bridge(handler).generate_text("prompt")
    assert excinfo.value.message == expected


def test_generate_text_passes_through_redacted_provider_message():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": {"message": f"Bad request for key {API_KEY}"}})

    with pytest.raises(UpstreamGenerationError) as excinfo:
        _bridge(handler).generate_text("prompt")
    assert excinfo.value.message == "Bad request for key [redacted]"
    assert excinfo.value.category == "unknown"


def test_generate_text_timeout_is_distinct():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(UpstreamTimeoutError) as excinfo:
        _bridge(handler).generate_text("prompt", timeout_seconds=0.1)
    assert excinfo.value.message == "Model request timed out"
    assert excinfo.value.category == "timeout"


def test_blocked_prompt_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"promptFeedback": {"blockReason": "SAFETY"}})

    with pytest.raises(UpstreamGenerationError) as excinfo:
        _bridge(handler).generate_text("prompt")
    assert excinfo.value.category == "blocked"


def test_stream_yields_fragments_and_skips_malformed_chunks():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith(":streamGenerateContent")
        assert request.url.params["alt"] == "sse"
        body = _sse_body(
            json.dumps(_candidate("Hello")),
            "{not json",
            json.dumps({"usageMetadata": {"totalTokenCount": 4}}),
            json.dumps(_candidate(", take care.")),
        )
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    stream = _bridge(handler).open_stream("prompt")
    assert list(stream) == ["Hello", ", take care."]
    with pytest.raises(RuntimeError):
        list(stream)


def test_stream_open_error_raises_before_iteration():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"message": "quota"}})

    with pytest.raises(UpstreamGenerationError) as excinfo:
        _bridge(handler).open_stream("prompt")
    assert excinfo.value.category == "rate_limited"


def test_stream_close_before_iteration_is_safe():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_sse_body(json.dumps(_candidate("unused"))))

    stream = _bridge(handler).open_stream("prompt")
    stream.close()
    stream.close()


class _BrokenBody(httpx.SyncByteStream):
    def __iter__(self):
        yield b"data: " + json.dumps(_candidate("Partial")).encode("utf-8") + b"\n\n"
        raise httpx.ReadError(f"connection reset while using {API_KEY}")


def test_stream_interruption_uses_stable_message():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=_BrokenBody(), headers={"content-type": "text/event-stream"})

    received: list[str] = []
    with pytest.raises(UpstreamGenerationError) as excinfo:
        for delta in _bridge(handler).open_stream("prompt"):
            received.append(delta)
    assert received == ["Partial"]
    assert excinfo.value.message == "Upstream model service error"
    assert excinfo.value.category == "server"


def test_connection_failure_uses_stable_message():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError(f"cannot reach host for {API_KEY}", request=request)

    with pytest.raises(UpstreamGenerationError) as generate_error:
        _bridge(handler).generate_text("prompt")
    with pytest.raises(UpstreamGenerationError) as stream_error:
        _bridge(handler).open_stream("prompt")
    for excinfo in (generate_error, stream_error):
        assert excinfo.value.message == "Upstream model service error"
        assert API_KEY not in excinfo.value.message
