from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Callable

import httpx
from fastapi import Body, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask
from starlette.concurrency import run_in_threadpool

from consult_core import (
    ACCESS_TOKEN_COOKIE,
    NDJSON_MEDIA_TYPE,
    STREAM_HEADERS,
    AllergyCreatePayload,
    AllergyDeletePayload,
    AuthRequiredError,
    AuthUser,
    ChatRequest,
    ConsultError,
    ConsultSettings,
    GeminiBridge,
    PersistenceWriter,
    ProfilePayload,
    RequestValidationFailed,
    SessionCookieJar,
    SignInPayload,
    SlidingWindowLimiter,
    SupabaseIdentityProvider,
    TurnPlan,
    UpstreamUnavailableError,
    assemble_prompt,
    bearer_token,
    bootstrap_local_env,
    check_authenticated_rate,
    client_ip_key,
    delta_record,
    error_record,
    final_record,
    resolve_log_level,
    truncate,
)
from consult_store import ConsultStore, SQLiteConsultDB

BACKEND_DIR = Path(__file__).resolve().parent

bootstrap_local_env(BACKEND_DIR)

logging.basicConfig(
    level=resolve_log_level(os.getenv("CONSULT_LOG_LEVEL")),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("consult.api")


class ConsultApp:
    def __init__(self) -> None:
        self.settings = ConsultSettings.from_env(default_db_path=str(BACKEND_DIR / "consult.sqlite"))
        self.db = SQLiteConsultDB(self.settings.db_path)
        self.store = ConsultStore(self.db)
        self.identity = SupabaseIdentityProvider(self.settings.supabase_url, self.settings.supabase_anon_key)
        self.model = GeminiBridge(
            self.settings.gemini_api_key,
            model=self.settings.gemini_model,
            base_url=self.settings.gemini_api_base,
            timeout_seconds=self.settings.chat_timeout_seconds,
        )
        self.anon_limiter = SlidingWindowLimiter(
            self.settings.rate_limit_anon,
            self.settings.rate_window_seconds,
        )
        self.writer = PersistenceWriter(self.store.consultations)
        logger.warning(
            "anonymous rate limiting uses an in-process table; limits are per worker and reset on restart"
        )
        if not self.identity.configured:
            logger.info("identity provider not configured; every caller resolves as anonymous")

    def session_jar(self, request: Request) -> SessionCookieJar:
        return SessionCookieJar(request.cookies, secure=self.settings.cookie_secure)


container = ConsultApp()
app = FastAPI(title="MediConsult Backend")

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(container.settings.allowed_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_response(exc: ConsultError) -> JSONResponse:
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


def _first_validation_message(errors: list[dict[str, Any]]) -> str:
    if not errors:
        return "Invalid request body"
    first = errors[0]
    loc = [str(part) for part in first.get("loc", ())]
    if loc and loc[0] in {"body", "query", "path", "header"} and len(loc) > 1:
        loc = loc[1:]
    if first.get("type") == "json_invalid":
        loc = ["body"]
    field = ".".join(loc) or "body"
    return f"{field}: {first.get('msg', 'Invalid value')}"


@app.exception_handler(RequestValidationError)
async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error_response(RequestValidationFailed(_first_validation_message(list(exc.errors()))))


def _with_session(request: Request, handler: Callable[[SessionCookieJar], Any]) -> Response:
    """Run a route body and replay its session cookie mutations on every outcome."""
    jar = container.session_jar(request)
    try:
        result = handler(jar)
        response = result if isinstance(result, Response) else JSONResponse(result)
    except ConsultError as exc:
        response = _error_response(exc)
    except Exception:
        logger.exception("%s %s failed", request.method, request.url.path)
        response = _error_response(ConsultError())
    return jar.apply(response)


def _require_user(authorization: str | None, jar: SessionCookieJar) -> AuthUser:
    user = container.identity.resolve(authorization, jar)
    if user is None:
        raise AuthRequiredError()
    return user


def _enforce_rate_limit(user: AuthUser | None, request: Request) -> None:
    if user is not None:
        check_authenticated_rate(
            container.store.consultations,
            user_id=user.id,
            limit=container.settings.rate_limit_auth,
            window_seconds=container.settings.rate_window_seconds,
        )
        return
    container.anon_limiter.check(client_ip_key(request.headers))


class UpstreamStreamingResponse(StreamingResponse):
    """Streaming response that releases the model stream however the send ends.

    The body generator's own cleanup never runs when the client goes away
    before the first chunk is pulled, so the upstream is closed here too.
    """

    def __init__(self, content, *, upstream, **kwargs: Any) -> None:
        super().__init__(content, **kwargs)
        self._upstream = upstream

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await run_in_threadpool(self._upstream.close)


def _persist_streamed_turn(plan: TurnPlan, completed: list[tuple[str, str | None]]) -> None:
    if not completed:
        logger.info("stream ended before completion; consultation %s not persisted", plan.consultation_id)
        return
    reply, consultation_id = completed[0]
    if consultation_id is None:
        logger.info("consultation %s was never opened; streamed turn not persisted", plan.consultation_id)
        return
    container.writer.persist(plan, reply)


def _stream_reply(prompt: str, user: AuthUser | None, plan: TurnPlan | None, supplied_id: str | None) -> Response:
    upstream = container.model.open_stream(prompt)
    completed: list[tuple[str, str | None]] = []

    def event_stream():
        parts: list[str] = []
        logger.info(
            "streaming reply started; user=%s consultation=%s",
            user.id if user else "anon",
            (plan.consultation_id if plan else supplied_id) or "none",
        )
        try:
            for delta in upstream:
                parts.append(delta)
                yield delta_record(delta)
        except ConsultError as exc:
            logger.warning("chat stream failed: %s", exc.message)
            yield error_record(exc.message)
            return
        except Exception:
            logger.exception("chat stream error")
            yield error_record("Streaming failed")
            return
        finally:
            upstream.close()
        reply = "".join(parts)
        consultation_id = container.writer.open_consultation(plan) if plan else supplied_id
        completed.append((reply, consultation_id))
        logger.info("stream completed; length=%s", len(reply))
        yield final_record(reply, consultation_id)

    background = BackgroundTask(_persist_streamed_turn, plan, completed) if plan else None
    return UpstreamStreamingResponse(
        event_stream(),
        upstream=upstream,
        media_type=NDJSON_MEDIA_TYPE,
        headers=dict(STREAM_HEADERS),
        background=background,
    )


def _chat_turn(payload: ChatRequest, request: Request, authorization: str | None, jar: SessionCookieJar) -> Response:
    verification = container.model.ensure_verified()
    if not verification.ok:
        raise UpstreamUnavailableError(f"Gemini API verification failed: {verification.error}")

    user = container.identity.resolve(authorization, jar)
    try:
        _enforce_rate_limit(user, request)
    except ConsultError:
        logger.warning("chat rate limit hit; user=%s", user.id if user else client_ip_key(request.headers))
        raise

    prompt = assemble_prompt(payload.messages, payload.context)
    supplied_id = str(payload.consultation_id) if payload.consultation_id else None
    plan = (
        container.writer.plan(user_id=user.id, consultation_id=supplied_id, messages=payload.messages)
        if user
        else None
    )

    if payload.stream:
        return _stream_reply(prompt, user, plan, supplied_id)

    reply = container.model.generate_text(prompt)
    logger.info("non-stream reply length=%s user=%s", len(reply), user.id if user else "anon")
    logger.debug("non-stream reply preview: %s", truncate(reply, 200))
    consultation_id = container.writer.persist(plan, reply) if plan else supplied_id
    return JSONResponse({"reply": reply, "consultation_id": consultation_id})


@app.get("/chat")
def chat_status():
    result = container.model.ensure_verified()
    return JSONResponse(
        {"ok": result.ok, "model": result.model, "error": result.error},
        status_code=200 if result.ok else 500,
    )


@app.post("/chat")
def chat(
    payload: ChatRequest,
    request: Request,
    authorization: str | None = Header(default=None),
):
    return _with_session(request, lambda jar: _chat_turn(payload, request, authorization, jar))


@app.get("/profile")
def get_profile(request: Request, authorization: str | None = Header(default=None)):
    def handle(jar: SessionCookieJar) -> dict[str, Any]:
        user = _require_user(authorization, jar)
        return {"profile": container.store.profiles.get_profile(user.id)}

    return _with_session(request, handle)


@app.put("/profile")
def put_profile(payload: ProfilePayload, request: Request, authorization: str | None = Header(default=None)):
    def handle(jar: SessionCookieJar) -> dict[str, Any]:
        user = _require_user(authorization, jar)
        fields = payload.model_dump(exclude_unset=True)
        return {"profile": container.store.profiles.upsert_profile(user.id, fields)}

    return _with_session(request, handle)


@app.get("/allergies")
def list_allergies(request: Request, authorization: str | None = Header(default=None)):
    def handle(jar: SessionCookieJar) -> dict[str, Any]:
        user = _require_user(authorization, jar)
        return {"items": container.store.profiles.list_allergies(user.id)}

    return _with_session(request, handle)


@app.post("/allergies")
def add_allergy(payload: AllergyCreatePayload, request: Request, authorization: str | None = Header(default=None)):
    def handle(jar: SessionCookieJar) -> dict[str, Any]:
        user = _require_user(authorization, jar)
        return {"item": container.store.profiles.add_allergy(user.id, name=payload.name, note=payload.note)}

    return _with_session(request, handle)


@app.delete("/allergies")
def delete_allergy(
    request: Request,
    payload: AllergyDeletePayload = Body(...),
    authorization: str | None = Header(default=None),
):
    def handle(jar: SessionCookieJar) -> dict[str, Any]:
        user = _require_user(authorization, jar)
        return {"item": container.store.profiles.delete_allergy(user.id, str(payload.id))}

    return _with_session(request, handle)


@app.get("/consultations")
def list_consultations(request: Request, authorization: str | None = Header(default=None)):
    def handle(jar: SessionCookieJar) -> dict[str, Any]:
        user = _require_user(authorization, jar)
        return {"items": container.store.consultations.list_consultations(user_id=user.id)}

    return _with_session(request, handle)


@app.get("/consultations/{consultation_id}/messages")
def list_consultation_messages(
    consultation_id: str,
    request: Request,
    authorization: str | None = Header(default=None),
):
    def handle(jar: SessionCookieJar) -> dict[str, Any]:
        if not consultation_id.strip():
            raise RequestValidationFailed("Missing consultation id")
        user = _require_user(authorization, jar)
        items = container.store.consultations.list_messages(user_id=user.id, consultation_id=consultation_id)
        return {"items": items}

    return _with_session(request, handle)


@app.post("/auth/signin")
def sign_in(payload: SignInPayload, request: Request):
    def handle(jar: SessionCookieJar) -> dict[str, Any]:
        if payload.mode == "password":
            if not payload.password:
                raise RequestValidationFailed("Missing required field: password")
            tokens, user = container.identity.sign_in_with_password(payload.email, payload.password)
            jar.store_session(tokens.access_token, tokens.refresh_token, tokens.expires_in)
            return {"user": user.public_view() if user else None}
        origin = request.headers.get("origin")
        container.identity.send_magic_link(payload.email, redirect_to=f"{origin}/" if origin else None)
        return {"sent": True}

    return _with_session(request, handle)


@app.post("/auth/signout")
def sign_out(request: Request, authorization: str | None = Header(default=None)):
    def handle(jar: SessionCookieJar) -> dict[str, Any]:
        token = bearer_token(authorization) or jar.get(ACCESS_TOKEN_COOKIE)
        if token:
            try:
                container.identity.sign_out(token)
            except httpx.HTTPError as exc:
                logger.warning("provider sign-out failed: %s", exc)
        jar.clear_session()
        return {"success": True}

    return _with_session(request, handle)


@app.get("/auth/status")
def auth_status(request: Request, authorization: str | None = Header(default=None)):
    def handle(jar: SessionCookieJar) -> dict[str, Any]:
        user = _require_user(authorization, jar)
        return {"verified": bool(user.email_confirmed_at)}

    return _with_session(request, handle)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.getenv("CONSULT_HOST", "127.0.0.1"), port=int(os.getenv("PORT", "8000")))
