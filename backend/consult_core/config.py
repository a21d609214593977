from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

DEFAULT_GEMINI_MODEL = "gemini-2.5-flash"
DEFAULT_GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"


def load_local_env_file(path: Path) -> None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not _ENV_KEY_RE.fullmatch(key):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def bootstrap_local_env(backend_dir: Path) -> None:
    candidates = [
        backend_dir.parent / ".env",
        backend_dir / ".env",
    ]
    for candidate in candidates:
        if candidate.exists():
            load_local_env_file(candidate)


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_flag(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes"}


@dataclass(frozen=True)
class ConsultSettings:
    db_path: str
    gemini_api_key: str | None
    gemini_model: str
    gemini_api_base: str
    chat_timeout_seconds: float
    supabase_url: str | None
    supabase_anon_key: str | None
    rate_limit_auth: int
    rate_limit_anon: int
    rate_window_seconds: float
    cookie_secure: bool
    allowed_origins: tuple[str, ...]

    @classmethod
    def from_env(cls, *, default_db_path: str) -> "ConsultSettings":
        api_key = (os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY") or "").strip()
        supabase_url = (os.getenv("SUPABASE_URL") or "").strip().rstrip("/")
        supabase_anon_key = (os.getenv("SUPABASE_ANON_KEY") or "").strip()
        origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
        return cls(
            db_path=os.getenv("CONSULT_DB_PATH", default_db_path),
            gemini_api_key=api_key or None,
            gemini_model=(os.getenv("GEMINI_MODEL") or DEFAULT_GEMINI_MODEL).strip(),
            gemini_api_base=(os.getenv("GEMINI_API_BASE_URL") or DEFAULT_GEMINI_API_BASE).strip().rstrip("/"),
            chat_timeout_seconds=_env_float("CONSULT_CHAT_TIMEOUT_SECONDS", 30.0),
            supabase_url=supabase_url or None,
            supabase_anon_key=supabase_anon_key or None,
            rate_limit_auth=_env_int("CONSULT_RATE_LIMIT_AUTH", 20),
            rate_limit_anon=_env_int("CONSULT_RATE_LIMIT_ANON", 10),
            rate_window_seconds=60.0,
            cookie_secure=_env_flag("CONSULT_COOKIE_SECURE"),
            allowed_origins=tuple(origin.strip() for origin in origins if origin.strip()),
        )


def resolve_log_level(raw: str | None, default: int = logging.INFO) -> int:
    level = logging.getLevelName((raw or "").strip().upper())
    return level if isinstance(level, int) else default
