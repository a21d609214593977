from __future__ import annotations

import threading
import time
from datetime import timedelta
from typing import Callable, Mapping

from consult_store import ConsultationStore
from consult_store.time_utils import utc_now

from .errors import RateLimitError

AUTH_LIMIT_MESSAGE = "Rate limit exceeded. Please wait a minute before sending more messages."
ANON_LIMIT_MESSAGE = "Rate limit exceeded for anonymous users. Please sign in or wait."
ANON_FALLBACK_KEY = "anon"


def client_ip_key(headers: Mapping[str, str]) -> str:
    forwarded = (headers.get("x-forwarded-for") or "").strip()
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    for header in ("x-real-ip", "cf-connecting-ip"):
        value = (headers.get(header) or "").strip()
        if value:
            return value
    return ANON_FALLBACK_KEY


class SlidingWindowLimiter:
    """Per-key sliding window counter held in process memory.

    The table is not shared between workers or instances and is lost on
    restart, so it only bounds traffic for a single-process deployment. A
    multi-instance deployment needs a shared store with TTLs in its place.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, list[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    @property
    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    def hit(self, key: str) -> int:
        now = self._clock()
        window_start = now - self.window_seconds
        with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(window_start)
                self._last_sweep = now
            pruned = [stamp for stamp in self._hits.get(key, []) if stamp >= window_start]
            pruned.append(now)
            self._hits[key] = pruned
            return len(pruned)

    def _sweep(self, window_start: float) -> None:
        # Caller holds the lock.
        stale = [key for key, stamps in self._hits.items() if not stamps or stamps[-1] < window_start]
        for key in stale:
            del self._hits[key]

    def check(self, key: str) -> int:
        hits = self.hit(key)
        if hits >= self.limit:
            raise RateLimitError(ANON_LIMIT_MESSAGE)
        return hits


def check_authenticated_rate(
    store: ConsultationStore,
    *,
    user_id: str,
    limit: int,
    window_seconds: float = 60.0,
) -> int:
    since = utc_now() - timedelta(seconds=window_seconds)
    count = store.count_recent_user_messages(user_id=user_id, since=since)
    if count >= limit:
        raise RateLimitError(AUTH_LIMIT_MESSAGE)
    return count
