from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Mapping

from starlette.responses import Response

ACCESS_TOKEN_COOKIE = "sb-access-token"
REFRESH_TOKEN_COOKIE = "sb-refresh-token"
_DEFAULT_MAX_AGE = 60 * 60 * 24 * 7


@dataclass(frozen=True)
class CookieOp:
    kind: Literal["set", "remove"]
    name: str
    value: str = ""
    max_age: int | None = None


class SessionCookieJar:
    """Reads request cookies and records session mutations for the response.

    Mutations are replayed onto whatever response a route finally returns, so
    every exit path carries the same cookie state.
    """

    def __init__(self, request_cookies: Mapping[str, str] | None = None, *, secure: bool = False) -> None:
        self._incoming = dict(request_cookies or {})
        self._secure = secure
        self.ops: list[CookieOp] = []

    def get(self, name: str) -> str | None:
        for op in reversed(self.ops):
            if op.name == name:
                return op.value if op.kind == "set" else None
        value = self._incoming.get(name)
        return value or None

    def set(self, name: str, value: str, *, max_age: int | None = _DEFAULT_MAX_AGE) -> None:
        self.ops.append(CookieOp(kind="set", name=name, value=value, max_age=max_age))

    def remove(self, name: str) -> None:
        self.ops.append(CookieOp(kind="remove", name=name))

    def store_session(self, access_token: str, refresh_token: str | None, expires_in: int | None = None) -> None:
        self.set(ACCESS_TOKEN_COOKIE, access_token, max_age=expires_in or _DEFAULT_MAX_AGE)
        if refresh_token:
            self.set(REFRESH_TOKEN_COOKIE, refresh_token)

    def clear_session(self) -> None:
        self.remove(ACCESS_TOKEN_COOKIE)
        self.remove(REFRESH_TOKEN_COOKIE)

    def apply(self, response: Response) -> Response:
        for op in self.ops:
            if op.kind == "set":
                response.set_cookie(
                    op.name,
                    op.value,
                    max_age=op.max_age,
                    path="/",
                    httponly=True,
                    samesite="lax",
                    secure=self._secure,
                )
            else:
                response.delete_cookie(op.name, path="/", httponly=True, samesite="lax", secure=self._secure)
        return response
