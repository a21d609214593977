from __future__ import annotations

import sqlite3
from dataclasses import dataclass


class StoreAccessError(Exception):
    pass


@dataclass(frozen=True)
class OwnershipResult:
    exists: bool
    owned: bool


class RowAccessGuard:
    """Row-level scoping for the consultation store.

    Every store call carries the acting user id; rows owned by somebody else
    are invisible to reads and refused for writes.
    """

    def ensure_user(self, user_id: str | None) -> str:
        candidate = (user_id or "").strip()
        if not candidate or len(candidate) > 128:
            raise StoreAccessError("Invalid user scope.")
        return candidate

    def consultation_ownership(
        self,
        conn: sqlite3.Connection,
        *,
        user_id: str,
        consultation_id: str,
    ) -> OwnershipResult:
        row = conn.execute(
            "SELECT user_id FROM consultations WHERE id = ?",
            (consultation_id,),
        ).fetchone()
        if row is None:
            return OwnershipResult(exists=False, owned=False)
        return OwnershipResult(exists=True, owned=row["user_id"] == user_id)

    def ensure_consultation_owner(
        self,
        conn: sqlite3.Connection,
        *,
        user_id: str,
        consultation_id: str,
    ) -> None:
        ownership = self.consultation_ownership(conn, user_id=user_id, consultation_id=consultation_id)
        if not ownership.exists:
            raise StoreAccessError("Consultation not found.")
        if not ownership.owned:
            raise StoreAccessError("Cross-user access is blocked.")
