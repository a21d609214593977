from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from .access_guard import RowAccessGuard, StoreAccessError
from .database import SQLiteConsultDB
from .time_utils import to_iso, utc_now

_MESSAGE_ROLES = {"user", "assistant", "system"}


class ConsultationStore:
    def __init__(self, db: SQLiteConsultDB, guard: RowAccessGuard | None = None) -> None:
        self._db = db
        self._guard = guard or RowAccessGuard()

    def create_consultation(
        self,
        *,
        user_id: str,
        topic: str,
        consultation_id: str | None = None,
        status: str = "open",
    ) -> dict[str, Any]:
        user_id = self._guard.ensure_user(user_id)
        record_id = consultation_id or str(uuid.uuid4())
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            ownership = self._guard.consultation_ownership(conn, user_id=user_id, consultation_id=record_id)
            if ownership.exists and not ownership.owned:
                raise StoreAccessError("Cross-user access is blocked.")
            if not ownership.exists:
                conn.execute(
                    """
                    INSERT INTO consultations (id, user_id, topic, status, summary, started_at, updated_at)
                    VALUES (?, ?, ?, ?, NULL, ?, ?)
                    """,
                    (record_id, user_id, topic, status, now, now),
                )
            row = conn.execute(
                """
                SELECT id, user_id, topic, status, summary, started_at
                FROM consultations
                WHERE id = ?
                """,
                (record_id,),
            ).fetchone()
        return dict(row)

    def get_consultation(self, *, user_id: str, consultation_id: str) -> dict[str, Any] | None:
        user_id = self._guard.ensure_user(user_id)
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT id, user_id, topic, status, summary, started_at
                FROM consultations
                WHERE id = ? AND user_id = ?
                """,
                (consultation_id, user_id),
            ).fetchone()
        return dict(row) if row else None

    def append_message(
        self,
        *,
        user_id: str,
        consultation_id: str,
        role: str,
        content: str,
    ) -> dict[str, Any]:
        user_id = self._guard.ensure_user(user_id)
        if role not in _MESSAGE_ROLES:
            raise StoreAccessError(f"Unsupported message role: {role}")
        now = to_iso(utc_now())
        record = {
            "id": str(uuid.uuid4()),
            "consultation_id": consultation_id,
            "role": role,
            "content": content,
            "created_at": now,
        }
        with self._db.connection() as conn:
            self._guard.ensure_consultation_owner(conn, user_id=user_id, consultation_id=consultation_id)
            conn.execute(
                """
                INSERT INTO consultation_messages (id, consultation_id, role, content, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (record["id"], consultation_id, role, content, now),
            )
            conn.execute(
                "UPDATE consultations SET updated_at = ? WHERE id = ?",
                (now, consultation_id),
            )
        return record

    def count_recent_user_messages(self, *, user_id: str, since: datetime) -> int:
        user_id = self._guard.ensure_user(user_id)
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT COUNT(m.id) AS total
                FROM consultation_messages m
                JOIN consultations c ON c.id = m.consultation_id
                WHERE c.user_id = ?
                  AND m.role = 'user'
                  AND m.created_at >= ?
                """,
                (user_id, to_iso(since)),
            ).fetchone()
        return int(row["total"] or 0)

    def list_consultations(self, *, user_id: str) -> list[dict[str, Any]]:
        user_id = self._guard.ensure_user(user_id)
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT c.id, c.topic, c.status, c.started_at, c.summary
                FROM consultations c
                WHERE c.user_id = ?
                  AND EXISTS (
                    SELECT 1 FROM consultation_messages m WHERE m.consultation_id = c.id
                  )
                ORDER BY c.started_at DESC
                """,
                (user_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def list_messages(self, *, user_id: str, consultation_id: str) -> list[dict[str, Any]]:
        user_id = self._guard.ensure_user(user_id)
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT m.id, m.role, m.content, m.created_at
                FROM consultation_messages m
                JOIN consultations c ON c.id = m.consultation_id
                WHERE m.consultation_id = ? AND c.user_id = ?
                ORDER BY m.created_at ASC, m.rowid ASC
                """,
                (consultation_id, user_id),
            ).fetchall()
        return [dict(row) for row in rows]
