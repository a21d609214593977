from __future__ import annotations

import uuid
from typing import Any

from .access_guard import RowAccessGuard
from .database import SQLiteConsultDB
from .time_utils import to_iso, utc_now

_PROFILE_FIELDS = ("age", "gender", "blood_type")


class ProfileStore:
    def __init__(self, db: SQLiteConsultDB, guard: RowAccessGuard | None = None) -> None:
        self._db = db
        self._guard = guard or RowAccessGuard()

    def get_profile(self, user_id: str) -> dict[str, Any] | None:
        user_id = self._guard.ensure_user(user_id)
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT user_id, age, gender, blood_type, created_at, updated_at
                FROM profiles
                WHERE user_id = ?
                """,
                (user_id,),
            ).fetchone()
        return dict(row) if row else None

    def upsert_profile(self, user_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        user_id = self._guard.ensure_user(user_id)
        now = to_iso(utc_now())
        updates = {key: fields[key] for key in _PROFILE_FIELDS if key in fields}
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO profiles (user_id, created_at, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET updated_at = excluded.updated_at
                """,
                (user_id, now, now),
            )
            for key, value in updates.items():
                # Column names come from the fixed _PROFILE_FIELDS tuple.
                conn.execute(f"UPDATE profiles SET {key} = ? WHERE user_id = ?", (value, user_id))
            row = conn.execute(
                """
                SELECT user_id, age, gender, blood_type, created_at, updated_at
                FROM profiles
                WHERE user_id = ?
                """,
                (user_id,),
            ).fetchone()
        return dict(row)

    def list_allergies(self, user_id: str) -> list[dict[str, Any]]:
        user_id = self._guard.ensure_user(user_id)
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT id, user_id, name, note, created_at
                FROM allergies
                WHERE user_id = ?
                ORDER BY created_at DESC, rowid DESC
                """,
                (user_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def add_allergy(self, user_id: str, *, name: str, note: str | None = None) -> dict[str, Any]:
        user_id = self._guard.ensure_user(user_id)
        record = {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "name": name,
            "note": note,
            "created_at": to_iso(utc_now()),
        }
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO allergies (id, user_id, name, note, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (record["id"], user_id, name, note, record["created_at"]),
            )
        return record

    def delete_allergy(self, user_id: str, allergy_id: str) -> dict[str, Any] | None:
        user_id = self._guard.ensure_user(user_id)
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT id, user_id, name, note, created_at
                FROM allergies
                WHERE id = ? AND user_id = ?
                """,
                (allergy_id, user_id),
            ).fetchone()
            if row is None:
                return None
            conn.execute("DELETE FROM allergies WHERE id = ? AND user_id = ?", (allergy_id, user_id))
        return dict(row)
