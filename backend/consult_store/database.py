from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


class SQLiteConsultDB:
    def __init__(self, db_path: str) -> None:
        self._path = Path(db_path).expanduser().resolve()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def path(self) -> str:
        return str(self._path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._path), timeout=30.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._lock, self.connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS consultations (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  topic TEXT NOT NULL,
                  status TEXT NOT NULL DEFAULT 'open',
                  summary TEXT,
                  started_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS consultation_messages (
                  id TEXT PRIMARY KEY,
                  consultation_id TEXT NOT NULL REFERENCES consultations(id) ON DELETE CASCADE,
                  role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
                  content TEXT NOT NULL,
                  created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS profiles (
                  user_id TEXT PRIMARY KEY,
                  age INTEGER,
                  gender TEXT,
                  blood_type TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS allergies (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  name TEXT NOT NULL,
                  note TEXT,
                  created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_consultations_user_started
                  ON consultations(user_id, started_at DESC);
                CREATE INDEX IF NOT EXISTS idx_consultation_messages_consultation_created
                  ON consultation_messages(consultation_id, created_at);
                CREATE INDEX IF NOT EXISTS idx_consultation_messages_role_created
                  ON consultation_messages(role, created_at);
                CREATE INDEX IF NOT EXISTS idx_allergies_user_created
                  ON allergies(user_id, created_at DESC);
                """
            )
