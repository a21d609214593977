from __future__ import annotations

from .access_guard import RowAccessGuard
from .consultation_store import ConsultationStore
from .database import SQLiteConsultDB
from .profile_store import ProfileStore


class ConsultStore:
    def __init__(self, db: SQLiteConsultDB) -> None:
        self.db = db
        self.guard = RowAccessGuard()
        self.consultations = ConsultationStore(db, self.guard)
        self.profiles = ProfileStore(db, self.guard)
