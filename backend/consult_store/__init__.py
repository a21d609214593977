from .access_guard import RowAccessGuard, StoreAccessError
from .consultation_store import ConsultationStore
from .database import SQLiteConsultDB
from .profile_store import ProfileStore
from .service import ConsultStore

__all__ = [
    "ConsultStore",
    "ConsultationStore",
    "ProfileStore",
    "RowAccessGuard",
    "SQLiteConsultDB",
    "StoreAccessError",
]
