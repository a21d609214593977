from __future__ import annotations

import logging
import sqlite3
import uuid

from consult_store import ConsultationStore, StoreAccessError

from .errors import PersistenceError
from .models import ChatMessage, TurnPlan
from .prompt import consultation_topic, last_user_message

logger = logging.getLogger(__name__)


class PersistenceWriter:
    """Best-effort writer for authenticated chat turns.

    Failures are logged and reported as a missing consultation id; they never
    change the reply already produced for the caller.
    """

    def __init__(self, store: ConsultationStore) -> None:
        self._store = store

    def plan(self, *, user_id: str, consultation_id: str | None, messages: list[ChatMessage]) -> TurnPlan:
        return TurnPlan(
            user_id=user_id,
            consultation_id=consultation_id or str(uuid.uuid4()),
            is_new=consultation_id is None,
            topic=consultation_topic(messages),
            user_message=last_user_message(messages),
        )

    def open_consultation(self, plan: TurnPlan) -> str | None:
        """Make sure the planned consultation row exists before its id is handed out."""
        if not plan.is_new:
            return plan.consultation_id
        try:
            created = self._call(
                self._store.create_consultation,
                user_id=plan.user_id,
                topic=plan.topic,
                consultation_id=plan.consultation_id,
            )
        except PersistenceError as exc:
            logger.warning(
                "consultation could not be opened (user=%s consultation=%s): %s",
                plan.user_id,
                plan.consultation_id,
                exc,
                exc_info=exc.__cause__,
            )
            return None
        plan.is_new = False
        return created["id"]

    def persist(self, plan: TurnPlan, reply: str) -> str | None:
        """Write the turn and return the consultation id that now exists, if any."""
        known_id = None if plan.is_new else plan.consultation_id
        try:
            if plan.is_new:
                created = self._call(
                    self._store.create_consultation,
                    user_id=plan.user_id,
                    topic=plan.topic,
                    consultation_id=plan.consultation_id,
                )
                known_id = created["id"]
            if plan.user_message is not None:
                self._call(
                    self._store.append_message,
                    user_id=plan.user_id,
                    consultation_id=plan.consultation_id,
                    role="user",
                    content=plan.user_message,
                )
            self._call(
                self._store.append_message,
                user_id=plan.user_id,
                consultation_id=plan.consultation_id,
                role="assistant",
                content=reply,
            )
        except PersistenceError as exc:
            logger.warning(
                "consultation persistence skipped (user=%s consultation=%s): %s",
                plan.user_id,
                plan.consultation_id,
                exc,
                exc_info=exc.__cause__,
            )
        return known_id

    @staticmethod
    def _call(operation, **kwargs):
        try:
            return operation(**kwargs)
        except (StoreAccessError, sqlite3.Error) as exc:
            raise PersistenceError(str(exc)) from exc
