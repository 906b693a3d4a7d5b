"""Single owner of practice-session progress and its durable snapshot.

Every mutating call writes the whole session to the snapshot table before it
returns, so a restarted process can resume with nothing lost except the
network call that was in flight.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .db import SessionLocal
from .difficulty import Difficulty, step_difficulty
from .errors import SessionCorrupt, SessionExhausted, SessionNotFound, StorageError
from .models import SessionSnapshot
from .question_client import QuestionServiceClient
from .schemas import Question, Session, SessionMode, TimedConfig
from .settings import settings

logger = logging.getLogger(__name__)


def storage_key(user_id: str, mode: SessionMode) -> str:
    return f"{user_id}:{mode.storage_suffix}"


class SessionStore:
    def __init__(
        self,
        client: QuestionServiceClient,
        session_factory: sessionmaker = SessionLocal,
        *,
        promote_after: Optional[int] = None,
        demote_after: Optional[int] = None,
    ) -> None:
        self._client = client
        self._session_factory = session_factory
        self.promote_after = promote_after or settings.promote_after_correct
        self.demote_after = demote_after or settings.demote_after_incorrect
        self._invalidation_listeners: List[Callable[[], None]] = []

    def add_invalidation_listener(self, callback: Callable[[], None]) -> None:
        """Register a callback fired when the server contradicts the local difficulty."""
        self._invalidation_listeners.append(callback)

    async def start(
        self,
        user_id: str,
        mode: SessionMode,
        target_count: int,
        timed: Optional[TimedConfig] = None,
    ) -> Tuple[Session, Question]:
        started = await self._client.start_session(user_id, mode, target_count, timed=timed is not None)
        if started.question is None:
            raise SessionExhausted("No questions available for this practice session")
        session = Session(
            id=started.session_id,
            user_id=user_id,
            mode=mode,
            target_question_count=target_count,
            current_difficulty=started.initial_difficulty or Difficulty.EASY,
            timed=timed,
        )
        self._persist(session)
        logger.info(
            "Started practice session %s for %s (%s, target=%d, timed=%s)",
            session.id, user_id, mode.storage_suffix, target_count, timed is not None,
        )
        return session, started.question

    def resume(self, key: str) -> Session:
        with self._session_factory() as db:
            row = db.get(SessionSnapshot, key)
            if row is None:
                raise SessionNotFound(f"No stored practice session for {key}")
            try:
                session = Session.model_validate_json(row.payload_json)
                if storage_key(session.user_id, session.mode) != key:
                    raise SessionCorrupt(f"Snapshot under {key} belongs to another session")
            except (ValidationError, SessionCorrupt) as exc:
                db.delete(row)
                db.commit()
                logger.warning("Discarded corrupt practice snapshot %s: %s", key, exc)
                raise SessionCorrupt(str(exc)) from exc
        logger.info("Resumed practice session %s at %d/%d", session.id, session.answered_count, session.target_question_count)
        return session

    def record_answer(self, session: Session, question_id: str, was_correct: bool) -> Session:
        if question_id in session.answered_question_ids:
            logger.debug("Ignoring duplicate answer for %s in session %s", question_id, session.id)
            return session
        if session.is_complete:
            logger.debug("Ignoring answer for %s: session %s already complete", question_id, session.id)
            return session
        step = step_difficulty(
            session.current_difficulty,
            session.consecutive_correct,
            session.consecutive_incorrect,
            was_correct,
            promote_after=self.promote_after,
            demote_after=self.demote_after,
        )
        self._apply(session, {
            "answered_question_ids": session.answered_question_ids + [question_id],
            "correct_answers": session.correct_answers + int(was_correct),
            "incorrect_answers": session.incorrect_answers + int(not was_correct),
            "current_difficulty": step.difficulty,
            "consecutive_correct": step.consecutive_correct,
            "consecutive_incorrect": step.consecutive_incorrect,
        })
        return session

    def reconcile_server_difficulty(
        self,
        session: Session,
        server_difficulty: Optional[Difficulty],
        *,
        consecutive_correct: Optional[int] = None,
        consecutive_incorrect: Optional[int] = None,
    ) -> bool:
        mispredicted = server_difficulty is not None and server_difficulty != session.current_difficulty
        changes: Dict[str, Any] = {}
        if mispredicted:
            logger.info(
                "Session %s difficulty reconciled %s -> %s",
                session.id, session.current_difficulty.value, server_difficulty.value,
            )
            changes["current_difficulty"] = server_difficulty
        if consecutive_correct is not None:
            changes["consecutive_correct"] = max(0, consecutive_correct)
        if consecutive_incorrect is not None:
            changes["consecutive_incorrect"] = max(0, consecutive_incorrect)
        if changes:
            self._apply(session, changes)
        if mispredicted:
            for callback in self._invalidation_listeners:
                callback()
        return mispredicted

    def clear(self, session: Session) -> None:
        key = storage_key(session.user_id, session.mode)
        try:
            with self._session_factory() as db:
                row = db.get(SessionSnapshot, key)
                # Another session may already own the key after a restart
                if row is not None and row.session_id == session.id:
                    db.delete(row)
                    db.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"Could not remove stored session {session.id}") from exc

    def _apply(self, session: Session, changes: Dict[str, Any]) -> None:
        # Memory only moves forward once the snapshot holding the change is written
        self._persist(session.model_copy(update=changes))
        for name, value in changes.items():
            setattr(session, name, value)

    def _persist(self, session: Session) -> None:
        key = storage_key(session.user_id, session.mode)
        try:
            with self._session_factory() as db:
                row = db.get(SessionSnapshot, key)
                if row is None:
                    row = SessionSnapshot(storage_key=key, user_id=session.user_id, session_id=session.id)
                    db.add(row)
                row.session_id = session.id
                row.payload_json = session.model_dump_json()
                db.commit()
        except SQLAlchemyError as exc:
            logger.error("Could not save practice session %s: %s", session.id, exc)
            raise StorageError(f"Could not save progress for session {session.id}") from exc
