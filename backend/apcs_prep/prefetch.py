"""Speculative next-question fetching.

While the learner reads feedback, the coordinator asks the Question Service
for the next question in the background. Only one such request is ever in
flight; scheduling a new one cancels the previous one, and a result is only
handed out if it was fetched for exactly the state the session is in now.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

from .difficulty import Difficulty
from .question_client import QuestionServiceClient
from .schemas import NextQuestion, Question, Session
from .session_store import SessionStore

logger = logging.getLogger(__name__)


@dataclass
class PrefetchSlot:
    for_answered_count: int
    for_difficulty: Difficulty
    question: Optional[Question] = None
    task: Optional[asyncio.Task] = None

    def matches(self, session: Session) -> bool:
        if self.question is None:
            return False
        if self.for_answered_count != session.answered_count:
            return False
        if self.for_difficulty != session.current_difficulty:
            return False
        if self.question.id in session.answered_question_ids:
            return False
        # The service may fall back to another level when a bank runs dry
        return self.question.difficulty in (None, session.current_difficulty)


class PrefetchCoordinator:
    def __init__(self, client: QuestionServiceClient, store: SessionStore) -> None:
        self._client = client
        self._slot: Optional[PrefetchSlot] = None
        store.add_invalidation_listener(self.invalidate)

    @property
    def slot(self) -> Optional[PrefetchSlot]:
        return self._slot

    @property
    def in_flight(self) -> bool:
        return self._slot is not None and self._slot.task is not None and not self._slot.task.done()

    @property
    def ready(self) -> bool:
        return self._slot is not None and self._slot.question is not None

    def schedule_prefetch(self, session: Session) -> None:
        if session.answered_count >= session.target_question_count - 1:
            logger.debug("Skipping prefetch for session %s: near the end", session.id)
            return
        self._cancel()
        slot = PrefetchSlot(for_answered_count=session.answered_count, for_difficulty=session.current_difficulty)
        answered = list(session.answered_question_ids)
        slot.task = asyncio.create_task(self._run(slot, session, answered))
        self._slot = slot

    def consume_prefetch(self, session: Session) -> Optional[Question]:
        slot, self._slot = self._slot, None
        if slot is None:
            return None
        if slot.task is not None and not slot.task.done():
            slot.task.cancel()
        if not slot.matches(session):
            logger.debug("Prefetch miss for session %s", session.id)
            return None
        logger.debug("Using prefetched question %s for session %s", slot.question.id, session.id)
        return slot.question

    async def fetch_next(self, session: Session) -> NextQuestion:
        # Supersede any speculative request so only one is ever in flight
        self._cancel()
        return await self._client.get_next_question(
            session.user_id,
            session.id,
            session.mode,
            session.answered_question_ids,
            session.current_difficulty,
        )

    def invalidate(self) -> None:
        if self._slot is not None:
            logger.debug("Invalidating prefetch for difficulty %s", self._slot.for_difficulty.value)
        self._cancel()

    def close(self) -> None:
        self._cancel()

    def _cancel(self) -> None:
        slot, self._slot = self._slot, None
        if slot is not None and slot.task is not None and not slot.task.done():
            slot.task.cancel()

    async def _run(self, slot: PrefetchSlot, session: Session, answered: List[str]) -> None:
        try:
            result = await self._client.get_next_question(
                session.user_id, session.id, session.mode, answered, slot.for_difficulty
            )
        except Exception as e:
            # Log the error but don't block the main flow
            logger.warning("Prefetch for session %s failed (non-critical): %s", session.id, e)
            return
        if self._slot is not slot:
            logger.debug("Discarding superseded prefetch for session %s", session.id)
            return
        slot.question = result.question
