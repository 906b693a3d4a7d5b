"""Per-question flow of a practice session.

A question moves AWAITING_ANSWER -> SUBMITTING -> GRADED. The optional
countdown and the learner's submit button race for the same transition; the
first one to claim it wins and the other becomes a no-op. If the countdown
has already hit zero when a manual submit arrives, the timer is treated as
the winner and the empty answer is submitted.
"""
from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import sessionmaker

from .db import SessionLocal
from .errors import InvalidTransition, ServiceUnavailable, SessionCorrupt, SessionExhausted, SessionNotFound, StaleResult, StorageError
from .prefetch import PrefetchCoordinator
from .question_client import QuestionServiceClient
from .schemas import AnswerResult, PendingAnswer, Question, Session, SessionMode, SessionSummary, TimedConfig
from .session_store import SessionStore, storage_key

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    AWAITING_ANSWER = "AWAITING_ANSWER"
    SUBMITTING = "SUBMITTING"
    GRADED = "GRADED"
    COMPLETE = "COMPLETE"
    CLOSED = "CLOSED"


class PracticeEngine:
    def __init__(
        self,
        client: QuestionServiceClient,
        store: SessionStore,
        session: Session,
        *,
        tick_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.store = store
        self.session = session
        self.prefetch = PrefetchCoordinator(client, store)
        # No question on screen yet: the next step is a fetch, same as after feedback
        self.phase = Phase.GRADED
        self.question: Optional[Question] = None
        self.time_remaining: Optional[int] = None
        self.last_result: Optional[AnswerResult] = None
        self.last_error: Optional[str] = None
        self.summary: Optional[SessionSummary] = None
        self.insights: Optional[Dict[str, Any]] = None
        self.loading = False
        self._tick_seconds = tick_seconds
        self._clock = clock
        self._question_started_at = clock()
        self._countdown: Optional[asyncio.Task] = None
        self._background_submission: Optional[asyncio.Task] = None
        self._insights_task: Optional[asyncio.Task] = None
        self._generation = 0

    @property
    def storage_key(self) -> str:
        return storage_key(self.session.user_id, self.session.mode)

    # Submission ---------------------------------------------------------
    async def submit(self, selected_option: str, *, question_id: Optional[str] = None) -> Optional[AnswerResult]:
        """Manual submit. Returns None when another trigger already submitted this question."""
        if question_id is not None and self.question is not None and question_id != self.question.id:
            raise InvalidTransition("Question ID mismatch")
        if self.phase is not Phase.AWAITING_ANSWER:
            logger.debug("Ignoring submit for session %s in phase %s", self.session.id, self.phase.value)
            return None
        if self._time_expired():
            pending = self._claim("", "timer")
        else:
            if not (selected_option or "").strip():
                raise InvalidTransition("Select an answer before submitting")
            pending = self._claim(selected_option, "manual")
        try:
            return await self._deliver(pending)
        except StaleResult as exc:
            logger.info("%s", exc)
            return None

    def _time_expired(self) -> bool:
        timed = self.session.timed
        if timed is None or self.time_remaining is None:
            return False
        if self.time_remaining <= 0:
            return True
        # The countdown may not have run yet in the tick where its deadline passed
        deadline = timed.per_question_seconds * self._tick_seconds
        return self._countdown is not None and self._clock() - self._question_started_at >= deadline

    def _claim(self, selected_option: str, trigger: str) -> PendingAnswer:
        # Runs without awaiting, so whichever trigger gets here first owns the submission
        self.phase = Phase.SUBMITTING
        self._stop_countdown()
        if trigger == "timer" and self.session.timed is not None:
            spent = self.session.timed.per_question_seconds
        else:
            spent = int(self._clock() - self._question_started_at)
            if self.session.timed is not None:
                spent = min(spent, self.session.timed.per_question_seconds)
        return PendingAnswer(
            question_id=self.question.id,
            selected_option=selected_option,
            time_spent_seconds=max(0, spent),
            trigger=trigger,
        )

    async def _deliver(self, pending: PendingAnswer) -> AnswerResult:
        generation = self._generation
        try:
            result = await self.client.submit_answer(
                self.session.user_id,
                self.session.id,
                pending.question_id,
                pending.selected_option,
                pending.time_spent_seconds,
            )
        except ServiceUnavailable as exc:
            if generation != self._generation:
                raise StaleResult(f"Dropping failed submission for reset session {self.session.id}") from exc
            # Back to answering, but the countdown stays stopped: spent time is not refunded
            self.phase = Phase.AWAITING_ANSWER
            self.last_error = str(exc)
            raise
        if generation != self._generation or self.phase is not Phase.SUBMITTING:
            raise StaleResult(f"Discarding stale grading for {pending.question_id} in session {self.session.id}")

        try:
            self.store.record_answer(self.session, pending.question_id, result.is_correct)
            progress = result.progress
            if progress is not None:
                self.store.reconcile_server_difficulty(
                    self.session,
                    progress.current_difficulty,
                    consecutive_correct=progress.consecutive_correct,
                    consecutive_incorrect=progress.consecutive_wrong,
                )
        except StorageError as exc:
            # Progress not saved: let the learner submit again rather than moving on
            self.phase = Phase.AWAITING_ANSWER
            self.last_error = str(exc)
            raise
        self.last_result = result
        self.last_error = None
        self.phase = Phase.GRADED
        logger.info(
            "Session %s answered %s (%s, %s) -> %d/%d at %s",
            self.session.id,
            pending.question_id,
            pending.trigger,
            "correct" if result.is_correct else "incorrect",
            self.session.answered_count,
            self.session.target_question_count,
            self.session.current_difficulty.value,
        )
        if not self.session.is_complete:
            self.prefetch.schedule_prefetch(self.session)
        self.refresh_insights()
        return result

    async def _submit_after_timeout(self, pending: PendingAnswer) -> None:
        try:
            await self._deliver(pending)
        except StaleResult as exc:
            logger.info("%s", exc)
        except (ServiceUnavailable, StorageError) as exc:
            logger.warning("Auto-submit for %s failed: %s", pending.question_id, exc)

    # Insights ----------------------------------------------------------
    def refresh_insights(self) -> None:
        """Reload learning insights in the background; single-unit sessions only."""
        if self.session.mode.is_mixed:
            return
        self._stop_insights()
        self._insights_task = asyncio.create_task(self._load_insights(self._generation))

    async def _load_insights(self, generation: int) -> None:
        try:
            insights = await self.client.get_learning_insights(self.session.user_id, self.session.mode.unit_id)
        except ServiceUnavailable as e:
            logger.warning("Failed to load insights for session %s (non-critical): %s", self.session.id, e)
            return
        if generation == self._generation:
            self.insights = insights

    def _stop_insights(self) -> None:
        task, self._insights_task = self._insights_task, None
        if task is not None and not task.done():
            task.cancel()

    # Countdown ----------------------------------------------------------
    def _start_countdown(self) -> None:
        self._stop_countdown()
        if self.session.timed is None:
            self.time_remaining = None
            return
        self.time_remaining = self.session.timed.per_question_seconds
        self._countdown = asyncio.create_task(self._run_countdown(self.question.id))

    def _stop_countdown(self) -> None:
        task, self._countdown = self._countdown, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _run_countdown(self, question_id: str) -> None:
        while self.time_remaining > 0:
            await asyncio.sleep(self._tick_seconds)
            if self.phase is not Phase.AWAITING_ANSWER or self.question is None or self.question.id != question_id:
                return
            self.time_remaining -= 1
        logger.info("Time is up on %s in session %s; auto-submitting", question_id, self.session.id)
        pending = self._claim("", "timer")
        self._background_submission = asyncio.create_task(self._submit_after_timeout(pending))

    # Navigation ---------------------------------------------------------
    def _present(self, question: Question) -> None:
        self.question = question
        self.last_result = None
        self.last_error = None
        self.phase = Phase.AWAITING_ANSWER
        self._question_started_at = self._clock()
        self._start_countdown()

    async def next(self) -> Optional[Question]:
        """Advance after feedback. Returns None once the session has moved to its summary."""
        if self.phase in (Phase.COMPLETE, Phase.CLOSED):
            return None
        if self.phase is not Phase.GRADED:
            raise InvalidTransition(f"Cannot move on while {self.phase.value.lower()}")
        if self.loading:
            return None
        if self.session.is_complete:
            await self.finish()
            return None

        question = self.prefetch.consume_prefetch(self.session)
        if question is None:
            generation = self._generation
            self.loading = True
            try:
                fetched = await self.prefetch.fetch_next(self.session)
            except SessionExhausted as exc:
                logger.info("Question Service exhausted session %s early: %s", self.session.id, exc)
                fetched = None
            except ServiceUnavailable as exc:
                self.last_error = str(exc)
                raise
            finally:
                self.loading = False
            if generation != self._generation:
                return None
            if fetched is not None and fetched.current_difficulty is not None:
                self.store.reconcile_server_difficulty(self.session, fetched.current_difficulty)
            if fetched is None or fetched.question is None:
                await self.finish()
                return None
            question = fetched.question
        self._present(question)
        return question

    async def finish(self) -> SessionSummary:
        """Fetch the summary and drop the stored snapshot. Also ends a session early."""
        if self.summary is not None:
            return self.summary
        try:
            summary = await self.client.end_session(self.session.id)
        except ServiceUnavailable as exc:
            self.last_error = str(exc)
            raise
        self._generation += 1
        self._stop_countdown()
        self.prefetch.close()
        self._stop_insights()
        self._forget_snapshot()
        self.summary = summary
        self.question = None
        self.phase = Phase.COMPLETE
        logger.info(
            "Session %s complete: %d/%d answered, %d correct",
            self.session.id, self.session.answered_count, self.session.target_question_count, self.session.correct_answers,
        )
        return summary

    def reset(self) -> None:
        """Abandon the session: stop everything and forget the snapshot."""
        self.close()
        self._forget_snapshot()
        logger.info("Session %s reset", self.session.id)

    def _forget_snapshot(self) -> None:
        try:
            self.store.clear(self.session)
        except StorageError as exc:
            # A leftover snapshot is resumed or purged later; the session itself is done here
            logger.warning("%s: %s", exc, exc.__cause__)

    def close(self) -> None:
        """Tear down timers and prefetch; late results are discarded, the snapshot is kept."""
        self._generation += 1
        self._stop_countdown()
        self.prefetch.close()
        self._stop_insights()
        if self.phase is not Phase.COMPLETE:
            self.phase = Phase.CLOSED

    def view(self) -> Dict[str, Any]:
        session = self.session
        return {
            "session_id": session.id,
            "phase": self.phase.value,
            "mode": session.mode.kind,
            "unit_id": session.mode.unit_id,
            "target_questions": session.target_question_count,
            "answered": session.answered_count,
            "remaining": session.remaining,
            "correct_answers": session.correct_answers,
            "incorrect_answers": session.incorrect_answers,
            "current_difficulty": session.current_difficulty.value,
            "consecutive_correct": session.consecutive_correct,
            "consecutive_incorrect": session.consecutive_incorrect,
            "seconds_per_question": session.timed.per_question_seconds if session.timed else None,
            "time_remaining": self.time_remaining,
            "question": self.question.model_dump() if self.question else None,
            "last_result": self.last_result.model_dump() if self.last_result else None,
            "summary": self.summary.model_dump() if self.summary else None,
            "insights": self.insights,
            "error": self.last_error,
            "loading": self.loading,
            "prefetch_ready": self.prefetch.ready,
        }


async def launch(
    client: QuestionServiceClient,
    user_id: str,
    mode: SessionMode,
    target_count: int,
    timed: Optional[TimedConfig] = None,
    *,
    session_factory: sessionmaker = SessionLocal,
    tick_seconds: float = 1.0,
    clock: Callable[[], float] = time.monotonic,
) -> PracticeEngine:
    """Resume the stored session for this learner and mode, or start a fresh one."""
    store = SessionStore(client, session_factory)
    key = storage_key(user_id, mode)
    session: Optional[Session]
    try:
        session = store.resume(key)
    except SessionNotFound:
        session = None
    except SessionCorrupt:
        # Already discarded by the store; start over
        session = None

    if session is not None:
        engine = PracticeEngine(client, store, session, tick_seconds=tick_seconds, clock=clock)
        if session.is_complete:
            await engine.finish()
        else:
            await engine.next()
            if engine.phase is Phase.AWAITING_ANSWER:
                engine.refresh_insights()
        return engine

    session, first_question = await store.start(user_id, mode, target_count, timed)
    engine = PracticeEngine(client, store, session, tick_seconds=tick_seconds, clock=clock)
    engine._present(first_question)
    engine.refresh_insights()
    return engine
