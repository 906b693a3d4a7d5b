import asyncio

import pytest

from apcs_prep.difficulty import Difficulty
from apcs_prep.prefetch import PrefetchCoordinator
from apcs_prep.schemas import Session, SessionMode
from apcs_prep.session_store import SessionStore


@pytest.fixture
def store(client, session_factory):
    return SessionStore(client, session_factory)


def make_session(answered=("x1",), target=10, difficulty=Difficulty.EASY):
    return Session(
        id="sess-1",
        user_id="learner-1",
        mode=SessionMode.single_unit("u1"),
        target_question_count=target,
        answered_question_ids=list(answered),
        current_difficulty=difficulty,
    )


def test_prefetched_question_is_used_when_state_matches(client, store, fake_service):
    async def scenario():
        session = make_session()
        coordinator = PrefetchCoordinator(client, store)
        coordinator.schedule_prefetch(session)
        await coordinator.slot.task
        assert coordinator.ready
        return coordinator.consume_prefetch(session), coordinator

    question, coordinator = asyncio.run(scenario())
    assert question.id == "q1"
    assert coordinator.slot is None
    request = fake_service.calls_to("next")[0]
    assert request["answeredQuestionIds"] == ["x1"]
    assert request["currentDifficulty"] == "EASY"


def test_difficulty_change_makes_prefetch_stale(client, store):
    async def scenario():
        session = make_session()
        coordinator = PrefetchCoordinator(client, store)
        coordinator.schedule_prefetch(session)
        await coordinator.slot.task
        session.current_difficulty = Difficulty.MEDIUM
        return coordinator.consume_prefetch(session)

    assert asyncio.run(scenario()) is None


def test_answer_count_change_makes_prefetch_stale(client, store):
    async def scenario():
        session = make_session()
        coordinator = PrefetchCoordinator(client, store)
        coordinator.schedule_prefetch(session)
        await coordinator.slot.task
        session.answered_question_ids.append("x2")
        return coordinator.consume_prefetch(session)

    assert asyncio.run(scenario()) is None


def test_server_correction_invalidates_prefetch(client, store):
    async def scenario():
        session = make_session()
        store._persist(session)
        coordinator = PrefetchCoordinator(client, store)
        coordinator.schedule_prefetch(session)
        await coordinator.slot.task
        store.reconcile_server_difficulty(session, Difficulty.HARD)
        return coordinator

    coordinator = asyncio.run(scenario())
    assert coordinator.slot is None
    assert not coordinator.ready


def test_rescheduling_cancels_the_previous_request(client, store, fake_service):
    async def scenario():
        gate = asyncio.Event()
        fake_service.gates["next"] = gate
        session = make_session()
        coordinator = PrefetchCoordinator(client, store)
        coordinator.schedule_prefetch(session)
        first = coordinator.slot.task
        await asyncio.sleep(0)
        session.answered_question_ids.append("x2")
        coordinator.schedule_prefetch(session)
        second = coordinator.slot.task
        gate.set()
        await asyncio.gather(first, return_exceptions=True)
        await second
        return first, coordinator.consume_prefetch(session)

    first, question = asyncio.run(scenario())
    assert first.cancelled()
    assert question is not None
    assert fake_service.calls_to("next")[-1]["answeredQuestionIds"] == ["x1", "x2"]


def test_prefetch_failure_is_silent(client, store, fake_service):
    fake_service.fail.add("next")

    async def scenario():
        session = make_session()
        coordinator = PrefetchCoordinator(client, store)
        coordinator.schedule_prefetch(session)
        await coordinator.slot.task
        return coordinator.ready, coordinator.consume_prefetch(session)

    ready, question = asyncio.run(scenario())
    assert ready is False
    assert question is None


def test_no_prefetch_for_the_last_question(client, store, fake_service):
    async def scenario():
        session = make_session(answered=("x1", "x2"), target=3)
        coordinator = PrefetchCoordinator(client, store)
        coordinator.schedule_prefetch(session)
        return coordinator

    coordinator = asyncio.run(scenario())
    assert coordinator.slot is None
    assert fake_service.calls_to("next") == []


def test_direct_fetch_supersedes_in_flight_prefetch(client, store, fake_service):
    async def scenario():
        gate = asyncio.Event()
        fake_service.gates["next"] = gate
        session = make_session()
        coordinator = PrefetchCoordinator(client, store)
        coordinator.schedule_prefetch(session)
        speculative = coordinator.slot.task
        await asyncio.sleep(0)
        fetch = asyncio.create_task(coordinator.fetch_next(session))
        await asyncio.sleep(0)
        gate.set()
        result = await fetch
        await asyncio.gather(speculative, return_exceptions=True)
        return speculative, result, coordinator

    speculative, result, coordinator = asyncio.run(scenario())
    assert speculative.cancelled()
    assert result.question is not None
    assert not coordinator.in_flight
