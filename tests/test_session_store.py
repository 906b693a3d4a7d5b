import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from apcs_prep.difficulty import Difficulty
from apcs_prep.errors import SessionCorrupt, SessionExhausted, SessionNotFound, StorageError
from apcs_prep.models import SessionSnapshot
from apcs_prep.schemas import SessionMode
from apcs_prep.session_store import SessionStore, storage_key


UNIT = SessionMode.single_unit("u1")


@pytest.fixture
def store(client, session_factory):
    return SessionStore(client, session_factory)


def start(store, target=5, mode=UNIT):
    return asyncio.run(store.start("learner-1", mode, target))


def test_start_persists_a_resumable_snapshot(store, fake_service):
    session, question = start(store)
    assert question.id == "q1"
    assert session.id == "sess-1"
    assert session.current_difficulty is Difficulty.EASY
    assert fake_service.calls_to("start")[0]["targetQuestions"] == 5

    resumed = store.resume(storage_key("learner-1", UNIT))
    assert resumed == session


def test_start_without_questions_raises(store, fake_service):
    fake_service.start_question = False
    with pytest.raises(SessionExhausted):
        start(store)


def test_record_answer_is_idempotent(store):
    session, _ = start(store)
    store.record_answer(session, "q1", True)
    store.record_answer(session, "q1", True)
    assert session.answered_question_ids == ["q1"]
    assert session.correct_answers == 1
    assert session.consecutive_correct == 1


def test_record_answer_ignored_once_complete(store):
    session, _ = start(store, target=1)
    store.record_answer(session, "q1", False)
    store.record_answer(session, "q2", True)
    assert session.answered_count == 1
    assert session.is_complete
    assert session.correct_answers == 0


def test_difficulty_change_survives_restart(store, client, session_factory):
    session, _ = start(store)
    for qid in ("q1", "q2", "q3"):
        store.record_answer(session, qid, True)
    assert session.current_difficulty is Difficulty.MEDIUM

    fresh = SessionStore(client, session_factory)
    resumed = fresh.resume(storage_key("learner-1", UNIT))
    assert resumed.current_difficulty is Difficulty.MEDIUM
    assert resumed.answered_question_ids == ["q1", "q2", "q3"]
    assert resumed.consecutive_correct == 0


def test_reconcile_notifies_only_on_misprediction(store):
    session, _ = start(store)
    fired = []
    store.add_invalidation_listener(lambda: fired.append(True))

    assert store.reconcile_server_difficulty(session, Difficulty.EASY) is False
    assert fired == []

    assert store.reconcile_server_difficulty(session, Difficulty.HARD, consecutive_correct=0) is True
    assert fired == [True]
    assert store.resume(storage_key("learner-1", UNIT)).current_difficulty is Difficulty.HARD


def test_unparseable_snapshot_is_discarded(store, session_factory):
    key = storage_key("learner-1", UNIT)
    with session_factory() as db:
        db.add(SessionSnapshot(storage_key=key, user_id="learner-1", session_id="x", payload_json="{not json"))
        db.commit()

    with pytest.raises(SessionCorrupt):
        store.resume(key)
    with pytest.raises(SessionNotFound):
        store.resume(key)


def test_snapshot_violating_progress_rules_is_corrupt(store, session_factory):
    key = storage_key("learner-1", UNIT)
    payload = (
        '{"id": "sess-9", "user_id": "learner-1", "mode": {"kind": "unit", "unit_id": "u1"},'
        ' "target_question_count": 1, "answered_question_ids": ["q1", "q2"]}'
    )
    with session_factory() as db:
        db.add(SessionSnapshot(storage_key=key, user_id="learner-1", session_id="sess-9", payload_json=payload))
        db.commit()

    with pytest.raises(SessionCorrupt):
        store.resume(key)


def test_modes_are_stored_separately(store):
    unit_session, _ = start(store, mode=UNIT)
    mixed_session, _ = start(store, mode=SessionMode.mixed())
    assert store.resume(storage_key("learner-1", UNIT)).id == unit_session.id
    assert store.resume(storage_key("learner-1", SessionMode.mixed())).id == mixed_session.id


def test_clear_leaves_a_newer_session_alone(store):
    old, _ = start(store)
    new, _ = start(store)
    store.clear(old)
    assert store.resume(storage_key("learner-1", UNIT)).id == new.id
    store.clear(new)
    with pytest.raises(SessionNotFound):
        store.resume(storage_key("learner-1", UNIT))


def test_failed_write_leaves_progress_untouched(store, session_factory):
    session, _ = start(store)

    def broken_factory():
        raise OperationalError("UPDATE practice_session_snapshots", {}, Exception("database is locked"))

    store._session_factory = broken_factory
    with pytest.raises(StorageError):
        store.record_answer(session, "q1", True)
    with pytest.raises(StorageError):
        store.reconcile_server_difficulty(session, Difficulty.HARD)
    assert session.answered_question_ids == []
    assert session.correct_answers == 0
    assert session.consecutive_correct == 0
    assert session.current_difficulty is Difficulty.EASY

    store._session_factory = session_factory
    store.record_answer(session, "q1", True)
    assert store.resume(storage_key("learner-1", UNIT)).answered_question_ids == ["q1"]
