"""
Practice Session Router

HTTP surface for adaptive practice sessions. Each live session is driven by a
PracticeEngine kept in process; progress itself lives in the snapshot table,
so a restarted server resumes the learner where they left off.
"""

from __future__ import annotations
import asyncio
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from ..engine import Phase, PracticeEngine, launch
from ..errors import InvalidTransition, ServiceUnavailable, SessionExhausted, StorageError
from ..question_client import QuestionServiceClient
from ..schemas import SessionMode, TimedConfig
from ..session_store import storage_key
from ..settings import settings


router = APIRouter(prefix="/practice", tags=["practice"])


# ============================================================================
# REQUEST MODELS
# ============================================================================

class StartRequest(BaseModel):
    user_id: str
    unit_id: Optional[str] = None
    mixed: bool = False
    target_questions: Optional[int] = Field(default=None, ge=1, le=100)
    timed: bool = False
    seconds_per_question: Optional[int] = Field(default=None, gt=0)


class SubmitRequest(BaseModel):
    session_id: str
    question_id: str
    selected_option: str = ""


class SessionRequest(BaseModel):
    session_id: str


# ============================================================================
# ENGINE REGISTRY
# ============================================================================

_engines: Dict[str, PracticeEngine] = {}
# One launch at a time per learner and mode, so two starts cannot both miss the registry
_start_locks: Dict[str, asyncio.Lock] = {}


def get_question_client(request: Request) -> QuestionServiceClient:
    return request.app.state.question_client


def _get_engine(session_id: str) -> PracticeEngine:
    engine = _engines.get(session_id)
    if not engine:
        raise HTTPException(status_code=404, detail="Session not found")
    return engine


def _live_engine_for(key: str) -> Optional[PracticeEngine]:
    for engine in _engines.values():
        if engine.storage_key == key:
            return engine
    return None


def _respond(engine: PracticeEngine, **extra: Any) -> Dict[str, Any]:
    view = engine.view()
    if engine.phase in (Phase.COMPLETE, Phase.CLOSED):
        # The summary goes out with this response; nothing is left to drive
        _engines.pop(engine.session.id, None)
    return {**extra, **view}


def _resolve_mode(req: StartRequest) -> SessionMode:
    if req.mixed and req.unit_id:
        raise HTTPException(status_code=400, detail="Choose either a unit or mixed mode, not both")
    if req.mixed:
        return SessionMode.mixed()
    if not req.unit_id:
        raise HTTPException(status_code=400, detail="unit_id is required unless mixed is set")
    return SessionMode.single_unit(req.unit_id)


def close_all() -> None:
    for engine in _engines.values():
        engine.close()
    _engines.clear()
    _start_locks.clear()


# ============================================================================
# ENDPOINTS
# ============================================================================

@router.post("/session/start")
async def start_session(
    req: StartRequest,
    request: Request,
    client: QuestionServiceClient = Depends(get_question_client),
) -> Dict[str, Any]:
    mode = _resolve_mode(req)
    key = storage_key(req.user_id, mode)
    async with _start_locks.setdefault(key, asyncio.Lock()):
        existing = _live_engine_for(key)
        if existing is not None:
            return {"resumed": True, **existing.view()}

        target = req.target_questions or settings.default_target_questions
        timed = None
        if req.timed:
            timed = TimedConfig(per_question_seconds=req.seconds_per_question or settings.default_seconds_per_question)
        try:
            engine = await launch(
                client,
                req.user_id,
                mode,
                target,
                timed,
                session_factory=request.app.state.session_factory,
            )
        except SessionExhausted as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ServiceUnavailable as exc:
            raise HTTPException(status_code=503, detail=f"Failed to start practice session: {exc}") from exc
        except StorageError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        _engines[engine.session.id] = engine
        return _respond(engine, resumed=engine.session.answered_count > 0)


@router.get("/session/state")
async def get_state(session_id: str) -> Dict[str, Any]:
    return _get_engine(session_id).view()


@router.post("/session/submit")
async def submit_answer(req: SubmitRequest) -> Dict[str, Any]:
    engine = _get_engine(req.session_id)
    try:
        result = await engine.submit(req.selected_option, question_id=req.question_id)
    except InvalidTransition as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ServiceUnavailable as exc:
        raise HTTPException(status_code=503, detail=f"Failed to submit your answer: {exc}") from exc
    except StorageError as exc:
        raise HTTPException(status_code=500, detail=f"{exc}; please submit again") from exc
    return {"accepted": result is not None, **engine.view()}


@router.post("/session/next")
async def next_question(req: SessionRequest) -> Dict[str, Any]:
    engine = _get_engine(req.session_id)
    try:
        await engine.next()
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ServiceUnavailable as exc:
        raise HTTPException(status_code=503, detail=f"Failed to load next question: {exc}") from exc
    except StorageError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return _respond(engine)


@router.post("/session/end")
async def end_session(req: SessionRequest) -> Dict[str, Any]:
    engine = _get_engine(req.session_id)
    try:
        await engine.finish()
    except ServiceUnavailable as exc:
        raise HTTPException(status_code=503, detail=f"Failed to load session summary: {exc}") from exc
    return _respond(engine)


@router.post("/session/reset")
async def reset_session(req: SessionRequest) -> Dict[str, Any]:
    engine = _get_engine(req.session_id)
    engine.reset()
    _engines.pop(req.session_id, None)
    return {"ok": True}
