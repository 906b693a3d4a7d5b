"""Pydantic models for practice sessions and Question Service payloads."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .difficulty import Difficulty, parse_difficulty


class WireModel(BaseModel):
    """Question Service payloads are camelCase JSON; unknown fields are kept as-is."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class Question(WireModel):
    """A practice question. The engine only reads ``id`` and ``difficulty``."""

    id: str
    difficulty: Optional[Difficulty] = None
    question_text: Optional[str] = None
    options: Optional[List[str]] = None
    code_snippet: Optional[str] = None
    unit: Optional[Dict[str, Any]] = None
    topic: Optional[Dict[str, Any]] = None

    @field_validator("difficulty", mode="before")
    @classmethod
    def _parse_difficulty(cls, value: Any) -> Optional[Difficulty]:
        return parse_difficulty(value)


class ProgressMetrics(WireModel):
    current_difficulty: Optional[Difficulty] = None
    consecutive_correct: Optional[int] = None
    consecutive_wrong: Optional[int] = None
    total_attempts: Optional[int] = None
    correct_attempts: Optional[int] = None
    mastery_level: Optional[float] = None

    @field_validator("current_difficulty", mode="before")
    @classmethod
    def _parse_difficulty(cls, value: Any) -> Optional[Difficulty]:
        return parse_difficulty(value)


class AnswerResult(WireModel):
    """Grading returned by the Question Service for one submitted answer."""

    is_correct: bool
    correct_answer: Optional[str] = None
    explanation: Optional[str] = None
    user_answer: Optional[str] = None
    progress: Optional[ProgressMetrics] = None


class SessionSummary(WireModel):
    total_questions: int = 0
    correct_answers: int = 0
    accuracy_rate: float = 0.0
    total_duration: Optional[float] = None
    average_time: Optional[float] = None
    by_difficulty: Dict[str, Any] = Field(default_factory=dict)
    by_unit: Dict[str, Any] = Field(default_factory=dict)
    recommendations: List[Any] = Field(default_factory=list)
    responses: List[Dict[str, Any]] = Field(default_factory=list)


class StartedSession(BaseModel):
    session_id: str
    question: Optional[Question] = None
    initial_difficulty: Optional[Difficulty] = None


class NextQuestion(BaseModel):
    question: Optional[Question] = None
    current_difficulty: Optional[Difficulty] = None


class SessionMode(BaseModel):
    kind: Literal["unit", "mixed"]
    unit_id: Optional[str] = None

    @model_validator(mode="after")
    def _check_unit(self) -> "SessionMode":
        if self.kind == "unit" and not self.unit_id:
            raise ValueError("single-unit mode requires a unit_id")
        if self.kind == "mixed" and self.unit_id:
            raise ValueError("mixed mode draws from all units and takes no unit_id")
        return self

    @classmethod
    def single_unit(cls, unit_id: str) -> "SessionMode":
        return cls(kind="unit", unit_id=unit_id)

    @classmethod
    def mixed(cls) -> "SessionMode":
        return cls(kind="mixed")

    @property
    def is_mixed(self) -> bool:
        return self.kind == "mixed"

    @property
    def storage_suffix(self) -> str:
        return "mixed" if self.is_mixed else f"unit:{self.unit_id}"


class TimedConfig(BaseModel):
    per_question_seconds: int = Field(gt=0)


class Session(BaseModel):
    """Resumable state of one practice session.

    ``answered_question_ids`` is kept in answer order and never holds a
    duplicate; the session is complete once it reaches the target length.
    """

    id: str
    user_id: str
    mode: SessionMode
    target_question_count: int = Field(ge=1)
    answered_question_ids: List[str] = Field(default_factory=list)
    current_difficulty: Difficulty = Difficulty.EASY
    consecutive_correct: int = Field(default=0, ge=0)
    consecutive_incorrect: int = Field(default=0, ge=0)
    timed: Optional[TimedConfig] = None
    correct_answers: int = Field(default=0, ge=0)
    incorrect_answers: int = Field(default=0, ge=0)
    started_at: datetime = Field(default_factory=datetime.utcnow)

    @model_validator(mode="after")
    def _check_progress(self) -> "Session":
        if len(self.answered_question_ids) > self.target_question_count:
            raise ValueError("answered count exceeds the session target")
        if len(set(self.answered_question_ids)) != len(self.answered_question_ids):
            raise ValueError("answered question ids contain duplicates")
        return self

    @property
    def answered_count(self) -> int:
        return len(self.answered_question_ids)

    @property
    def is_complete(self) -> bool:
        return self.answered_count >= self.target_question_count

    @property
    def remaining(self) -> int:
        return max(0, self.target_question_count - self.answered_count)


@dataclass
class PendingAnswer:
    """An answer on its way to the Question Service; never persisted."""

    question_id: str
    selected_option: str
    time_spent_seconds: int
    trigger: Literal["manual", "timer"] = "manual"
