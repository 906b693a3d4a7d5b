import json

import httpx
import pytest
from sqlalchemy.orm import sessionmaker

from apcs_prep import models  # noqa: F401  (registers tables on Base)
from apcs_prep.db import Base, make_engine
from apcs_prep.difficulty import Difficulty, step_difficulty
from apcs_prep.question_client import QuestionServiceClient


BASE_URL = "http://question-service.test/api"


def ok(data):
    return httpx.Response(200, json={"success": True, "data": data})


class FakeQuestionService:
    """In-memory stand-in for the remote Question Service.

    Grades "A" as correct and tracks difficulty with the same staircase as the
    client unless ``forced_difficulty`` says otherwise. ``gates`` holds
    asyncio events that hold a request until the test releases them.
    """

    def __init__(self, bank_size=50):
        self.bank_size = bank_size
        self.served = 0
        self.sessions = 0
        self.difficulty = Difficulty.EASY
        self.consecutive_correct = 0
        self.consecutive_wrong = 0
        self.attempts = 0
        self.correct = 0
        self.forced_difficulty = None
        self.start_question = True
        self.start_error = None
        self.fail = set()
        self.gates = {}
        self.calls = []

    def calls_to(self, name):
        return [payload for call, payload in self.calls if call == name]

    def question(self, difficulty=None):
        self.served += 1
        level = difficulty or self.difficulty
        return {
            "id": f"q{self.served}",
            "difficulty": level.value,
            "questionText": f"Question {self.served}",
            "options": ["A", "B", "C", "D"],
            "unit": {"id": "u1", "name": "Primitive Types"},
        }

    async def __call__(self, request):
        # /api/practice/<name>[/<sessionId>] or /api/progress/insights/<userId>/<unitId>
        name = request.url.path.split("/")[3]
        payload = json.loads(request.content) if request.content else None
        self.calls.append((name, payload))
        gate = self.gates.get(name)
        if gate is not None:
            await gate.wait()
        if name in self.fail:
            return httpx.Response(500, json={"success": False, "message": f"{name} failed"})
        return getattr(self, f"_{name}")(payload)

    def _start(self, payload):
        if self.start_error:
            return httpx.Response(404, json={"success": False, "message": self.start_error})
        self.sessions += 1
        question = self.question() if self.start_question else None
        return ok({
            "sessionId": f"sess-{self.sessions}",
            "question": question,
            "progress": {"currentDifficulty": self.difficulty.value},
        })

    def _next(self, payload):
        if self.served >= self.bank_size:
            return httpx.Response(404, json={"success": False, "message": "No more questions available"})
        requested = Difficulty(payload["currentDifficulty"])
        return ok({"question": self.question(requested), "currentDifficulty": self.difficulty.value})

    def _submit(self, payload):
        is_correct = payload["userAnswer"] == "A"
        step = step_difficulty(self.difficulty, self.consecutive_correct, self.consecutive_wrong, is_correct)
        self.difficulty = self.forced_difficulty or step.difficulty
        self.consecutive_correct = step.consecutive_correct
        self.consecutive_wrong = step.consecutive_incorrect
        self.attempts += 1
        self.correct += int(is_correct)
        return ok({
            "isCorrect": is_correct,
            "correctAnswer": "A",
            "explanation": "A is the only option that compiles.",
            "userAnswer": payload["userAnswer"],
            "progress": {
                "currentDifficulty": self.difficulty.value,
                "consecutiveCorrect": self.consecutive_correct,
                "consecutiveWrong": self.consecutive_wrong,
                "totalAttempts": self.attempts,
                "correctAttempts": self.correct,
            },
        })

    def _insights(self, payload):
        return ok({"masteryLevel": self.correct, "weakTopics": ["Loops"], "attempts": self.attempts})

    def _end(self, payload):
        accuracy = (self.correct / self.attempts * 100) if self.attempts else 0.0
        return ok({
            "summary": {
                "totalQuestions": self.attempts,
                "correctAnswers": self.correct,
                "accuracyRate": accuracy,
                "byDifficulty": {},
                "recommendations": [],
            }
        })


@pytest.fixture
def db_engine():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine, future=True)


@pytest.fixture
def fake_service():
    return FakeQuestionService()


@pytest.fixture
def client(fake_service):
    return QuestionServiceClient(BASE_URL, timeout=5, transport=httpx.MockTransport(fake_service))
