from __future__ import annotations
import logging
import httpx
from pydantic import ValidationError
from typing import Any, Dict, List, Optional
from .difficulty import Difficulty, parse_difficulty
from .errors import ServiceUnavailable, SessionExhausted
from .schemas import AnswerResult, NextQuestion, Question, SessionMode, SessionSummary, StartedSession
from .settings import settings

logger = logging.getLogger(__name__)

# Messages the service uses instead of an empty question when a session has run dry
_EXHAUSTED_MARKERS = ("no more questions", "completed all", "session complete")
# Start failures that mean the bank is empty rather than the service being down
_EMPTY_BANK_MARKERS = ("no approved questions", "no questions available")


def _error_message(r: httpx.Response) -> str:
	try:
		data = r.json()
		if isinstance(data, dict) and data.get("message"):
			return str(data["message"])
	except ValueError:
		pass
	return r.text or f"Question Service returned HTTP {r.status_code}"


class QuestionServiceClient:
	def __init__(
		self,
		base_url: Optional[str] = None,
		*,
		timeout: Optional[float] = None,
		transport: Optional[httpx.AsyncBaseTransport] = None,
	) -> None:
		self.base_url = (base_url or settings.question_service_url).rstrip("/")
		self.timeout = timeout if timeout is not None else settings.request_timeout_seconds
		self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=transport)

	async def start_session(self, user_id: str, mode: SessionMode, target_count: int, *, timed: bool = False) -> StartedSession:
		payload = {
			"userId": user_id,
			"unitId": mode.unit_id,
			"isMixed": mode.is_mixed,
			"targetQuestions": target_count,
			"isTimed": timed,
		}
		try:
			data = await self._post("/practice/start", payload)
		except ServiceUnavailable as err:
			if any(marker in str(err).lower() for marker in _EMPTY_BANK_MARKERS):
				raise SessionExhausted(str(err)) from err
			raise
		session_id = data.get("sessionId") or (data.get("session") or {}).get("id")
		if not session_id:
			raise ServiceUnavailable("Question Service did not return a session id")
		progress = data.get("progress") or {}
		initial = parse_difficulty(progress.get("currentDifficulty") or data.get("recommendedDifficulty"))
		try:
			question = Question.model_validate(data["question"]) if data.get("question") else None
		except ValidationError as err:
			raise ServiceUnavailable(f"Malformed question in start response: {err}") from err
		return StartedSession(session_id=str(session_id), question=question, initial_difficulty=initial)

	async def get_next_question(
		self,
		user_id: str,
		session_id: str,
		mode: SessionMode,
		answered_question_ids: List[str],
		difficulty: Difficulty,
	) -> NextQuestion:
		payload = {
			"userId": user_id,
			"sessionId": session_id,
			"unitId": mode.unit_id,
			"isMixed": mode.is_mixed,
			"answeredQuestionIds": list(answered_question_ids),
			"currentDifficulty": difficulty.value,
		}
		try:
			data = await self._post("/practice/next", payload)
		except ServiceUnavailable as err:
			if any(marker in str(err).lower() for marker in _EXHAUSTED_MARKERS):
				raise SessionExhausted(str(err)) from err
			raise
		try:
			question = Question.model_validate(data["question"]) if data.get("question") else None
		except ValidationError as err:
			raise ServiceUnavailable(f"Malformed question in next response: {err}") from err
		return NextQuestion(question=question, current_difficulty=parse_difficulty(data.get("currentDifficulty")))

	async def submit_answer(
		self,
		user_id: str,
		session_id: str,
		question_id: str,
		user_answer: str,
		time_spent_seconds: int,
	) -> AnswerResult:
		data = await self._post(
			"/practice/submit",
			{
				"userId": user_id,
				"sessionId": session_id,
				"questionId": question_id,
				"userAnswer": user_answer,
				"timeSpent": time_spent_seconds,
			},
		)
		try:
			return AnswerResult.model_validate(data)
		except ValidationError as err:
			raise ServiceUnavailable(f"Malformed grading response: {err}") from err

	async def end_session(self, session_id: str) -> SessionSummary:
		data = await self._post(f"/practice/end/{session_id}", None)
		try:
			return SessionSummary.model_validate(data.get("summary") or data)
		except ValidationError as err:
			raise ServiceUnavailable(f"Malformed session summary: {err}") from err

	async def get_learning_insights(self, user_id: str, unit_id: str) -> Dict[str, Any]:
		# Opaque to the engine; passed through for display next to the question
		return await self._request("GET", f"/progress/insights/{user_id}/{unit_id}")

	async def _post(self, path: str, payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
		return await self._request("POST", path, payload)

	async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
		try:
			r = await self._client.request(method, path, json=payload)
		except httpx.TimeoutException as err:
			raise ServiceUnavailable(f"Question Service timed out after {self.timeout}s ({path})") from err
		except httpx.RequestError as err:
			raise ServiceUnavailable(f"Question Service unreachable ({path}): {err}") from err
		if r.is_error:
			raise ServiceUnavailable(_error_message(r), status_code=r.status_code)
		try:
			body = r.json()
		except ValueError as err:
			raise ServiceUnavailable(f"Unexpected Question Service response: {r.text}") from err
		if not isinstance(body, dict):
			raise ServiceUnavailable(f"Unexpected Question Service response: {r.text}")
		if body.get("success") is False:
			raise ServiceUnavailable(str(body.get("message") or "Question Service reported a failure"))
		data = body.get("data", body)
		if not isinstance(data, dict):
			raise ServiceUnavailable(f"Unexpected Question Service payload: {data!r}")
		logger.debug("Question Service %s ok", path)
		return data

	async def aclose(self) -> None:
		await self._client.aclose()
