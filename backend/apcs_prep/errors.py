"""Failure taxonomy for practice sessions."""
from __future__ import annotations


class PracticeError(Exception):
    """Base class for every practice-session failure."""


class ServiceUnavailable(PracticeError):
    """A Question Service call failed (network error, timeout or non-success status)."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SessionNotFound(PracticeError):
    """No persisted snapshot exists for the requested storage key."""


class SessionCorrupt(PracticeError):
    """A persisted snapshot failed to parse or violates session invariants."""


class StaleResult(PracticeError):
    """A response arrived after the session state it was meant for has moved on."""


class SessionExhausted(PracticeError):
    """The Question Service has no more questions for this session."""


class InvalidTransition(PracticeError, ValueError):
    """An action was requested in a phase that does not allow it."""


class StorageError(PracticeError):
    """Writing the session snapshot failed; in-memory progress was left unchanged."""
