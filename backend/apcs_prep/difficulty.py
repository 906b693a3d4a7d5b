"""Local difficulty prediction from answer streaks.

The Question Service grades answers and owns the authoritative difficulty.
This module mirrors its staircase so the next question can be prepared before
the server response arrives; whatever the server reports afterwards wins.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional


class Difficulty(str, Enum):
    EASY = "EASY"
    MEDIUM = "MEDIUM"
    HARD = "HARD"


LEVELS: List[Difficulty] = [Difficulty.EASY, Difficulty.MEDIUM, Difficulty.HARD]

# Server-side levels beyond the local ladder collapse onto its top rung.
_ALIASES = {"EXPERT": Difficulty.HARD}


@dataclass(frozen=True)
class DifficultyStep:
    difficulty: Difficulty
    consecutive_correct: int
    consecutive_incorrect: int


def parse_difficulty(value: object) -> Optional[Difficulty]:
    """Normalise a difficulty reported by the server, or None if unrecognised."""
    if isinstance(value, Difficulty):
        return value
    if not isinstance(value, str):
        return None
    key = value.strip().upper()
    if key in _ALIASES:
        return _ALIASES[key]
    try:
        return Difficulty(key)
    except ValueError:
        return None


def step_difficulty(
    difficulty: Difficulty,
    consecutive_correct: int,
    consecutive_incorrect: int,
    was_correct: bool,
    *,
    promote_after: int = 3,
    demote_after: int = 2,
) -> DifficultyStep:
    idx = LEVELS.index(difficulty)
    if was_correct:
        consecutive_correct += 1
        consecutive_incorrect = 0
        if consecutive_correct >= promote_after:
            # Increase difficulty or keep at HARD, then reset the streak
            idx = min(idx + 1, len(LEVELS) - 1)
            consecutive_correct = 0
    else:
        consecutive_incorrect += 1
        consecutive_correct = 0
        if consecutive_incorrect >= demote_after:
            # Decrease difficulty or keep at EASY, then reset the streak
            idx = max(idx - 1, 0)
            consecutive_incorrect = 0
    return DifficultyStep(
        difficulty=LEVELS[idx],
        consecutive_correct=consecutive_correct,
        consecutive_incorrect=consecutive_incorrect,
    )
