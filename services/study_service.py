"""Application-level rules derived from stored entities.

None of this lives in the storage layer: the store only keeps what it is
given, these helpers decide note titles, scores and percentages.
"""

import math
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from models import Note, QuizHistoryEntry

UNTITLED_PREFIX = "Untitled"
UNTITLED_PATTERN = re.compile(r"Untitled (\d+)")
MIN_PASSWORD_LENGTH = 4


def next_untitled_title(notes: Iterable[Note]) -> str:
    """Return "Untitled N" with N one past the highest existing untitled number."""
    numbers = []
    for note in notes:
        if not note.title.startswith(UNTITLED_PREFIX):
            continue
        match = UNTITLED_PATTERN.search(note.title)
        if match and int(match.group(1)) > 0:
            numbers.append(int(match.group(1)))
    return f"{UNTITLED_PREFIX} {max(numbers) + 1 if numbers else 1}"


def filter_notes_by_title(notes: Sequence[Note], query: Optional[str]) -> List[Note]:
    if not query or not query.strip():
        return list(notes)
    needle = query.lower()
    return [note for note in notes if needle in note.title.lower()]


def _is_correct(answer: Optional[str], expected: Any) -> bool:
    return bool(answer) and expected is not None and answer.lower() == str(expected).lower()


def score_quiz(questions: Sequence[Mapping[str, Any]], answers: Mapping[int, Optional[str]]) -> int:
    """Count questions whose answer matches ``correctAnswer``, ignoring case."""
    return sum(
        1 for index, question in enumerate(questions)
        if _is_correct(answers.get(index), question.get("correctAnswer"))
    )


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def score_percentage(score: int, total_questions: int) -> int:
    if total_questions <= 0:
        return 0
    return _round_half_up(score / total_questions * 100)


def average_percentage(history: Sequence[QuizHistoryEntry]) -> int:
    if not history:
        return 0
    total = sum(entry.score / entry.total_questions * 100 for entry in history)
    return _round_half_up(total / len(history))


def grade_answers(questions: Sequence[Mapping[str, Any]], answers: Mapping[int, Optional[str]]) -> List[Dict[str, Any]]:
    """Per-question breakdown shown after a quiz is submitted."""
    results = []
    for index, question in enumerate(questions):
        answer = answers.get(index)
        expected = question.get("correctAnswer")
        results.append({
            "index": index,
            "question": question.get("question"),
            "user_answer": answer,
            "correct_answer": expected,
            "is_correct": _is_correct(answer, expected),
        })
    return results


def validate_credentials(username: str, password: str, confirm_password: Optional[str] = None) -> None:
    """Raise ValueError with a user-facing message when signup/password input is unusable."""
    if not username or not username.strip() or not password or not password.strip():
        raise ValueError("Please fill in all fields")
    if confirm_password is not None and password != confirm_password:
        raise ValueError("Passwords do not match")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
