"""Database models and entities for the AutoQuiz backend."""

from .db_models import (
    Base,
    NoteRecord,
    QuizHistoryRecord,
    UserRecord,
    notes_table,
    quiz_history_table,
    users_table,
)
from .entities import DIFFICULTIES, QUIZ_TYPES, Note, QuizHistoryEntry, User

__all__ = [
    "Base",
    "UserRecord",
    "NoteRecord",
    "QuizHistoryRecord",
    "users_table",
    "notes_table",
    "quiz_history_table",
    "User",
    "Note",
    "QuizHistoryEntry",
    "DIFFICULTIES",
    "QUIZ_TYPES",
]
