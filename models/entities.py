"""Entities returned by every storage backend."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

DIFFICULTIES = ("easy", "medium", "hard")
QUIZ_TYPES = ("multiple-choice", "true-false")


class User(BaseModel):
    id: int
    username: str
    password: str
    photo_uri: Optional[str] = None
    created_at: datetime


class Note(BaseModel):
    id: int
    user_id: int
    title: str
    content: str = ""
    created_at: datetime
    updated_at: datetime


class QuizHistoryEntry(BaseModel):
    id: int
    note_id: int
    score: int
    total_questions: int
    difficulty: str
    quiz_type: str
    quiz_data: List[Dict[str, Any]] = Field(default_factory=list)
    user_answers: Dict[int, str] = Field(default_factory=dict)
    timer_duration: int = 0
    created_at: datetime
    decode_error: Optional[str] = Field(
        default=None,
        description="Set when the stored quiz_data/user_answers could not be decoded",
    )
