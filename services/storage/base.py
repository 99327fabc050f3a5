import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from pydantic import ValidationError

from models import Note, QuizHistoryEntry, User

from .clock import MonotonicClock
from .errors import NotInitialized, SerializationError
from .serialization import decode_quiz_payload

logger = logging.getLogger(__name__)


class StorageEngine(ABC):
    """Persistence contract for users, notes and quiz history.

    Every operation is a coroutine. Lookups of absent rows return ``None`` or
    an empty list; updates on an unknown id are silent no-ops. Failures are
    raised as :class:`~services.storage.errors.StorageError` subclasses.
    """

    name = "abstract"

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or MonotonicClock()
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise NotInitialized()

    def _history_entry(self, row: Mapping[str, Any]) -> QuizHistoryEntry:
        """Build an entry from a stored row, confining decode failures to that row."""
        data: Dict[str, Any] = dict(row)
        try:
            data["quiz_data"], data["user_answers"] = decode_quiz_payload(
                data["quiz_data"], data["user_answers"]
            )
            return QuizHistoryEntry.model_validate(data)
        except (SerializationError, ValidationError) as e:
            logger.warning(f"Could not decode quiz history {data.get('id')}: {e}")
            data["quiz_data"], data["user_answers"] = [], {}
            data["decode_error"] = str(e)
        return QuizHistoryEntry.model_validate(data)

    @abstractmethod
    async def init(self) -> "StorageEngine":
        """Prepare the backend; safe to call more than once."""

    async def close(self) -> None:
        self._initialized = False

    # Users

    @abstractmethod
    async def create_user(self, username: str, password: str) -> int:
        ...

    @abstractmethod
    async def get_user_by_username(self, username: str) -> Optional[User]:
        ...

    @abstractmethod
    async def get_user_by_id(self, user_id: int) -> Optional[User]:
        ...

    @abstractmethod
    async def update_user_photo(self, user_id: int, photo_uri: Optional[str]) -> None:
        ...

    @abstractmethod
    async def update_username(self, user_id: int, new_username: str) -> None:
        ...

    @abstractmethod
    async def update_password(self, user_id: int, new_password: str) -> None:
        ...

    # Notes

    @abstractmethod
    async def create_note(self, user_id: int, title: str) -> int:
        ...

    @abstractmethod
    async def get_notes_by_user_id(self, user_id: int) -> List[Note]:
        """Notes of a user, most recently updated first (ties: higher id first)."""

    @abstractmethod
    async def get_note_by_id(self, note_id: int) -> Optional[Note]:
        ...

    @abstractmethod
    async def update_note_title(self, note_id: int, title: str) -> None:
        ...

    @abstractmethod
    async def update_note_content(self, note_id: int, content: str) -> None:
        ...

    @abstractmethod
    async def delete_note(self, note_id: int) -> None:
        """Delete a note together with its quiz history, atomically."""

    # Quiz history

    @abstractmethod
    async def create_quiz_history(
        self,
        note_id: int,
        score: int,
        total_questions: int,
        difficulty: str,
        quiz_type: str,
        quiz_data: Sequence[Mapping[str, Any]],
        user_answers: Mapping[Any, Any],
        timer_duration: int = 0,
    ) -> int:
        ...

    @abstractmethod
    async def get_quiz_history_by_note_id(self, note_id: int) -> List[QuizHistoryEntry]:
        """History of a note, newest first (ties: higher id first), blobs decoded."""

    @abstractmethod
    async def delete_quiz_history_by_note_id(self, note_id: int) -> None:
        ...
