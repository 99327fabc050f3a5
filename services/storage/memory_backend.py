import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from models import DIFFICULTIES, QUIZ_TYPES, Note, QuizHistoryEntry, User

from .base import StorageEngine
from .errors import ConstraintViolation, DuplicateKey
from .serialization import encode_quiz_payload

logger = logging.getLogger(__name__)

Row = Dict[str, Any]

TABLES = ("users", "notes", "quiz_history")


class InMemoryBackend(StorageEngine):
    """StorageEngine kept in process memory.

    Used where no SQL engine is available. It reproduces RelationalBackend
    exactly: ids come from per-table counters that are never rewound,
    username uniqueness, foreign keys and check constraints are verified
    before every write, ``delete_note`` cascades to quiz history, and list
    results are sorted the way ``ORDER BY ... DESC, id DESC`` sorts them.

    Every operation mutates the collections without awaiting, so no other
    coroutine can observe a half-applied change.
    """

    name = "memory"

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        super().__init__(clock)
        self._tables: Optional[Dict[str, List[Row]]] = None
        self._next_id: Dict[str, int] = {}

    async def init(self) -> "InMemoryBackend":
        if self._tables is None:
            self._tables = {table: [] for table in TABLES}
            self._next_id = {table: 1 for table in TABLES}
            logger.warning("Using in-memory storage; data will not survive a restart")
        self._initialized = True
        return self

    def _table(self, name: str) -> List[Row]:
        self._require_initialized()
        return self._tables[name]

    def _allocate_id(self, table: str) -> int:
        row_id = self._next_id[table]
        self._next_id[table] = row_id + 1
        return row_id

    @staticmethod
    def _find(rows: List[Row], row_id: int) -> Optional[Row]:
        return next((row for row in rows if row["id"] == row_id), None)

    @staticmethod
    def _newest_first(rows: List[Row], timestamp_field: str) -> List[Row]:
        return sorted(rows, key=lambda row: (row[timestamp_field], row["id"]), reverse=True)

    # Constraint checks matching the relational schema

    @staticmethod
    def _check_username(username: Optional[str]) -> None:
        if username is None:
            raise ConstraintViolation("NOT NULL constraint failed: users.username")
        if len(username) == 0:
            raise ConstraintViolation("CHECK constraint failed: ck_users_username_not_empty")

    def _check_username_free(self, username: str, owner_id: Optional[int] = None) -> None:
        for user in self._tables["users"]:
            if user["username"] == username and user["id"] != owner_id:
                raise DuplicateKey("UNIQUE constraint failed: users.username")

    @staticmethod
    def _check_title(title: Optional[str]) -> None:
        if title is None:
            raise ConstraintViolation("NOT NULL constraint failed: notes.title")
        if len(title) == 0:
            raise ConstraintViolation("CHECK constraint failed: ck_notes_title_not_empty")

    @staticmethod
    def _check_history(
        score: Optional[int],
        total_questions: Optional[int],
        difficulty: Optional[str],
        quiz_type: Optional[str],
        timer_duration: Optional[int],
    ) -> None:
        for field, value in (
            ("score", score),
            ("total_questions", total_questions),
            ("difficulty", difficulty),
            ("quiz_type", quiz_type),
            ("timer_duration", timer_duration),
        ):
            if value is None:
                raise ConstraintViolation(f"NOT NULL constraint failed: quiz_history.{field}")
        if total_questions <= 0:
            raise ConstraintViolation("CHECK constraint failed: ck_quiz_history_total_positive")
        if score < 0 or score > total_questions:
            raise ConstraintViolation("CHECK constraint failed: ck_quiz_history_score_range")
        if difficulty not in DIFFICULTIES:
            raise ConstraintViolation("CHECK constraint failed: ck_quiz_history_difficulty")
        if quiz_type not in QUIZ_TYPES:
            raise ConstraintViolation("CHECK constraint failed: ck_quiz_history_quiz_type")
        if timer_duration < 0:
            raise ConstraintViolation("CHECK constraint failed: ck_quiz_history_timer_non_negative")

    # Users

    async def create_user(self, username: str, password: str) -> int:
        users = self._table("users")
        now = self._clock()
        self._check_username(username)
        if password is None:
            raise ConstraintViolation("NOT NULL constraint failed: users.password")
        self._check_username_free(username)

        user_id = self._allocate_id("users")
        users.append({
            "id": user_id,
            "username": username,
            "password": password,
            "photo_uri": None,
            "created_at": now,
        })
        logger.info(f"Created user {user_id}")
        return user_id

    async def get_user_by_username(self, username: str) -> Optional[User]:
        user = next((row for row in self._table("users") if row["username"] == username), None)
        return User.model_validate(dict(user)) if user else None

    async def get_user_by_id(self, user_id: int) -> Optional[User]:
        user = self._find(self._table("users"), user_id)
        return User.model_validate(dict(user)) if user else None

    async def update_user_photo(self, user_id: int, photo_uri: Optional[str]) -> None:
        user = self._find(self._table("users"), user_id)
        if user:
            user["photo_uri"] = photo_uri

    async def update_username(self, user_id: int, new_username: str) -> None:
        user = self._find(self._table("users"), user_id)
        if not user:
            return
        self._check_username(new_username)
        self._check_username_free(new_username, owner_id=user_id)
        user["username"] = new_username

    async def update_password(self, user_id: int, new_password: str) -> None:
        user = self._find(self._table("users"), user_id)
        if not user:
            return
        if new_password is None:
            raise ConstraintViolation("NOT NULL constraint failed: users.password")
        user["password"] = new_password

    # Notes

    async def create_note(self, user_id: int, title: str) -> int:
        notes = self._table("notes")
        now = self._clock()
        self._check_title(title)
        if self._find(self._tables["users"], user_id) is None:
            raise ConstraintViolation("FOREIGN KEY constraint failed")

        note_id = self._allocate_id("notes")
        notes.append({
            "id": note_id,
            "user_id": user_id,
            "title": title,
            "content": "",
            "created_at": now,
            "updated_at": now,
        })
        logger.info(f"Created note {note_id} for user {user_id}")
        return note_id

    async def get_notes_by_user_id(self, user_id: int) -> List[Note]:
        notes = [row for row in self._table("notes") if row["user_id"] == user_id]
        return [Note.model_validate(dict(row)) for row in self._newest_first(notes, "updated_at")]

    async def get_note_by_id(self, note_id: int) -> Optional[Note]:
        note = self._find(self._table("notes"), note_id)
        return Note.model_validate(dict(note)) if note else None

    async def update_note_title(self, note_id: int, title: str) -> None:
        notes = self._table("notes")
        now = self._clock()
        note = self._find(notes, note_id)
        if not note:
            return
        self._check_title(title)
        note["title"] = title
        note["updated_at"] = now

    async def update_note_content(self, note_id: int, content: str) -> None:
        notes = self._table("notes")
        now = self._clock()
        note = self._find(notes, note_id)
        if not note:
            return
        if content is None:
            raise ConstraintViolation("NOT NULL constraint failed: notes.content")
        note["content"] = content
        note["updated_at"] = now

    async def delete_note(self, note_id: int) -> None:
        notes = self._table("notes")
        remaining = [row for row in notes if row["id"] != note_id]
        if len(remaining) == len(notes):
            return
        notes[:] = remaining
        history = self._tables["quiz_history"]
        history[:] = [row for row in history if row["note_id"] != note_id]
        logger.info(f"Deleted note {note_id} and its quiz history")

    # Quiz history

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
        history = self._table("quiz_history")
        quiz_data_text, user_answers_text = encode_quiz_payload(quiz_data, user_answers)
        now = self._clock()
        self._check_history(score, total_questions, difficulty, quiz_type, timer_duration)
        if self._find(self._tables["notes"], note_id) is None:
            raise ConstraintViolation("FOREIGN KEY constraint failed")

        history_id = self._allocate_id("quiz_history")
        history.append({
            "id": history_id,
            "note_id": note_id,
            "score": score,
            "total_questions": total_questions,
            "difficulty": difficulty,
            "quiz_type": quiz_type,
            "quiz_data": quiz_data_text,
            "user_answers": user_answers_text,
            "timer_duration": timer_duration,
            "created_at": now,
        })
        logger.info(f"Recorded quiz history {history_id} for note {note_id}: {score}/{total_questions}")
        return history_id

    async def get_quiz_history_by_note_id(self, note_id: int) -> List[QuizHistoryEntry]:
        entries = [row for row in self._table("quiz_history") if row["note_id"] == note_id]
        return [self._history_entry(row) for row in self._newest_first(entries, "created_at")]

    async def delete_quiz_history_by_note_id(self, note_id: int) -> None:
        history = self._table("quiz_history")
        history[:] = [row for row in history if row["note_id"] != note_id]
