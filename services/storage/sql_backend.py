import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Callable, List, Mapping, Optional, Sequence

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection

from models import Note, QuizHistoryEntry, User, notes_table, quiz_history_table, users_table
from services.database_service import DatabaseService

from .base import StorageEngine
from .errors import ConstraintViolation, DuplicateKey, StorageError
from .serialization import encode_quiz_payload

logger = logging.getLogger(__name__)


class RelationalBackend(StorageEngine):
    """StorageEngine on SQLite through SQLAlchemy's async engine.

    Cascading deletes and id allocation are left to the database: the schema
    declares ``ON DELETE CASCADE`` foreign keys and ``AUTOINCREMENT`` keys,
    and every connection runs with ``PRAGMA foreign_keys=ON``.
    """

    name = "sqlite"

    def __init__(
        self,
        database_service: Optional[DatabaseService] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        super().__init__(clock)
        self.db_service = database_service or DatabaseService()

    async def init(self) -> "RelationalBackend":
        if self._initialized:
            return self
        try:
            await self.db_service.connect()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to initialize database: {e}") from e
        self._initialized = True
        logger.info(f"Relational storage initialized at {self.db_service.database_url}")
        return self

    async def close(self) -> None:
        await self.db_service.disconnect()
        await super().close()

    @staticmethod
    def _translate_integrity_error(error: IntegrityError) -> StorageError:
        message = str(error.orig)
        if "UNIQUE constraint failed" in message:
            return DuplicateKey(message)
        return ConstraintViolation(message)

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncConnection]:
        self._require_initialized()
        try:
            async with self.db_service.get_engine().begin() as connection:
                yield connection
        except IntegrityError as e:
            logger.warning(f"Constraint rejected write: {e.orig}")
            raise self._translate_integrity_error(e) from e
        except SQLAlchemyError as e:
            logger.error(f"Database operation failed: {e}")
            raise StorageError(str(e)) from e

    # Users

    async def create_user(self, username: str, password: str) -> int:
        self._require_initialized()
        now = self._clock()
        async with self._transaction() as conn:
            result = await conn.execute(
                insert(users_table).values(
                    username=username,
                    password=password,
                    photo_uri=None,
                    created_at=now,
                )
            )
            user_id = result.inserted_primary_key[0]
        logger.info(f"Created user {user_id}")
        return user_id

    async def get_user_by_username(self, username: str) -> Optional[User]:
        async with self._transaction() as conn:
            result = await conn.execute(select(users_table).where(users_table.c.username == username))
            row = result.mappings().first()
        return User.model_validate(dict(row)) if row else None

    async def get_user_by_id(self, user_id: int) -> Optional[User]:
        async with self._transaction() as conn:
            result = await conn.execute(select(users_table).where(users_table.c.id == user_id))
            row = result.mappings().first()
        return User.model_validate(dict(row)) if row else None

    async def _update_user(self, user_id: int, **values: Any) -> None:
        async with self._transaction() as conn:
            await conn.execute(update(users_table).where(users_table.c.id == user_id).values(**values))

    async def update_user_photo(self, user_id: int, photo_uri: Optional[str]) -> None:
        await self._update_user(user_id, photo_uri=photo_uri)

    async def update_username(self, user_id: int, new_username: str) -> None:
        await self._update_user(user_id, username=new_username)

    async def update_password(self, user_id: int, new_password: str) -> None:
        await self._update_user(user_id, password=new_password)

    # Notes

    async def create_note(self, user_id: int, title: str) -> int:
        self._require_initialized()
        now = self._clock()
        async with self._transaction() as conn:
            result = await conn.execute(
                insert(notes_table).values(
                    user_id=user_id,
                    title=title,
                    content="",
                    created_at=now,
                    updated_at=now,
                )
            )
            note_id = result.inserted_primary_key[0]
        logger.info(f"Created note {note_id} for user {user_id}")
        return note_id

    async def get_notes_by_user_id(self, user_id: int) -> List[Note]:
        query = (
            select(notes_table)
            .where(notes_table.c.user_id == user_id)
            .order_by(notes_table.c.updated_at.desc(), notes_table.c.id.desc())
        )
        async with self._transaction() as conn:
            result = await conn.execute(query)
            rows = result.mappings().all()
        return [Note.model_validate(dict(row)) for row in rows]

    async def get_note_by_id(self, note_id: int) -> Optional[Note]:
        async with self._transaction() as conn:
            result = await conn.execute(select(notes_table).where(notes_table.c.id == note_id))
            row = result.mappings().first()
        return Note.model_validate(dict(row)) if row else None

    async def _update_note(self, note_id: int, **values: Any) -> None:
        self._require_initialized()
        now = self._clock()
        async with self._transaction() as conn:
            await conn.execute(
                update(notes_table)
                .where(notes_table.c.id == note_id)
                .values(updated_at=now, **values)
            )

    async def update_note_title(self, note_id: int, title: str) -> None:
        await self._update_note(note_id, title=title)

    async def update_note_content(self, note_id: int, content: str) -> None:
        await self._update_note(note_id, content=content)

    async def delete_note(self, note_id: int) -> None:
        async with self._transaction() as conn:
            result = await conn.execute(delete(notes_table).where(notes_table.c.id == note_id))
        if result.rowcount:
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
        self._require_initialized()
        quiz_data_text, user_answers_text = encode_quiz_payload(quiz_data, user_answers)
        now = self._clock()
        async with self._transaction() as conn:
            result = await conn.execute(
                insert(quiz_history_table).values(
                    note_id=note_id,
                    score=score,
                    total_questions=total_questions,
                    difficulty=difficulty,
                    quiz_type=quiz_type,
                    quiz_data=quiz_data_text,
                    user_answers=user_answers_text,
                    timer_duration=timer_duration,
                    created_at=now,
                )
            )
            history_id = result.inserted_primary_key[0]
        logger.info(f"Recorded quiz history {history_id} for note {note_id}: {score}/{total_questions}")
        return history_id

    async def get_quiz_history_by_note_id(self, note_id: int) -> List[QuizHistoryEntry]:
        query = (
            select(quiz_history_table)
            .where(quiz_history_table.c.note_id == note_id)
            .order_by(quiz_history_table.c.created_at.desc(), quiz_history_table.c.id.desc())
        )
        async with self._transaction() as conn:
            result = await conn.execute(query)
            rows = result.mappings().all()
        return [self._history_entry(row) for row in rows]

    async def delete_quiz_history_by_note_id(self, note_id: int) -> None:
        async with self._transaction() as conn:
            await conn.execute(delete(quiz_history_table).where(quiz_history_table.c.note_id == note_id))
