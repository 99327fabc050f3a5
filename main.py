from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException
from typing import Any, Dict, List, Literal, Optional
import os
from dotenv import load_dotenv
import logging
from datetime import datetime, timezone
import time
import uuid
import re
import html

import bleach

from models import Note, QuizHistoryEntry, User
from services.cache_service import CacheService, get_cache_service
from services.llm_service import LLMService, QuizGenerationError, get_llm_service
from services.storage import (
    ConstraintViolation,
    DuplicateKey,
    NotInitialized,
    StorageEngine,
    StorageError,
    create_storage_engine,
)
from services.study_service import (
    average_percentage,
    filter_notes_by_title,
    grade_answers,
    next_untitled_title,
    score_percentage,
    score_quiz,
    validate_credentials,
)


load_dotenv()


import structlog


structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)


log_handlers = [logging.StreamHandler()]
LOG_FILE = os.getenv("LOG_FILE", "autoquiz_api.log")
if LOG_FILE:
    log_handlers.append(logging.FileHandler(LOG_FILE))

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=log_handlers
)

logger = structlog.get_logger(__name__)


import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

SENTRY_DSN = os.getenv("SENTRY_DSN")
if SENTRY_DSN:
    sentry_sdk.init(
        dsn=SENTRY_DSN,
        integrations=[
            FastApiIntegration(),
            LoggingIntegration(
                level=logging.INFO,
                event_level=logging.ERROR
            )
        ],
        traces_sample_rate=1.0,
        environment=os.getenv("ENVIRONMENT", "development"),
        release="autoquiz-backend@1.0.0"
    )
    logger.info("Sentry error monitoring initialized")
else:
    logger.warning("Sentry DSN not configured - error monitoring disabled")


QUIZ_RATE_LIMIT = int(os.getenv("QUIZ_RATE_LIMIT", "20"))
QUIZ_RATE_WINDOW = int(os.getenv("QUIZ_RATE_WINDOW", "3600"))
ACTIVE_QUIZ_TTL = 3600


CONTROL_CHARACTERS = re.compile(r'[\x00-\x1f\x7f-\x9f]')


def normalize_user_text(text: str, max_length: int = 1000) -> str:
    """Trim, cap and drop control characters; the text is otherwise kept as typed"""
    if not text:
        return ""

    if len(text) > max_length:
        text = text[:max_length]

    return CONTROL_CHARACTERS.sub('', text).strip()


def sanitize_user_input(text: str, max_length: int = 1000) -> str:
    """Strip markup from free-text input such as search queries"""
    if not text:
        return ""

    text = bleach.clean(
        text[:max_length],
        tags=[],
        attributes={},
        strip=True
    )

    return normalize_user_text(html.unescape(text), max_length)


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@asynccontextmanager
async def lifespan(app: FastAPI):
    storage = create_storage_engine()
    await storage.init()
    app.state.storage = storage
    logger.info(f"Storage ready using the {storage.name} backend")
    try:
        yield
    finally:
        await storage.close()
        logger.info("Storage closed")


app = FastAPI(
    title="AutoQuiz API",
    description="API for study notes and AI-generated quizzes",
    version="1.0.0",
    lifespan=lifespan,
)


app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:8081", "http://localhost:19006", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_storage(request: Request) -> StorageEngine:
    storage = getattr(request.app.state, "storage", None)
    if storage is None:
        raise NotInitialized()
    return storage


class SignupRequest(BaseModel):
    username: str
    password: str
    confirm_password: str

class LoginRequest(BaseModel):
    username: str
    password: str

class UserResponse(BaseModel):
    id: int
    username: str
    photo_uri: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(id=user.id, username=user.username, photo_uri=user.photo_uri, created_at=user.created_at)

class UpdatePhotoRequest(BaseModel):
    photo_uri: Optional[str] = None

class UpdateUsernameRequest(BaseModel):
    username: str

class UpdatePasswordRequest(BaseModel):
    password: str
    confirm_password: str

class CreateNoteRequest(BaseModel):
    title: Optional[str] = None

class UpdateNoteRequest(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None

class GenerateQuizRequest(BaseModel):
    quantity: int = Field(default=5, ge=3, le=10)
    difficulty: Literal["easy", "medium", "hard"] = "medium"
    quiz_type: Literal["multiple-choice", "true-false"] = "multiple-choice"
    timer_duration: int = Field(default=0, ge=0)

class QuizQuestionView(BaseModel):
    question: str
    options: Optional[List[str]] = None

class GenerateQuizResponse(BaseModel):
    quiz_id: str
    note_id: int
    difficulty: str
    quiz_type: str
    timer_duration: int
    questions: List[QuizQuestionView]

class SubmitQuizRequest(BaseModel):
    answers: Dict[int, str] = Field(default_factory=dict)

class SubmitQuizResponse(BaseModel):
    history_id: int
    note_id: int
    score: int
    total_questions: int
    percentage: int
    results: List[Dict[str, Any]]

class QuizHistoryItem(QuizHistoryEntry):
    percentage: int

class QuizHistoryResponse(BaseModel):
    note_id: int
    average_percentage: int
    entries: List[QuizHistoryItem]


# In-process fallback for quizzes in progress: quiz_id -> {"quiz", "expires_at"}
active_quizzes: Dict[str, Dict[str, Any]] = {}


def _evict_expired_quizzes() -> None:
    now = time.monotonic()
    for quiz_id in [key for key, entry in active_quizzes.items() if entry["expires_at"] <= now]:
        del active_quizzes[quiz_id]


def _store_active_quiz(quiz_id: str, quiz: Dict[str, Any], cache_service: CacheService) -> None:
    """Hold a generated quiz until it is submitted or ACTIVE_QUIZ_TTL elapses."""
    _evict_expired_quizzes()
    active_quizzes[quiz_id] = {"quiz": quiz, "expires_at": time.monotonic() + ACTIVE_QUIZ_TTL}
    cache_service.cache_active_quiz(quiz_id, quiz, ttl=ACTIVE_QUIZ_TTL)


def _get_active_quiz(quiz_id: str, cache_service: CacheService) -> Optional[Dict[str, Any]]:
    """Retrieve a quiz in progress from cache or memory."""
    cached_quiz = cache_service.get_active_quiz(quiz_id)
    if cached_quiz:
        return cached_quiz
    _evict_expired_quizzes()
    entry = active_quizzes.get(quiz_id)
    return entry["quiz"] if entry else None


async def _require_user(storage: StorageEngine, user_id: int) -> User:
    user = await storage.get_user_by_id(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


async def _require_note(storage: StorageEngine, note_id: int) -> Note:
    note = await storage.get_note_by_id(note_id)
    if not note:
        raise HTTPException(status_code=404, detail="Note not found")
    return note


@app.get("/")
async def root():
    return {"message": "AutoQuiz API", "version": "1.0.0"}


@app.post("/api/auth/signup", response_model=UserResponse, status_code=201)
async def signup(request: SignupRequest, storage: StorageEngine = Depends(get_storage)):
    try:
        validate_credentials(request.username, request.password, request.confirm_password)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    username = normalize_user_text(request.username, max_length=100)
    if not username:
        raise HTTPException(status_code=400, detail="Please fill in all fields")
    if await storage.get_user_by_username(username):
        raise HTTPException(status_code=409, detail="Username already exists")

    user_id = await storage.create_user(username, request.password)
    logger.info(f"User {user_id} signed up")
    return UserResponse.from_user(await storage.get_user_by_id(user_id))


@app.post("/api/auth/login", response_model=UserResponse)
async def login(request: LoginRequest, storage: StorageEngine = Depends(get_storage)):
    username = normalize_user_text(request.username, max_length=100)
    if not username or not request.password.strip():
        raise HTTPException(status_code=400, detail="Please enter both username and password")

    user = await storage.get_user_by_username(username)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if user.password != request.password:
        logger.warning(f"Failed login for user {user.id}")
        raise HTTPException(status_code=401, detail="Incorrect password")

    logger.info(f"User {user.id} logged in")
    return UserResponse.from_user(user)


@app.get("/api/users/{user_id}", response_model=UserResponse)
async def get_user(user_id: int, storage: StorageEngine = Depends(get_storage)):
    return UserResponse.from_user(await _require_user(storage, user_id))


@app.put("/api/users/{user_id}/photo", response_model=UserResponse)
async def update_photo(user_id: int, request: UpdatePhotoRequest, storage: StorageEngine = Depends(get_storage)):
    await _require_user(storage, user_id)
    await storage.update_user_photo(user_id, request.photo_uri)
    return UserResponse.from_user(await storage.get_user_by_id(user_id))


@app.put("/api/users/{user_id}/username", response_model=UserResponse)
async def update_username(user_id: int, request: UpdateUsernameRequest, storage: StorageEngine = Depends(get_storage)):
    user = await _require_user(storage, user_id)
    new_username = normalize_user_text(request.username, max_length=100)
    if not new_username:
        raise HTTPException(status_code=400, detail="Username cannot be empty")
    if new_username == user.username:
        return UserResponse.from_user(user)

    existing = await storage.get_user_by_username(new_username)
    if existing and existing.id != user_id:
        raise HTTPException(status_code=409, detail="Username already exists")

    await storage.update_username(user_id, new_username)
    return UserResponse.from_user(await storage.get_user_by_id(user_id))


@app.put("/api/users/{user_id}/password", response_model=UserResponse)
async def update_password(user_id: int, request: UpdatePasswordRequest, storage: StorageEngine = Depends(get_storage)):
    user = await _require_user(storage, user_id)
    try:
        validate_credentials(user.username, request.password, request.confirm_password)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    await storage.update_password(user_id, request.password)
    logger.info(f"Password changed for user {user_id}")
    return UserResponse.from_user(user)


@app.get("/api/users/{user_id}/notes", response_model=List[Note])
async def list_notes(user_id: int, search: Optional[str] = None, storage: StorageEngine = Depends(get_storage)):
    """
    Notes of a user, most recently edited first, optionally filtered by title
    """
    if search:
        search = sanitize_user_input(search, max_length=200)
    notes = await storage.get_notes_by_user_id(user_id)
    return filter_notes_by_title(notes, search)


@app.post("/api/users/{user_id}/notes", response_model=Note, status_code=201)
async def create_note(user_id: int, request: CreateNoteRequest, storage: StorageEngine = Depends(get_storage)):
    await _require_user(storage, user_id)

    title = normalize_user_text(request.title or "", max_length=200)
    if not title:
        title = next_untitled_title(await storage.get_notes_by_user_id(user_id))

    note_id = await storage.create_note(user_id, title)
    return await storage.get_note_by_id(note_id)


@app.get("/api/notes/{note_id}", response_model=Note)
async def get_note(note_id: int, storage: StorageEngine = Depends(get_storage)):
    return await _require_note(storage, note_id)


@app.patch("/api/notes/{note_id}", response_model=Note)
async def update_note(note_id: int, request: UpdateNoteRequest, storage: StorageEngine = Depends(get_storage)):
    await _require_note(storage, note_id)

    if request.title is not None:
        title = normalize_user_text(request.title, max_length=200)
        if not title:
            raise HTTPException(status_code=400, detail="Title cannot be empty")
        await storage.update_note_title(note_id, title)
    if request.content is not None:
        await storage.update_note_content(note_id, request.content)

    return await storage.get_note_by_id(note_id)


@app.delete("/api/notes/{note_id}")
async def delete_note(note_id: int, storage: StorageEngine = Depends(get_storage)):
    await _require_note(storage, note_id)
    await storage.delete_note(note_id)
    return {"deleted": True, "note_id": note_id}


@app.post("/api/notes/{note_id}/quizzes", response_model=GenerateQuizResponse, status_code=201)
async def generate_quiz(
    note_id: int,
    request: GenerateQuizRequest,
    storage: StorageEngine = Depends(get_storage),
    llm_service: LLMService = Depends(get_llm_service),
    cache_service: CacheService = Depends(get_cache_service),
):
    """
    Generate a quiz from a note's content; the quiz stays active until submitted
    """
    note = await _require_note(storage, note_id)
    if not note.content.strip():
        raise HTTPException(status_code=400, detail="Please add content to your note before generating a quiz")

    client_id = f"user:{note.user_id}"
    if not cache_service.increment_rate_limit(client_id, limit=QUIZ_RATE_LIMIT, window=QUIZ_RATE_WINDOW):
        rate_limit_status = cache_service.get_rate_limit_status(client_id, limit=QUIZ_RATE_LIMIT, window=QUIZ_RATE_WINDOW)
        raise HTTPException(
            status_code=429,
            detail=f"Rate limit exceeded. Try again in {rate_limit_status['resets_in']} seconds"
        )

    try:
        quiz_data = await llm_service.generate_quiz(
            content=note.content,
            quantity=request.quantity,
            difficulty=request.difficulty,
            quiz_type=request.quiz_type,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    quiz_id = str(uuid.uuid4())
    quiz = {
        "quiz_id": quiz_id,
        "note_id": note_id,
        "difficulty": request.difficulty,
        "quiz_type": request.quiz_type,
        "timer_duration": request.timer_duration,
        "questions": quiz_data["questions"],
    }
    _store_active_quiz(quiz_id, quiz, cache_service)

    logger.info(f"Quiz {quiz_id} generated for note {note_id}")
    return GenerateQuizResponse(**quiz)


@app.post("/api/quizzes/{quiz_id}/submit", response_model=SubmitQuizResponse)
async def submit_quiz(
    quiz_id: str,
    request: SubmitQuizRequest,
    storage: StorageEngine = Depends(get_storage),
    cache_service: CacheService = Depends(get_cache_service),
):
    """
    Score the answers of an active quiz and record the result in the note's history
    """
    quiz = _get_active_quiz(quiz_id, cache_service)
    if not quiz:
        raise HTTPException(status_code=404, detail="Quiz not found")

    questions = quiz["questions"]
    score = score_quiz(questions, request.answers)
    history_id = await storage.create_quiz_history(
        quiz["note_id"],
        score,
        len(questions),
        quiz["difficulty"],
        quiz["quiz_type"],
        questions,
        request.answers,
        quiz["timer_duration"],
    )

    active_quizzes.pop(quiz_id, None)
    cache_service.clear_active_quiz(quiz_id)

    return SubmitQuizResponse(
        history_id=history_id,
        note_id=quiz["note_id"],
        score=score,
        total_questions=len(questions),
        percentage=score_percentage(score, len(questions)),
        results=grade_answers(questions, request.answers),
    )


@app.get("/api/notes/{note_id}/history", response_model=QuizHistoryResponse)
async def get_history(note_id: int, storage: StorageEngine = Depends(get_storage)):
    history = await storage.get_quiz_history_by_note_id(note_id)
    return QuizHistoryResponse(
        note_id=note_id,
        average_percentage=average_percentage(history),
        entries=[
            QuizHistoryItem(**entry.model_dump(), percentage=score_percentage(entry.score, entry.total_questions))
            for entry in history
        ],
    )


@app.delete("/api/notes/{note_id}/history")
async def clear_history(note_id: int, storage: StorageEngine = Depends(get_storage)):
    await storage.delete_quiz_history_by_note_id(note_id)
    return {"cleared": True, "note_id": note_id}


@app.get("/health")
async def health_check(
    request: Request,
    cache_service: CacheService = Depends(get_cache_service),
):
    """
    Health check endpoint for service monitoring
    """
    storage = getattr(request.app.state, "storage", None)
    storage_status = {
        "backend": storage.name if storage else None,
        "status": "healthy" if storage and storage.is_initialized else "unhealthy",
    }
    db_service = getattr(storage, "db_service", None)
    if db_service is not None:
        storage_status["database"] = db_service.get_connection_info()
        if not await db_service.test_connection():
            storage_status["status"] = "unhealthy"

    cache_stats = cache_service.get_cache_stats()
    healthy = storage_status["status"] == "healthy"

    return {
        "status": "healthy" if healthy and cache_stats.get("status") == "connected" else ("degraded" if healthy else "unhealthy"),
        "timestamp": _utc_timestamp(),
        "services": {
            "storage": storage_status,
            "cache": cache_stats,
            "api": {"status": "healthy"}
        },
        "version": "1.0.0"
    }


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message, "timestamp": _utc_timestamp()}}
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request, exc):
    code = {400: "BAD_REQUEST", 401: "UNAUTHORIZED", 404: "NOT_FOUND", 409: "CONFLICT", 429: "RATE_LIMITED"}.get(exc.status_code, "HTTP_ERROR")
    return _error_response(exc.status_code, code, str(exc.detail))


@app.exception_handler(StorageError)
async def storage_error_handler(request, exc):
    if isinstance(exc, DuplicateKey):
        return _error_response(409, "DUPLICATE_KEY", "Username already exists")
    if isinstance(exc, ConstraintViolation):
        return _error_response(422, "CONSTRAINT_VIOLATION", str(exc))
    if isinstance(exc, NotInitialized):
        return _error_response(503, "NOT_INITIALIZED", str(exc))
    logger.error(f"Storage failure: {exc}")
    return _error_response(500, "STORAGE_ERROR", "Internal storage error")


@app.exception_handler(QuizGenerationError)
async def quiz_generation_error_handler(request, exc):
    return _error_response(502, "QUIZ_GENERATION_FAILED", str(exc))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8002)
