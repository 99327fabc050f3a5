import json
import os
from datetime import datetime, timedelta

import pytest

os.environ.setdefault("LOG_FILE", "")

from services.database_service import DatabaseService
from services.storage import InMemoryBackend, RelationalBackend
from services.storage.clock import MonotonicClock

BACKENDS = ["sqlite", "memory"]


class SteppingClock:
    """Deterministic timestamp source: each call is ``step`` later than the previous one."""

    def __init__(self, start=datetime(2025, 1, 1, 12, 0, 0), step=timedelta(seconds=1)):
        self.current = start
        self.step = step

    def __call__(self):
        value = self.current
        self.current = self.current + self.step
        return value


class StubRedis:
    """Dictionary stand-in for the handful of redis commands CacheService uses."""

    def __init__(self):
        self.store = {}
        self.expiry = {}

    def ping(self):
        return True

    def setex(self, key, ttl, value):
        self.store[key] = value
        self.expiry[key] = ttl
        return True

    def get(self, key):
        return self.store.get(key)

    def delete(self, *keys):
        return sum(1 for key in keys if self.store.pop(key, None) is not None)

    def incr(self, key):
        value = int(self.store.get(key, 0)) + 1
        self.store[key] = str(value)
        return value

    def expire(self, key, seconds):
        self.expiry[key] = seconds
        return True

    def ttl(self, key):
        return self.expiry.get(key, -2)

    def info(self):
        return {"used_memory_human": "1.00K", "connected_clients": 1}

    def dbsize(self):
        return len(self.store)


class FakeChatModel:
    """Replays canned responses; the last one repeats. Exceptions are raised."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.prompts = []

    async def ainvoke(self, prompt):
        self.prompts.append(prompt)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def make_backend(kind, tmp_path, clock=None):
    if kind == "sqlite":
        database_url = f"sqlite+aiosqlite:///{tmp_path / 'autoquiz.db'}"
        return RelationalBackend(DatabaseService(database_url=database_url), clock=clock)
    return InMemoryBackend(clock=clock)


@pytest.fixture(params=BACKENDS)
async def storage(request, tmp_path):
    backend = make_backend(request.param, tmp_path)
    await backend.init()
    yield backend
    await backend.close()


@pytest.fixture(params=BACKENDS)
async def stepped_storage(request, tmp_path):
    backend = make_backend(request.param, tmp_path, clock=SteppingClock())
    await backend.init()
    yield backend
    await backend.close()


@pytest.fixture(params=BACKENDS)
async def frozen_storage(request, tmp_path):
    """Backend whose clock never advances, so every timestamp ties."""
    frozen = datetime(2025, 1, 1, 12, 0, 0)
    backend = make_backend(request.param, tmp_path, clock=MonotonicClock(source=lambda: frozen))
    await backend.init()
    yield backend
    await backend.close()


@pytest.fixture
def backend_factory(tmp_path):
    return lambda kind, clock=None, directory=None: make_backend(kind, directory or tmp_path, clock)


@pytest.fixture
def stepping_clock_factory():
    return SteppingClock


@pytest.fixture
def stub_redis():
    return StubRedis()


@pytest.fixture
def fake_chat_model():
    return FakeChatModel


@pytest.fixture
def multiple_choice_questions():
    return [
        {
            "question": f"Question {i + 1}?",
            "options": [f"Option {letter}{i + 1}" for letter in "ABCD"],
            "correctAnswer": "ABCD"[i % 4],
        }
        for i in range(5)
    ]


@pytest.fixture
def multiple_choice_response(multiple_choice_questions):
    return "```json\n" + json.dumps({"questions": multiple_choice_questions}) + "\n```"
