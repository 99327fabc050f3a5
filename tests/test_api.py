import json

import pytest
from fastapi.testclient import TestClient

import main
from main import app
from services.cache_service import CacheService, get_cache_service
from services.llm_service import LLMService, get_llm_service


@pytest.fixture
def chat_model(fake_chat_model, multiple_choice_response):
    return fake_chat_model([multiple_choice_response])


@pytest.fixture
def client(monkeypatch, chat_model, stub_redis):
    monkeypatch.setenv("STORAGE_BACKEND", "memory")
    app.dependency_overrides[get_llm_service] = lambda: LLMService(llm=chat_model, retry_backoff=0)
    app.dependency_overrides[get_cache_service] = lambda: CacheService(client=stub_redis)
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    main.active_quizzes.clear()


def _signup(client, username="alice", password="pw12"):
    response = client.post(
        "/api/auth/signup",
        json={"username": username, "password": password, "confirm_password": password},
    )
    assert response.status_code == 201
    return response.json()


def _note_with_content(client, user_id, content="Mitochondria are the powerhouse of the cell."):
    note = client.post(f"/api/users/{user_id}/notes", json={}).json()
    client.patch(f"/api/notes/{note['id']}", json={"content": content})
    return note


def test_signup_and_login(client):
    user = _signup(client)
    assert user["username"] == "alice"
    assert "password" not in user

    duplicate = client.post(
        "/api/auth/signup", json={"username": "alice", "password": "pw34", "confirm_password": "pw34"}
    )
    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["code"] == "CONFLICT"

    assert client.post("/api/auth/login", json={"username": "alice", "password": "pw12"}).json()["id"] == user["id"]
    assert client.post("/api/auth/login", json={"username": "alice", "password": "nope"}).status_code == 401
    assert client.post("/api/auth/login", json={"username": "Alice", "password": "pw12"}).status_code == 404


def test_signup_validates_credentials(client):
    response = client.post(
        "/api/auth/signup", json={"username": "bob", "password": "pw12", "confirm_password": "pw13"}
    )

    assert response.status_code == 400
    assert response.json()["error"]["message"] == "Passwords do not match"


def test_profile_updates(client):
    user = _signup(client)
    _signup(client, "bob")

    photo = client.put(f"/api/users/{user['id']}/photo", json={"photo_uri": "file:///me.png"})
    assert photo.json()["photo_uri"] == "file:///me.png"

    assert client.put(f"/api/users/{user['id']}/username", json={"username": "bob"}).status_code == 409
    assert client.put(f"/api/users/{user['id']}/username", json={"username": "carol"}).json()["username"] == "carol"

    assert client.put(
        f"/api/users/{user['id']}/password", json={"password": "pw99", "confirm_password": "pw99"}
    ).status_code == 200
    assert client.post("/api/auth/login", json={"username": "carol", "password": "pw99"}).status_code == 200
    assert client.get("/api/users/999").status_code == 404


def test_notes_get_untitled_names_and_search(client):
    user = _signup(client)

    first = client.post(f"/api/users/{user['id']}/notes", json={}).json()
    second = client.post(f"/api/users/{user['id']}/notes", json={"title": "  "}).json()
    client.post(f"/api/users/{user['id']}/notes", json={"title": "Cell Biology"})

    assert (first["title"], second["title"]) == ("Untitled 1", "Untitled 2")
    assert first["content"] == ""

    titles = [note["title"] for note in client.get(f"/api/users/{user['id']}/notes").json()]
    assert titles == ["Cell Biology", "Untitled 2", "Untitled 1"]

    found = client.get(f"/api/users/{user['id']}/notes", params={"search": "biology"}).json()
    assert [note["title"] for note in found] == ["Cell Biology"]

    updated = client.patch(f"/api/notes/{first['id']}", json={"title": "Genetics", "content": "DNA"}).json()
    assert (updated["title"], updated["content"]) == ("Genetics", "DNA")
    assert client.patch(f"/api/notes/{first['id']}", json={"title": ""}).status_code == 400
    assert client.get("/api/notes/999").status_code == 404


def test_generate_submit_and_history(client, multiple_choice_questions):
    user = _signup(client)
    note = _note_with_content(client, user["id"])

    generated = client.post(
        f"/api/notes/{note['id']}/quizzes",
        json={"quantity": 5, "difficulty": "hard", "quiz_type": "multiple-choice", "timer_duration": 300},
    )
    assert generated.status_code == 201
    quiz = generated.json()
    assert len(quiz["questions"]) == 5
    assert all("correctAnswer" not in question for question in quiz["questions"])

    submitted = client.post(f"/api/quizzes/{quiz['quiz_id']}/submit", json={"answers": {"0": "a", "1": "B", "2": "A"}})
    assert submitted.status_code == 200
    result = submitted.json()
    assert (result["score"], result["total_questions"], result["percentage"]) == (2, 5, 40)
    assert [r["is_correct"] for r in result["results"]] == [True, True, False, False, False]

    assert client.post(f"/api/quizzes/{quiz['quiz_id']}/submit", json={"answers": {}}).status_code == 404

    history = client.get(f"/api/notes/{note['id']}/history").json()
    assert history["average_percentage"] == 40
    [entry] = history["entries"]
    assert entry["id"] == result["history_id"]
    assert (entry["difficulty"], entry["quiz_type"], entry["timer_duration"]) == ("hard", "multiple-choice", 300)
    assert entry["quiz_data"] == multiple_choice_questions
    assert entry["user_answers"] == {"0": "a", "1": "B", "2": "A"}
    assert entry["percentage"] == 40


def test_deleting_a_note_removes_its_history(client):
    user = _signup(client)
    note = _note_with_content(client, user["id"])
    quiz = client.post(f"/api/notes/{note['id']}/quizzes", json={}).json()
    client.post(f"/api/quizzes/{quiz['quiz_id']}/submit", json={"answers": {}})

    assert client.delete(f"/api/notes/{note['id']}").json() == {"deleted": True, "note_id": note["id"]}
    assert client.get(f"/api/notes/{note['id']}").status_code == 404
    assert client.get(f"/api/notes/{note['id']}/history").json()["entries"] == []


def test_clearing_history(client):
    user = _signup(client)
    note = _note_with_content(client, user["id"])
    for _ in range(2):
        quiz = client.post(f"/api/notes/{note['id']}/quizzes", json={}).json()
        client.post(f"/api/quizzes/{quiz['quiz_id']}/submit", json={"answers": {"0": "A"}})

    assert len(client.get(f"/api/notes/{note['id']}/history").json()["entries"]) == 2
    assert client.delete(f"/api/notes/{note['id']}/history").json()["cleared"] is True
    assert client.get(f"/api/notes/{note['id']}/history").json() == {
        "note_id": note["id"], "average_percentage": 0, "entries": []
    }


def test_quiz_needs_note_content(client, chat_model):
    user = _signup(client)
    note = client.post(f"/api/users/{user['id']}/notes", json={}).json()

    response = client.post(f"/api/notes/{note['id']}/quizzes", json={})

    assert response.status_code == 400
    assert chat_model.prompts == []


def test_quiz_request_is_validated(client):
    user = _signup(client)
    note = _note_with_content(client, user["id"])

    assert client.post(f"/api/notes/{note['id']}/quizzes", json={"quantity": 11}).status_code == 422
    assert client.post(f"/api/notes/{note['id']}/quizzes", json={"difficulty": "extreme"}).status_code == 422


def test_quiz_generation_is_rate_limited(client, monkeypatch):
    monkeypatch.setattr(main, "QUIZ_RATE_LIMIT", 1)
    user = _signup(client)
    note = _note_with_content(client, user["id"])

    assert client.post(f"/api/notes/{note['id']}/quizzes", json={}).status_code == 201
    limited = client.post(f"/api/notes/{note['id']}/quizzes", json={})
    assert limited.status_code == 429
    assert limited.json()["error"]["code"] == "RATE_LIMITED"


def test_failed_generation_records_nothing(client, chat_model):
    chat_model.responses = [json.dumps({"questions": []})]
    user = _signup(client)
    note = _note_with_content(client, user["id"])

    response = client.post(f"/api/notes/{note['id']}/quizzes", json={})

    assert response.status_code == 502
    assert response.json()["error"]["message"] == "Failed to generate quiz. Please try again."
    assert len(chat_model.prompts) == 3
    assert client.get(f"/api/notes/{note['id']}/history").json()["entries"] == []


def test_health_reports_backend(client):
    body = client.get("/health").json()

    assert body["status"] == "healthy"
    assert body["services"]["storage"] == {"backend": "memory", "status": "healthy"}
    assert body["services"]["cache"]["status"] == "connected"


def test_names_and_titles_are_stored_as_typed(client):
    user = _signup(client, "tom&jerry <3")
    assert user["username"] == "tom&jerry <3"

    login = client.post("/api/auth/login", json={"username": "tom&jerry <3", "password": "pw12"})
    assert login.status_code == 200
    assert login.json()["id"] == user["id"]

    note = client.post(f"/api/users/{user['id']}/notes", json={"title": "Q&A: cells < atoms"}).json()
    assert note["title"] == "Q&A: cells < atoms"
    assert client.get(f"/api/notes/{note['id']}").json()["title"] == "Q&A: cells < atoms"

    renamed = client.patch(f"/api/notes/{note['id']}", json={"title": "  R&D\x00 notes  "}).json()
    assert renamed["title"] == "R&D notes"

    found = client.get(f"/api/users/{user['id']}/notes", params={"search": "<b>r&d</b>"}).json()
    assert [n["id"] for n in found] == [note["id"]]


@pytest.fixture
def offline_cache(stub_redis):
    cache = CacheService(client=stub_redis)
    cache.redis_client = None
    app.dependency_overrides[get_cache_service] = lambda: cache
    return cache


def test_quizzes_are_held_in_process_when_redis_is_down(client, offline_cache):
    user = _signup(client)
    note = _note_with_content(client, user["id"])

    quiz = client.post(f"/api/notes/{note['id']}/quizzes", json={}).json()
    assert quiz["quiz_id"] in main.active_quizzes

    submitted = client.post(f"/api/quizzes/{quiz['quiz_id']}/submit", json={"answers": {"0": "A"}})
    assert submitted.status_code == 200
    assert main.active_quizzes == {}


def test_unsubmitted_quizzes_expire_from_process_memory(client, offline_cache, monkeypatch):
    monkeypatch.setattr(main, "ACTIVE_QUIZ_TTL", 0)
    user = _signup(client)
    note = _note_with_content(client, user["id"])

    first = client.post(f"/api/notes/{note['id']}/quizzes", json={}).json()
    second = client.post(f"/api/notes/{note['id']}/quizzes", json={}).json()

    assert first["quiz_id"] not in main.active_quizzes
    assert client.post(f"/api/quizzes/{second['quiz_id']}/submit", json={"answers": {}}).status_code == 404
    assert main.active_quizzes == {}


@pytest.fixture
def sqlite_client(monkeypatch, tmp_path, stub_redis):
    monkeypatch.setenv("STORAGE_BACKEND", "sqlite")
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'api.db'}")
    app.dependency_overrides[get_cache_service] = lambda: CacheService(client=stub_redis)
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_health_probes_the_database(sqlite_client, monkeypatch):
    body = sqlite_client.get("/health").json()
    assert body["status"] == "healthy"
    assert body["services"]["storage"]["backend"] == "sqlite"
    assert body["services"]["storage"]["database"]["status"] == "connected"

    async def unreachable():
        return False

    monkeypatch.setattr(sqlite_client.app.state.storage.db_service, "test_connection", unreachable)
    body = sqlite_client.get("/health").json()
    assert body["status"] == "unhealthy"
    assert body["services"]["storage"]["status"] == "unhealthy"
