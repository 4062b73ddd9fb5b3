"""Shared fixtures: an in-memory database per test and a scripted AI client."""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from lingo.db import Base, get_db
from lingo.gemini_client import extract_json_object, get_ai_client
from lingo.main import app
from lingo.routers.speaking import evaluation_guard
from lingo.settings import settings


class FakeAI:
    """Stands in for GeminiClient. Scripted JSON answers are consumed in order.

    A scripted string is treated as raw model text and parsed the way the real
    client parses it.
    """

    def __init__(self):
        self.json_responses = []
        self.text_responses = []
        self.fail = False
        self.prompts = []

    async def generate(self, prompt, **kwargs):
        self.prompts.append(prompt)
        if self.fail:
            raise RuntimeError("AI unavailable")
        if self.text_responses:
            return self.text_responses.pop(0)
        return "That sounds great. What else can you tell me?"

    async def generate_json(self, prompt):
        self.prompts.append(prompt)
        if self.fail:
            raise RuntimeError("AI unavailable")
        if not self.json_responses:
            raise ValueError("no scripted response")
        response = self.json_responses.pop(0)
        if isinstance(response, str):
            return extract_json_object(response)
        return response


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine):
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSession()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def fake_ai():
    return FakeAI()


@pytest.fixture
def client(engine, fake_ai, monkeypatch):
    """TestClient wired to the per-test database and the fake AI client."""
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    def _get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    monkeypatch.setattr(settings, "save_retry_backoff_seconds", 0.0)
    monkeypatch.setattr(settings, "admin_usernames", "admin")
    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_ai_client] = lambda: fake_ai
    evaluation_guard.clear()
    yield TestClient(app)
    app.dependency_overrides.clear()
    evaluation_guard.clear()


@pytest.fixture
def no_ai(client):
    """Simulate a deployment without an AI provider."""
    app.dependency_overrides[get_ai_client] = lambda: None
    return client


def register(client, username, password="secret123", email=None):
    response = client.post(
        "/auth/register",
        json={"username": username, "password": password, "email": email or f"{username}@example.com"},
    )
    assert response.status_code == 201, response.text


def login(client, username, password="secret123", user_agent="pytest"):
    response = client.post(
        "/auth/token",
        data={"username": username, "password": password},
        headers={"User-Agent": user_agent},
    )
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


@pytest.fixture
def auth_headers(client):
    register(client, "alice")
    return login(client, "alice")


@pytest.fixture
def other_headers(client):
    register(client, "bob")
    return login(client, "bob")


@pytest.fixture
def admin_headers(client):
    register(client, "admin")
    return login(client, "admin")


@pytest.fixture
def make_user(client):
    def _make(username, password="secret123"):
        register(client, username, password)
        return login(client, username, password)

    return _make
