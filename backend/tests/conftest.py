"""Shared test fixtures and configuration for backend tests."""
from typing import Any, List

import pytest
from fastapi.testclient import TestClient

from app.chat.runtime import build_runtime, set_runtime
from app.config import AppConfig
from app.main import app
from app.store.service import ChatStore

TEST_SECRET = "test-secret-key"


class FakeConnection:
    """Stand-in for a WebSocket that records every frame sent to it."""

    def __init__(self, fail: bool = False) -> None:
        self.sent: List[dict] = []
        self.fail = fail

    async def send_json(self, data: Any) -> None:
        if self.fail:
            raise RuntimeError("connection closed")
        self.sent.append(data)

    def events(self, name: str) -> List[Any]:
        return [frame["data"] for frame in self.sent if frame["event"] == name]


@pytest.fixture
def config():
    cfg = AppConfig()
    cfg.database.path = ":memory:"
    cfg.secrets.jwt.secret_key = TEST_SECRET
    return cfg


@pytest.fixture
def store():
    """In-memory store, closed after the test."""
    store = ChatStore(db_path=":memory:")
    yield store
    store.close()


@pytest.fixture
def runtime(config, store):
    """A fresh runtime installed as the process runtime for one test."""
    rt = build_runtime(config, store=store)
    set_runtime(rt)
    yield rt
    set_runtime(None)


@pytest.fixture
def alice(store):
    return store.create_user("Alice", "alice")


@pytest.fixture
def bob(store):
    return store.create_user("Bob", "bob")


@pytest.fixture
def carol(store):
    return store.create_user("Carol", "carol")


@pytest.fixture
def token_for(runtime):
    """Issue a bearer token for a user."""
    return lambda user: runtime.tokens.issue(user.id)


@pytest.fixture
def headers_for(token_for):
    return lambda user: {"Authorization": f"Bearer {token_for(user)}"}


@pytest.fixture
def api_client(runtime):
    """Provide a TestClient bound to the test runtime.

    Entered as a context manager so REST calls and WebSocket sessions share
    one event loop, like a real server process.
    """
    with TestClient(app) as client:
        yield client
