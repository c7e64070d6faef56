"""Shared test fixtures and configuration for backend tests."""
import pytest
from fastapi.testclient import TestClient
from jose import jwt

from roomchat.chat.service import ChatService
from roomchat.config import AppConfig, DatabaseSettings, JWTSecrets, Secrets, set_config
from roomchat.main import app

TEST_SECRET = "test-secret"


def make_token(user_id: str, name: str = None, role: str = None, secret: str = TEST_SECRET) -> str:
    claims = {"userId": user_id}
    if name:
        claims["name"] = name
    if role:
        claims["role"] = role
    return jwt.encode(claims, secret, algorithm="HS256")


@pytest.fixture(autouse=True)
def chat_service():
    """Fresh in-memory database and empty connection state for every test."""
    ChatService.reset_instance()
    set_config(AppConfig(
        database=DatabaseSettings(path=":memory:"),
        secrets=Secrets(jwt=JWTSecrets(secret_key=TEST_SECRET)),
    ))
    service = ChatService.get_instance()
    yield service
    ChatService.reset_instance()
    set_config(None)


@pytest.fixture
def token():
    """Token factory: token("alice", role="moderator")."""
    return make_token


@pytest.fixture
def api_client():
    """Provide a TestClient for the main FastAPI app.

    Not entered as a context manager, so the lifespan (which would replace
    the in-memory service) does not run.
    """
    return TestClient(app)
