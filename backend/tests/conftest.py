"""Shared test fixtures and configuration for backend tests."""
import asyncio
from typing import Callable, List

import pytest
from fastapi.testclient import TestClient

from app.auth.schemas import Identity
from app.auth.service import JWTIdentityProvider
from app.config import AppConfig, JWTSecrets, Secrets, SessionSettings
from app.main import create_app

TEST_SECRET = "test-secret-key-with-enough-length-for-hs256"


class FakeWebSocket:
    """Records frames sent by the server side of a connection."""

    def __init__(self, fail_sends: bool = False, send_delay: float = 0.0) -> None:
        self.sent: List[dict] = []
        self.accepted = False
        self.closed_code = None
        self.fail_sends = fail_sends
        self.send_delay = send_delay

    async def accept(self) -> None:
        self.accepted = True

    async def send_json(self, frame: dict) -> None:
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.fail_sends:
            raise RuntimeError("socket closed")
        self.sent.append(frame)

    async def close(self, code: int = 1000) -> None:
        self.closed_code = code

    def types(self) -> List[str]:
        return [frame["type"] for frame in self.sent]


@pytest.fixture
def identity_provider() -> JWTIdentityProvider:
    return JWTIdentityProvider(secret_key=TEST_SECRET)


@pytest.fixture
def make_token(identity_provider) -> Callable[..., str]:
    """Mint a valid credential for ``user_id``."""

    def _make(user_id: str, username: str = "", email: str = "") -> str:
        identity = Identity(
            userId=user_id,
            username=username or user_id.capitalize(),
            email=email or f"{user_id}@example.com",
        )
        return identity_provider.issue_token(identity)

    return _make


@pytest.fixture
def test_config() -> AppConfig:
    """Provide test configuration (in-memory storage, no idle timeout)."""
    return AppConfig(
        session=SessionSettings(idle_timeout_seconds=0),
        secrets=Secrets(jwt=JWTSecrets(secret_key=TEST_SECRET)),
    )


@pytest.fixture
def api_client(test_config):
    """TestClient running the app lifespan.

    All WebSocket sessions opened from this client share one event loop,
    which the chat service's locks and queues require.
    """
    with TestClient(create_app(test_config)) as client:
        yield client


@pytest.fixture
def fake_websocket() -> Callable[..., FakeWebSocket]:
    """Factory for recording WebSocket stand-ins."""
    return FakeWebSocket
