"""
Pytest configuration and shared fixtures.

Test settings are placed in the environment before any chatrelay import,
so the cached settings, the engine and the app all see them.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_chatrelay.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("GATEWAY_ACCOUNT_SID", "ACtest0000000000000000000000000000")
os.environ.setdefault("GATEWAY_AUTH_TOKEN", "test-auth-token")
os.environ.setdefault("GATEWAY_FROM_NUMBER", "+14155550100")
os.environ.setdefault("RETRY_BASE_DELAY_SECONDS", "0")

from typing import Any, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient

# Clear settings cache before any app imports to ensure test env vars are used
from chatrelay.config import get_settings
get_settings.cache_clear()

# Registers the tables on Base.metadata before any fixture creates them
import chatrelay.models  # noqa: F401
from chatrelay.gateway import GatewayMessage, GatewaySubmission
from chatrelay.realtime import Broadcaster
from chatrelay.storage import Base, MessageStore, engine


FROM_NUMBER = "+14155550100"
CONTACT_NUMBER = "+919876543210"


class FakeGateway:
    """In-memory stand-in for GatewayClient."""

    def __init__(self):
        self.submissions: List[GatewaySubmission] = []
        self.failures: List[Exception] = []
        self.remote = {}
        self.closed = False
        self._counter = 0

    async def submit_message(self, submission: GatewaySubmission) -> GatewayMessage:
        self.submissions.append(submission)
        if self.failures:
            raise self.failures.pop(0)
        self._counter += 1
        return GatewayMessage(sid=f"SM{self._counter:032d}", status="queued")

    async def fetch_message(self, sid: str) -> GatewayMessage:
        return self.remote[sid]

    async def aclose(self) -> None:
        self.closed = True


class RecordingBroadcaster(Broadcaster):
    """Broadcaster that remembers every event instead of delivering it."""

    def __init__(self, fail: bool = False):
        self.events: List[Tuple[str, str, Any]] = []
        self.fail = fail

    async def broadcast(self, conversation_id: str, event: str, payload: Any) -> int:
        if self.fail:
            raise RuntimeError("subscriber registry unavailable")
        self.events.append((conversation_id, event, payload))
        return 1

    def names(self, conversation_id: Optional[str] = None) -> List[str]:
        return [
            event for room, event, _ in self.events
            if conversation_id is None or room == conversation_id
        ]


async def no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def db_tables():
    """Fresh tables for each test."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def store(db_tables) -> MessageStore:
    return MessageStore()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    return RecordingBroadcaster()


@pytest.fixture
def client(monkeypatch, gateway):
    """Test client wired to the fake gateway, with a fresh database."""
    from chatrelay import main

    monkeypatch.setattr(main, "build_gateway", lambda: gateway)
    Base.metadata.create_all(bind=engine)

    with TestClient(main.app) as test_client:
        yield test_client

    Base.metadata.drop_all(bind=engine)


def drain(client: TestClient) -> None:
    """Wait for the background submissions started by earlier requests."""
    client.portal.call(client.app.state.pipeline.drain)
