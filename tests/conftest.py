import asyncio
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from call_signaling.core.config import Settings
from call_signaling.main import create_app
from call_signaling.services.channel import InMemorySignalingChannel
from call_signaling.services.navigation import Screen
from call_signaling.services.store import CallSessionStore

LOCAL_IDENTITY = "me"


@pytest.fixture
def channel():
    # Acknowledgements are released explicitly by the tests
    return InMemorySignalingChannel(auto_accept=False)


@pytest.fixture
def media():
    return MagicMock()


@pytest_asyncio.fixture
async def make_store(channel, media):
    created = []

    def factory(**overrides):
        options = dict(
            local_identity=LOCAL_IDENTITY,
            ring_timeout=5.0,
            answer_timeout=5.0,
            terminal_grace=5.0,
            media=media,
        )
        options.update(overrides)
        store = CallSessionStore(channel, **options)
        created.append(store)
        return store

    yield factory

    for store in created:
        await store.close()


@pytest_asyncio.fixture
async def store(make_store):
    return make_store()


@pytest.fixture
def transitions(store):
    """Every transition the store publishes, in order."""
    seen = []
    store.subscribe(seen.append)
    return seen


@pytest.fixture
def settle():
    async def _settle(rounds: int = 10):
        for _ in range(rounds):
            await asyncio.sleep(0)
    return _settle


@pytest.fixture
def app_settings(tmp_path):
    return Settings(
        DEVICE_IDENTITY=LOCAL_IDENTITY,
        SIGNALING_TRANSPORT="memory",
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path}/calls.db",
    )


@pytest_asyncio.fixture
async def app(app_settings):
    app = create_app(app_settings)
    # ASGITransport does not run the lifespan on its own
    async with app.router.lifespan_context(app):
        yield app


@pytest_asyncio.fixture
async def async_client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


class RecordingNavigator:
    """Navigator that keeps a screen stack and a log of every command it received."""

    def __init__(self):
        self.stack: List[Screen] = []
        self.commands: List[Tuple[str, Optional[Screen]]] = []
        self.notices: List[str] = []

    def push(self, screen: Screen, params: Dict[str, Any]) -> None:
        self.stack.append(screen)
        self.commands.append(("push", screen))

    def replace(self, screen: Screen, params: Dict[str, Any]) -> None:
        if self.stack:
            self.stack.pop()
        self.stack.append(screen)
        self.commands.append(("replace", screen))

    def back(self) -> None:
        if self.stack:
            self.stack.pop()
        self.commands.append(("back", None))

    def notify(self, message: str) -> None:
        self.notices.append(message)


@pytest.fixture
def navigator():
    return RecordingNavigator()
