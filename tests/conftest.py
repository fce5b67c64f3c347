"""Shared test fixtures for Relay-Engine."""

import os

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from relay_engine.common.config import RelaySettings
from relay_engine.common.database import DatabaseManager


def make_settings(**overrides) -> RelaySettings:
    defaults = {
        "db_url": "sqlite+aiosqlite://",
        "default_retry_delay_seconds": 0,
    }
    defaults.update(overrides)
    return RelaySettings(**defaults)


class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request it answered."""

    def __init__(self, handler):
        self.requests: list[httpx.Request] = []

        def _record(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(_record)

    def bodies(self) -> list[str]:
        return [r.content.decode("utf-8") for r in self.requests]


def mock_client(handler) -> tuple[httpx.AsyncClient, RecordingTransport]:
    transport = RecordingTransport(handler)
    return httpx.AsyncClient(transport=transport), transport


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
async def db(settings):
    manager = DatabaseManager(settings)
    await manager.init()
    await manager.create_all()
    yield manager
    await manager.close()


@pytest.fixture
async def file_db(tmp_path):
    """File-backed database for tests with concurrent sessions."""
    settings = make_settings(db_url=f"sqlite+aiosqlite:///{tmp_path / 'relay.db'}")
    manager = DatabaseManager(settings)
    await manager.init()
    await manager.create_all()
    yield manager
    await manager.close()


@pytest.fixture
def app():
    """Create a test app with in-memory DB."""
    os.environ["RELAY_DB_URL"] = "sqlite+aiosqlite://"
    os.environ["RELAY_DEFAULT_RETRY_DELAY_SECONDS"] = "0"

    # Clear caches and singletons so new env vars take effect
    from relay_engine.common.config import get_settings
    get_settings.cache_clear()

    from relay_engine.deps import reset_singletons
    reset_singletons()

    from relay_engine.app import create_app
    return create_app()


@pytest.fixture
async def client(app):
    # Manually init DB since ASGITransport doesn't run lifespan
    from relay_engine.deps import get_db, get_execution_engine, get_webhook_dispatcher
    db = get_db()
    await db.init()
    await db.create_all()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await get_execution_engine().shutdown()
    await get_webhook_dispatcher().close()
    await db.close()


@pytest.fixture
def upstream(app):
    """Route outbound webhook calls of the app to a programmable handler.

    Tests set ``upstream.handler`` to a ``request -> httpx.Response`` callable.
    """
    from relay_engine.deps import get_webhook_dispatcher

    class _Upstream:
        def __init__(self):
            self.handler = lambda request: httpx.Response(200, json={"ok": True})

    state = _Upstream()
    client, transport = mock_client(lambda request: state.handler(request))
    get_webhook_dispatcher()._http_client = client
    state.transport = transport
    return state
