"""Pytest configuration and shared fixtures.

Tests run against a throwaway SQLite file with the inline queue and the
in-memory stats cache, so neither PostgreSQL nor Redis is needed.
"""

import httpx
import pytest

from linkpulse.core.config import Settings
from linkpulse.core.lifecycle import Components
from linkpulse.core.security import create_access_token
from linkpulse.main import create_app
from linkpulse.models.link import Link
from linkpulse.models.user import ROLE_ADMIN, User
from tests.factories import make_user


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'linkpulse.db'}",
        queue_backend="inline",
        stats_cache_backend="memory",
        geoip_api_fallback=False,
        secret_key="test-secret",
    )


@pytest.fixture
async def components(settings):
    components = await Components.create(settings)
    await components.database.create_all()
    await components.start()
    yield components
    await components.close()


@pytest.fixture
async def user(components) -> User:
    return await make_user(components, "owner@example.com")


@pytest.fixture
async def other_user(components) -> User:
    return await make_user(components, "someone@example.com")


@pytest.fixture
async def admin(components) -> User:
    return await make_user(components, "admin@example.com", role=ROLE_ADMIN)


@pytest.fixture
async def link(components, user) -> Link:
    return await components.registry.create(
        user_id=user.id,
        target="https://example.org/landing",
        address="pulse1",
    )


@pytest.fixture
def auth_headers(settings):
    def _headers(user: User) -> dict[str, str]:
        token = create_access_token(settings, user.id, user.email)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
async def client(components):
    app = create_app(components=components)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
