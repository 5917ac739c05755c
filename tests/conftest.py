from collections.abc import AsyncGenerator
from datetime import datetime

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from fitsync.api.deps import Integrations, build_integrations, get_integrations
from fitsync.config import Settings
from fitsync.database import Base, get_db
from fitsync.integrations.base import (
    ActivityPage,
    CanonicalActivity,
    ProviderAdapter,
    ProviderProfile,
)
from fitsync.main import app
from fitsync.models.credential import IntegrationCredential
from fitsync.models.user import User

test_engine = create_async_engine("sqlite+aiosqlite://", echo=False)
test_session = async_sessionmaker(test_engine, expire_on_commit=False)


async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
    async with test_session() as session:
        yield session


app.dependency_overrides[get_db] = override_get_db


def make_settings(**overrides) -> Settings:
    values = {
        "oauth_state_secret": "test-state-secret",
        "strava_client_id": "1234",
        "strava_client_secret": "strava-secret",
        "strava_webhook_secret": "strava-webhook-secret",
        "strava_webhook_verify_token": "strava-verify",
        "myfitnesspal_client_id": "mfp-client",
        "myfitnesspal_client_secret": "mfp-secret",
        "myfitnesspal_webhook_token": "mfp-webhook-token",
        "scheduler_enabled": False,
        "sync_page_size": 3,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_activity(external_id: str, activity_type: str = "run", **kwargs) -> CanonicalActivity:
    values = {
        "name": f"Activity {external_id}",
        "start_time": datetime(2024, 6, 10, 7, 0),
        "duration_minutes": 45.0,
        "distance_meters": 8000.0,
        "raw": {"id": external_id},
    }
    values.update(kwargs)
    return CanonicalActivity(external_id=external_id, activity_type=activity_type, **values)


class ScriptedAdapter(ProviderAdapter):
    """Adapter that serves pre-built pages keyed by cursor.

    A script value that is an exception instance is raised instead.
    ``changed`` maps an object id to the records (or exception) a re-fetch returns.
    """

    def __init__(self, name: str = "strava", script: dict | None = None) -> None:
        self._name = name
        self.script: dict = script or {}
        self.calls: list[str | None] = []
        self.changed: dict = {}
        self.refetched: list[str] = []
        self.profile = ProviderProfile(external_user_id="42", display_name="Test Athlete")

    @property
    def provider(self) -> str:
        return self._name

    async def fetch_user_profile(self, access_token: str) -> ProviderProfile:
        return self.profile

    async def fetch_activities_since(
        self, access_token: str, cursor: str | None, page_size: int
    ) -> ActivityPage:
        self.calls.append(cursor)
        step = self.script.get(cursor, ActivityPage(records=[], next_cursor=cursor, has_more=False))
        if isinstance(step, BaseException):
            raise step
        return step

    async def fetch_changed_records(self, access_token: str, object_id: str) -> list[CanonicalActivity]:
        self.refetched.append(object_id)
        step = self.changed.get(object_id, [])
        if isinstance(step, BaseException):
            raise step
        return step


@pytest.fixture(autouse=True)
async def setup_db() -> AsyncGenerator[None, None]:
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def integrations(settings: Settings) -> Integrations:
    return build_integrations(test_session, settings)


@pytest.fixture
async def client(integrations: Integrations) -> AsyncGenerator[AsyncClient, None]:
    app.dependency_overrides[get_integrations] = lambda: integrations
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    await integrations.scheduler.drain()
    app.dependency_overrides.pop(get_integrations, None)


@pytest.fixture
async def user(setup_db: None) -> User:
    async with test_session() as session:
        user = User(id=1, name="Test User", email="test@example.com")
        session.add(user)
        await session.commit()
        return user


async def create_credential(
    provider: str = "strava",
    external_user_id: str = "42",
    **kwargs,
) -> IntegrationCredential:
    values = {
        "user_id": 1,
        "access_token": "access-1",
        "refresh_token": "refresh-1",
        "token_expires_at": datetime(2099, 1, 1),
        "scopes": "read,activity:read_all",
    }
    values.update(kwargs)
    async with test_session() as session:
        credential = IntegrationCredential(
            provider=provider, external_user_id=external_user_id, **values
        )
        session.add(credential)
        await session.commit()
        return credential
