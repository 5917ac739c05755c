"""Tests for activity API endpoints."""

from datetime import datetime

from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from fitsync.models.activity import Activity
from fitsync.models.user import User
from tests.conftest import test_session


async def _create_activity(
    session: AsyncSession,
    title: str = "Morning Run",
    sport: str = "cardio",
    data_source: str = "strava",
    start_hour: int = 7,
) -> Activity:
    activity = Activity(
        user_id=1,
        sport=sport,
        title=title,
        start_time=datetime(2024, 6, 10, start_hour, 0),
        end_time=datetime(2024, 6, 10, start_hour + 1, 0),
        duration_minutes=60,
        distance_meters=10000.0,
        data_source=data_source,
    )
    session.add(activity)
    await session.commit()
    return activity


# ── GET /api/activities ─────────────────────────────────────────────


async def test_list_activities(client: AsyncClient, user: User) -> None:
    async with test_session() as session:
        await _create_activity(session)
        await _create_activity(session, title="Lunch", sport="other", data_source="myfitnesspal", start_hour=12)

    response = await client.get("/api/activities")
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 2
    assert data["page"] == 1
    assert data["per_page"] == 20
    assert data["items"][0]["title"] == "Lunch"


async def test_list_activities_source_filter(client: AsyncClient, user: User) -> None:
    async with test_session() as session:
        await _create_activity(session)
        await _create_activity(session, title="Lunch", sport="other", data_source="myfitnesspal", start_hour=12)

    response = await client.get("/api/activities?data_source=strava")
    data = response.json()
    assert data["total"] == 1
    assert data["items"][0]["data_source"] == "strava"

    response = await client.get("/api/activities?sport=other")
    assert response.json()["items"][0]["title"] == "Lunch"


async def test_list_activities_pagination(client: AsyncClient, user: User) -> None:
    async with test_session() as session:
        for i in range(5):
            await _create_activity(session, title=f"Run {i}", start_hour=6 + i)

    response = await client.get("/api/activities?page=3&per_page=2")
    data = response.json()
    assert data["total"] == 5
    assert len(data["items"]) == 1
    assert data["items"][0]["title"] == "Run 0"


# ── GET /api/activities/{id} ────────────────────────────────────────


async def test_get_activity(client: AsyncClient, user: User) -> None:
    async with test_session() as session:
        activity = await _create_activity(session)
        activity_id = activity.id

    response = await client.get(f"/api/activities/{activity_id}")
    assert response.status_code == 200
    assert response.json()["distance_meters"] == 10000.0


async def test_get_activity_not_found(client: AsyncClient, user: User) -> None:
    response = await client.get("/api/activities/999")
    assert response.status_code == 404
