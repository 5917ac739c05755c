"""Tests for integration API endpoints."""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from httpx import AsyncClient

from fitsync.api.deps import Integrations, build_integrations
from fitsync.config import Settings
from fitsync.integrations.merge import merge_record
from fitsync.models.user import User
from tests.conftest import create_credential, make_activity, test_session

ACTIVITIES = [
    {
        "id": 1001,
        "name": "Morning Run",
        "sport_type": "Run",
        "start_date": "2024-06-10T06:30:00Z",
        "moving_time": 2700,
        "elapsed_time": 2820,
        "distance": 8000.0,
    },
    {
        "id": 1002,
        "name": "Evening Ride",
        "sport_type": "Ride",
        "start_date": "2024-06-11T17:00:00Z",
        "moving_time": 3600,
        "elapsed_time": 3700,
        "distance": 30000.0,
    },
]


def fake_strava(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/oauth/token":
        if b"code=bad" in request.content:
            return httpx.Response(400, json={"error": "invalid_grant"})
        return httpx.Response(
            200,
            json={
                "access_token": "access-new",
                "refresh_token": "refresh-new",
                "expires_in": 21600,
                "athlete": {"id": 42},
            },
        )
    if path == "/api/v3/athlete":
        return httpx.Response(200, json={"id": 42, "firstname": "Ada", "lastname": "Lovelace"})
    if path == "/api/v3/athlete/activities":
        return httpx.Response(200, json=ACTIVITIES)
    if path == "/oauth/deauthorize":
        return httpx.Response(200, json={})
    return httpx.Response(404)


@pytest.fixture
def integrations(settings: Settings) -> Integrations:
    return build_integrations(test_session, settings, transport=httpx.MockTransport(fake_strava))


# ── GET /api/integrations/providers ─────────────────────────────────


async def test_list_providers(client: AsyncClient) -> None:
    response = await client.get("/api/integrations/providers")
    assert response.status_code == 200
    data = {p["provider"]: p for p in response.json()}
    assert set(data) == {"strava", "myfitnesspal"}
    assert data["strava"]["supports_revoke"] is True
    assert data["myfitnesspal"]["supports_revoke"] is False


# ── OAuth connect ───────────────────────────────────────────────────


async def test_authorize_returns_consent_url(client: AsyncClient) -> None:
    response = await client.post(
        "/api/integrations/strava/authorize",
        json={"redirect_url": "http://localhost/callback"},
    )
    assert response.status_code == 200
    url = urlparse(response.json()["authorization_url"])
    params = parse_qs(url.query)
    assert url.netloc == "www.strava.com"
    assert params["client_id"] == ["1234"]
    assert params["redirect_uri"] == ["http://localhost/callback"]
    assert params["state"][0]


async def test_authorize_unknown_provider(client: AsyncClient) -> None:
    response = await client.post(
        "/api/integrations/garmin/authorize",
        json={"redirect_url": "http://localhost/callback"},
    )
    assert response.status_code == 404


async def _connect(client: AsyncClient, code: str = "good") -> httpx.Response:
    response = await client.post(
        "/api/integrations/strava/authorize",
        json={"redirect_url": "http://localhost/callback"},
    )
    state = parse_qs(urlparse(response.json()["authorization_url"]).query)["state"][0]
    return await client.post(
        "/api/integrations/strava/oauth/callback",
        json={"code": code, "state": state},
    )


async def test_callback_creates_integration(client: AsyncClient, user: User) -> None:
    response = await _connect(client)
    assert response.status_code == 201
    data = response.json()
    assert data["provider"] == "strava"
    assert data["external_user_id"] == "42"
    assert data["status"] == "connected"
    assert "access_token" not in data

    listed = await client.get("/api/integrations")
    assert [c["id"] for c in listed.json()] == [data["id"]]


async def test_callback_forged_state(client: AsyncClient, user: User) -> None:
    response = await client.post(
        "/api/integrations/strava/oauth/callback",
        json={"code": "good", "state": "not-a-token"},
    )
    assert response.status_code == 401
    assert (await client.get("/api/integrations")).json() == []


async def test_callback_rejected_code(client: AsyncClient, user: User) -> None:
    response = await _connect(client, code="bad")
    assert response.status_code == 400


# ── GET / DELETE /api/integrations/{id} ─────────────────────────────


async def test_get_integration_not_found(client: AsyncClient, user: User) -> None:
    response = await client.get("/api/integrations/999")
    assert response.status_code == 404


async def test_revoke_integration(client: AsyncClient, user: User) -> None:
    credential = await create_credential()

    response = await client.delete(f"/api/integrations/{credential.id}")
    assert response.status_code == 200
    assert response.json()["status"] == "reconnect_required"

    again = await client.get(f"/api/integrations/{credential.id}")
    assert again.json()["is_active"] is False


async def test_revoke_not_found(client: AsyncClient, user: User) -> None:
    response = await client.delete("/api/integrations/999")
    assert response.status_code == 404


# ── Sync ────────────────────────────────────────────────────────────


async def test_trigger_sync_runs_in_background(
    client: AsyncClient, user: User, integrations: Integrations
) -> None:
    credential = await create_credential()

    response = await client.post(f"/api/integrations/{credential.id}/sync")
    assert response.status_code == 202
    assert response.json() == {"credential_id": credential.id, "status": "accepted"}

    await integrations.scheduler.drain()

    history = (await client.get(f"/api/integrations/{credential.id}/sync/history")).json()
    assert len(history) == 1
    assert history[0]["status"] == "succeeded"
    assert history[0]["trigger"] == "manual"
    assert history[0]["records_imported"] == 2

    records = (await client.get(f"/api/integrations/{credential.id}/records")).json()
    assert records["total"] == 2
    assert {r["external_id"] for r in records["items"]} == {"1001", "1002"}


async def test_trigger_sync_revoked(client: AsyncClient, user: User) -> None:
    credential = await create_credential(is_active=False)
    response = await client.post(f"/api/integrations/{credential.id}/sync")
    assert response.status_code == 409


async def test_trigger_sync_not_found(client: AsyncClient, user: User) -> None:
    response = await client.post("/api/integrations/999/sync")
    assert response.status_code == 404


# ── Records ─────────────────────────────────────────────────────────


async def test_records_filter_and_import(client: AsyncClient, user: User) -> None:
    credential = await create_credential()
    async with test_session() as session:
        merged = await merge_record(session, credential.id, make_activity("r1"))
        await merge_record(session, credential.id, make_activity("r2"))
        await session.commit()
        record_id = merged.record.id

    response = await client.post(f"/api/integrations/records/{record_id}/import")
    assert response.status_code == 200
    first = response.json()
    assert first["created"] is True
    assert first["session_id"] is not None

    repeat = (await client.post(f"/api/integrations/records/{record_id}/import")).json()
    assert repeat == {**first, "created": False}

    pending = (await client.get(f"/api/integrations/{credential.id}/records?imported=false")).json()
    assert pending["total"] == 1
    assert pending["items"][0]["external_id"] == "r2"

    activities = (await client.get("/api/activities?data_source=strava")).json()
    assert activities["total"] == 1


async def test_import_unknown_record(client: AsyncClient, user: User) -> None:
    response = await client.post("/api/integrations/records/999/import")
    assert response.status_code == 404


async def test_import_nutrition_record_conflicts(client: AsyncClient, user: User) -> None:
    credential = await create_credential(provider="myfitnesspal", external_user_id="mfp-7")
    async with test_session() as session:
        merged = await merge_record(
            session, credential.id, make_activity("2024-06-10:nutrition", activity_type="nutrition")
        )
        await session.commit()
        record_id = merged.record.id

    response = await client.post(f"/api/integrations/records/{record_id}/import")

    assert response.status_code == 409
    assert "nutrition" in response.json()["detail"]
    activities = (await client.get("/api/activities")).json()
    assert activities["total"] == 0
