from httpx import AsyncClient


async def test_status(client: AsyncClient) -> None:
    response = await client.get("/api/system/status")
    assert response.status_code == 200
    assert response.json() == {
        "status": "ok",
        "providers": ["myfitnesspal", "strava"],
        "scheduler_running": False,
    }
