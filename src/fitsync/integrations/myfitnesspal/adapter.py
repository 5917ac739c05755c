"""MyFitnessPal diary adapter.

The cursor is the ISO date of the next diary day to read. Each page is one
day, whatever the requested page size. Past days advance the cursor;
today's page keeps the cursor on today, since today's diary can still change.
"""

import logging
from collections.abc import Callable
from datetime import date, timedelta

import httpx

from fitsync.integrations.base import ActivityPage, CanonicalActivity, ProviderAdapter, ProviderProfile
from fitsync.integrations.errors import MalformedRecord, ProviderUnavailable
from fitsync.integrations.http import bearer, request_json
from fitsync.integrations.myfitnesspal.mappers import map_exercise, map_nutrition_summary, map_profile

logger = logging.getLogger(__name__)

API_URL = "https://api.myfitnesspal.com/v2"


class MyFitnessPalAdapter(ProviderAdapter):
    """Pulls diary days from MyFitnessPal, one day per page.

    A day yields one record per exercise entry plus one nutrition record
    holding the day's totals and food entries.
    """

    def __init__(
        self,
        timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
        initial_history_days: int = 30,
        today: Callable[[], date] = date.today,
        api_url: str = API_URL,
    ) -> None:
        self._timeout = timeout
        self._transport = transport
        self._initial_history_days = initial_history_days
        self._today = today
        self._api_url = api_url

    @property
    def provider(self) -> str:
        return "myfitnesspal"

    def _resolve_day(self, cursor: str | None) -> date:
        today = self._today()
        if not cursor:
            return today - timedelta(days=self._initial_history_days)
        try:
            day = date.fromisoformat(cursor)
        except ValueError:
            logger.warning("Unreadable MyFitnessPal cursor %r, restarting history window", cursor)
            return today - timedelta(days=self._initial_history_days)
        return min(day, today)

    async def fetch_user_profile(self, access_token: str) -> ProviderProfile:
        data = await request_json(
            "GET",
            f"{self._api_url}/profile",
            headers=bearer(access_token),
            timeout=self._timeout,
            transport=self._transport,
        )
        return map_profile(data)

    async def _fetch_day(self, access_token: str, day: date) -> tuple[list[CanonicalActivity], int]:
        data = await request_json(
            "GET",
            f"{self._api_url}/diary/{day.isoformat()}",
            headers=bearer(access_token),
            timeout=self._timeout,
            transport=self._transport,
        )
        item = data.get("item") if isinstance(data, dict) else None
        if not isinstance(item, dict):
            raise ProviderUnavailable(f"Unexpected MyFitnessPal diary payload for {day}")

        records: list[CanonicalActivity] = []
        malformed = 0
        exercises = item.get("exercises")
        for raw in exercises if isinstance(exercises, list) else []:
            try:
                records.append(map_exercise(raw, day))
            except MalformedRecord as e:
                malformed += 1
                logger.warning("Skipping malformed MyFitnessPal exercise: %s", e)

        nutrition = map_nutrition_summary(item, day)
        if nutrition is not None:
            records.append(nutrition)
        return records, malformed

    async def fetch_activities_since(
        self, access_token: str, cursor: str | None, page_size: int
    ) -> ActivityPage:
        day = self._resolve_day(cursor)
        records, malformed = await self._fetch_day(access_token, day)

        today = self._today()
        if day < today:
            next_day = day + timedelta(days=1)
            return ActivityPage(
                records=records,
                next_cursor=next_day.isoformat(),
                has_more=True,
                malformed=malformed,
            )
        return ActivityPage(
            records=records, next_cursor=today.isoformat(), has_more=False, malformed=malformed
        )

    async def fetch_changed_records(self, access_token: str, object_id: str) -> list[CanonicalActivity]:
        """Re-read a diary day named by a webhook event.

        Events that name an exercise rather than a date carry no day, and are
        left to the cursor pass.
        """
        try:
            day = date.fromisoformat(object_id)
        except ValueError:
            return []
        if day > self._today():
            return []
        records, _ = await self._fetch_day(access_token, day)
        return records
