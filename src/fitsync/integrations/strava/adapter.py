"""Strava activity adapter.

Cursor format is ``"<after_epoch>:<page>"``. Strava returns activities after
``after`` in ascending start order, so a full page moves to the next page
number and a short page rolls ``after`` forward to the newest start seen.
"""

import logging

import httpx

from fitsync.integrations.base import ActivityPage, CanonicalActivity, ProviderAdapter, ProviderProfile
from fitsync.integrations.errors import MalformedRecord, ProviderUnavailable
from fitsync.integrations.http import bearer, request_json
from fitsync.integrations.strava.mappers import map_activity, map_profile, to_epoch

logger = logging.getLogger(__name__)

API_URL = "https://www.strava.com/api/v3"


def parse_cursor(cursor: str | None) -> tuple[int, int]:
    """Decode a cursor into (after_epoch, page). None means full history."""
    if not cursor:
        return 0, 1
    try:
        after, page = cursor.split(":", 1)
        return max(int(after), 0), max(int(page), 1)
    except ValueError:
        logger.warning("Unreadable Strava cursor %r, restarting from full history", cursor)
        return 0, 1


def format_cursor(after: int, page: int) -> str:
    return f"{after}:{page}"


class StravaAdapter(ProviderAdapter):
    """Pulls activities from the Strava v3 API."""

    def __init__(
        self,
        timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
        api_url: str = API_URL,
    ) -> None:
        self._timeout = timeout
        self._transport = transport
        self._api_url = api_url

    @property
    def provider(self) -> str:
        return "strava"

    async def fetch_user_profile(self, access_token: str) -> ProviderProfile:
        data = await request_json(
            "GET",
            f"{self._api_url}/athlete",
            headers=bearer(access_token),
            timeout=self._timeout,
            transport=self._transport,
        )
        return map_profile(data)

    async def fetch_activities_since(
        self, access_token: str, cursor: str | None, page_size: int
    ) -> ActivityPage:
        after, page = parse_cursor(cursor)
        data = await request_json(
            "GET",
            f"{self._api_url}/athlete/activities",
            params={"after": after, "page": page, "per_page": page_size},
            headers=bearer(access_token),
            timeout=self._timeout,
            transport=self._transport,
        )
        if not isinstance(data, list):
            raise ProviderUnavailable("Unexpected Strava activities payload")

        records: list[CanonicalActivity] = []
        malformed = 0
        for raw in data:
            try:
                records.append(map_activity(raw))
            except MalformedRecord as e:
                malformed += 1
                logger.warning("Skipping malformed Strava activity: %s", e)

        if len(data) >= page_size:
            return ActivityPage(
                records=records,
                next_cursor=format_cursor(after, page + 1),
                has_more=True,
                malformed=malformed,
            )

        if records:
            newest = max(to_epoch(r.start_time) for r in records)
            next_cursor = format_cursor(max(after, newest), 1)
        else:
            next_cursor = format_cursor(after, page)
        return ActivityPage(
            records=records, next_cursor=next_cursor, has_more=False, malformed=malformed
        )

    async def fetch_changed_records(self, access_token: str, object_id: str) -> list[CanonicalActivity]:
        """Fetch one activity by id, for webhook create/update events."""
        data = await request_json(
            "GET",
            f"{self._api_url}/activities/{object_id}",
            headers=bearer(access_token),
            timeout=self._timeout,
            transport=self._transport,
        )
        try:
            return [map_activity(data)]
        except MalformedRecord as e:
            logger.warning("Skipping malformed Strava activity %s: %s", object_id, e)
            return []
