"""Map raw Strava API responses to canonical records."""

import re
from calendar import timegm
from datetime import datetime, timedelta, timezone
from typing import Any

from fitsync.integrations.base import CanonicalActivity, ProviderProfile
from fitsync.integrations.errors import MalformedRecord


def _safe_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (ValueError, TypeError):
        return None


def _normalize_type(raw_type: str) -> str:
    """'WeightTraining' -> 'weight_training'."""
    snake = re.sub(r"(?<!^)(?=[A-Z])", "_", raw_type.strip().replace(" ", ""))
    return snake.lower() or "other"


def parse_strava_timestamp(ts: Any) -> datetime | None:
    """Parse a Strava ISO timestamp into a naive UTC datetime."""
    if not isinstance(ts, str):
        return None
    try:
        parsed = datetime.fromisoformat(ts.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def to_epoch(dt: datetime) -> int:
    return timegm(dt.utctimetuple())


def map_activity(raw: dict[str, Any]) -> CanonicalActivity:
    """Map a single Strava activity summary to a CanonicalActivity.

    Raises:
        MalformedRecord: The item has no id or no parsable start date.
    """
    if not isinstance(raw, dict):
        raise MalformedRecord("Activity is not an object")

    activity_id = raw.get("id")
    if activity_id is None:
        raise MalformedRecord(f"Activity missing id: {raw.get('name', 'unknown')}")

    start = parse_strava_timestamp(raw.get("start_date"))
    if start is None:
        raise MalformedRecord(f"Activity {activity_id} has no valid start_date")

    raw_type = raw.get("sport_type") or raw.get("type") or "other"
    activity_type = _normalize_type(str(raw_type))

    moving_secs = _safe_float(raw.get("moving_time"))
    elapsed_secs = _safe_float(raw.get("elapsed_time"))
    duration_secs = moving_secs if moving_secs is not None else elapsed_secs
    end = start + timedelta(seconds=elapsed_secs) if elapsed_secs else None

    return CanonicalActivity(
        external_id=str(activity_id),
        name=str(raw.get("name") or raw_type),
        activity_type=activity_type,
        start_time=start,
        end_time=end,
        duration_minutes=round(duration_secs / 60, 2) if duration_secs is not None else None,
        distance_meters=_safe_float(raw.get("distance")),
        calories=_safe_float(raw.get("calories")),
        raw=raw,
    )


def map_profile(raw: dict[str, Any]) -> ProviderProfile:
    """Map the /athlete response to a ProviderProfile."""
    if not isinstance(raw, dict) or raw.get("id") is None:
        raise MalformedRecord("Athlete payload has no id")

    full_name = " ".join(p for p in (raw.get("firstname"), raw.get("lastname")) if p)
    return ProviderProfile(
        external_user_id=str(raw["id"]),
        display_name=full_name or raw.get("username"),
        extra={
            "username": raw.get("username"),
            "city": raw.get("city"),
            "country": raw.get("country"),
            "weight_kg": _safe_float(raw.get("weight")),
        },
    )
