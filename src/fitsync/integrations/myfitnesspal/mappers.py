"""Map raw MyFitnessPal diary responses to canonical records."""

from datetime import date, datetime, timedelta
from typing import Any

from fitsync.integrations.base import NUTRITION_TYPE, CanonicalActivity, ProviderProfile
from fitsync.integrations.errors import MalformedRecord

NUTRIENTS = ("calories", "carbs", "fat", "protein", "sodium", "sugar", "fiber")

METERS_PER_UNIT: dict[str, float] = {
    "m": 1.0,
    "km": 1000.0,
    "mi": 1609.344,
    "miles": 1609.344,
}

KG_PER_UNIT: dict[str, float] = {
    "kg": 1.0,
    "lb": 0.45359237,
    "lbs": 0.45359237,
}


def _safe_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (ValueError, TypeError):
        return None


def _to_meters(value: Any, unit: Any) -> float | None:
    amount = _safe_float(value)
    if amount is None:
        return None
    factor = METERS_PER_UNIT.get(str(unit or "km").lower())
    if factor is None:
        raise MalformedRecord(f"Unknown distance unit: {unit!r}")
    return round(amount * factor, 2)


def _to_kg(value: Any, unit: Any) -> float | None:
    amount = _safe_float(value)
    if amount is None:
        return None
    factor = KG_PER_UNIT.get(str(unit or "kg").lower())
    if factor is None:
        raise MalformedRecord(f"Unknown weight unit: {unit!r}")
    return round(amount * factor, 2)


def _duration_minutes(raw: dict[str, Any]) -> float | None:
    minutes = _safe_float(raw.get("minutes"))
    if minutes is not None:
        return minutes
    seconds = _safe_float(raw.get("duration_seconds"))
    return round(seconds / 60, 2) if seconds is not None else None


def map_exercise(raw: dict[str, Any], diary_date: date) -> CanonicalActivity:
    """Map one diary exercise entry to a CanonicalActivity.

    Raises:
        MalformedRecord: Missing id/name or an unknown unit.
    """
    if not isinstance(raw, dict):
        raise MalformedRecord("Exercise entry is not an object")
    exercise_id = raw.get("id")
    name = raw.get("name")
    if exercise_id is None or not name:
        raise MalformedRecord(f"Exercise entry on {diary_date} missing id or name")

    start = datetime.combine(diary_date, datetime.min.time())
    if isinstance(raw.get("start_time"), str):
        try:
            start = datetime.fromisoformat(raw["start_time"])
        except ValueError:
            raise MalformedRecord(f"Exercise {exercise_id} has invalid start_time") from None

    duration = _duration_minutes(raw)
    is_strength = str(raw.get("type", "cardio")).lower() == "strength"

    return CanonicalActivity(
        external_id=f"{diary_date.isoformat()}:{exercise_id}",
        name=str(name),
        activity_type="strength_training" if is_strength else "cardio",
        start_time=start,
        end_time=start + timedelta(minutes=duration) if duration else None,
        duration_minutes=duration,
        distance_meters=_to_meters(raw.get("distance"), raw.get("distance_unit")),
        calories=_safe_float(raw.get("calories")),
        weight_kg=_to_kg(raw.get("weight"), raw.get("weight_unit")),
        raw={"exercise": raw, "diary_date": diary_date.isoformat()},
    )


def _food_entry(raw: Any, meal_name: str) -> dict[str, Any] | None:
    if not isinstance(raw, dict) or not raw.get("name"):
        return None
    entry = {
        "meal": meal_name,
        "name": str(raw["name"]),
        "brand_name": raw.get("brand_name"),
        "quantity": _safe_float(raw.get("quantity")),
        "unit": raw.get("unit"),
    }
    entry.update({n: _safe_float(raw.get(n)) for n in NUTRIENTS})
    return entry


def map_nutrition_summary(item: dict[str, Any], diary_date: date) -> CanonicalActivity | None:
    """Map a diary day's totals and food entries to one nutrition record.

    Returns None for a day with nothing logged. The record id is stable per
    day, so re-reading a day refreshes it in place.
    """
    foods: list[dict[str, Any]] = []
    meals = item.get("meals")
    for meal in meals if isinstance(meals, list) else []:
        if not isinstance(meal, dict):
            continue
        meal_name = str(meal.get("name") or "")
        raw_foods = meal.get("foods")
        for raw in raw_foods if isinstance(raw_foods, list) else []:
            entry = _food_entry(raw, meal_name)
            if entry is not None:
                foods.append(entry)

    raw_totals = item.get("totals")
    totals = {n: _safe_float(raw_totals.get(n)) for n in NUTRIENTS} if isinstance(raw_totals, dict) else {}
    if not foods and not any(totals.values()):
        return None
    if not any(totals.values()):
        # No summary block: derive it from the food entries
        totals = {n: round(sum(f[n] or 0.0 for f in foods), 2) for n in NUTRIENTS}

    return CanonicalActivity(
        external_id=f"{diary_date.isoformat()}:nutrition",
        name=f"Nutrition {diary_date.isoformat()}",
        activity_type=NUTRITION_TYPE,
        start_time=datetime.combine(diary_date, datetime.min.time()),
        calories=totals.get("calories"),
        raw={"diary_date": diary_date.isoformat(), "totals": totals, "foods": foods},
    )


def map_profile(raw: dict[str, Any]) -> ProviderProfile:
    """Map the /v2/profile response to a ProviderProfile."""
    item = raw.get("item") if isinstance(raw, dict) else None
    if not isinstance(item, dict):
        raise MalformedRecord("Profile payload has no item")
    external_id = item.get("user_id") or item.get("username")
    if not external_id:
        raise MalformedRecord("Profile payload has no user id")

    full_name = " ".join(p for p in (item.get("first_name"), item.get("last_name")) if p)
    return ProviderProfile(
        external_user_id=str(external_id),
        display_name=full_name or item.get("username"),
        extra={
            "username": item.get("username"),
            "weight_kg": _safe_float(item.get("weight_kg")),
            "goal_weight_kg": _safe_float(item.get("goal_weight_kg")),
            "calorie_goal": item.get("calorie_goal"),
        },
    )
