"""Idempotent merge of canonical records and their import into workout sessions.

Records are upserted by ``(credential_id, external_id)``. Re-sighting an
object refreshes its descriptive fields but never touches import state.
Importing into an application Activity is a separate step that happens at
most once per record.
"""

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fitsync.integrations.base import NUTRITION_TYPE, CanonicalActivity
from fitsync.models.activity import Activity
from fitsync.models.external_record import ExternalRecord

logger = logging.getLogger(__name__)

DESCRIPTIVE_FIELDS = (
    "name",
    "activity_type",
    "start_time",
    "end_time",
    "duration_minutes",
    "distance_meters",
    "calories",
    "weight_kg",
)

# Canonical activity type → application sport classification
SPORT_MAP: dict[str, str] = {
    "strength_training": "gym",
    "weight_training": "gym",
    "weighttraining": "gym",
    "crossfit": "gym",
    "workout": "gym",
    "swim": "swimming",
    "swimming": "swimming",
    "run": "cardio",
    "trail_run": "cardio",
    "ride": "cardio",
    "virtual_ride": "cardio",
    "walk": "cardio",
    "hike": "cardio",
    "rowing": "cardio",
    "elliptical": "cardio",
    "cardio": "cardio",
}


@dataclass
class MergeResult:
    """Outcome of merging one canonical record."""

    record: ExternalRecord
    imported: bool
    updated: bool = False


@dataclass
class ImportOutcome:
    """Outcome of importing a record into an application workout session."""

    created: bool
    session_id: int | None


class ImportPolicy:
    """Decides which merged records become workout sessions automatically."""

    def __init__(self, activity_types: Iterable[str] = ()) -> None:
        self.activity_types = frozenset(t.lower() for t in activity_types)

    def should_import(self, record: ExternalRecord) -> bool:
        return (
            not record.is_imported
            and record.activity_type.lower() != NUTRITION_TYPE
            and record.activity_type.lower() in self.activity_types
        )


def _raw_json(activity: CanonicalActivity) -> str:
    return json.dumps(activity.raw, default=str, sort_keys=True)


def _classify_sport(activity_type: str) -> str:
    return SPORT_MAP.get(activity_type.lower(), "other")


async def _find_record(
    session: AsyncSession, credential_id: int, external_id: str
) -> ExternalRecord | None:
    result = await session.execute(
        select(ExternalRecord).where(
            ExternalRecord.credential_id == credential_id,
            ExternalRecord.external_id == external_id,
        )
    )
    return result.scalar_one_or_none()


def _refresh_fields(record: ExternalRecord, activity: CanonicalActivity) -> bool:
    changed = False
    for field_name in DESCRIPTIVE_FIELDS:
        value = getattr(activity, field_name)
        if getattr(record, field_name) != value:
            setattr(record, field_name, value)
            changed = True
    raw = _raw_json(activity)
    if record.raw_data != raw:
        record.raw_data = raw
        changed = True
    return changed


async def merge_record(
    session: AsyncSession, credential_id: int, activity: CanonicalActivity
) -> MergeResult:
    """Upsert one canonical record keyed by (credential_id, external_id).

    Returns:
        MergeResult with ``imported=True`` only when a new row was inserted.
        ``updated`` tells whether an existing row's descriptive fields changed.
    """
    existing = await _find_record(session, credential_id, activity.external_id)

    if existing is None:
        record = ExternalRecord(
            credential_id=credential_id,
            external_id=activity.external_id,
            **{f: getattr(activity, f) for f in DESCRIPTIVE_FIELDS},
            raw_data=_raw_json(activity),
            created_at=datetime.utcnow(),
        )
        try:
            async with session.begin_nested():
                session.add(record)
        except IntegrityError:
            # Another writer inserted the same key first; fall through to update
            existing = await _find_record(session, credential_id, activity.external_id)
            if existing is None:
                raise
        else:
            return MergeResult(record=record, imported=True)

    updated = _refresh_fields(existing, activity)
    if updated:
        logger.debug(
            "Refreshed external record %s (%s) for credential %s",
            existing.id,
            activity.external_id,
            credential_id,
        )
    return MergeResult(record=existing, imported=False, updated=updated)


async def import_record(
    session: AsyncSession, record: ExternalRecord, user_id: int, data_source: str
) -> ImportOutcome:
    """Turn an external record into an application Activity, at most once.

    A second attempt on an already-imported record is a no-op reported as
    ``created=False``.

    Raises:
        ValueError: The record is a nutrition summary, not a workout.
    """
    if record.activity_type == NUTRITION_TYPE:
        raise ValueError(f"Record {record.id} is a nutrition summary and cannot become a workout session")
    if record.is_imported:
        return ImportOutcome(created=False, session_id=record.imported_session_id)

    activity = Activity(
        user_id=user_id,
        sport=_classify_sport(record.activity_type),
        title=record.name,
        start_time=record.start_time,
        end_time=record.end_time,
        duration_minutes=round(record.duration_minutes) if record.duration_minutes is not None else None,
        distance_meters=record.distance_meters,
        calories=round(record.calories) if record.calories is not None else None,
        data_source=data_source,
        created_at=datetime.utcnow(),
    )
    session.add(activity)
    await session.flush()

    # Conditional transition guards against a concurrent import of the same record
    result = await session.execute(
        update(ExternalRecord)
        .where(ExternalRecord.id == record.id, ExternalRecord.is_imported.is_(False))
        .values(is_imported=True, imported_session_id=activity.id)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await session.delete(activity)
        await session.flush()
        await session.refresh(record)
        return ImportOutcome(created=False, session_id=record.imported_session_id)

    await session.refresh(record)
    logger.info(
        "Imported external record %s as %s session %s", record.id, data_source, activity.id
    )
    return ImportOutcome(created=True, session_id=activity.id)
