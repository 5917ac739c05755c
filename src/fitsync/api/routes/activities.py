"""Activity endpoints — workout sessions, including ones imported from providers."""

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from fitsync.api.deps import DEFAULT_USER_ID
from fitsync.database import get_db
from fitsync.models.activity import Activity
from fitsync.schemas.activity import ActivityRead

router = APIRouter(prefix="/api/activities", tags=["activities"])


class PaginatedActivities(BaseModel):
    items: list[ActivityRead]
    total: int
    page: int
    per_page: int


@router.get("", response_model=PaginatedActivities)
async def list_activities(
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=20, ge=1, le=100),
    sport: str | None = Query(default=None),
    data_source: str | None = Query(default=None),
    session: AsyncSession = Depends(get_db),
) -> PaginatedActivities:
    """List activities with pagination and optional sport / source filters."""
    base_query = select(Activity).where(Activity.user_id == DEFAULT_USER_ID)
    count_query = select(func.count(Activity.id)).where(Activity.user_id == DEFAULT_USER_ID)

    if sport:
        base_query = base_query.where(Activity.sport == sport)
        count_query = count_query.where(Activity.sport == sport)
    if data_source:
        base_query = base_query.where(Activity.data_source == data_source)
        count_query = count_query.where(Activity.data_source == data_source)

    total_result = await session.execute(count_query)
    total = total_result.scalar_one()

    offset = (page - 1) * per_page
    result = await session.execute(
        base_query.order_by(Activity.start_time.desc()).offset(offset).limit(per_page)
    )
    items = [ActivityRead.model_validate(a) for a in result.scalars().all()]

    return PaginatedActivities(items=items, total=total, page=page, per_page=per_page)


@router.get("/{activity_id}", response_model=ActivityRead)
async def get_activity(
    activity_id: int,
    session: AsyncSession = Depends(get_db),
) -> Activity:
    result = await session.execute(
        select(Activity).where(
            Activity.id == activity_id,
            Activity.user_id == DEFAULT_USER_ID,
        )
    )
    activity = result.scalar_one_or_none()
    if activity is None:
        raise HTTPException(status_code=404, detail="Activity not found")
    return activity
