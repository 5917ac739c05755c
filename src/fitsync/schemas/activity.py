from datetime import datetime

from pydantic import BaseModel, Field


class ActivityBase(BaseModel):
    sport: str = Field(max_length=50)
    title: str = Field(max_length=200)
    start_time: datetime
    end_time: datetime | None = None
    duration_minutes: int | None = None
    distance_meters: float | None = None
    calories: int | None = None
    data_source: str = Field(max_length=30)
    notes: str | None = None


class ActivityRead(ActivityBase):
    id: int
    user_id: int
    created_at: datetime

    model_config = {"from_attributes": True}
