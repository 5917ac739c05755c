from datetime import datetime

from sqlalchemy import Float, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from fitsync.database import Base


class ExternalRecord(Base):
    """Canonical activity pulled from a provider.

    ``(credential_id, external_id)`` is the idempotency key: seeing the same
    provider object again matches the existing row instead of inserting.
    """

    __tablename__ = "external_records"
    __table_args__ = (
        UniqueConstraint("credential_id", "external_id", name="uq_external_records_credential_external"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    credential_id: Mapped[int] = mapped_column(ForeignKey("integration_credentials.id"))
    external_id: Mapped[str] = mapped_column(String(100))

    name: Mapped[str] = mapped_column(String(200))
    activity_type: Mapped[str] = mapped_column(String(50))
    start_time: Mapped[datetime]
    end_time: Mapped[datetime | None] = mapped_column(default=None)
    duration_minutes: Mapped[float | None] = mapped_column(Float, default=None)
    distance_meters: Mapped[float | None] = mapped_column(Float, default=None)
    calories: Mapped[float | None] = mapped_column(Float, default=None)
    weight_kg: Mapped[float | None] = mapped_column(Float, default=None)

    is_imported: Mapped[bool] = mapped_column(default=False)
    imported_session_id: Mapped[int | None] = mapped_column(
        ForeignKey("activities.id", ondelete="SET NULL"), default=None
    )

    raw_data: Mapped[str | None] = mapped_column(Text, default=None)  # JSON
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, onupdate=datetime.utcnow)
