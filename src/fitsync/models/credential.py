from datetime import datetime

from sqlalchemy import ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from fitsync.database import Base


class IntegrationCredential(Base):
    """Stored OAuth connection binding one user to one provider."""

    __tablename__ = "integration_credentials"
    __table_args__ = (UniqueConstraint("user_id", "provider", name="uq_credentials_user_provider"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    provider: Mapped[str] = mapped_column(String(50))  # strava, myfitnesspal
    external_user_id: Mapped[str] = mapped_column(String(100), default="", index=True)

    access_token: Mapped[str] = mapped_column(Text)
    refresh_token: Mapped[str | None] = mapped_column(Text, default=None)
    token_expires_at: Mapped[datetime | None] = mapped_column(default=None)
    scopes: Mapped[str | None] = mapped_column(String(255), default=None)  # comma separated

    is_active: Mapped[bool] = mapped_column(default=True)
    connected_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    last_sync_at: Mapped[datetime | None] = mapped_column(default=None)
    sync_cursor: Mapped[str | None] = mapped_column(String(255), default=None)

    # Backoff state for the periodic sweep
    consecutive_failures: Mapped[int] = mapped_column(default=0)
    next_sync_after: Mapped[datetime | None] = mapped_column(default=None)

    metadata_json: Mapped[str | None] = mapped_column("metadata", Text, default=None)  # JSON
