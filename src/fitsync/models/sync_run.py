import enum
from datetime import datetime

from sqlalchemy import ForeignKey, Index, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from fitsync.database import Base


class SyncStatus(str, enum.Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PARTIALLY_FAILED = "partially_failed"


class SyncTrigger(str, enum.Enum):
    PERIODIC = "periodic"
    WEBHOOK = "webhook"
    MANUAL = "manual"


class SyncRun(Base):
    """Append-only log entry for one pull-sync pass over a credential."""

    __tablename__ = "sync_runs"
    __table_args__ = (
        # The running row doubles as the per-credential claim
        Index(
            "uq_sync_runs_one_running",
            "credential_id",
            unique=True,
            sqlite_where=text("status = 'running'"),
            postgresql_where=text("status = 'running'"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    credential_id: Mapped[int] = mapped_column(
        ForeignKey("integration_credentials.id"), index=True
    )
    status: Mapped[str] = mapped_column(String(20), default=SyncStatus.RUNNING.value)
    trigger: Mapped[str] = mapped_column(String(20), default=SyncTrigger.PERIODIC.value)
    started_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(default=None)

    records_processed: Mapped[int] = mapped_column(default=0)
    records_imported: Mapped[int] = mapped_column(default=0)
    records_skipped: Mapped[int] = mapped_column(default=0)
    sessions_created: Mapped[int] = mapped_column(default=0)
    pages_fetched: Mapped[int] = mapped_column(default=0)

    error_message: Mapped[str | None] = mapped_column(Text, default=None)
    cursor_after: Mapped[str | None] = mapped_column(String(255), default=None)
