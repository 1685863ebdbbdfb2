import uuid
from datetime import datetime, timezone
from sqlalchemy import String, DateTime, ForeignKey, Text
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from app.database import Base


SYNC_JOB_PENDING = "pending"
SYNC_JOB_RUNNING = "running"
SYNC_JOB_COMPLETED = "completed"
SYNC_JOB_FAILED = "failed"
SYNC_JOB_CANCELLED = "cancelled"

SYNC_JOB_TERMINAL_STATES = (SYNC_JOB_COMPLETED, SYNC_JOB_FAILED, SYNC_JOB_CANCELLED)


class SyncJob(Base):
    """Poll handle for one metrics sync of one ad account.

    Lifecycle: pending -> running -> completed | failed (| cancelled on request).
    """

    __tablename__ = "sync_jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    ad_account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("ad_accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    job_type: Mapped[str] = mapped_column(String(30), default="metrics")
    trigger: Mapped[str] = mapped_column(String(30), default="manual")  # manual, scheduled, initial
    status: Mapped[str] = mapped_column(String(30), default=SYNC_JOB_PENDING, index=True)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    error_message: Mapped[str | None] = mapped_column(Text)
    # campaigns_synced / adsets_synced / ads_synced / metric_rows / errors
    details: Mapped[dict] = mapped_column(JSONB, default=dict)
    celery_task_id: Mapped[str | None] = mapped_column(String(255))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    user = relationship("User", back_populates="sync_jobs")

    @property
    def is_terminal(self) -> bool:
        return self.status in SYNC_JOB_TERMINAL_STATES
