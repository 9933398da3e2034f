import enum
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, ForeignKey
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from .database import Base


class RunType(str, enum.Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    TEST = "test"


class RunStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCESS, RunStatus.PARTIAL, RunStatus.FAILED)


# Допустимые переходы статусов запуска
RUN_TRANSITIONS = {
    RunStatus.PENDING: {RunStatus.PROCESSING},
    RunStatus.PROCESSING: {RunStatus.SUCCESS, RunStatus.PARTIAL, RunStatus.FAILED},
    RunStatus.SUCCESS: set(),
    RunStatus.PARTIAL: set(),
    RunStatus.FAILED: set(),
}


class DigestRun(Base):
    __tablename__ = "digest_runs"

    id = Column(String, primary_key=True, index=True)
    digest_id = Column(String, ForeignKey("digests.id", ondelete="CASCADE"), nullable=False, index=True)
    run_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    run_type = Column(String, nullable=False, default=RunType.SCHEDULED.value)
    status = Column(String, nullable=False, default=RunStatus.PENDING.value, index=True)
    events_count = Column(Integer, nullable=False, default=0)
    events = Column(JSON, nullable=False, default=list)
    event_uid_start = Column(String, nullable=True)
    event_uid_end = Column(String, nullable=True)
    emails_sent = Column(Integer, nullable=False, default=0)
    emails_failed = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    triggered_by = Column(String, nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    digest = relationship("Digest", back_populates="runs")
    email_logs = relationship(
        "EmailLog",
        back_populates="run",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
