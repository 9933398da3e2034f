from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, JSON, ForeignKey
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from app.config import settings
from .database import Base


class Digest(Base):
    __tablename__ = "digests"

    id = Column(String, primary_key=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    account_id = Column(String, nullable=False, index=True)
    filters = Column(JSON, nullable=False, default=dict)
    schedule = Column(String, nullable=False)  # cron-выражение
    timezone = Column(String, nullable=False, default=settings.DEFAULT_DIGEST_TIMEZONE)  # только для отображения
    recipients = Column(JSON, nullable=False, default=list)
    test_recipients = Column(JSON, nullable=True, default=list)
    template_id = Column(String, ForeignKey("digest_templates.id"), nullable=True, index=True)

    # Водяной знак
    last_event_uid = Column(String, nullable=True)
    last_check_at = Column(DateTime(timezone=True), nullable=True)
    watermark_version = Column(Integer, nullable=False, default=0)

    is_active = Column(Boolean, nullable=False, default=True, index=True)
    is_paused = Column(Boolean, nullable=False, default=False)
    created_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    runs = relationship(
        "DigestRun",
        back_populates="digest",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
