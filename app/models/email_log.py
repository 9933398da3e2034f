from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from .database import Base


class EmailLog(Base):
    __tablename__ = "digest_email_logs"

    id = Column(String, primary_key=True, index=True)
    digest_run_id = Column(String, ForeignKey("digest_runs.id", ondelete="CASCADE"), nullable=False, index=True)
    recipient = Column(String, nullable=False, index=True)
    subject = Column(String, nullable=False)
    provider_message_id = Column(String, nullable=True, unique=True, index=True)
    provider_status = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending", index=True)  # pending, sent, failed, delivered, ...
    sent_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    opened_at = Column(DateTime(timezone=True), nullable=True)
    clicked_at = Column(DateTime(timezone=True), nullable=True)
    bounced_at = Column(DateTime(timezone=True), nullable=True)
    error = Column(Text, nullable=True)
    open_count = Column(Integer, nullable=False, default=0)
    click_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationship
    run = relationship("DigestRun", back_populates="email_logs")
