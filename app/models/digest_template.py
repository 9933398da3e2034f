from sqlalchemy import Column, String, DateTime, Text
from sqlalchemy.sql import func
from .database import Base


class DigestTemplate(Base):
    __tablename__ = "digest_templates"

    id = Column(String, primary_key=True, index=True)
    name = Column(String, nullable=False)
    account_id = Column(String, nullable=True, index=True)
    # Исходники jinja2
    subject_template = Column(Text, nullable=False)
    body_html_template = Column(Text, nullable=False)
    body_text_template = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
