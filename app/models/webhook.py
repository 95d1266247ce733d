"""Webhook model for import event notifications."""
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Uuid

from app.database import Base, utcnow


class Webhook(Base):
    """Model for workspace webhook configurations."""

    __tablename__ = "webhooks"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(Uuid, nullable=False, index=True)
    url = Column(String(2048), nullable=False)
    event_type = Column(String(100), nullable=False)
    enabled = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
