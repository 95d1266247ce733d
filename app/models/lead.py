"""Lead model."""
import uuid

from sqlalchemy import JSON, Column, DateTime, String, UniqueConstraint, Uuid

from app.database import Base, utcnow


class Lead(Base):
    """Permanent lead record, unique per workspace and email."""

    __tablename__ = "leads"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id = Column(Uuid, nullable=False, index=True)
    email = Column(String(255), nullable=False)
    name = Column(String(255), nullable=True)
    phone = Column(String(20), nullable=True)
    company = Column(String(255), nullable=True)
    position = Column(String(255), nullable=True)
    source = Column(String(100), nullable=True)
    tags = Column(JSON, nullable=False, default=list)
    custom_fields = Column(JSON, nullable=False, default=dict)
    status = Column(String(50), nullable=False, default="active")
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("workspace_id", "email", name="uq_leads_workspace_email"),
    )

    def __repr__(self):
        return f"<Lead(id={self.id}, email='{self.email}')>"
