"""Webhook request and response schemas."""
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from app.services.webhook_service import WEBHOOK_EVENTS


class WebhookCreate(BaseModel):
    """Schema for creating a webhook."""

    url: str = Field(..., min_length=1, max_length=2048)
    event_type: str = Field(..., min_length=1, max_length=100)
    enabled: bool = True

    @field_validator("event_type")
    @classmethod
    def check_event_type(cls, value: str) -> str:
        if value not in WEBHOOK_EVENTS:
            raise ValueError(f"event_type must be one of {', '.join(WEBHOOK_EVENTS)}")
        return value


class WebhookResponse(BaseModel):
    """Schema for webhook responses."""

    id: int
    workspace_id: UUID
    url: str
    event_type: str
    enabled: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class WebhookTestResponse(BaseModel):
    """Response from webhook test."""

    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    response_time: Optional[float] = None
