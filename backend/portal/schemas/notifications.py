"""Schemas for notification outbox and email log inspection."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlmodel import SQLModel

RUNTIME_ANNOTATION_TYPES = (datetime, UUID)


class NotificationEventRead(SQLModel):
    id: UUID
    organization_id: UUID
    request_id: UUID
    event_type: str
    actor_id: UUID | None = None
    notes: str | None = None
    status: str
    attempts: int
    last_error: str | None = None
    created_at: datetime
    dispatched_at: datetime | None = None


class EmailLogRead(SQLModel):
    id: UUID
    organization_id: UUID
    request_id: UUID | None = None
    notification_event_id: UUID | None = None
    recipient_email: str
    email_type: str
    subject: str
    status: str
    error_message: str | None = None
    sent_at: datetime


class NotificationResendResponse(SQLModel):
    event_id: UUID
    queued: bool
