"""Append-only log of outbound notification emails."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field

from portal.core.time import utcnow
from portal.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (datetime,)


class EmailLog(QueryModel, table=True):
    """One row per recipient per dispatch attempt."""

    __tablename__ = "email_logs"  # pyright: ignore[reportAssignmentType]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    organization_id: UUID = Field(foreign_key="organizations.id", index=True)
    request_id: UUID | None = Field(default=None, foreign_key="requests.id", index=True)
    notification_event_id: UUID | None = Field(
        default=None, foreign_key="notification_events.id", index=True
    )
    recipient_email: str
    email_type: str = Field(index=True)
    subject: str
    status: str = Field(default="sent", index=True)  # sent | failed
    error_message: str | None = None
    payload: dict[str, object] | None = Field(default=None, sa_column=Column(JSON))
    sent_at: datetime = Field(default_factory=utcnow)
