"""Outbox row for a request notification, written alongside the status change."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field

from portal.core.time import utcnow
from portal.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (datetime,)


class NotificationEvent(QueryModel, table=True):
    """One notification per (request, event type); dispatched by the queue worker."""

    __tablename__ = "notification_events"  # pyright: ignore[reportAssignmentType]
    __table_args__ = (
        UniqueConstraint("request_id", "event_type", name="uq_notification_events_request_event"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    organization_id: UUID = Field(foreign_key="organizations.id", index=True)
    request_id: UUID = Field(foreign_key="requests.id", index=True)
    # submitted | escalated | approved | declined | cancelled | completed
    event_type: str = Field(index=True)
    actor_id: UUID | None = None
    notes: str | None = None
    # Users resolved by routing at submit time; other events derive recipients.
    recipient_ids: list[str] | None = Field(default=None, sa_column=Column(JSON))
    status: str = Field(default="pending", index=True)  # pending | sent | failed
    attempts: int = Field(default=0)
    last_error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    dispatched_at: datetime | None = None
