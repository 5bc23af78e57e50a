"""Submitted request row tracked through the approval lifecycle."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field

from portal.core.time import utcnow
from portal.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (datetime,)


class ServiceRequest(QueryModel, table=True):
    """Hardware, toner, marketing, department, or user-account request."""

    __tablename__ = "requests"  # pyright: ignore[reportAssignmentType]
    __table_args__ = (
        UniqueConstraint(
            "organization_id",
            "request_number",
            name="uq_requests_org_number",
        ),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    organization_id: UUID = Field(foreign_key="organizations.id", index=True)
    request_number: int = Field(index=True)
    request_type: str = Field(index=True)
    title: str
    description: str = Field(default="")
    priority: str = Field(default="medium")
    amount: float | None = None
    currency: str | None = None
    brand_id: UUID | None = Field(default=None, index=True)
    location_id: UUID | None = Field(default=None, index=True)
    department: str | None = Field(default=None, index=True)
    sub_department: str | None = None
    submitter_id: UUID = Field(foreign_key="users.id", index=True)
    status: str = Field(default="submitted", index=True)
    cc_emails: list[str] | None = Field(default=None, sa_column=Column(JSON))

    # Routing outcome at submit time
    assigned_team_id: UUID | None = Field(default=None, foreign_key="teams.id", index=True)
    assigned_user_id: UUID | None = Field(default=None, foreign_key="users.id", index=True)
    routing_strategy: str | None = None

    # Manager tier
    manager_id: UUID | None = Field(default=None, foreign_key="users.id")
    manager_approved_at: datetime | None = None
    manager_approval_notes: str | None = None

    # Admin tier
    admin_id: UUID | None = Field(default=None, foreign_key="users.id")
    admin_approved_at: datetime | None = None
    admin_approval_notes: str | None = None

    declined_by: UUID | None = Field(default=None, foreign_key="users.id")
    declined_at: datetime | None = None
    decline_reason: str | None = None

    cancelled_by: UUID | None = Field(default=None, foreign_key="users.id")
    cancelled_at: datetime | None = None

    completed_by: UUID | None = Field(default=None, foreign_key="users.id")
    completed_at: datetime | None = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
