"""Organization (tenant) model with approval policy overrides."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field

from portal.core.time import utcnow
from portal.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (datetime,)


class Organization(QueryModel, table=True):
    """Tenant owning requests, members, teams, and routing rules."""

    __tablename__ = "organizations"  # pyright: ignore[reportAssignmentType]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    name: str
    slug: str = Field(default="", index=True)
    # None means "use the global APPROVAL_ESCALATION_THRESHOLD".
    approval_threshold: float | None = None
    request_number_prefix: str | None = None
    next_request_number: int = Field(default=1)
    approval_emails: list[str] | None = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
