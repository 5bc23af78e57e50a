"""Routing rule model mapping a request type to a responsible team or user."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field

from portal.core.time import utcnow
from portal.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (datetime,)


class RoutingRule(QueryModel, table=True):
    """Admin-configured rule; lower `priority` is evaluated first."""

    __tablename__ = "routing_rules"  # pyright: ignore[reportAssignmentType]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    organization_id: UUID = Field(foreign_key="organizations.id", index=True)
    request_type: str = Field(index=True)
    # NULL department/sub_department match any value.
    department: str | None = None
    sub_department: str | None = None
    team_id: UUID | None = Field(default=None, foreign_key="teams.id", index=True)
    default_assignee_id: UUID | None = Field(default=None, foreign_key="users.id")
    strategy: str = Field(default="default_assignee")
    priority: int = Field(default=1, index=True)
    is_active: bool = Field(default=True, index=True)
    required_skills: list[str] | None = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
