"""Team and team-membership models used by request routing."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field

from portal.core.time import utcnow
from portal.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (datetime,)


class Team(QueryModel, table=True):
    """Group of users that can be targeted by a routing rule."""

    __tablename__ = "teams"  # pyright: ignore[reportAssignmentType]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    organization_id: UUID = Field(foreign_key="organizations.id", index=True)
    name: str
    department: str | None = None
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class TeamMember(QueryModel, table=True):
    """Membership of a user in a team, with routing-relevant attributes."""

    __tablename__ = "team_members"  # pyright: ignore[reportAssignmentType]
    __table_args__ = (
        UniqueConstraint("team_id", "user_id", name="uq_team_members_team_user"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    team_id: UUID = Field(foreign_key="teams.id", index=True)
    user_id: UUID = Field(foreign_key="users.id", index=True)
    role_in_team: str = Field(default="member")  # member | lead
    skills: list[str] | None = Field(default=None, sa_column=Column(JSON))
    is_active: bool = Field(default=True)
    on_leave: bool = Field(default=False)
    last_assigned_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
