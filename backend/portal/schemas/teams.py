"""Schemas for team and team-member administration."""

from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from sqlmodel import Field, SQLModel

RUNTIME_ANNOTATION_TYPES = (datetime, UUID)


class TeamCreate(SQLModel):
    name: str = Field(min_length=1)
    department: str | None = None


class TeamUpdate(SQLModel):
    name: str | None = None
    department: str | None = None
    is_active: bool | None = None


class TeamRead(SQLModel):
    id: UUID
    organization_id: UUID
    name: str
    department: str | None = None
    is_active: bool
    created_at: datetime
    updated_at: datetime


class TeamMemberCreate(SQLModel):
    user_id: UUID
    role_in_team: Literal["member", "lead"] = "member"
    skills: list[str] = Field(default_factory=list)


class TeamMemberUpdate(SQLModel):
    role_in_team: Literal["member", "lead"] | None = None
    skills: list[str] | None = None
    is_active: bool | None = None
    on_leave: bool | None = None


class TeamMemberRead(SQLModel):
    id: UUID
    team_id: UUID
    user_id: UUID
    role_in_team: str
    skills: list[str] | None = None
    is_active: bool
    on_leave: bool
    last_assigned_at: datetime | None = None
    created_at: datetime
