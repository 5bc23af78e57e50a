"""Schemas for routing rule administration and resolution previews."""

from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from sqlmodel import Field, SQLModel

from portal.services.request_status import RequestType
from portal.services.routing import RoutingStrategy

RUNTIME_ANNOTATION_TYPES = (datetime, UUID, RequestType, RoutingStrategy)


class RoutingRuleCreate(SQLModel):
    """Payload for creating a routing rule."""

    request_type: RequestType
    department: str | None = None
    sub_department: str | None = None
    team_id: UUID | None = None
    default_assignee_id: UUID | None = None
    strategy: RoutingStrategy = RoutingStrategy.DEFAULT_ASSIGNEE
    priority: int | None = Field(default=None, ge=0)
    is_active: bool = True
    required_skills: list[str] = Field(default_factory=list)


class RoutingRuleUpdate(SQLModel):
    """Partial update for a routing rule."""

    department: str | None = None
    sub_department: str | None = None
    team_id: UUID | None = None
    default_assignee_id: UUID | None = None
    strategy: RoutingStrategy | None = None
    priority: int | None = Field(default=None, ge=0)
    is_active: bool | None = None
    required_skills: list[str] | None = None


class RoutingRuleMove(SQLModel):
    direction: Literal["up", "down"]


class RoutingRuleRead(SQLModel):
    id: UUID
    organization_id: UUID
    request_type: str
    department: str | None = None
    sub_department: str | None = None
    team_id: UUID | None = None
    default_assignee_id: UUID | None = None
    strategy: str
    priority: int
    is_active: bool
    required_skills: list[str] | None = None
    created_at: datetime
    updated_at: datetime


class RoutingResolveRequest(SQLModel):
    """Inputs for previewing who a request would be routed to."""

    request_type: RequestType
    department: str | None = None
    sub_department: str | None = None
    brand_id: UUID | None = None
    location_id: UUID | None = None


class RoutingResolveResponse(SQLModel):
    strategy: str
    user_ids: list[UUID]
    team_id: UUID | None = None
    rule_id: UUID | None = None
    fallback: bool = False
