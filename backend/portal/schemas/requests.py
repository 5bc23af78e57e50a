"""Schemas for request submission, listing, and approval actions."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import field_validator
from sqlmodel import Field, SQLModel

from portal.services.request_status import RequestStatus, RequestType

RUNTIME_ANNOTATION_TYPES = (datetime, UUID, RequestStatus, RequestType)


class RequestPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class RequestCreate(SQLModel):
    """Payload for submitting a new request."""

    request_type: RequestType
    title: str = Field(min_length=1, max_length=200)
    description: str = ""
    priority: RequestPriority = RequestPriority.MEDIUM
    amount: float | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    brand_id: UUID | None = None
    location_id: UUID | None = None
    department: str | None = None
    sub_department: str | None = None
    cc_emails: list[str] = Field(default_factory=list)

    @field_validator("title")
    @classmethod
    def _strip_title(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("title must not be blank")
        return cleaned

    @field_validator("cc_emails")
    @classmethod
    def _validate_cc_emails(cls, value: list[str]) -> list[str]:
        cleaned: list[str] = []
        for raw in value:
            email = raw.strip().lower()
            if not email:
                continue
            if "@" not in email:
                raise ValueError(f"invalid email address: {raw!r}")
            if email not in cleaned:
                cleaned.append(email)
        return cleaned


class RequestRead(SQLModel):
    """Request payload returned by read endpoints."""

    id: UUID
    organization_id: UUID
    request_number: int
    display_number: str = ""
    request_type: str
    title: str
    description: str
    priority: str
    amount: float | None = None
    currency: str | None = None
    brand_id: UUID | None = None
    location_id: UUID | None = None
    department: str | None = None
    sub_department: str | None = None
    submitter_id: UUID
    status: str
    cc_emails: list[str] | None = None
    assigned_team_id: UUID | None = None
    assigned_user_id: UUID | None = None
    routing_strategy: str | None = None
    manager_id: UUID | None = None
    manager_approved_at: datetime | None = None
    manager_approval_notes: str | None = None
    admin_id: UUID | None = None
    admin_approved_at: datetime | None = None
    admin_approval_notes: str | None = None
    declined_by: UUID | None = None
    declined_at: datetime | None = None
    decline_reason: str | None = None
    cancelled_by: UUID | None = None
    cancelled_at: datetime | None = None
    completed_by: UUID | None = None
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class RequestApprove(SQLModel):
    notes: str | None = None


class RequestDecline(SQLModel):
    # Blank reasons are rejected by the lifecycle with a 400, not by schema validation.
    reason: str = ""


class RequestCancel(SQLModel):
    notes: str | None = None


class RequestComplete(SQLModel):
    notes: str | None = None
