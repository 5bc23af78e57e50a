"""Audit query endpoint for the request workflow trail."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from uuid import UUID

from fastapi import APIRouter
from sqlmodel import col, select

from portal.api.deps import ORG_APPROVER_DEP, SESSION_DEP
from portal.db.pagination import paginate
from portal.models.audit_entries import AuditEntry
from portal.schemas.audit import AuditEntryRead
from portal.schemas.pagination import DefaultLimitOffsetPage
from portal.services.organizations import OrganizationContext

if TYPE_CHECKING:
    from collections.abc import Sequence

    from fastapi_pagination.limit_offset import LimitOffsetPage
    from sqlmodel.ext.asyncio.session import AsyncSession

router = APIRouter(prefix="/audit", tags=["audit"])


@router.get("", response_model=DefaultLimitOffsetPage[AuditEntryRead])
async def list_audit_entries(
    session: AsyncSession = SESSION_DEP,
    ctx: OrganizationContext = ORG_APPROVER_DEP,
    action: str | None = None,
    actor_id: UUID | None = None,
    actor_type: str | None = None,
    target_id: UUID | None = None,
) -> LimitOffsetPage[AuditEntryRead]:
    """Query audit entries for the active organization, newest first."""
    statement = select(AuditEntry).where(col(AuditEntry.organization_id) == ctx.organization.id)
    if action is not None:
        statement = statement.where(col(AuditEntry.action) == action)
    if actor_id is not None:
        statement = statement.where(col(AuditEntry.actor_id) == actor_id)
    if actor_type is not None:
        statement = statement.where(col(AuditEntry.actor_type) == actor_type)
    if target_id is not None:
        statement = statement.where(col(AuditEntry.target_id) == target_id)
    statement = statement.order_by(col(AuditEntry.created_at).desc())

    def _transform(items: Sequence[Any]) -> Sequence[Any]:
        return [AuditEntryRead.model_validate(item, from_attributes=True) for item in items]

    return await paginate(session, statement, transformer=_transform)
