"""Request submission, listing, and approval workflow endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status
from sqlalchemy import or_
from sqlmodel import col, select

from portal.api.deps import ORG_MEMBER_DEP, SESSION_DEP, USER_DEP
from portal.db.pagination import paginate
from portal.models.service_requests import ServiceRequest
from portal.schemas.pagination import DefaultLimitOffsetPage
from portal.schemas.requests import (
    RequestApprove,
    RequestCancel,
    RequestComplete,
    RequestCreate,
    RequestDecline,
    RequestRead,
)
from portal.services.organizations import OrganizationContext, is_org_approver
from portal.services.request_lifecycle import TransitionError
from portal.services.request_status import ApprovalAction, RequestStatus, RequestType
from portal.services.requests import (
    apply_action,
    authorize_action,
    can_view,
    display_number,
    get_request_or_404,
    submit_request,
    transition_http_error,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from fastapi_pagination.limit_offset import LimitOffsetPage
    from sqlmodel.ext.asyncio.session import AsyncSession

    from portal.models.users import User

router = APIRouter(prefix="/requests", tags=["requests"])
STATUS_QUERY = Query(default=None, alias="status")


def _to_read(service_request: ServiceRequest, ctx: OrganizationContext) -> RequestRead:
    model = RequestRead.model_validate(service_request, from_attributes=True)
    model.display_number = display_number(service_request, ctx.organization)
    return model


async def _load_visible(
    session: AsyncSession,
    *,
    request_id: UUID,
    ctx: OrganizationContext,
) -> ServiceRequest:
    service_request = await get_request_or_404(
        session,
        request_id=request_id,
        organization_id=ctx.organization.id,
    )
    if not can_view(ctx.member, service_request):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND)
    return service_request


async def _run_action(
    session: AsyncSession,
    *,
    request_id: UUID,
    ctx: OrganizationContext,
    user: User,
    action: ApprovalAction,
    notes: str | None = None,
    reason: str | None = None,
) -> RequestRead:
    service_request = await _load_visible(session, request_id=request_id, ctx=ctx)
    authorize_action(ctx.member, service_request, action)
    try:
        outcome = await apply_action(
            session,
            service_request=service_request,
            organization=ctx.organization,
            action=action,
            actor_id=user.id,
            notes=notes,
            reason=reason,
        )
    except TransitionError as exc:
        raise transition_http_error(exc) from exc
    return _to_read(outcome.service_request, ctx)


@router.post("", response_model=RequestRead, status_code=status.HTTP_201_CREATED)
async def create_request(
    payload: RequestCreate,
    session: AsyncSession = SESSION_DEP,
    user: User = USER_DEP,
    ctx: OrganizationContext = ORG_MEMBER_DEP,
) -> RequestRead:
    """Submit a new request; it is routed and the assignees are notified."""
    service_request = await submit_request(session, ctx=ctx, submitter=user, payload=payload)
    return _to_read(service_request, ctx)


@router.get("", response_model=DefaultLimitOffsetPage[RequestRead])
async def list_requests(
    session: AsyncSession = SESSION_DEP,
    ctx: OrganizationContext = ORG_MEMBER_DEP,
    request_status: RequestStatus | None = STATUS_QUERY,
    request_type: RequestType | None = None,
    mine: bool = False,
    assigned_to_me: bool = False,
) -> LimitOffsetPage[RequestRead]:
    """List requests visible to the caller, newest first."""
    statement = select(ServiceRequest).where(
        col(ServiceRequest.organization_id) == ctx.organization.id,
    )
    user_id = ctx.member.user_id
    if mine:
        statement = statement.where(col(ServiceRequest.submitter_id) == user_id)
    if assigned_to_me:
        statement = statement.where(col(ServiceRequest.assigned_user_id) == user_id)
    if not is_org_approver(ctx.member):
        statement = statement.where(
            or_(
                col(ServiceRequest.submitter_id) == user_id,
                col(ServiceRequest.assigned_user_id) == user_id,
            ),
        )
    if request_status is not None:
        statement = statement.where(col(ServiceRequest.status) == request_status.value)
    if request_type is not None:
        statement = statement.where(col(ServiceRequest.request_type) == request_type.value)
    statement = statement.order_by(col(ServiceRequest.created_at).desc())

    def _transform(items: Sequence[Any]) -> Sequence[Any]:
        return [_to_read(item, ctx) for item in items]

    return await paginate(session, statement, transformer=_transform)


@router.get("/{request_id}", response_model=RequestRead)
async def get_request(
    request_id: UUID,
    session: AsyncSession = SESSION_DEP,
    ctx: OrganizationContext = ORG_MEMBER_DEP,
) -> RequestRead:
    """Get one request by id."""
    service_request = await _load_visible(session, request_id=request_id, ctx=ctx)
    return _to_read(service_request, ctx)


@router.post("/{request_id}/approve", response_model=RequestRead)
async def approve_request(
    request_id: UUID,
    payload: RequestApprove,
    session: AsyncSession = SESSION_DEP,
    user: User = USER_DEP,
    ctx: OrganizationContext = ORG_MEMBER_DEP,
) -> RequestRead:
    """Approve at the current tier; large amounts escalate to an admin."""
    return await _run_action(
        session,
        request_id=request_id,
        ctx=ctx,
        user=user,
        action=ApprovalAction.APPROVE,
        notes=payload.notes,
    )


@router.post("/{request_id}/decline", response_model=RequestRead)
async def decline_request(
    request_id: UUID,
    payload: RequestDecline,
    session: AsyncSession = SESSION_DEP,
    user: User = USER_DEP,
    ctx: OrganizationContext = ORG_MEMBER_DEP,
) -> RequestRead:
    """Decline a pending request; a non-blank reason is required."""
    return await _run_action(
        session,
        request_id=request_id,
        ctx=ctx,
        user=user,
        action=ApprovalAction.DECLINE,
        reason=payload.reason,
    )


@router.post("/{request_id}/cancel", response_model=RequestRead)
async def cancel_request(
    request_id: UUID,
    payload: RequestCancel,
    session: AsyncSession = SESSION_DEP,
    user: User = USER_DEP,
    ctx: OrganizationContext = ORG_MEMBER_DEP,
) -> RequestRead:
    """Withdraw a request that has not been finalized."""
    return await _run_action(
        session,
        request_id=request_id,
        ctx=ctx,
        user=user,
        action=ApprovalAction.CANCEL,
        notes=payload.notes,
    )


@router.post("/{request_id}/complete", response_model=RequestRead)
async def complete_request(
    request_id: UUID,
    payload: RequestComplete,
    session: AsyncSession = SESSION_DEP,
    user: User = USER_DEP,
    ctx: OrganizationContext = ORG_MEMBER_DEP,
) -> RequestRead:
    """Mark an approved or in-flight request as fulfilled."""
    return await _run_action(
        session,
        request_id=request_id,
        ctx=ctx,
        user=user,
        action=ApprovalAction.COMPLETE,
        notes=payload.notes,
    )
