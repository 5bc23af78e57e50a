"""Request submission and approval workflow service.

Status changes are written with a single conditional UPDATE keyed on the
status the caller observed, so two approvers racing on the same request
cannot both succeed. The notification outbox row and the audit entry are
written in the same transaction as the status change; the queue hand-off
happens only after commit.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from fastapi import HTTPException, status
from sqlalchemy import update
from sqlmodel import col, select

from portal.core.logging import get_logger
from portal.core.time import utcnow
from portal.models.notification_events import NotificationEvent
from portal.models.organizations import Organization
from portal.models.service_requests import ServiceRequest
from portal.services.approval_policy import resolve_threshold
from portal.services.audit import record_audit
from portal.services.notifications.queue import QueuedNotification, enqueue_notification
from portal.services.organizations import is_org_admin, is_org_approver
from portal.services.request_lifecycle import (
    AlreadyProcessedError,
    InvalidReasonError,
    InvalidTransitionError,
    Transition,
    TransitionError,
    transition,
)
from portal.services.request_status import (
    ADMIN_APPROVABLE_STATUSES,
    ApprovalAction,
    NotificationEventType,
    RequestStatus,
    RequestType,
    initial_status_for,
)
from portal.services.routing import resolve_assignee
from portal.services.templates import format_request_number

if TYPE_CHECKING:
    from uuid import UUID

    from sqlmodel.ext.asyncio.session import AsyncSession

    from portal.models.organization_members import OrganizationMember
    from portal.models.users import User
    from portal.schemas.requests import RequestCreate
    from portal.services.organizations import OrganizationContext

logger = get_logger(__name__)


class ConcurrentTransitionError(AlreadyProcessedError):
    """Another actor changed the request status between read and write."""


@dataclass(frozen=True)
class ActionOutcome:
    service_request: ServiceRequest
    transition: Transition
    notification_event_id: UUID


def display_number(service_request: ServiceRequest, organization: Organization | None) -> str:
    prefix = organization.request_number_prefix if organization is not None else None
    return format_request_number(service_request.request_number, prefix)


def transition_http_error(exc: TransitionError) -> HTTPException:
    """Map a lifecycle rejection onto the HTTP status the API reports."""
    if isinstance(exc, InvalidReasonError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)
    if isinstance(exc, (AlreadyProcessedError, InvalidTransitionError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.message)
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)


def _enqueue_event(event_id: UUID, request_id: UUID, event_type: str) -> None:
    try:
        enqueue_notification(
            QueuedNotification(event_id=event_id, request_id=request_id, event_type=event_type),
        )
    except Exception:
        # The outbox row stays pending and is picked up by the worker sweep.
        logger.warning(
            "requests.notification.enqueue_failed",
            extra={"event_id": str(event_id), "request_id": str(request_id)},
            exc_info=True,
        )


async def _allocate_request_number(session: AsyncSession, organization_id: UUID) -> int:
    await session.execute(
        update(Organization)
        .where(col(Organization.id) == organization_id)
        .values(next_request_number=col(Organization.next_request_number) + 1),
    )
    allocated = (
        await session.exec(
            select(Organization.next_request_number).where(col(Organization.id) == organization_id),
        )
    ).one()
    return int(allocated) - 1


async def submit_request(
    session: AsyncSession,
    *,
    ctx: OrganizationContext,
    submitter: User,
    payload: RequestCreate,
) -> ServiceRequest:
    """Create a request, route it, and emit its `submitted` notification."""
    if payload.request_type == RequestType.DEPARTMENT and not (payload.department or "").strip():
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Department requests must name a department",
        )

    organization_id = ctx.organization.id
    number = await _allocate_request_number(session, organization_id)
    now = utcnow()
    resolution = await resolve_assignee(
        session,
        organization_id=organization_id,
        request_type=payload.request_type.value,
        department=payload.department,
        sub_department=payload.sub_department,
        brand_id=payload.brand_id,
        location_id=payload.location_id,
    )
    service_request = ServiceRequest(
        organization_id=organization_id,
        request_number=number,
        request_type=payload.request_type.value,
        title=payload.title,
        description=payload.description,
        priority=payload.priority.value,
        amount=payload.amount,
        currency=payload.currency.upper() if payload.currency else None,
        brand_id=payload.brand_id,
        location_id=payload.location_id,
        department=payload.department,
        sub_department=payload.sub_department,
        submitter_id=submitter.id,
        status=initial_status_for(payload.request_type).value,
        cc_emails=payload.cc_emails or None,
        assigned_team_id=resolution.team_id,
        assigned_user_id=resolution.user_id,
        routing_strategy=resolution.strategy.value,
        created_at=now,
        updated_at=now,
    )
    session.add(service_request)
    await session.flush()

    event = NotificationEvent(
        organization_id=organization_id,
        request_id=service_request.id,
        event_type=NotificationEventType.SUBMITTED.value,
        actor_id=submitter.id,
        recipient_ids=[str(user_id) for user_id in resolution.user_ids],
        created_at=now,
    )
    session.add(event)
    await record_audit(
        session,
        organization_id=organization_id,
        actor_id=submitter.id,
        actor_type="human",
        action="request.submit",
        target_type="request",
        target_id=service_request.id,
        payload={
            "request_number": number,
            "status": service_request.status,
            "routing_strategy": resolution.strategy.value,
            "routing_rule_id": str(resolution.rule_id) if resolution.rule_id else None,
            "routing_fallback": resolution.fallback,
        },
        commit=False,
    )
    await session.commit()
    await session.refresh(service_request)
    logger.info(
        "requests.submit.success",
        extra={
            "request_id": str(service_request.id),
            "request_number": number,
            "request_type": service_request.request_type,
            "status": service_request.status,
            "assignee_count": len(resolution.user_ids),
        },
    )
    _enqueue_event(event.id, service_request.id, event.event_type)
    return service_request


def can_decide(member: OrganizationMember, service_request: ServiceRequest) -> bool:
    """Whether `member` may approve or decline at the request's current tier.

    The admin tier needs an org admin. The manager tier also accepts the
    user the request was routed to.
    """
    if RequestStatus(service_request.status) in ADMIN_APPROVABLE_STATUSES:
        return is_org_admin(member)
    assignee_id = service_request.assigned_user_id
    if assignee_id is not None and member.user_id == assignee_id:
        return True
    return is_org_approver(member)


def authorize_action(
    member: OrganizationMember,
    service_request: ServiceRequest,
    action: ApprovalAction,
) -> None:
    """Role gate for session-authenticated actions."""
    if action in (ApprovalAction.APPROVE, ApprovalAction.DECLINE):
        allowed = can_decide(member, service_request)
    elif action == ApprovalAction.CANCEL:
        allowed = service_request.submitter_id == member.user_id or is_org_admin(member)
    else:
        allowed = is_org_admin(member)
    if not allowed:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)


async def apply_action(
    session: AsyncSession,
    *,
    service_request: ServiceRequest,
    organization: Organization,
    action: ApprovalAction,
    actor_id: UUID,
    actor_type: str = "human",
    notes: str | None = None,
    reason: str | None = None,
) -> ActionOutcome:
    """Run one lifecycle action and persist it atomically with its outbox row.

    Raises `TransitionError` subclasses; callers translate them for their
    surface (JSON API or email-approval pages).
    """
    now = utcnow()
    result = transition(
        service_request.status,
        action,
        actor_id=actor_id,
        now=now,
        amount=service_request.amount,
        threshold=resolve_threshold(organization),
        notes=notes,
        reason=reason,
    )
    written = await session.execute(
        update(ServiceRequest)
        .where(col(ServiceRequest.id) == service_request.id)
        .where(col(ServiceRequest.status) == result.previous_status.value)
        .values(**result.fields, updated_at=now),
    )
    if written.rowcount != 1:
        await session.rollback()
        await session.refresh(service_request)
        await session.refresh(organization)
        logger.warning(
            "requests.transition.conflict",
            extra={
                "request_id": str(service_request.id),
                "action": action.value,
                "expected_status": result.previous_status.value,
                "current_status": service_request.status,
            },
        )
        raise ConcurrentTransitionError(
            f"Request has already been processed (status: {service_request.status}).",
            status=RequestStatus(service_request.status),
        )

    event = NotificationEvent(
        organization_id=service_request.organization_id,
        request_id=service_request.id,
        event_type=result.event.value,
        actor_id=actor_id,
        notes=result.fields.get("decline_reason") if action == ApprovalAction.DECLINE else notes,
        created_at=now,
    )
    session.add(event)
    await record_audit(
        session,
        organization_id=service_request.organization_id,
        actor_id=actor_id,
        actor_type=actor_type,
        action=f"request.{action.value}",
        target_type="request",
        target_id=service_request.id,
        payload={
            "from_status": result.previous_status.value,
            "to_status": result.next_status.value,
            "tier": result.tier,
            "notes": notes,
            "reason": result.fields.get("decline_reason"),
        },
        commit=False,
    )
    await session.commit()
    await session.refresh(service_request)
    logger.info(
        "requests.transition.success",
        extra={
            "request_id": str(service_request.id),
            "action": action.value,
            "from_status": result.previous_status.value,
            "to_status": result.next_status.value,
            "actor_type": actor_type,
        },
    )
    _enqueue_event(event.id, service_request.id, event.event_type)
    return ActionOutcome(
        service_request=service_request,
        transition=result,
        notification_event_id=event.id,
    )


async def get_request_or_404(
    session: AsyncSession,
    *,
    request_id: UUID,
    organization_id: UUID,
) -> ServiceRequest:
    service_request = await ServiceRequest.objects.by_id(request_id).first(session)
    if service_request is None or service_request.organization_id != organization_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND)
    return service_request


def can_view(member: OrganizationMember, service_request: ServiceRequest) -> bool:
    """Approvers see every request in the organization; members see their own."""
    if is_org_approver(member):
        return True
    return member.user_id in (service_request.submitter_id, service_request.assigned_user_id)
