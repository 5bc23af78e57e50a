"""Inspection and manual resend of request notifications."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status
from sqlmodel import col, select

from portal.api.deps import ORG_ADMIN_DEP, SESSION_DEP
from portal.core.logging import get_logger
from portal.db.pagination import paginate
from portal.models.email_logs import EmailLog
from portal.models.notification_events import NotificationEvent
from portal.schemas.notifications import (
    EmailLogRead,
    NotificationEventRead,
    NotificationResendResponse,
)
from portal.schemas.pagination import DefaultLimitOffsetPage
from portal.services.audit import record_audit
from portal.services.notifications.queue import QueuedNotification, enqueue_notification
from portal.services.organizations import OrganizationContext

if TYPE_CHECKING:
    from collections.abc import Sequence

    from fastapi_pagination.limit_offset import LimitOffsetPage
    from sqlmodel.ext.asyncio.session import AsyncSession

logger = get_logger(__name__)
router = APIRouter(prefix="/notifications", tags=["notifications"])
STATUS_QUERY = Query(default=None, alias="status", pattern="^(pending|sent|failed)$")


@router.get("/events", response_model=DefaultLimitOffsetPage[NotificationEventRead])
async def list_notification_events(
    session: AsyncSession = SESSION_DEP,
    ctx: OrganizationContext = ORG_ADMIN_DEP,
    event_status: str | None = STATUS_QUERY,
    request_id: UUID | None = None,
) -> LimitOffsetPage[NotificationEventRead]:
    """List outbox rows, newest first."""
    statement = select(NotificationEvent).where(
        col(NotificationEvent.organization_id) == ctx.organization.id,
    )
    if event_status is not None:
        statement = statement.where(col(NotificationEvent.status) == event_status)
    if request_id is not None:
        statement = statement.where(col(NotificationEvent.request_id) == request_id)
    statement = statement.order_by(col(NotificationEvent.created_at).desc())

    def _transform(items: Sequence[Any]) -> Sequence[Any]:
        return [NotificationEventRead.model_validate(item, from_attributes=True) for item in items]

    return await paginate(session, statement, transformer=_transform)


@router.get("/emails", response_model=DefaultLimitOffsetPage[EmailLogRead])
async def list_email_logs(
    session: AsyncSession = SESSION_DEP,
    ctx: OrganizationContext = ORG_ADMIN_DEP,
    request_id: UUID | None = None,
    event_id: UUID | None = None,
) -> LimitOffsetPage[EmailLogRead]:
    """List delivery attempts, newest first."""
    statement = select(EmailLog).where(col(EmailLog.organization_id) == ctx.organization.id)
    if request_id is not None:
        statement = statement.where(col(EmailLog.request_id) == request_id)
    if event_id is not None:
        statement = statement.where(col(EmailLog.notification_event_id) == event_id)
    statement = statement.order_by(col(EmailLog.sent_at).desc())

    def _transform(items: Sequence[Any]) -> Sequence[Any]:
        return [EmailLogRead.model_validate(item, from_attributes=True) for item in items]

    return await paginate(session, statement, transformer=_transform)


@router.post("/events/{event_id}/resend", response_model=NotificationResendResponse)
async def resend_notification_event(
    event_id: UUID,
    session: AsyncSession = SESSION_DEP,
    ctx: OrganizationContext = ORG_ADMIN_DEP,
) -> NotificationResendResponse:
    """Put a failed (or stuck) event back on the queue.

    Recipients that were already delivered to are skipped by the worker.
    """
    event = (
        await NotificationEvent.objects.by_id(event_id)
        .filter(col(NotificationEvent.organization_id) == ctx.organization.id)
        .first(session)
    )
    if event is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND)
    if event.status == "sent":
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Notification has already been sent.",
        )
    event.status = "pending"
    event.last_error = None
    session.add(event)
    await record_audit(
        session,
        organization_id=ctx.organization.id,
        actor_id=ctx.member.user_id,
        actor_type="human",
        action="notification.resend",
        target_type="notification_event",
        target_id=event.id,
        payload={"request_id": str(event.request_id), "event_type": event.event_type},
        commit=False,
    )
    await session.commit()
    queued = enqueue_notification(
        QueuedNotification(
            event_id=event.id,
            request_id=event.request_id,
            event_type=event.event_type,
        ),
    )
    logger.info(
        "notifications.resend",
        extra={"event_id": str(event.id), "queued": queued},
    )
    return NotificationResendResponse(event_id=event.id, queued=queued)
