"""Notification dispatch: resolve recipients, send, log, and settle the outbox row.

A dispatch never touches the request row. Each recipient gets an `email_logs`
row per attempt; recipients that already have a `sent` log for the event are
skipped on retry, so replaying an event does not double-send.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING
from uuid import UUID

from sqlmodel import col

from portal.core.approval_tokens import build_email_approval_links
from portal.core.logging import get_logger
from portal.core.time import utcnow
from portal.db.session import async_session_maker
from portal.models.email_logs import EmailLog
from portal.models.notification_events import NotificationEvent
from portal.models.organizations import Organization
from portal.models.service_requests import ServiceRequest
from portal.models.users import User
from portal.services.notifications.email import EmailDeliveryError, EmailMessage, send_email
from portal.services.notifications.queue import (
    QueuedNotification,
    decode_notification_task,
    enqueue_notification,
)
from portal.services.organizations import ADMIN_ROLES, approvers_in_scope, users_by_ids
from portal.services.request_status import NotificationEventType
from portal.services.templates import format_request_number, render_template

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

    from portal.services.queue import QueuedTask

logger = get_logger(__name__)

Sender = Callable[[EmailMessage], Awaitable[object]]

_SUBJECTS: dict[NotificationEventType, str] = {
    NotificationEventType.SUBMITTED: "New Request Awaiting Approval",
    NotificationEventType.ESCALATED: "Request Awaiting Admin Approval",
    NotificationEventType.APPROVED: "Request Approved",
    NotificationEventType.DECLINED: "Request Declined",
    NotificationEventType.CANCELLED: "Request Cancelled",
    NotificationEventType.COMPLETED: "Request Completed",
}
_CONFIRMATION_SUBJECT = "Request Received"
_STATUS_INTROS: dict[NotificationEventType, str] = {
    NotificationEventType.SUBMITTED: (
        "Thank you for submitting your request. We've received it and it will be reviewed shortly."
    ),
    NotificationEventType.ESCALATED: (
        "Your request was approved by a manager and is now awaiting admin approval."
    ),
    NotificationEventType.APPROVED: "Your request has been approved.",
    NotificationEventType.DECLINED: "Your request has been declined.",
    NotificationEventType.CANCELLED: "Your request has been cancelled.",
    NotificationEventType.COMPLETED: "Your request has been completed.",
}
_AWAITING_APPROVAL = frozenset(
    {NotificationEventType.SUBMITTED.value, NotificationEventType.ESCALATED.value},
)


class NotificationDispatchError(RuntimeError):
    """Raised when at least one recipient could not be reached."""


@dataclass(frozen=True)
class OutgoingEmail:
    recipient_email: str
    email_type: str
    subject: str
    html: str
    # Addressed to someone who can approve or decline.
    actionable: bool = False


@dataclass
class DispatchResult:
    sent: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


def _display_name(user: User | None) -> str:
    if user is None:
        return "there"
    return user.name or user.email


def _subject(
    event_type: NotificationEventType,
    request_number: str,
    title: str,
    *,
    label: str | None = None,
) -> str:
    return f"[{request_number}] {label or _SUBJECTS[event_type]}: {title}"


def _normalize_emails(values: list[str] | None) -> list[str]:
    seen: dict[str, None] = {}
    for value in values or []:
        cleaned = value.strip().lower()
        if cleaned and "@" in cleaned:
            seen.setdefault(cleaned, None)
    return list(seen)


async def _approver_recipients(
    session: AsyncSession,
    *,
    event: NotificationEvent,
    service_request: ServiceRequest,
) -> list[User]:
    if event.event_type == NotificationEventType.ESCALATED.value:
        members = await approvers_in_scope(
            session,
            organization_id=service_request.organization_id,
            roles=ADMIN_ROLES,
            brand_id=service_request.brand_id,
            location_id=service_request.location_id,
        )
        user_ids = [member.user_id for member in members]
    else:
        user_ids = [UUID(raw) for raw in event.recipient_ids or []]
        if not user_ids:
            members = await approvers_in_scope(
                session,
                organization_id=service_request.organization_id,
                brand_id=service_request.brand_id,
                location_id=service_request.location_id,
            )
            user_ids = [member.user_id for member in members]
    users = await users_by_ids(session, user_ids)
    return [users[user_id] for user_id in user_ids if user_id in users]


def _approval_request_email(
    *,
    event_type: NotificationEventType,
    service_request: ServiceRequest,
    request_number: str,
    submitter: User | None,
    recipient_email: str,
    recipient_name: str,
    with_links: bool,
) -> OutgoingEmail:
    heading = (
        "Request awaiting admin approval"
        if event_type == NotificationEventType.ESCALATED
        else "New request awaiting approval"
    )
    intro = (
        "A manager approved this request. It exceeds the approval limit and needs your sign-off."
        if event_type == NotificationEventType.ESCALATED
        else "A new request has been submitted and needs your review."
    )
    links = build_email_approval_links(service_request.id, recipient_email) if with_links else None
    html = render_template(
        "emails/approval_request.html",
        heading=heading,
        intro=intro,
        recipient_name=recipient_name,
        submitter_name=_display_name(submitter),
        service_request=service_request,
        request_number=request_number,
        links=links,
    )
    return OutgoingEmail(
        recipient_email=recipient_email,
        email_type=f"request_{event_type.value}",
        subject=_subject(event_type, request_number, service_request.title),
        html=html,
        actionable=True,
    )


def _status_update_email(
    *,
    event: NotificationEvent,
    event_type: NotificationEventType,
    service_request: ServiceRequest,
    request_number: str,
    recipient_email: str,
    recipient_name: str,
) -> OutgoingEmail:
    notes = event.notes
    notes_label = "Reason" if event_type == NotificationEventType.DECLINED else "Notes"
    confirmation = event_type == NotificationEventType.SUBMITTED
    label = _CONFIRMATION_SUBJECT if confirmation else _SUBJECTS[event_type]
    html = render_template(
        "emails/status_update.html",
        heading=label,
        intro=_STATUS_INTROS[event_type],
        recipient_name=recipient_name,
        service_request=service_request,
        request_number=request_number,
        notes=notes,
        notes_label=notes_label,
    )
    return OutgoingEmail(
        recipient_email=recipient_email,
        email_type="request_confirmation" if confirmation else f"request_{event_type.value}",
        subject=_subject(event_type, request_number, service_request.title, label=label),
        html=html,
    )


async def build_outgoing_emails(
    session: AsyncSession,
    *,
    event: NotificationEvent,
    service_request: ServiceRequest,
    organization: Organization | None,
) -> list[OutgoingEmail]:
    """Resolve recipients for an outbox event and render one email each."""
    event_type = NotificationEventType(event.event_type)
    request_number = format_request_number(
        service_request.request_number,
        organization.request_number_prefix if organization else None,
    )
    submitter = await User.objects.by_id(service_request.submitter_id).first(session)
    emails: list[OutgoingEmail] = []
    addressed: set[str] = set()

    def _add(message: OutgoingEmail) -> None:
        key = message.recipient_email.lower()
        if key in addressed:
            return
        addressed.add(key)
        emails.append(message)

    if event_type in (NotificationEventType.SUBMITTED, NotificationEventType.ESCALATED):
        approvers = await _approver_recipients(
            session,
            event=event,
            service_request=service_request,
        )
        for user in approvers:
            _add(
                _approval_request_email(
                    event_type=event_type,
                    service_request=service_request,
                    request_number=request_number,
                    submitter=submitter,
                    recipient_email=user.email,
                    recipient_name=_display_name(user),
                    with_links=True,
                ),
            )
        if not approvers and organization is not None:
            # Last resort: shared approval inboxes have no user row to sign links for.
            for address in _normalize_emails(organization.approval_emails):
                _add(
                    _approval_request_email(
                        event_type=event_type,
                        service_request=service_request,
                        request_number=request_number,
                        submitter=submitter,
                        recipient_email=address,
                        recipient_name="team",
                        with_links=False,
                    ),
                )

    if submitter is not None and submitter.is_active:
        _add(
            _status_update_email(
                event=event,
                event_type=event_type,
                service_request=service_request,
                request_number=request_number,
                recipient_email=submitter.email,
                recipient_name=_display_name(submitter),
            ),
        )
    if event_type not in (NotificationEventType.SUBMITTED, NotificationEventType.ESCALATED):
        for address in _normalize_emails(service_request.cc_emails):
            _add(
                _status_update_email(
                    event=event,
                    event_type=event_type,
                    service_request=service_request,
                    request_number=request_number,
                    recipient_email=address,
                    recipient_name="there",
                ),
            )
    return emails


async def _already_sent(session: AsyncSession, event_id: UUID) -> set[str]:
    logs = (
        await EmailLog.objects.filter_by(notification_event_id=event_id, status="sent")
        .all(session)
    )
    return {log.recipient_email.lower() for log in logs}


async def dispatch_notification_event(
    session: AsyncSession,
    event: NotificationEvent,
    *,
    sender: Sender | None = None,
) -> DispatchResult:
    """Send every email for `event`, append email logs, and settle the outbox row.

    Commits once at the end. Never raises for delivery failures; inspect the
    returned result instead.
    """
    deliver = sender or send_email
    result = DispatchResult()
    service_request = await ServiceRequest.objects.by_id(event.request_id).first(session)
    event.attempts += 1
    if service_request is None:
        event.status = "failed"
        event.last_error = "Request not found"
        session.add(event)
        await session.commit()
        logger.warning(
            "notifications.dispatch.request_missing",
            extra={"event_id": str(event.id), "request_id": str(event.request_id)},
        )
        return result

    organization = await Organization.objects.by_id(service_request.organization_id).first(
        session,
    )
    outgoing = await build_outgoing_emails(
        session,
        event=event,
        service_request=service_request,
        organization=organization,
    )
    delivered = await _already_sent(session, event.id)

    for message in outgoing:
        if message.recipient_email.lower() in delivered:
            result.skipped.append(message.recipient_email)
            continue
        log = EmailLog(
            organization_id=service_request.organization_id,
            request_id=service_request.id,
            notification_event_id=event.id,
            recipient_email=message.recipient_email,
            email_type=message.email_type,
            subject=message.subject,
            payload={"event_type": event.event_type, "attempt": event.attempts},
            sent_at=utcnow(),
        )
        try:
            await deliver(
                EmailMessage(to=[message.recipient_email], subject=message.subject, html=message.html),
            )
        except EmailDeliveryError as exc:
            log.status = "failed"
            log.error_message = str(exc)
            result.failed[message.recipient_email] = str(exc)
            logger.warning(
                "notifications.dispatch.recipient_failed",
                extra={
                    "event_id": str(event.id),
                    "event_type": event.event_type,
                    "error": str(exc),
                },
            )
        else:
            log.status = "sent"
            result.sent.append(message.recipient_email)
        session.add(log)

    awaiting_approval = event.event_type in _AWAITING_APPROVAL
    if not outgoing:
        event.status = "failed"
        event.last_error = "No recipients resolved"
    elif awaiting_approval and not any(message.actionable for message in outgoing):
        event.status = "failed"
        event.last_error = "No approvers resolved"
        logger.warning(
            "notifications.dispatch.no_approvers",
            extra={"event_id": str(event.id), "request_id": str(event.request_id)},
        )
    elif result.failed:
        event.status = "failed"
        event.last_error = "; ".join(
            f"{email}: {error}" for email, error in sorted(result.failed.items())
        )[:1000]
    else:
        event.status = "sent"
        event.last_error = None
        event.dispatched_at = utcnow()
    session.add(event)
    await session.commit()
    logger.info(
        "notifications.dispatch.complete",
        extra={
            "event_id": str(event.id),
            "event_type": event.event_type,
            "status": event.status,
            "sent": len(result.sent),
            "failed": len(result.failed),
            "skipped": len(result.skipped),
        },
    )
    return result


async def process_notification_queue_task(task: QueuedTask) -> None:
    """Worker handler: dispatch the outbox event a queued task points at."""
    item = decode_notification_task(task)
    async with async_session_maker() as session:
        event = await NotificationEvent.objects.by_id(item.event_id).first(session)
        if event is None:
            logger.warning(
                "notifications.dispatch.event_missing",
                extra={"event_id": str(item.event_id)},
            )
            return
        if event.status == "sent":
            logger.info(
                "notifications.dispatch.already_sent",
                extra={"event_id": str(event.id)},
            )
            return
        result = await dispatch_notification_event(session, event)
    if not result.ok:
        raise NotificationDispatchError(
            f"{len(result.failed)} recipient(s) failed for event {item.event_id}",
        )


async def enqueue_pending_events(
    session: AsyncSession,
    *,
    limit: int = 100,
    min_age_seconds: float = 0,
) -> int:
    """Re-enqueue outbox rows still pending, e.g. after Redis was unreachable at commit."""
    cutoff = utcnow() - timedelta(seconds=min_age_seconds)
    events = (
        await NotificationEvent.objects.filter(
            col(NotificationEvent.status) == "pending",
            col(NotificationEvent.created_at) <= cutoff,
        )
        .order_by(col(NotificationEvent.created_at).asc())
        .limit(limit)
        .all(session)
    )
    queued = 0
    for event in events:
        if enqueue_notification(
            QueuedNotification(
                event_id=event.id,
                request_id=event.request_id,
                event_type=event.event_type,
            ),
        ):
            queued += 1
    if queued:
        logger.info("notifications.pending.requeued", extra={"count": queued})
    return queued
