"""Token-gated approve/decline handling for links embedded in approval emails.

The flow is split in two: `load_email_approval` runs every check that does not
mutate anything (parameters, token, request, approver, terminal guard) and is
shared by GET and POST; only `submit_email_approval` writes. Link scanners
that prefetch the GET URL can therefore never trigger an approval.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import urlencode
from uuid import UUID

from fastapi import status
from sqlalchemy import func
from sqlmodel import col

from portal.core.approval_tokens import EMAIL_APPROVAL_PATH, verify_email_approval_token
from portal.core.logging import get_logger
from portal.models.organizations import Organization
from portal.models.service_requests import ServiceRequest
from portal.models.users import User
from portal.services.approval_policy import requires_admin_approval, resolve_threshold
from portal.services.organizations import get_member
from portal.services.request_lifecycle import (
    AlreadyProcessedError,
    InvalidReasonError,
    TransitionError,
)
from portal.services.request_status import (
    ADMIN_APPROVABLE_STATUSES,
    ApprovalAction,
    RequestStatus,
    is_terminal,
)
from portal.services.requests import apply_action, can_decide, display_number
from portal.services.templates import render_template

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

    from portal.models.organization_members import OrganizationMember

logger = get_logger(__name__)

EMAIL_ACTIONS = frozenset({ApprovalAction.APPROVE, ApprovalAction.DECLINE})


@dataclass(frozen=True)
class EmailApprovalPage:
    """Rendered HTML plus the status code to answer with."""

    status_code: int
    html: str


class EmailApprovalRejected(Exception):
    """A check failed; carries the page to render."""

    def __init__(self, page: EmailApprovalPage) -> None:
        super().__init__(page.html)
        self.page = page


@dataclass(frozen=True)
class EmailApprovalContext:
    service_request: ServiceRequest
    organization: Organization
    approver: User
    member: OrganizationMember
    action: ApprovalAction
    manager_email: str
    token: str


def _error_page(status_code: int, heading: str, message: str) -> EmailApprovalPage:
    return EmailApprovalPage(
        status_code=status_code,
        html=render_template("email_approval/error.html", heading=heading, message=message),
    )


def _reject(status_code: int, heading: str, message: str) -> EmailApprovalRejected:
    return EmailApprovalRejected(_error_page(status_code, heading, message))


def _action_url(ctx: EmailApprovalContext) -> str:
    query = urlencode(
        {
            "requestId": str(ctx.service_request.id),
            "action": ctx.action.value,
            "managerEmail": ctx.manager_email,
            "token": ctx.token,
        },
    )
    return f"{EMAIL_APPROVAL_PATH}?{query}"


def _already_processed_page(
    service_request: ServiceRequest,
    organization: Organization,
) -> EmailApprovalPage:
    return EmailApprovalPage(
        status_code=status.HTTP_200_OK,
        html=render_template(
            "email_approval/already_processed.html",
            heading="Request Already Processed",
            service_request=service_request,
            request_number=display_number(service_request, organization),
        ),
    )


def _clean(value: str | None) -> str:
    return (value or "").strip()


async def load_email_approval(
    session: AsyncSession,
    *,
    request_id: str | None,
    action: str | None,
    manager_email: str | None,
    token: str | None,
) -> EmailApprovalContext:
    """Validate a link without side effects.

    Raises `EmailApprovalRejected` carrying the page to show on failure.
    """
    raw_request_id = _clean(request_id)
    raw_action = _clean(action).lower()
    raw_email = _clean(manager_email)
    raw_token = _clean(token)
    if not (raw_request_id and raw_action and raw_email and raw_token):
        raise _reject(
            status.HTTP_400_BAD_REQUEST,
            "Invalid Link",
            "This approval link is missing required information.",
        )

    if not verify_email_approval_token(
        raw_token,
        request_id=raw_request_id,
        manager_email=raw_email,
    ):
        logger.warning(
            "email_approval.token_invalid",
            extra={"request_id": raw_request_id, "action": raw_action},
        )
        raise _reject(
            status.HTTP_401_UNAUTHORIZED,
            "Invalid Link",
            "This approval link is invalid or has been tampered with.",
        )

    try:
        approval_action = ApprovalAction(raw_action)
        parsed_request_id = UUID(raw_request_id)
    except ValueError as exc:
        raise _reject(
            status.HTTP_400_BAD_REQUEST,
            "Invalid Link",
            "This approval link is not valid.",
        ) from exc
    if approval_action not in EMAIL_ACTIONS:
        raise _reject(
            status.HTTP_400_BAD_REQUEST,
            "Invalid Link",
            "Only approve and decline are available from email.",
        )

    service_request = await ServiceRequest.objects.by_id(parsed_request_id).first(session)
    if service_request is None:
        raise _reject(
            status.HTTP_404_NOT_FOUND,
            "Request Not Found",
            "The request in this link no longer exists.",
        )
    organization = await Organization.objects.by_id(service_request.organization_id).first(
        session,
    )

    approver = (
        await User.objects.filter(func.lower(col(User.email)) == raw_email.lower())
        .filter(col(User.is_active).is_(True))
        .first(session)
    )
    member = (
        await get_member(
            session,
            user_id=approver.id,
            organization_id=service_request.organization_id,
        )
        if approver is not None
        else None
    )
    if approver is None or member is None or organization is None:
        raise _reject(
            status.HTTP_404_NOT_FOUND,
            "Approver Not Found",
            "We could not find an approver with this email address.",
        )

    if is_terminal(service_request.status):
        raise EmailApprovalRejected(_already_processed_page(service_request, organization))

    if not can_decide(member, service_request):
        raise _reject(
            status.HTTP_403_FORBIDDEN,
            "Not Authorized",
            "You are not authorized to act on this request at its current approval stage.",
        )

    return EmailApprovalContext(
        service_request=service_request,
        organization=organization,
        approver=approver,
        member=member,
        action=approval_action,
        manager_email=raw_email,
        token=raw_token,
    )


def _decline_form(ctx: EmailApprovalContext, *, error: str | None = None) -> str:
    return render_template(
        "email_approval/decline_form.html",
        heading="Decline Request",
        service_request=ctx.service_request,
        request_number=display_number(ctx.service_request, ctx.organization),
        approver_name=ctx.approver.name or ctx.approver.email,
        action_url=_action_url(ctx),
        error=error,
    )


def render_email_approval_form(ctx: EmailApprovalContext) -> EmailApprovalPage:
    """GET handler body: confirmation page for approve, reason form for decline."""
    service_request = ctx.service_request
    request_number = display_number(service_request, ctx.organization)
    approver_name = ctx.approver.name or ctx.approver.email
    if ctx.action == ApprovalAction.DECLINE:
        html = _decline_form(ctx)
    else:
        threshold = resolve_threshold(ctx.organization)
        escalates = RequestStatus(
            service_request.status,
        ) not in ADMIN_APPROVABLE_STATUSES and requires_admin_approval(
            service_request.amount,
            threshold,
        )
        html = render_template(
            "email_approval/confirm.html",
            heading="Approve Request",
            service_request=service_request,
            request_number=request_number,
            approver_name=approver_name,
            action_url=_action_url(ctx),
            escalates=escalates,
            threshold=threshold,
        )
    return EmailApprovalPage(status_code=status.HTTP_200_OK, html=html)


async def submit_email_approval(
    session: AsyncSession,
    ctx: EmailApprovalContext,
    *,
    reason: str | None = None,
) -> EmailApprovalPage:
    """POST handler body: apply the action and render the outcome page."""
    notes = "Approved via email" if ctx.action == ApprovalAction.APPROVE else None
    try:
        outcome = await apply_action(
            session,
            service_request=ctx.service_request,
            organization=ctx.organization,
            action=ctx.action,
            actor_id=ctx.approver.id,
            actor_type="email_link",
            notes=notes,
            reason=reason,
        )
    except InvalidReasonError:
        return EmailApprovalPage(
            status_code=status.HTTP_400_BAD_REQUEST,
            html=_decline_form(ctx, error="Please provide a reason for declining this request."),
        )
    except AlreadyProcessedError:
        return _already_processed_page(ctx.service_request, ctx.organization)
    except TransitionError as exc:
        return _error_page(status.HTTP_400_BAD_REQUEST, "Action Not Available", exc.message)

    logger.info(
        "email_approval.applied",
        extra={
            "request_id": str(ctx.service_request.id),
            "action": ctx.action.value,
            "event": outcome.transition.event.value,
        },
    )
    return EmailApprovalPage(
        status_code=status.HTTP_200_OK,
        html=render_template(
            "email_approval/result.html",
            heading="Request Updated",
            outcome=outcome.transition.event.value,
            service_request=outcome.service_request,
            request_number=display_number(outcome.service_request, ctx.organization),
        ),
    )
