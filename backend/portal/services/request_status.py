"""Closed status, type, and action vocabularies for requests."""

from __future__ import annotations

from enum import Enum


class RequestStatus(str, Enum):
    """Every status a request row can hold."""

    DRAFT = "draft"
    SUBMITTED = "submitted"
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    PENDING_MANAGER_APPROVAL = "pending_manager_approval"
    PENDING_ADMIN_APPROVAL = "pending_admin_approval"
    APPROVED = "approved"
    ORDERED = "ordered"
    DECLINED = "declined"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class RequestType(str, Enum):
    """Kinds of request the portal accepts."""

    HARDWARE = "hardware"
    TONER = "toner"
    MARKETING = "marketing"
    DEPARTMENT = "department"
    USER_ACCOUNT = "user_account"


class ApprovalAction(str, Enum):
    """Actions that move a request through its lifecycle."""

    APPROVE = "approve"
    DECLINE = "decline"
    CANCEL = "cancel"
    COMPLETE = "complete"


class NotificationEventType(str, Enum):
    """Outbox event emitted by a transition or by submission."""

    SUBMITTED = "submitted"
    ESCALATED = "escalated"
    APPROVED = "approved"
    DECLINED = "declined"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


TERMINAL_STATUSES = frozenset(
    {
        RequestStatus.APPROVED,
        RequestStatus.DECLINED,
        RequestStatus.CANCELLED,
        RequestStatus.COMPLETED,
    },
)
MANAGER_APPROVABLE_STATUSES = frozenset(
    {
        RequestStatus.SUBMITTED,
        RequestStatus.OPEN,
        RequestStatus.PENDING_MANAGER_APPROVAL,
    },
)
ADMIN_APPROVABLE_STATUSES = frozenset({RequestStatus.PENDING_ADMIN_APPROVAL})
COMPLETABLE_STATUSES = frozenset(
    {
        RequestStatus.APPROVED,
        RequestStatus.ORDERED,
        RequestStatus.OPEN,
        RequestStatus.IN_PROGRESS,
    },
)
INITIAL_STATUS_BY_TYPE: dict[RequestType, RequestStatus] = {
    RequestType.HARDWARE: RequestStatus.PENDING_MANAGER_APPROVAL,
    RequestType.TONER: RequestStatus.OPEN,
}


def is_terminal(status: RequestStatus | str) -> bool:
    """Return whether no further approve/decline is permitted."""
    return RequestStatus(status) in TERMINAL_STATUSES


def initial_status_for(request_type: RequestType | str) -> RequestStatus:
    """Status a freshly submitted request starts in."""
    return INITIAL_STATUS_BY_TYPE.get(RequestType(request_type), RequestStatus.SUBMITTED)
