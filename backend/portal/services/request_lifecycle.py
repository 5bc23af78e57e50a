"""Pure request status state machine.

`transition` takes the current status, the requested action, and the inputs
the approval policy needs, and returns the next status together with the
fields to persist and the notification event to emit. It performs no I/O so
callers decide how the result is written (see `portal.services.requests`).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from portal.services.approval_policy import DEFAULT_ESCALATION_THRESHOLD, next_approval_status
from portal.services.request_status import (
    ADMIN_APPROVABLE_STATUSES,
    COMPLETABLE_STATUSES,
    ApprovalAction,
    NotificationEventType,
    RequestStatus,
    is_terminal,
)

if TYPE_CHECKING:
    from datetime import datetime
    from uuid import UUID


class TransitionError(Exception):
    """Base class for rejected lifecycle actions."""

    def __init__(self, message: str, *, status: RequestStatus | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status


class InvalidReasonError(TransitionError):
    """Decline attempted without a usable reason."""


class AlreadyProcessedError(TransitionError):
    """Action attempted on a request that is already finalized."""


class InvalidTransitionError(TransitionError):
    """Action is not valid from the current (non-terminal) status."""


@dataclass(frozen=True)
class Transition:
    """Outcome of a successful lifecycle action."""

    previous_status: RequestStatus
    next_status: RequestStatus
    event: NotificationEventType
    fields: dict[str, object] = field(default_factory=dict)

    @property
    def tier(self) -> str | None:
        """Approval tier written by this transition, if any."""
        if "admin_id" in self.fields:
            return "admin"
        if "manager_id" in self.fields:
            return "manager"
        return None


def _approve(
    current: RequestStatus,
    *,
    amount: float | None,
    threshold: float,
    actor_id: UUID,
    now: datetime,
    notes: str | None,
) -> Transition:
    next_status = next_approval_status(amount, current, threshold)
    if next_status is None:
        raise AlreadyProcessedError(
            f"Request has already been processed (status: {current.value}).",
            status=current,
        )
    if current in ADMIN_APPROVABLE_STATUSES:
        fields: dict[str, object] = {
            "admin_id": actor_id,
            "admin_approved_at": now,
            "admin_approval_notes": notes,
        }
    else:
        fields = {
            "manager_id": actor_id,
            "manager_approved_at": now,
            "manager_approval_notes": notes,
        }
    event = (
        NotificationEventType.ESCALATED
        if next_status == RequestStatus.PENDING_ADMIN_APPROVAL
        else NotificationEventType.APPROVED
    )
    return Transition(
        previous_status=current,
        next_status=next_status,
        event=event,
        fields={"status": next_status.value, **fields},
    )


def _decline(
    current: RequestStatus,
    *,
    actor_id: UUID,
    now: datetime,
    reason: str | None,
) -> Transition:
    cleaned = (reason or "").strip()
    if not cleaned:
        raise InvalidReasonError("A reason is required to decline a request.", status=current)
    return Transition(
        previous_status=current,
        next_status=RequestStatus.DECLINED,
        event=NotificationEventType.DECLINED,
        fields={
            "status": RequestStatus.DECLINED.value,
            "declined_by": actor_id,
            "declined_at": now,
            "decline_reason": cleaned,
        },
    )


def transition(
    current_status: RequestStatus | str,
    action: ApprovalAction | str,
    *,
    actor_id: UUID,
    now: datetime,
    amount: float | None = None,
    threshold: float = DEFAULT_ESCALATION_THRESHOLD,
    notes: str | None = None,
    reason: str | None = None,
) -> Transition:
    """Compute the next status and persisted fields for `action`."""
    current = RequestStatus(current_status)
    requested = ApprovalAction(action)

    if requested == ApprovalAction.COMPLETE:
        if current not in COMPLETABLE_STATUSES:
            raise InvalidTransitionError(
                f"Request cannot be completed from status {current.value}.",
                status=current,
            )
        return Transition(
            previous_status=current,
            next_status=RequestStatus.COMPLETED,
            event=NotificationEventType.COMPLETED,
            fields={
                "status": RequestStatus.COMPLETED.value,
                "completed_by": actor_id,
                "completed_at": now,
            },
        )

    if is_terminal(current):
        raise AlreadyProcessedError(
            f"Request has already been processed (status: {current.value}).",
            status=current,
        )

    if requested == ApprovalAction.APPROVE:
        return _approve(
            current,
            amount=amount,
            threshold=threshold,
            actor_id=actor_id,
            now=now,
            notes=notes,
        )
    if requested == ApprovalAction.DECLINE:
        return _decline(current, actor_id=actor_id, now=now, reason=reason)

    return Transition(
        previous_status=current,
        next_status=RequestStatus.CANCELLED,
        event=NotificationEventType.CANCELLED,
        fields={
            "status": RequestStatus.CANCELLED.value,
            "cancelled_by": actor_id,
            "cancelled_at": now,
        },
    )
