# ruff: noqa: INP001
"""State machine tests for request approval transitions."""

from __future__ import annotations

from datetime import datetime
from uuid import uuid4

import pytest

from portal.services.request_lifecycle import (
    AlreadyProcessedError,
    InvalidReasonError,
    InvalidTransitionError,
    transition,
)
from portal.services.request_status import (
    ApprovalAction,
    NotificationEventType,
    RequestStatus,
)

NOW = datetime(2026, 3, 1, 12, 0, 0)


def test_manager_approval_under_threshold_finalizes() -> None:
    actor = uuid4()
    result = transition(
        RequestStatus.PENDING_MANAGER_APPROVAL,
        ApprovalAction.APPROVE,
        actor_id=actor,
        now=NOW,
        amount=500,
        threshold=5000,
        notes="ok",
    )
    assert result.next_status == RequestStatus.APPROVED
    assert result.event == NotificationEventType.APPROVED
    assert result.tier == "manager"
    assert result.fields["manager_id"] == actor
    assert result.fields["manager_approved_at"] == NOW
    assert result.fields["manager_approval_notes"] == "ok"
    assert "admin_id" not in result.fields


def test_manager_approval_over_threshold_escalates() -> None:
    result = transition(
        RequestStatus.SUBMITTED,
        ApprovalAction.APPROVE,
        actor_id=uuid4(),
        now=NOW,
        amount=5000.01,
        threshold=5000,
    )
    assert result.next_status == RequestStatus.PENDING_ADMIN_APPROVAL
    assert result.event == NotificationEventType.ESCALATED
    assert result.fields["status"] == "pending_admin_approval"


def test_amount_equal_to_threshold_does_not_escalate() -> None:
    result = transition(
        RequestStatus.OPEN,
        ApprovalAction.APPROVE,
        actor_id=uuid4(),
        now=NOW,
        amount=5000,
        threshold=5000,
    )
    assert result.next_status == RequestStatus.APPROVED


def test_admin_approval_writes_admin_fields() -> None:
    admin = uuid4()
    result = transition(
        RequestStatus.PENDING_ADMIN_APPROVAL,
        ApprovalAction.APPROVE,
        actor_id=admin,
        now=NOW,
        amount=12000,
        threshold=5000,
    )
    assert result.next_status == RequestStatus.APPROVED
    assert result.tier == "admin"
    assert result.fields["admin_id"] == admin
    assert "manager_id" not in result.fields


def test_unpriced_request_is_single_tier() -> None:
    result = transition(
        RequestStatus.PENDING_MANAGER_APPROVAL,
        ApprovalAction.APPROVE,
        actor_id=uuid4(),
        now=NOW,
        amount=None,
        threshold=0,
    )
    assert result.next_status == RequestStatus.APPROVED


@pytest.mark.parametrize("reason", [None, "", "   \n\t"])
def test_decline_requires_non_blank_reason(reason: str | None) -> None:
    with pytest.raises(InvalidReasonError):
        transition(
            RequestStatus.PENDING_MANAGER_APPROVAL,
            ApprovalAction.DECLINE,
            actor_id=uuid4(),
            now=NOW,
            reason=reason,
        )


def test_decline_strips_reason() -> None:
    result = transition(
        RequestStatus.PENDING_ADMIN_APPROVAL,
        ApprovalAction.DECLINE,
        actor_id=uuid4(),
        now=NOW,
        reason="  over budget  ",
    )
    assert result.next_status == RequestStatus.DECLINED
    assert result.fields["decline_reason"] == "over budget"
    assert result.event == NotificationEventType.DECLINED


@pytest.mark.parametrize(
    "status",
    [
        RequestStatus.APPROVED,
        RequestStatus.DECLINED,
        RequestStatus.CANCELLED,
        RequestStatus.COMPLETED,
    ],
)
@pytest.mark.parametrize(
    "action",
    [ApprovalAction.APPROVE, ApprovalAction.DECLINE, ApprovalAction.CANCEL],
)
def test_terminal_statuses_reject_actions(
    status: RequestStatus,
    action: ApprovalAction,
) -> None:
    with pytest.raises(AlreadyProcessedError) as exc_info:
        transition(status, action, actor_id=uuid4(), now=NOW, reason="why")
    assert exc_info.value.status == status


def test_cancel_records_actor() -> None:
    actor = uuid4()
    result = transition(RequestStatus.OPEN, ApprovalAction.CANCEL, actor_id=actor, now=NOW)
    assert result.next_status == RequestStatus.CANCELLED
    assert result.fields["cancelled_by"] == actor
    assert result.tier is None


def test_complete_allowed_from_approved() -> None:
    result = transition(RequestStatus.APPROVED, ApprovalAction.COMPLETE, actor_id=uuid4(), now=NOW)
    assert result.next_status == RequestStatus.COMPLETED
    assert result.event == NotificationEventType.COMPLETED


@pytest.mark.parametrize(
    "status",
    [RequestStatus.PENDING_MANAGER_APPROVAL, RequestStatus.DECLINED, RequestStatus.COMPLETED],
)
def test_complete_rejected_elsewhere(status: RequestStatus) -> None:
    with pytest.raises(InvalidTransitionError):
        transition(status, ApprovalAction.COMPLETE, actor_id=uuid4(), now=NOW)


def test_fields_always_carry_status() -> None:
    result = transition(
        "pending_manager_approval",
        "approve",
        actor_id=uuid4(),
        now=NOW,
        amount=10,
    )
    assert result.fields["status"] == result.next_status.value
