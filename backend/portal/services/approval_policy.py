"""Amount-based approval tier policy.

Requests priced above the escalation threshold need a manager approval
followed by an admin approval; everything else (including unpriced requests)
is finalized by a single manager approval.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from portal.core.config import settings
from portal.services.request_status import (
    ADMIN_APPROVABLE_STATUSES,
    MANAGER_APPROVABLE_STATUSES,
    RequestStatus,
)

if TYPE_CHECKING:
    from portal.models.organizations import Organization

DEFAULT_ESCALATION_THRESHOLD = 5000.0


def resolve_threshold(organization: Organization | None = None) -> float:
    """Return the tenant override, else the configured global threshold."""
    if organization is not None and organization.approval_threshold is not None:
        return float(organization.approval_threshold)
    return float(settings.approval_escalation_threshold)


def requires_admin_approval(
    amount: float | None,
    threshold: float = DEFAULT_ESCALATION_THRESHOLD,
) -> bool:
    """Strictly-greater comparison; a missing amount never escalates."""
    if amount is None:
        return False
    return amount > threshold


def next_approval_status(
    amount: float | None,
    current_status: RequestStatus | str,
    threshold: float = DEFAULT_ESCALATION_THRESHOLD,
) -> RequestStatus | None:
    """Status an approve action moves to, or None when approval is not allowed."""
    status = RequestStatus(current_status)
    if status in MANAGER_APPROVABLE_STATUSES:
        if requires_admin_approval(amount, threshold):
            return RequestStatus.PENDING_ADMIN_APPROVAL
        return RequestStatus.APPROVED
    if status in ADMIN_APPROVABLE_STATUSES:
        return RequestStatus.APPROVED
    return None
