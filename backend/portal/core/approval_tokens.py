"""Signed tokens for approving or declining a request from an email link.

The token binds a request id to the approving manager's email address:
``sha256("{request_id}:{manager_email}:{secret}")`` rendered as lowercase hex.
The link carries the token as a query parameter; nothing is stored server side.
"""

from __future__ import annotations

import hashlib
from hmac import compare_digest
from typing import TYPE_CHECKING
from urllib.parse import urlencode

from portal.core.config import settings

if TYPE_CHECKING:
    from uuid import UUID

EMAIL_APPROVAL_PATH = "/api/v1/email-approval"


def compute_email_approval_token(
    request_id: UUID | str,
    manager_email: str,
    secret: str | None = None,
) -> str:
    """Return the hex digest expected for a request/manager pair."""
    key = settings.email_approval_secret if secret is None else secret
    raw = f"{request_id}:{manager_email}:{key}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def verify_email_approval_token(
    token: str,
    *,
    request_id: UUID | str,
    manager_email: str,
    secret: str | None = None,
) -> bool:
    """Exact-match check of a presented token."""
    expected = compute_email_approval_token(request_id, manager_email, secret)
    return compare_digest(token.encode("utf-8"), expected.encode("utf-8"))


def build_email_approval_links(
    request_id: UUID | str,
    manager_email: str,
    *,
    base_url: str | None = None,
) -> dict[str, str]:
    """Build the approve/decline URLs embedded in an approval email."""
    root = (base_url or settings.base_url).rstrip("/")
    token = compute_email_approval_token(request_id, manager_email)
    links: dict[str, str] = {}
    for action in ("approve", "decline"):
        query = urlencode(
            {
                "requestId": str(request_id),
                "action": action,
                "managerEmail": manager_email,
                "token": token,
            },
        )
        links[action] = f"{root}{EMAIL_APPROVAL_PATH}?{query}"
    return links
