"""Outbound email gateway client (Resend-compatible HTTP API)."""

from __future__ import annotations

from dataclasses import dataclass

import httpx

from portal.core.config import settings
from portal.core.logging import get_logger

logger = get_logger(__name__)


class EmailDeliveryError(RuntimeError):
    """Raised when the gateway rejects or fails to accept a message."""


@dataclass(frozen=True)
class EmailMessage:
    to: list[str]
    subject: str
    html: str
    reply_to: str | None = None


def _payload(message: EmailMessage) -> dict[str, object]:
    body: dict[str, object] = {
        "from": settings.email_from,
        "to": message.to,
        "subject": message.subject,
        "html": message.html,
    }
    if message.reply_to:
        body["reply_to"] = message.reply_to
    return body


async def send_email(
    message: EmailMessage,
    *,
    client: httpx.AsyncClient | None = None,
) -> str | None:
    """Send one message and return the provider message id, if any."""
    if not settings.email_api_key.strip():
        raise EmailDeliveryError("EMAIL_API_KEY is not configured")

    url = f"{settings.email_api_url.rstrip('/')}/emails"
    headers = {"Authorization": f"Bearer {settings.email_api_key.strip()}"}
    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=settings.email_timeout_seconds)
    try:
        response = await http.post(url, json=_payload(message), headers=headers)
    except httpx.HTTPError as exc:
        raise EmailDeliveryError(f"Email gateway request failed: {exc}") from exc
    finally:
        if owns_client:
            await http.aclose()

    if response.status_code >= 400:
        detail = response.text[:300]
        logger.warning(
            "email.send.rejected",
            extra={"status_code": response.status_code, "detail": detail},
        )
        raise EmailDeliveryError(f"Email gateway returned {response.status_code}: {detail}")

    message_id: str | None = None
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict) and isinstance(data.get("id"), str):
        message_id = data["id"]
    logger.info(
        "email.send.accepted",
        extra={"recipient_count": len(message.to), "message_id": message_id},
    )
    return message_id
