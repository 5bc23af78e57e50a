"""Append-only audit trail for request workflow and administration actions.

Entries are added to the caller's session; pass `commit=False` to write the
entry in the same transaction as the change it describes.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi.encoders import jsonable_encoder

from portal.core.logging import get_logger
from portal.core.time import utcnow
from portal.models.audit_entries import AuditEntry

if TYPE_CHECKING:
    from uuid import UUID

    from sqlmodel.ext.asyncio.session import AsyncSession

logger = get_logger(__name__)
ACTOR_TYPES = frozenset({"human", "email_link", "system"})


async def record_audit(
    session: AsyncSession,
    *,
    organization_id: UUID,
    actor_id: UUID | None,
    actor_type: str,
    action: str,
    target_type: str = "",
    target_id: UUID | None = None,
    payload: dict[str, object] | None = None,
    commit: bool = True,
) -> AuditEntry:
    """Add an audit entry; UUIDs, datetimes and enums in `payload` are stored as JSON text."""
    if actor_type not in ACTOR_TYPES:
        raise ValueError(f"Unknown audit actor_type={actor_type!r}")
    entry = AuditEntry(
        organization_id=organization_id,
        actor_id=actor_id,
        actor_type=actor_type,
        action=action,
        target_type=target_type,
        target_id=target_id,
        payload=jsonable_encoder(payload) if payload is not None else None,
        created_at=utcnow(),
    )
    session.add(entry)
    logger.debug(
        "audit.recorded",
        extra={
            "action": action,
            "actor_type": actor_type,
            "target_type": target_type,
            "target_id": str(target_id) if target_id else None,
        },
    )
    if commit:
        await session.commit()
        await session.refresh(entry)
    return entry
