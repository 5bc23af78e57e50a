"""Organization membership and role helpers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from fastapi import HTTPException, status
from sqlmodel import col, select

from portal.models.organization_members import OrganizationMember
from portal.models.organizations import Organization
from portal.models.users import User

if TYPE_CHECKING:
    from uuid import UUID

    from sqlmodel.ext.asyncio.session import AsyncSession
    from sqlmodel.sql.expression import SelectOfScalar

ADMIN_ROLES = frozenset({"admin", "owner"})
APPROVER_ROLES = frozenset({"manager", "admin", "owner"})


def _active_user_ids() -> SelectOfScalar[UUID]:
    return select(User.id).where(col(User.is_active).is_(True))


@dataclass(frozen=True)
class OrganizationContext:
    """Resolved organization and membership for the active user."""

    organization: Organization
    member: OrganizationMember


def is_org_admin(member: OrganizationMember) -> bool:
    """Return whether a member may act on the admin approval tier."""
    return member.role in ADMIN_ROLES


def is_org_approver(member: OrganizationMember) -> bool:
    """Return whether a member may act on the manager approval tier."""
    return member.role in APPROVER_ROLES


async def get_member(
    session: AsyncSession,
    *,
    user_id: UUID,
    organization_id: UUID,
) -> OrganizationMember | None:
    """Fetch an active membership by user id and organization id."""
    return (
        await OrganizationMember.objects.filter_by(
            user_id=user_id,
            organization_id=organization_id,
        )
        .filter(col(OrganizationMember.is_active).is_(True))
        .first(session)
    )


async def resolve_membership(
    session: AsyncSession,
    user: User,
    organization_id: UUID | None = None,
) -> OrganizationMember:
    """Resolve which organization a caller is acting in.

    An explicit organization id must match an active membership. Without one,
    the caller must belong to exactly one organization.
    """
    if organization_id is not None:
        member = await get_member(session, user_id=user.id, organization_id=organization_id)
        if member is None:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="No organization access",
            )
        return member

    memberships = (
        await OrganizationMember.objects.filter_by(user_id=user.id)
        .filter(col(OrganizationMember.is_active).is_(True))
        .order_by(col(OrganizationMember.created_at).asc())
        .limit(2)
        .all(session)
    )
    if not memberships:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No organization access",
        )
    if len(memberships) > 1:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Organization-Id header is required for multi-organization users",
        )
    return memberships[0]


async def approvers_in_scope(
    session: AsyncSession,
    *,
    organization_id: UUID,
    roles: frozenset[str] = APPROVER_ROLES,
    brand_id: UUID | None = None,
    location_id: UUID | None = None,
) -> list[OrganizationMember]:
    """Active members holding one of `roles`, narrowed to a brand/location when possible.

    Members scoped to the request's brand or location are preferred; when
    none match, every member with the role is returned.
    """
    members = (
        await OrganizationMember.objects.filter_by(organization_id=organization_id)
        .filter(
            col(OrganizationMember.is_active).is_(True),
            col(OrganizationMember.role).in_(sorted(roles)),
            col(OrganizationMember.user_id).in_(_active_user_ids()),
        )
        .order_by(col(OrganizationMember.created_at).asc(), col(OrganizationMember.id).asc())
        .all(session)
    )
    if brand_id is None and location_id is None:
        return members
    scoped = [
        member
        for member in members
        if (brand_id is not None and member.brand_id == brand_id)
        or (location_id is not None and member.location_id == location_id)
    ]
    return scoped or members


async def active_member_user_ids(
    session: AsyncSession,
    *,
    organization_id: UUID,
    user_ids: list[UUID],
) -> set[UUID]:
    """Subset of `user_ids` that are active users with an active membership in the org."""
    if not user_ids:
        return set()
    rows = await session.exec(
        select(OrganizationMember.user_id).where(
            col(OrganizationMember.organization_id) == organization_id,
            col(OrganizationMember.is_active).is_(True),
            col(OrganizationMember.user_id).in_(user_ids),
            col(OrganizationMember.user_id).in_(_active_user_ids()),
        ),
    )
    return set(rows)


async def users_by_ids(session: AsyncSession, user_ids: list[UUID]) -> dict[UUID, User]:
    """Load active users keyed by id."""
    if not user_ids:
        return {}
    users = (
        await User.objects.by_ids(user_ids)
        .filter(col(User.is_active).is_(True))
        .all(session)
    )
    return {user.id: user for user in users}
