"""Reusable FastAPI dependencies for auth and organization access.

They resolve the authenticated user, pick the organization the call acts in
(`X-Organization-Id` header, or the caller's only membership), and gate
routes on the member's role. Prefer composing these over re-implementing
permission checks in a router.
"""

from __future__ import annotations

from typing import TYPE_CHECKING
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status

from portal.core.auth import AuthContext, get_auth_context
from portal.db.session import get_session
from portal.models.organizations import Organization
from portal.services.organizations import (
    OrganizationContext,
    is_org_admin,
    is_org_approver,
    resolve_membership,
)

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

    from portal.models.users import User

AUTH_DEP = Depends(get_auth_context)
SESSION_DEP = Depends(get_session)
ORGANIZATION_HEADER = Header(default=None, alias="X-Organization-Id")


def require_user(auth: AuthContext = AUTH_DEP) -> User:
    """Return the authenticated user or raise 401."""
    if auth.user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
    return auth.user


USER_DEP = Depends(require_user)


async def require_org_member(
    user: User = USER_DEP,
    session: AsyncSession = SESSION_DEP,
    organization_id: UUID | None = ORGANIZATION_HEADER,
) -> OrganizationContext:
    """Resolve and require active organization membership for the current user."""
    member = await resolve_membership(session, user, organization_id)
    organization = await Organization.objects.by_id(member.organization_id).first(session)
    if organization is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
    return OrganizationContext(organization=organization, member=member)


ORG_MEMBER_DEP = Depends(require_org_member)


async def require_org_approver(
    ctx: OrganizationContext = ORG_MEMBER_DEP,
) -> OrganizationContext:
    """Require a manager, admin, or owner membership."""
    if not is_org_approver(ctx.member):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
    return ctx


async def require_org_admin(
    ctx: OrganizationContext = ORG_MEMBER_DEP,
) -> OrganizationContext:
    """Require an admin or owner membership."""
    if not is_org_admin(ctx.member):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
    return ctx


ORG_APPROVER_DEP = Depends(require_org_approver)
ORG_ADMIN_DEP = Depends(require_org_admin)
