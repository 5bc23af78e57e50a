"""Team and team-membership administration for request routing."""

from __future__ import annotations

from typing import TYPE_CHECKING
from uuid import UUID

from fastapi import APIRouter, HTTPException, status
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import col

from portal.api.deps import ORG_ADMIN_DEP, ORG_MEMBER_DEP, SESSION_DEP
from portal.core.time import utcnow
from portal.models.organization_members import OrganizationMember
from portal.models.routing_rules import RoutingRule
from portal.models.teams import Team, TeamMember
from portal.schemas.common import OkResponse
from portal.schemas.teams import (
    TeamCreate,
    TeamMemberCreate,
    TeamMemberRead,
    TeamMemberUpdate,
    TeamRead,
    TeamUpdate,
)
from portal.services.audit import record_audit
from portal.services.organizations import OrganizationContext

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

router = APIRouter(prefix="/teams", tags=["teams"])


async def _get_org_team(
    session: AsyncSession,
    *,
    ctx: OrganizationContext,
    team_id: UUID,
) -> Team:
    team = (
        await Team.objects.by_id(team_id)
        .filter(col(Team.organization_id) == ctx.organization.id)
        .first(session)
    )
    if team is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND)
    return team


async def _get_team_member(
    session: AsyncSession,
    *,
    team: Team,
    member_id: UUID,
) -> TeamMember:
    member = await TeamMember.objects.filter_by(id=member_id, team_id=team.id).first(session)
    if member is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND)
    return member


async def _audit(
    session: AsyncSession,
    ctx: OrganizationContext,
    action: str,
    *,
    target_type: str,
    target_id: UUID,
    payload: dict[str, object] | None = None,
) -> None:
    await record_audit(
        session,
        organization_id=ctx.organization.id,
        actor_id=ctx.member.user_id,
        actor_type="human",
        action=action,
        target_type=target_type,
        target_id=target_id,
        payload=payload,
        commit=False,
    )


@router.get("", response_model=list[TeamRead])
async def list_teams(
    session: AsyncSession = SESSION_DEP,
    ctx: OrganizationContext = ORG_MEMBER_DEP,
) -> list[TeamRead]:
    """List teams in the active organization."""
    teams = await Team.objects.filter_by(organization_id=ctx.organization.id).order_by(
        func.lower(col(Team.name)).asc(),
    ).all(session)
    return [TeamRead.model_validate(team, from_attributes=True) for team in teams]


@router.post("", response_model=TeamRead, status_code=status.HTTP_201_CREATED)
async def create_team(
    payload: TeamCreate,
    session: AsyncSession = SESSION_DEP,
    ctx: OrganizationContext = ORG_ADMIN_DEP,
) -> TeamRead:
    """Create a team."""
    team = Team(
        organization_id=ctx.organization.id,
        name=payload.name.strip(),
        department=payload.department,
    )
    session.add(team)
    await session.flush()
    await _audit(session, ctx, "team.create", target_type="team", target_id=team.id)
    await session.commit()
    await session.refresh(team)
    return TeamRead.model_validate(team, from_attributes=True)


@router.patch("/{team_id}", response_model=TeamRead)
async def update_team(
    team_id: UUID,
    payload: TeamUpdate,
    session: AsyncSession = SESSION_DEP,
    ctx: OrganizationContext = ORG_ADMIN_DEP,
) -> TeamRead:
    """Rename, re-department, or deactivate a team."""
    team = await _get_org_team(session, ctx=ctx, team_id=team_id)
    updates = payload.model_dump(exclude_unset=True)
    for key, value in updates.items():
        setattr(team, key, value)
    team.updated_at = utcnow()
    session.add(team)
    await _audit(
        session,
        ctx,
        "team.update",
        target_type="team",
        target_id=team.id,
        payload={"fields": sorted(updates)},
    )
    await session.commit()
    await session.refresh(team)
    return TeamRead.model_validate(team, from_attributes=True)


@router.delete("/{team_id}", response_model=OkResponse)
async def delete_team(
    team_id: UUID,
    session: AsyncSession = SESSION_DEP,
    ctx: OrganizationContext = ORG_ADMIN_DEP,
) -> OkResponse:
    """Delete a team that no routing rule points at."""
    team = await _get_org_team(session, ctx=ctx, team_id=team_id)
    in_use = await RoutingRule.objects.filter_by(team_id=team.id).first(session)
    if in_use is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Team is referenced by a routing rule.",
        )
    members = await TeamMember.objects.filter_by(team_id=team.id).all(session)
    for member in members:
        await session.delete(member)
    await _audit(session, ctx, "team.delete", target_type="team", target_id=team.id)
    await session.delete(team)
    await session.commit()
    return OkResponse()


@router.get("/{team_id}/members", response_model=list[TeamMemberRead])
async def list_team_members(
    team_id: UUID,
    session: AsyncSession = SESSION_DEP,
    ctx: OrganizationContext = ORG_MEMBER_DEP,
) -> list[TeamMemberRead]:
    """List the members of a team."""
    team = await _get_org_team(session, ctx=ctx, team_id=team_id)
    members = await TeamMember.objects.filter_by(team_id=team.id).order_by(
        col(TeamMember.created_at).asc(),
    ).all(session)
    return [TeamMemberRead.model_validate(member, from_attributes=True) for member in members]


@router.post(
    "/{team_id}/members",
    response_model=TeamMemberRead,
    status_code=status.HTTP_201_CREATED,
)
async def add_team_member(
    team_id: UUID,
    payload: TeamMemberCreate,
    session: AsyncSession = SESSION_DEP,
    ctx: OrganizationContext = ORG_ADMIN_DEP,
) -> TeamMemberRead:
    """Add an organization member to a team."""
    team = await _get_org_team(session, ctx=ctx, team_id=team_id)
    org_member = await OrganizationMember.objects.filter_by(
        organization_id=ctx.organization.id,
        user_id=payload.user_id,
    ).first(session)
    if org_member is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="User is not a member of this organization.",
        )
    member = TeamMember(
        team_id=team.id,
        user_id=payload.user_id,
        role_in_team=payload.role_in_team,
        skills=[skill.strip().lower() for skill in payload.skills if skill.strip()] or None,
    )
    session.add(member)
    try:
        await session.flush()
    except IntegrityError as err:
        await session.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="User is already on this team.",
        ) from err
    await _audit(
        session,
        ctx,
        "team.member.add",
        target_type="team",
        target_id=team.id,
        payload={"user_id": str(payload.user_id), "role_in_team": payload.role_in_team},
    )
    await session.commit()
    await session.refresh(member)
    return TeamMemberRead.model_validate(member, from_attributes=True)


@router.patch("/{team_id}/members/{member_id}", response_model=TeamMemberRead)
async def update_team_member(
    team_id: UUID,
    member_id: UUID,
    payload: TeamMemberUpdate,
    session: AsyncSession = SESSION_DEP,
    ctx: OrganizationContext = ORG_ADMIN_DEP,
) -> TeamMemberRead:
    """Change a member's team role, skills, or availability."""
    team = await _get_org_team(session, ctx=ctx, team_id=team_id)
    member = await _get_team_member(session, team=team, member_id=member_id)
    updates = payload.model_dump(exclude_unset=True)
    if updates.get("skills") is not None:
        updates["skills"] = [
            skill.strip().lower() for skill in updates["skills"] if skill.strip()
        ] or None
    for key, value in updates.items():
        setattr(member, key, value)
    session.add(member)
    await _audit(
        session,
        ctx,
        "team.member.update",
        target_type="team",
        target_id=team.id,
        payload={"user_id": str(member.user_id), "fields": sorted(updates)},
    )
    await session.commit()
    await session.refresh(member)
    return TeamMemberRead.model_validate(member, from_attributes=True)


@router.delete("/{team_id}/members/{member_id}", response_model=OkResponse)
async def remove_team_member(
    team_id: UUID,
    member_id: UUID,
    session: AsyncSession = SESSION_DEP,
    ctx: OrganizationContext = ORG_ADMIN_DEP,
) -> OkResponse:
    """Remove a user from a team."""
    team = await _get_org_team(session, ctx=ctx, team_id=team_id)
    member = await _get_team_member(session, team=team, member_id=member_id)
    await _audit(
        session,
        ctx,
        "team.member.remove",
        target_type="team",
        target_id=team.id,
        payload={"user_id": str(member.user_id)},
    )
    await session.delete(member)
    await session.commit()
    return OkResponse()
