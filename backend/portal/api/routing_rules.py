"""Organization-admin management of request routing rules."""

from __future__ import annotations

from typing import TYPE_CHECKING
from uuid import UUID

from fastapi import APIRouter, HTTPException, status
from sqlalchemy import func
from sqlmodel import col, select

from portal.api.deps import ORG_ADMIN_DEP, SESSION_DEP
from portal.core.time import utcnow
from portal.models.organization_members import OrganizationMember
from portal.models.routing_rules import RoutingRule
from portal.models.teams import Team
from portal.schemas.common import OkResponse
from portal.schemas.routing_rules import (
    RoutingResolveRequest,
    RoutingResolveResponse,
    RoutingRuleCreate,
    RoutingRuleMove,
    RoutingRuleRead,
    RoutingRuleUpdate,
)
from portal.services.audit import record_audit
from portal.services.organizations import OrganizationContext
from portal.services.request_status import RequestType
from portal.services.routing import RoutingStrategy, resolve_assignee

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

router = APIRouter(prefix="/routing-rules", tags=["routing-rules"])


def _to_read(rule: RoutingRule) -> RoutingRuleRead:
    return RoutingRuleRead.model_validate(rule, from_attributes=True)


async def _get_org_rule(
    session: AsyncSession,
    *,
    ctx: OrganizationContext,
    rule_id: UUID,
) -> RoutingRule:
    rule = (
        await RoutingRule.objects.by_id(rule_id)
        .filter(col(RoutingRule.organization_id) == ctx.organization.id)
        .first(session)
    )
    if rule is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND)
    return rule


async def _validate_targets(
    session: AsyncSession,
    *,
    ctx: OrganizationContext,
    team_id: UUID | None,
    default_assignee_id: UUID | None,
    strategy: str,
) -> None:
    if team_id is not None:
        team = (
            await Team.objects.by_id(team_id)
            .filter(col(Team.organization_id) == ctx.organization.id)
            .first(session)
        )
        if team is None:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Team does not belong to this organization.",
            )
    if default_assignee_id is not None:
        member = await OrganizationMember.objects.filter_by(
            organization_id=ctx.organization.id,
            user_id=default_assignee_id,
        ).first(session)
        if member is None:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Default assignee is not a member of this organization.",
            )
    if strategy == RoutingStrategy.DEFAULT_ASSIGNEE.value:
        if team_id is None and default_assignee_id is None:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="A default_assignee rule needs a team or a default assignee.",
            )
    elif team_id is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"The {strategy} strategy requires a team.",
        )


async def _next_priority(session: AsyncSession, *, ctx: OrganizationContext, request_type: str) -> int:
    current = (
        await session.exec(
            select(func.max(col(RoutingRule.priority))).where(
                col(RoutingRule.organization_id) == ctx.organization.id,
                col(RoutingRule.request_type) == request_type,
            ),
        )
    ).one()
    return 1 if current is None else int(current) + 1


@router.get("", response_model=list[RoutingRuleRead])
async def list_routing_rules(
    session: AsyncSession = SESSION_DEP,
    ctx: OrganizationContext = ORG_ADMIN_DEP,
    request_type: RequestType | None = None,
) -> list[RoutingRuleRead]:
    """List routing rules in evaluation order."""
    query = RoutingRule.objects.filter_by(organization_id=ctx.organization.id)
    if request_type is not None:
        query = query.filter(col(RoutingRule.request_type) == request_type.value)
    rules = await query.order_by(
        col(RoutingRule.request_type).asc(),
        col(RoutingRule.priority).asc(),
        col(RoutingRule.created_at).asc(),
    ).all(session)
    return [_to_read(rule) for rule in rules]


@router.post("", response_model=RoutingRuleRead, status_code=status.HTTP_201_CREATED)
async def create_routing_rule(
    payload: RoutingRuleCreate,
    session: AsyncSession = SESSION_DEP,
    ctx: OrganizationContext = ORG_ADMIN_DEP,
) -> RoutingRuleRead:
    """Create a rule; without an explicit priority it is appended last."""
    await _validate_targets(
        session,
        ctx=ctx,
        team_id=payload.team_id,
        default_assignee_id=payload.default_assignee_id,
        strategy=payload.strategy.value,
    )
    priority = payload.priority
    if priority is None:
        priority = await _next_priority(session, ctx=ctx, request_type=payload.request_type.value)
    rule = RoutingRule(
        organization_id=ctx.organization.id,
        request_type=payload.request_type.value,
        department=payload.department,
        sub_department=payload.sub_department,
        team_id=payload.team_id,
        default_assignee_id=payload.default_assignee_id,
        strategy=payload.strategy.value,
        priority=priority,
        is_active=payload.is_active,
        required_skills=payload.required_skills or None,
    )
    session.add(rule)
    await session.flush()
    await record_audit(
        session,
        organization_id=ctx.organization.id,
        actor_id=ctx.member.user_id,
        actor_type="human",
        action="routing_rule.create",
        target_type="routing_rule",
        target_id=rule.id,
        payload={"request_type": rule.request_type, "strategy": rule.strategy, "priority": priority},
        commit=False,
    )
    await session.commit()
    await session.refresh(rule)
    return _to_read(rule)


@router.get("/{rule_id}", response_model=RoutingRuleRead)
async def get_routing_rule(
    rule_id: UUID,
    session: AsyncSession = SESSION_DEP,
    ctx: OrganizationContext = ORG_ADMIN_DEP,
) -> RoutingRuleRead:
    """Get one routing rule."""
    return _to_read(await _get_org_rule(session, ctx=ctx, rule_id=rule_id))


@router.patch("/{rule_id}", response_model=RoutingRuleRead)
async def update_routing_rule(
    rule_id: UUID,
    payload: RoutingRuleUpdate,
    session: AsyncSession = SESSION_DEP,
    ctx: OrganizationContext = ORG_ADMIN_DEP,
) -> RoutingRuleRead:
    """Update a routing rule."""
    rule = await _get_org_rule(session, ctx=ctx, rule_id=rule_id)
    updates = payload.model_dump(exclude_unset=True)
    if "strategy" in updates and updates["strategy"] is not None:
        updates["strategy"] = RoutingStrategy(updates["strategy"]).value
    await _validate_targets(
        session,
        ctx=ctx,
        team_id=updates.get("team_id", rule.team_id),
        default_assignee_id=updates.get("default_assignee_id", rule.default_assignee_id),
        strategy=updates.get("strategy") or rule.strategy,
    )
    for key, value in updates.items():
        if key == "strategy" and value is None:
            continue
        setattr(rule, key, value)
    rule.updated_at = utcnow()
    session.add(rule)
    await record_audit(
        session,
        organization_id=ctx.organization.id,
        actor_id=ctx.member.user_id,
        actor_type="human",
        action="routing_rule.update",
        target_type="routing_rule",
        target_id=rule.id,
        payload={"fields": sorted(updates)},
        commit=False,
    )
    await session.commit()
    await session.refresh(rule)
    return _to_read(rule)


@router.post("/{rule_id}/toggle", response_model=RoutingRuleRead)
async def toggle_routing_rule(
    rule_id: UUID,
    session: AsyncSession = SESSION_DEP,
    ctx: OrganizationContext = ORG_ADMIN_DEP,
) -> RoutingRuleRead:
    """Flip a rule between active and inactive."""
    rule = await _get_org_rule(session, ctx=ctx, rule_id=rule_id)
    rule.is_active = not rule.is_active
    rule.updated_at = utcnow()
    session.add(rule)
    await record_audit(
        session,
        organization_id=ctx.organization.id,
        actor_id=ctx.member.user_id,
        actor_type="human",
        action="routing_rule.toggle",
        target_type="routing_rule",
        target_id=rule.id,
        payload={"is_active": rule.is_active},
        commit=False,
    )
    await session.commit()
    await session.refresh(rule)
    return _to_read(rule)


@router.post("/{rule_id}/move", response_model=list[RoutingRuleRead])
async def move_routing_rule(
    rule_id: UUID,
    payload: RoutingRuleMove,
    session: AsyncSession = SESSION_DEP,
    ctx: OrganizationContext = ORG_ADMIN_DEP,
) -> list[RoutingRuleRead]:
    """Swap a rule's priority with its neighbour for the same request type.

    Returns the full ordered list for that request type.
    """
    rule = await _get_org_rule(session, ctx=ctx, rule_id=rule_id)
    siblings = await RoutingRule.objects.filter_by(
        organization_id=ctx.organization.id,
        request_type=rule.request_type,
    ).order_by(
        col(RoutingRule.priority).asc(),
        col(RoutingRule.created_at).asc(),
    ).all(session)
    index = next(i for i, sibling in enumerate(siblings) if sibling.id == rule.id)
    target = index - 1 if payload.direction == "up" else index + 1
    if 0 <= target < len(siblings):
        neighbour = siblings[target]
        if neighbour.priority == rule.priority:
            # Equal priorities: spread them out so the swap is observable.
            for position, sibling in enumerate(siblings, start=1):
                sibling.priority = position
        rule.priority, neighbour.priority = neighbour.priority, rule.priority
        now = utcnow()
        rule.updated_at = now
        neighbour.updated_at = now
        session.add_all(siblings)
        await record_audit(
            session,
            organization_id=ctx.organization.id,
            actor_id=ctx.member.user_id,
            actor_type="human",
            action="routing_rule.move",
            target_type="routing_rule",
            target_id=rule.id,
            payload={"direction": payload.direction, "priority": rule.priority},
            commit=False,
        )
        await session.commit()
        for sibling in siblings:
            await session.refresh(sibling)
    ordered = sorted(siblings, key=lambda r: (r.priority, r.created_at))
    return [_to_read(item) for item in ordered]


@router.delete("/{rule_id}", response_model=OkResponse)
async def delete_routing_rule(
    rule_id: UUID,
    session: AsyncSession = SESSION_DEP,
    ctx: OrganizationContext = ORG_ADMIN_DEP,
) -> OkResponse:
    """Delete a routing rule."""
    rule = await _get_org_rule(session, ctx=ctx, rule_id=rule_id)
    await record_audit(
        session,
        organization_id=ctx.organization.id,
        actor_id=ctx.member.user_id,
        actor_type="human",
        action="routing_rule.delete",
        target_type="routing_rule",
        target_id=rule.id,
        payload={"request_type": rule.request_type, "priority": rule.priority},
        commit=False,
    )
    await session.delete(rule)
    await session.commit()
    return OkResponse()


@router.post("/resolve", response_model=RoutingResolveResponse)
async def preview_routing(
    payload: RoutingResolveRequest,
    session: AsyncSession = SESSION_DEP,
    ctx: OrganizationContext = ORG_ADMIN_DEP,
) -> RoutingResolveResponse:
    """Show who a request with these attributes would be routed to.

    Does not advance round-robin state.
    """
    resolution = await resolve_assignee(
        session,
        organization_id=ctx.organization.id,
        request_type=payload.request_type.value,
        department=payload.department,
        sub_department=payload.sub_department,
        brand_id=payload.brand_id,
        location_id=payload.location_id,
        record_assignment=False,
    )
    return RoutingResolveResponse(
        strategy=resolution.strategy.value,
        user_ids=resolution.user_ids,
        team_id=resolution.team_id,
        rule_id=resolution.rule_id,
        fallback=resolution.fallback,
    )
