"""Routing rule evaluation for newly submitted requests.

Rules for a request type are evaluated in ascending priority order. The first
active rule that resolves to at least one eligible user wins. When nothing
resolves, every manager/admin in the request's organizational scope is
returned so a request is never left without someone to act on it.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy import func, or_
from sqlmodel import col, select

from portal.core.logging import get_logger
from portal.core.time import utcnow
from portal.models.routing_rules import RoutingRule
from portal.models.service_requests import ServiceRequest
from portal.models.teams import Team, TeamMember
from portal.services.organizations import active_member_user_ids, approvers_in_scope
from portal.services.request_status import TERMINAL_STATUSES

if TYPE_CHECKING:
    from uuid import UUID

    from sqlmodel.ext.asyncio.session import AsyncSession

logger = get_logger(__name__)


class RoutingStrategy(str, Enum):
    """How a rule picks a user from its target."""

    DEFAULT_ASSIGNEE = "default_assignee"
    ROUND_ROBIN = "round_robin"
    LOAD_BALANCE = "load_balance"
    TEAM_LEAD_FIRST = "team_lead_first"
    SKILL_BASED = "skill_based"
    FALLBACK_TO_DEPARTMENT = "fallback_to_department"


@dataclass(frozen=True)
class AssigneeResolution:
    """Outcome of routing a request."""

    strategy: RoutingStrategy
    user_ids: list[UUID] = field(default_factory=list)
    team_id: UUID | None = None
    rule_id: UUID | None = None
    fallback: bool = False

    @property
    def user_id(self) -> UUID | None:
        """Primary assignee, when exactly one user was picked."""
        if len(self.user_ids) == 1:
            return self.user_ids[0]
        return None


def _eligible(members: list[TeamMember]) -> list[TeamMember]:
    return [member for member in members if member.is_active and not member.on_leave]


def _pick_round_robin(members: list[TeamMember]) -> TeamMember:
    # Never-assigned members sort ahead of everyone else.
    return min(
        members,
        key=lambda m: (
            m.last_assigned_at is not None,
            m.last_assigned_at or utcnow(),
            str(m.id),
        ),
    )


async def _open_request_counts(
    session: AsyncSession,
    *,
    organization_id: UUID,
    user_ids: list[UUID],
) -> Counter[UUID]:
    statement = (
        select(ServiceRequest.assigned_user_id, func.count())
        .where(col(ServiceRequest.organization_id) == organization_id)
        .where(col(ServiceRequest.assigned_user_id).in_(user_ids))
        .where(col(ServiceRequest.status).not_in([status.value for status in TERMINAL_STATUSES]))
        .group_by(col(ServiceRequest.assigned_user_id))
    )
    rows = await session.exec(statement)
    counts: Counter[UUID] = Counter()
    for user_id, count in rows:
        if user_id is not None:
            counts[user_id] = int(count)
    return counts


async def _pick_load_balance(
    session: AsyncSession,
    *,
    organization_id: UUID,
    members: list[TeamMember],
) -> TeamMember:
    counts = await _open_request_counts(
        session,
        organization_id=organization_id,
        user_ids=[member.user_id for member in members],
    )
    return min(members, key=lambda m: (counts[m.user_id], str(m.id)))


def _pick_skill_based(members: list[TeamMember], required: list[str]) -> TeamMember | None:
    wanted = {skill.strip().lower() for skill in required if skill.strip()}
    if not wanted:
        return members[0]
    best: TeamMember | None = None
    best_overlap = 0
    for member in members:
        overlap = len(wanted & {skill.strip().lower() for skill in member.skills or []})
        if overlap > best_overlap:
            best, best_overlap = member, overlap
    return best


async def _team_members(session: AsyncSession, team_id: UUID) -> list[TeamMember]:
    team = await Team.objects.by_id(team_id).first(session)
    if team is None or not team.is_active:
        return []
    members = _eligible(
        await TeamMember.objects.filter_by(team_id=team_id)
        .order_by(col(TeamMember.created_at).asc(), col(TeamMember.id).asc())
        .all(session),
    )
    active = await active_member_user_ids(
        session,
        organization_id=team.organization_id,
        user_ids=[member.user_id for member in members],
    )
    return [member for member in members if member.user_id in active]


async def _resolve_rule(
    session: AsyncSession,
    rule: RoutingRule,
) -> tuple[list[UUID], TeamMember | None]:
    """Return resolved user ids plus the team member to stamp, if any."""
    strategy = RoutingStrategy(rule.strategy)
    if strategy == RoutingStrategy.DEFAULT_ASSIGNEE:
        assignee_id = rule.default_assignee_id
        if assignee_id is not None:
            active = await active_member_user_ids(
                session,
                organization_id=rule.organization_id,
                user_ids=[assignee_id],
            )
            if assignee_id in active:
                return [assignee_id], None
            logger.warning(
                "routing.default_assignee.inactive",
                extra={"rule_id": str(rule.id), "user_id": str(assignee_id)},
            )
        # Without a usable default assignee the rule's team is used round robin.
        if rule.team_id is None:
            return [], None
        strategy = RoutingStrategy.ROUND_ROBIN

    if rule.team_id is None:
        return [], None
    members = await _team_members(session, rule.team_id)
    if not members:
        return [], None

    picked: TeamMember | None
    if strategy == RoutingStrategy.ROUND_ROBIN:
        picked = _pick_round_robin(members)
    elif strategy == RoutingStrategy.LOAD_BALANCE:
        picked = await _pick_load_balance(
            session,
            organization_id=rule.organization_id,
            members=members,
        )
    elif strategy == RoutingStrategy.TEAM_LEAD_FIRST:
        leads = [member for member in members if member.role_in_team == "lead"]
        picked = leads[0] if leads else members[0]
    elif strategy == RoutingStrategy.SKILL_BASED:
        picked = _pick_skill_based(members, rule.required_skills or [])
    else:
        return [member.user_id for member in members], None

    if picked is None:
        return [], None
    return [picked.user_id], picked


async def matching_rules(
    session: AsyncSession,
    *,
    organization_id: UUID,
    request_type: str,
    department: str | None = None,
    sub_department: str | None = None,
) -> list[RoutingRule]:
    """Active rules for a request type in evaluation order."""
    return (
        await RoutingRule.objects.filter_by(
            organization_id=organization_id,
            request_type=request_type,
        )
        .filter(
            col(RoutingRule.is_active).is_(True),
            or_(
                col(RoutingRule.department).is_(None),
                col(RoutingRule.department) == department,
            ),
            or_(
                col(RoutingRule.sub_department).is_(None),
                col(RoutingRule.sub_department) == sub_department,
            ),
        )
        .order_by(col(RoutingRule.priority).asc(), col(RoutingRule.created_at).asc())
        .all(session)
    )


async def resolve_assignee(
    session: AsyncSession,
    *,
    organization_id: UUID,
    request_type: str,
    department: str | None = None,
    sub_department: str | None = None,
    brand_id: UUID | None = None,
    location_id: UUID | None = None,
    record_assignment: bool = True,
) -> AssigneeResolution:
    """Resolve who must act first on a new request.

    With `record_assignment` set, a round-robin style pick stamps the
    member's `last_assigned_at` on the session (the caller commits).
    """
    rules = await matching_rules(
        session,
        organization_id=organization_id,
        request_type=request_type,
        department=department,
        sub_department=sub_department,
    )
    for rule in rules:
        user_ids, picked = await _resolve_rule(session, rule)
        if not user_ids:
            logger.debug(
                "routing.rule.unresolved",
                extra={"rule_id": str(rule.id), "strategy": rule.strategy},
            )
            continue
        if picked is not None and record_assignment:
            picked.last_assigned_at = utcnow()
            session.add(picked)
        logger.info(
            "routing.resolved",
            extra={
                "rule_id": str(rule.id),
                "strategy": rule.strategy,
                "request_type": request_type,
                "assignee_count": len(user_ids),
            },
        )
        return AssigneeResolution(
            strategy=RoutingStrategy(rule.strategy),
            user_ids=user_ids,
            team_id=rule.team_id,
            rule_id=rule.id,
        )

    approvers = await approvers_in_scope(
        session,
        organization_id=organization_id,
        brand_id=brand_id,
        location_id=location_id,
    )
    logger.info(
        "routing.fallback",
        extra={
            "request_type": request_type,
            "organization_id": str(organization_id),
            "assignee_count": len(approvers),
        },
    )
    return AssigneeResolution(
        strategy=RoutingStrategy.FALLBACK_TO_DEPARTMENT,
        user_ids=[member.user_id for member in approvers],
        fallback=True,
    )
