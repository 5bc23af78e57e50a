# ruff: noqa: INP001
"""Routing rule resolution tests against an in-memory database."""

from __future__ import annotations

from uuid import uuid4

from sqlmodel.ext.asyncio.session import AsyncSession

from conftest import Seeded
from portal.models.organization_members import OrganizationMember
from portal.models.routing_rules import RoutingRule
from portal.models.service_requests import ServiceRequest
from portal.models.teams import Team, TeamMember
from portal.models.users import User
from portal.services.routing import RoutingStrategy, resolve_assignee


async def _make_team(
    session: AsyncSession,
    org: Seeded,
    *,
    names: list[str],
    lead: str | None = None,
    skills: dict[str, list[str]] | None = None,
) -> tuple[Team, dict[str, User]]:
    team = Team(organization_id=org.organization.id, name="IT", department="it")
    session.add(team)
    await session.flush()
    users: dict[str, User] = {}
    for name in names:
        user = User(email=f"{name}@acme.test", name=name)
        session.add(user)
        await session.flush()
        session.add(
            OrganizationMember(organization_id=org.organization.id, user_id=user.id, role="member"),
        )
        session.add(
            TeamMember(
                team_id=team.id,
                user_id=user.id,
                role_in_team="lead" if name == lead else "member",
                skills=(skills or {}).get(name),
            ),
        )
        users[name] = user
    await session.commit()
    return team, users


def _rule(org: Seeded, **kwargs: object) -> RoutingRule:
    values: dict[str, object] = {
        "organization_id": org.organization.id,
        "request_type": "hardware",
        "priority": 1,
    }
    values.update(kwargs)
    return RoutingRule(**values)


async def test_no_rules_falls_back_to_approvers(session: AsyncSession, org: Seeded) -> None:
    resolution = await resolve_assignee(
        session,
        organization_id=org.organization.id,
        request_type="hardware",
    )
    assert resolution.fallback is True
    assert resolution.strategy == RoutingStrategy.FALLBACK_TO_DEPARTMENT
    assert set(resolution.user_ids) == {org.manager.id, org.admin.id}
    assert resolution.user_id is None


async def test_fallback_prefers_location_scoped_approvers(
    session: AsyncSession,
    org: Seeded,
) -> None:
    location_id = uuid4()
    org.manager_member.location_id = location_id
    session.add(org.manager_member)
    await session.commit()

    resolution = await resolve_assignee(
        session,
        organization_id=org.organization.id,
        request_type="hardware",
        location_id=location_id,
    )
    assert resolution.user_ids == [org.manager.id]


async def test_default_assignee_rule(session: AsyncSession, org: Seeded) -> None:
    rule = _rule(org, default_assignee_id=org.manager.id)
    session.add(rule)
    await session.commit()

    resolution = await resolve_assignee(
        session,
        organization_id=org.organization.id,
        request_type="hardware",
    )
    assert resolution.fallback is False
    assert resolution.rule_id == rule.id
    assert resolution.user_id == org.manager.id


async def test_inactive_default_assignee_falls_through_to_approvers(
    session: AsyncSession,
    org: Seeded,
) -> None:
    leaver = User(email="leaver@acme.test", name="Leaver", is_active=False)
    session.add(leaver)
    await session.flush()
    session.add(
        OrganizationMember(organization_id=org.organization.id, user_id=leaver.id, role="manager"),
    )
    session.add(_rule(org, default_assignee_id=leaver.id))
    await session.commit()

    resolution = await resolve_assignee(
        session,
        organization_id=org.organization.id,
        request_type="hardware",
    )
    assert resolution.fallback is True
    assert set(resolution.user_ids) == {org.manager.id, org.admin.id}


async def test_default_assignee_without_active_membership_is_skipped(
    session: AsyncSession,
    org: Seeded,
) -> None:
    org.admin_member.is_active = False
    session.add(org.admin_member)
    session.add(_rule(org, default_assignee_id=org.admin.id, priority=1))
    session.add(_rule(org, default_assignee_id=org.manager.id, priority=2))
    await session.commit()

    resolution = await resolve_assignee(
        session,
        organization_id=org.organization.id,
        request_type="hardware",
    )
    assert resolution.fallback is False
    assert resolution.user_ids == [org.manager.id]


async def test_deactivated_team_member_is_not_picked(session: AsyncSession, org: Seeded) -> None:
    team, users = await _make_team(session, org, names=["ana", "ben"])
    users["ana"].is_active = False
    session.add(users["ana"])
    session.add(_rule(org, team_id=team.id, strategy=RoutingStrategy.ROUND_ROBIN.value))
    await session.commit()

    resolution = await resolve_assignee(
        session,
        organization_id=org.organization.id,
        request_type="hardware",
    )
    assert resolution.user_ids == [users["ben"].id]


async def test_rules_evaluated_by_priority_and_skip_inactive(
    session: AsyncSession,
    org: Seeded,
) -> None:
    session.add(_rule(org, default_assignee_id=org.member.id, priority=0, is_active=False))
    session.add(_rule(org, default_assignee_id=org.admin.id, priority=2))
    session.add(_rule(org, default_assignee_id=org.manager.id, priority=1))
    await session.commit()

    resolution = await resolve_assignee(
        session,
        organization_id=org.organization.id,
        request_type="hardware",
    )
    assert resolution.user_ids == [org.manager.id]


async def test_department_filter(session: AsyncSession, org: Seeded) -> None:
    session.add(
        _rule(org, request_type="department", department="finance", default_assignee_id=org.admin.id),
    )
    session.add(
        _rule(org, request_type="department", department=None, default_assignee_id=org.manager.id, priority=5),
    )
    await session.commit()

    finance = await resolve_assignee(
        session,
        organization_id=org.organization.id,
        request_type="department",
        department="finance",
    )
    other = await resolve_assignee(
        session,
        organization_id=org.organization.id,
        request_type="department",
        department="marketing",
    )
    assert finance.user_ids == [org.admin.id]
    assert other.user_ids == [org.manager.id]


async def test_round_robin_rotates_and_skips_on_leave(session: AsyncSession, org: Seeded) -> None:
    team, users = await _make_team(session, org, names=["ann", "bob", "cat"])
    away = await TeamMember.objects.filter_by(team_id=team.id, user_id=users["cat"].id).first(session)
    assert away is not None
    away.on_leave = True
    session.add(away)
    session.add(_rule(org, team_id=team.id, strategy=RoutingStrategy.ROUND_ROBIN.value))
    await session.commit()

    picks = []
    for _ in range(4):
        resolution = await resolve_assignee(
            session,
            organization_id=org.organization.id,
            request_type="hardware",
        )
        await session.commit()
        picks.append(resolution.user_id)

    assert users["cat"].id not in picks
    assert picks[0] != picks[1]
    assert picks[0] == picks[2]
    assert picks[1] == picks[3]


async def test_preview_does_not_advance_round_robin(session: AsyncSession, org: Seeded) -> None:
    team, _ = await _make_team(session, org, names=["ann", "bob"])
    session.add(_rule(org, team_id=team.id, strategy=RoutingStrategy.ROUND_ROBIN.value))
    await session.commit()

    first = await resolve_assignee(
        session,
        organization_id=org.organization.id,
        request_type="hardware",
        record_assignment=False,
    )
    await session.commit()
    second = await resolve_assignee(
        session,
        organization_id=org.organization.id,
        request_type="hardware",
        record_assignment=False,
    )
    assert first.user_id == second.user_id


async def test_load_balance_picks_least_loaded(session: AsyncSession, org: Seeded) -> None:
    team, users = await _make_team(session, org, names=["ann", "bob"])
    for number in range(2):
        session.add(
            ServiceRequest(
                organization_id=org.organization.id,
                request_number=100 + number,
                request_type="hardware",
                title="busy",
                submitter_id=org.member.id,
                status="pending_manager_approval",
                assigned_user_id=users["ann"].id,
            ),
        )
    session.add(
        ServiceRequest(
            organization_id=org.organization.id,
            request_number=200,
            request_type="hardware",
            title="done",
            submitter_id=org.member.id,
            status="completed",
            assigned_user_id=users["bob"].id,
        ),
    )
    session.add(_rule(org, team_id=team.id, strategy=RoutingStrategy.LOAD_BALANCE.value))
    await session.commit()

    resolution = await resolve_assignee(
        session,
        organization_id=org.organization.id,
        request_type="hardware",
    )
    assert resolution.user_id == users["bob"].id


async def test_team_lead_first(session: AsyncSession, org: Seeded) -> None:
    team, users = await _make_team(session, org, names=["ann", "bob"], lead="bob")
    session.add(_rule(org, team_id=team.id, strategy=RoutingStrategy.TEAM_LEAD_FIRST.value))
    await session.commit()

    resolution = await resolve_assignee(
        session,
        organization_id=org.organization.id,
        request_type="hardware",
    )
    assert resolution.user_id == users["bob"].id
    assert resolution.team_id == team.id


async def test_skill_based_falls_through_when_nobody_matches(
    session: AsyncSession,
    org: Seeded,
) -> None:
    team, users = await _make_team(
        session,
        org,
        names=["ann", "bob"],
        skills={"ann": ["printers"], "bob": ["networking", "printers"]},
    )
    session.add(
        _rule(
            org,
            team_id=team.id,
            strategy=RoutingStrategy.SKILL_BASED.value,
            required_skills=["Networking"],
        ),
    )
    session.add(
        _rule(
            org,
            request_type="toner",
            team_id=team.id,
            strategy=RoutingStrategy.SKILL_BASED.value,
            required_skills=["plumbing"],
        ),
    )
    await session.commit()

    matched = await resolve_assignee(
        session,
        organization_id=org.organization.id,
        request_type="hardware",
    )
    unmatched = await resolve_assignee(
        session,
        organization_id=org.organization.id,
        request_type="toner",
    )
    assert matched.user_id == users["bob"].id
    assert unmatched.fallback is True


async def test_fallback_to_department_returns_whole_team(session: AsyncSession, org: Seeded) -> None:
    team, users = await _make_team(session, org, names=["ann", "bob"])
    session.add(_rule(org, team_id=team.id, strategy=RoutingStrategy.FALLBACK_TO_DEPARTMENT.value))
    await session.commit()

    resolution = await resolve_assignee(
        session,
        organization_id=org.organization.id,
        request_type="hardware",
    )
    assert set(resolution.user_ids) == {users["ann"].id, users["bob"].id}
    assert resolution.fallback is False
