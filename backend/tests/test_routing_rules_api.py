# ruff: noqa: INP001
"""HTTP tests for routing rule administration and routing preview."""

from __future__ import annotations

from collections.abc import AsyncIterator
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel.ext.asyncio.session import AsyncSession

from conftest import Seeded, auth_headers, build_api_app
from portal.api.routing_rules import router as routing_rules_router
from portal.api.teams import router as teams_router

URL = "/api/v1/routing-rules"


@pytest.fixture
async def client(session_maker: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncClient]:
    app = build_api_app(session_maker, routing_rules_router, teams_router)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as c:
        yield c


async def _team_with_manager(client: AsyncClient, org: Seeded) -> str:
    headers = auth_headers(org, "admin")
    team = (await client.post("/api/v1/teams", json={"name": "Hardware"}, headers=headers)).json()
    resp = await client.post(
        f"/api/v1/teams/{team['id']}/members",
        json={"user_id": str(org.manager.id)},
        headers=headers,
    )
    assert resp.status_code == 201
    return str(team["id"])


async def test_rules_are_admin_only(client: AsyncClient, org: Seeded) -> None:
    for role in ("member", "manager"):
        assert (await client.get(URL, headers=auth_headers(org, role))).status_code == 403


async def test_create_validates_targets(client: AsyncClient, org: Seeded) -> None:
    headers = auth_headers(org, "admin")

    no_team = await client.post(
        URL,
        json={"request_type": "hardware", "strategy": "round_robin"},
        headers=headers,
    )
    assert no_team.status_code == 422

    foreign_team = await client.post(
        URL,
        json={"request_type": "hardware", "strategy": "round_robin", "team_id": str(uuid4())},
        headers=headers,
    )
    assert foreign_team.status_code == 422

    outsider = await client.post(
        URL,
        json={"request_type": "hardware", "default_assignee_id": str(uuid4())},
        headers=headers,
    )
    assert outsider.status_code == 422

    empty_default = await client.post(URL, json={"request_type": "hardware"}, headers=headers)
    assert empty_default.status_code == 422


async def test_priority_ordering_move_toggle_and_preview(client: AsyncClient, org: Seeded) -> None:
    headers = auth_headers(org, "admin")
    team_id = await _team_with_manager(client, org)

    team_rule = (
        await client.post(
            URL,
            json={"request_type": "hardware", "strategy": "round_robin", "team_id": team_id},
            headers=headers,
        )
    ).json()
    admin_rule = (
        await client.post(
            URL,
            json={"request_type": "hardware", "default_assignee_id": str(org.admin.id)},
            headers=headers,
        )
    ).json()
    assert (team_rule["priority"], admin_rule["priority"]) == (1, 2)

    preview = await client.post(f"{URL}/resolve", json={"request_type": "hardware"}, headers=headers)
    assert preview.json()["user_ids"] == [str(org.manager.id)]
    assert preview.json()["rule_id"] == team_rule["id"]

    moved = await client.post(f"{URL}/{admin_rule['id']}/move", json={"direction": "up"}, headers=headers)
    assert moved.status_code == 200
    assert [rule["id"] for rule in moved.json()] == [admin_rule["id"], team_rule["id"]]

    preview = await client.post(f"{URL}/resolve", json={"request_type": "hardware"}, headers=headers)
    assert preview.json()["user_ids"] == [str(org.admin.id)]
    assert preview.json()["strategy"] == "default_assignee"

    toggled = await client.post(f"{URL}/{admin_rule['id']}/toggle", headers=headers)
    assert toggled.json()["is_active"] is False

    preview = await client.post(f"{URL}/resolve", json={"request_type": "hardware"}, headers=headers)
    assert preview.json()["user_ids"] == [str(org.manager.id)]

    bad_direction = await client.post(
        f"{URL}/{team_rule['id']}/move",
        json={"direction": "sideways"},
        headers=headers,
    )
    assert bad_direction.status_code == 422


async def test_move_at_edge_is_a_no_op(client: AsyncClient, org: Seeded) -> None:
    headers = auth_headers(org, "admin")
    rule = (
        await client.post(
            URL,
            json={"request_type": "toner", "default_assignee_id": str(org.manager.id)},
            headers=headers,
        )
    ).json()

    moved = await client.post(f"{URL}/{rule['id']}/move", json={"direction": "up"}, headers=headers)
    assert [item["priority"] for item in moved.json()] == [1]


async def test_preview_without_rules_falls_back(client: AsyncClient, org: Seeded) -> None:
    preview = await client.post(
        f"{URL}/resolve",
        json={"request_type": "marketing"},
        headers=auth_headers(org, "admin"),
    )
    body = preview.json()
    assert body["fallback"] is True
    assert body["strategy"] == "fallback_to_department"
    assert sorted(body["user_ids"]) == sorted([str(org.manager.id), str(org.admin.id)])


async def test_update_filter_and_delete(client: AsyncClient, org: Seeded) -> None:
    headers = auth_headers(org, "admin")
    rule = (
        await client.post(
            URL,
            json={"request_type": "department", "department": "it", "default_assignee_id": str(org.manager.id)},
            headers=headers,
        )
    ).json()
    await client.post(
        URL,
        json={"request_type": "toner", "default_assignee_id": str(org.admin.id)},
        headers=headers,
    )

    updated = await client.patch(
        f"{URL}/{rule['id']}",
        json={"default_assignee_id": str(org.admin.id), "sub_department": "helpdesk"},
        headers=headers,
    )
    assert updated.status_code == 200
    assert updated.json()["default_assignee_id"] == str(org.admin.id)
    assert updated.json()["sub_department"] == "helpdesk"

    only_department = await client.get(URL, params={"request_type": "department"}, headers=headers)
    assert [item["id"] for item in only_department.json()] == [rule["id"]]

    assert (await client.delete(f"{URL}/{rule['id']}", headers=headers)).status_code == 200
    assert (await client.get(f"{URL}/{rule['id']}", headers=headers)).status_code == 404
