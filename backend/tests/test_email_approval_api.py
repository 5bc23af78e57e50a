# ruff: noqa: INP001
"""Email-link approval endpoint tests."""

from __future__ import annotations

from collections.abc import AsyncIterator
from uuid import UUID, uuid4

import pytest
from fastapi import APIRouter, FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import col
from sqlmodel.ext.asyncio.session import AsyncSession

from conftest import Seeded
from portal.api.email_approval import router as email_approval_router
from portal.core.approval_tokens import compute_email_approval_token
from portal.db.session import get_session
from portal.models.audit_entries import AuditEntry
from portal.models.notification_events import NotificationEvent
from portal.models.organization_members import OrganizationMember
from portal.models.service_requests import ServiceRequest
from portal.models.users import User

URL = "/api/v1/email-approval"


def _build_test_app(session_maker: async_sessionmaker[AsyncSession]) -> FastAPI:
    app = FastAPI()
    api_v1 = APIRouter(prefix="/api/v1")
    api_v1.include_router(email_approval_router)
    app.include_router(api_v1)

    async def _override_get_session() -> AsyncIterator[AsyncSession]:
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_session] = _override_get_session
    return app


@pytest.fixture
async def client(session_maker: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncClient]:
    app = _build_test_app(session_maker)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as c:
        yield c


async def _make_request(
    session: AsyncSession,
    org: Seeded,
    *,
    status: str = "pending_manager_approval",
    amount: float | None = 250,
    assigned_user_id: UUID | None = None,
) -> ServiceRequest:
    service_request = ServiceRequest(
        organization_id=org.organization.id,
        request_number=7,
        request_type="hardware",
        title="Label printer",
        amount=amount,
        submitter_id=org.member.id,
        status=status,
        assigned_user_id=assigned_user_id,
    )
    session.add(service_request)
    await session.commit()
    return service_request


def _params(request_id: object, action: str, email: str, token: str | None = None) -> dict[str, str]:
    return {
        "requestId": str(request_id),
        "action": action,
        "managerEmail": email,
        "token": token or compute_email_approval_token(request_id, email),
    }


async def _reload(
    session_maker: async_sessionmaker[AsyncSession],
    request_id: object,
) -> ServiceRequest:
    async with session_maker() as check:
        row = await ServiceRequest.objects.by_id(request_id).first(check)
    assert row is not None
    return row


async def test_missing_parameters_is_bad_request(client: AsyncClient) -> None:
    response = await client.get(URL, params={"action": "approve"})
    assert response.status_code == 400
    assert "text/html" in response.headers["content-type"]


async def test_tampered_token_is_unauthorized(
    client: AsyncClient,
    session: AsyncSession,
    org: Seeded,
) -> None:
    service_request = await _make_request(session, org)
    params = _params(service_request.id, "approve", org.manager.email, token="0" * 64)
    response = await client.get(URL, params=params)
    assert response.status_code == 401


async def test_unknown_request_is_not_found(client: AsyncClient, org: Seeded) -> None:
    response = await client.get(URL, params=_params(uuid4(), "approve", org.manager.email))
    assert response.status_code == 404
    assert "Request Not Found" in response.text


async def test_unknown_approver_is_not_found(
    client: AsyncClient,
    session: AsyncSession,
    org: Seeded,
) -> None:
    service_request = await _make_request(session, org)
    response = await client.get(URL, params=_params(service_request.id, "approve", "ghost@acme.test"))
    assert response.status_code == 404
    assert "Approver Not Found" in response.text


async def test_unsupported_action_is_bad_request(
    client: AsyncClient,
    session: AsyncSession,
    org: Seeded,
) -> None:
    service_request = await _make_request(session, org)
    response = await client.get(URL, params=_params(service_request.id, "cancel", org.manager.email))
    assert response.status_code == 400


async def test_get_renders_confirmation_without_mutating(
    client: AsyncClient,
    session: AsyncSession,
    session_maker: async_sessionmaker[AsyncSession],
    org: Seeded,
) -> None:
    service_request = await _make_request(session, org, amount=9000)
    response = await client.get(URL, params=_params(service_request.id, "approve", org.manager.email))

    assert response.status_code == 200
    assert "Confirm approval" in response.text
    assert "forward it to an administrator" in response.text
    assert 'method="post"' in response.text
    row = await _reload(session_maker, service_request.id)
    assert row.status == "pending_manager_approval"
    assert row.manager_id is None


async def test_get_decline_renders_reason_form(
    client: AsyncClient,
    session: AsyncSession,
    org: Seeded,
) -> None:
    service_request = await _make_request(session, org)
    response = await client.get(URL, params=_params(service_request.id, "decline", org.manager.email))
    assert response.status_code == 200
    assert 'name="reason"' in response.text


async def test_post_approve_applies_and_records_email_actor(
    client: AsyncClient,
    session: AsyncSession,
    session_maker: async_sessionmaker[AsyncSession],
    org: Seeded,
) -> None:
    service_request = await _make_request(session, org)
    params = _params(service_request.id, "approve", org.manager.email.upper())

    response = await client.post(URL, params=params)

    assert response.status_code == 200
    assert "has been approved" in response.text
    row = await _reload(session_maker, service_request.id)
    assert row.status == "approved"
    assert row.manager_id == org.manager.id
    assert row.manager_approval_notes == "Approved via email"
    async with session_maker() as check:
        audit = await AuditEntry.objects.filter_by(target_id=service_request.id).all(check)
        events = await NotificationEvent.objects.filter_by(request_id=service_request.id).all(check)
    assert [(entry.action, entry.actor_type) for entry in audit] == [
        ("request.approve", "email_link"),
    ]
    assert [event.event_type for event in events] == ["approved"]

    again = await client.post(URL, params=params)
    assert again.status_code == 200
    assert "Request Already Processed" in again.text


async def test_post_params_can_arrive_as_form_fields(
    client: AsyncClient,
    session: AsyncSession,
    session_maker: async_sessionmaker[AsyncSession],
    org: Seeded,
) -> None:
    service_request = await _make_request(session, org)
    form = _params(service_request.id, "decline", org.manager.email)
    form["reason"] = "Duplicate of an existing order"

    response = await client.post(URL, data=form)

    assert response.status_code == 200
    row = await _reload(session_maker, service_request.id)
    assert row.status == "declined"
    assert row.decline_reason == "Duplicate of an existing order"
    assert row.declined_by == org.manager.id


async def test_post_decline_without_reason_is_rejected(
    client: AsyncClient,
    session: AsyncSession,
    session_maker: async_sessionmaker[AsyncSession],
    org: Seeded,
) -> None:
    service_request = await _make_request(session, org)
    params = _params(service_request.id, "decline", org.manager.email)

    response = await client.post(URL, params=params, data={"reason": "   "})

    assert response.status_code == 400
    assert "Please provide a reason for declining this request." in response.text
    assert 'name="reason"' in response.text
    row = await _reload(session_maker, service_request.id)
    assert row.status == "pending_manager_approval"


async def test_terminal_request_shows_already_processed_on_get(
    client: AsyncClient,
    session: AsyncSession,
    org: Seeded,
) -> None:
    service_request = await _make_request(session, org, status="cancelled")
    response = await client.get(URL, params=_params(service_request.id, "approve", org.manager.email))
    assert response.status_code == 200
    assert "Request Already Processed" in response.text
    assert "cancelled" in response.text


async def test_manager_cannot_act_on_admin_tier(
    client: AsyncClient,
    session: AsyncSession,
    session_maker: async_sessionmaker[AsyncSession],
    org: Seeded,
) -> None:
    service_request = await _make_request(session, org, status="pending_admin_approval", amount=9000)

    denied = await client.post(URL, params=_params(service_request.id, "approve", org.manager.email))
    assert denied.status_code == 403

    allowed = await client.post(URL, params=_params(service_request.id, "approve", org.admin.email))
    assert allowed.status_code == 200
    row = await _reload(session_maker, service_request.id)
    assert row.status == "approved"
    assert row.admin_id == org.admin.id


async def _add_plain_member(session: AsyncSession, org: Seeded, email: str) -> User:
    user = User(email=email, name="Technician")
    session.add(user)
    await session.flush()
    session.add(
        OrganizationMember(organization_id=org.organization.id, user_id=user.id, role="member"),
    )
    await session.commit()
    return user


async def test_routed_assignee_can_approve_at_manager_tier(
    client: AsyncClient,
    session: AsyncSession,
    session_maker: async_sessionmaker[AsyncSession],
    org: Seeded,
) -> None:
    tech = await _add_plain_member(session, org, "tech@acme.test")
    service_request = await _make_request(session, org, assigned_user_id=tech.id)

    response = await client.post(URL, params=_params(service_request.id, "approve", tech.email))

    assert response.status_code == 200
    row = await _reload(session_maker, service_request.id)
    assert row.status == "approved"
    assert row.manager_id == tech.id


async def test_unrelated_member_cannot_approve(
    client: AsyncClient,
    session: AsyncSession,
    org: Seeded,
) -> None:
    tech = await _add_plain_member(session, org, "tech@acme.test")
    service_request = await _make_request(session, org, assigned_user_id=tech.id)
    response = await client.post(URL, params=_params(service_request.id, "approve", org.member.email))
    assert response.status_code == 403


async def test_assignee_cannot_act_on_admin_tier(
    client: AsyncClient,
    session: AsyncSession,
    org: Seeded,
) -> None:
    tech = await _add_plain_member(session, org, "tech@acme.test")
    service_request = await _make_request(
        session,
        org,
        status="pending_admin_approval",
        amount=9000,
        assigned_user_id=tech.id,
    )
    response = await client.post(URL, params=_params(service_request.id, "approve", tech.email))
    assert response.status_code == 403


async def test_second_decline_leaves_first_reason(
    client: AsyncClient,
    session: AsyncSession,
    session_maker: async_sessionmaker[AsyncSession],
    org: Seeded,
) -> None:
    service_request = await _make_request(session, org)
    params = _params(service_request.id, "decline", org.manager.email)

    first = await client.post(URL, params=params, data={"reason": "Over budget"})
    assert first.status_code == 200

    second = await client.post(URL, params=params, data={"reason": "Changed my mind"})
    assert second.status_code == 200
    assert "Request Already Processed" in second.text
    row = await _reload(session_maker, service_request.id)
    assert row.status == "declined"
    assert row.decline_reason == "Over budget"
    async with session_maker() as check:
        events = await NotificationEvent.objects.filter_by(request_id=service_request.id).all(check)
    assert [event.event_type for event in events] == ["declined"]


async def test_two_tier_approval_through_email_links(
    client: AsyncClient,
    session: AsyncSession,
    session_maker: async_sessionmaker[AsyncSession],
    org: Seeded,
) -> None:
    service_request = await _make_request(session, org, amount=9000)

    escalated = await client.post(URL, params=_params(service_request.id, "approve", org.manager.email))
    assert escalated.status_code == 200
    row = await _reload(session_maker, service_request.id)
    assert row.status == "pending_admin_approval"
    assert row.manager_id == org.manager.id

    approved = await client.post(URL, params=_params(service_request.id, "approve", org.admin.email))
    assert approved.status_code == 200
    row = await _reload(session_maker, service_request.id)
    assert row.status == "approved"
    assert row.admin_id == org.admin.id
    async with session_maker() as check:
        events = await NotificationEvent.objects.filter_by(request_id=service_request.id).order_by(
            col(NotificationEvent.created_at).asc(),
        ).all(check)
    assert [event.event_type for event in events] == ["escalated", "approved"]


async def test_unexpected_failure_returns_json_500(
    client: AsyncClient,
    session: AsyncSession,
    org: Seeded,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    service_request = await _make_request(session, org)

    def _boom(*_: object, **__: object) -> str:
        raise RuntimeError("template store offline")

    monkeypatch.setattr("portal.services.email_approval.render_template", _boom)
    response = await client.get(URL, params=_params(service_request.id, "approve", org.manager.email))
    assert response.status_code == 500
    assert response.json() == {"error": "template store offline"}
