# ruff: noqa: INP001
"""Queue worker dispatch, retry, and outbox sweep tests."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel.ext.asyncio.session import AsyncSession

from conftest import FakeRedis, Seeded
from portal.core.config import settings
from portal.models.notification_events import NotificationEvent
from portal.schemas.requests import RequestCreate
from portal.services import queue_worker
from portal.services.notifications.email import EmailDeliveryError, EmailMessage
from portal.services.notifications.queue import TASK_TYPE as NOTIFICATION_TASK_TYPE
from portal.services.organizations import OrganizationContext
from portal.services.queue import QueuedTask, enqueue_task
from portal.services.request_status import RequestType
from portal.services.requests import submit_request

SCHEDULED = f"{settings.rq_queue_name}:scheduled"


def test_worker_registers_notification_handler() -> None:
    assert NOTIFICATION_TASK_TYPE in queue_worker._TASK_HANDLERS


def test_backoff_doubles_and_caps(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "rq_dispatch_retry_base_seconds", 10.0)
    monkeypatch.setattr(settings, "rq_dispatch_retry_max_seconds", 60.0)
    assert queue_worker._backoff_seconds(0) == 10.0
    assert queue_worker._backoff_seconds(2) == 40.0
    assert queue_worker._backoff_seconds(5) == 60.0


class Mailbox:
    def __init__(self) -> None:
        self.delivered: list[str] = []
        self.failing: set[str] = set()

    async def send(self, message: EmailMessage) -> str:
        if message.to[0] in self.failing:
            raise EmailDeliveryError("rejected")
        self.delivered.append(message.to[0])
        return "ok"


@pytest.fixture
def wired(
    session_maker: async_sessionmaker[AsyncSession],
    monkeypatch: pytest.MonkeyPatch,
) -> Mailbox:
    """Point the dispatcher at the test database and a recording sender."""
    mailbox = Mailbox()
    monkeypatch.setattr("portal.services.notifications.dispatch.async_session_maker", session_maker)
    monkeypatch.setattr("portal.services.notifications.dispatch.send_email", mailbox.send)
    monkeypatch.setattr(queue_worker, "async_session_maker", session_maker)
    monkeypatch.setattr(queue_worker, "_compute_jitter", lambda base_delay: 0.0)
    return mailbox


async def _submit(session: AsyncSession, org: Seeded) -> None:
    await submit_request(
        session,
        ctx=OrganizationContext(organization=org.organization, member=org.member_member),
        submitter=org.member,
        payload=RequestCreate(request_type=RequestType.HARDWARE, title="Scanner"),
    )


async def test_flush_queue_dispatches_outbox_event(
    session: AsyncSession,
    session_maker: async_sessionmaker[AsyncSession],
    org: Seeded,
    wired: Mailbox,
) -> None:
    await _submit(session, org)

    assert await queue_worker.flush_queue() == 1
    assert sorted(wired.delivered) == sorted([org.manager.email, org.admin.email, org.member.email])

    async with session_maker() as fresh:
        event = await NotificationEvent.objects.filter_by(event_type="submitted").first(fresh)
        assert event is not None
        assert event.status == "sent"


async def test_failed_dispatch_is_scheduled_for_retry(
    session: AsyncSession,
    org: Seeded,
    wired: Mailbox,
    fake_redis: FakeRedis,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(settings, "rq_dispatch_retry_base_seconds", 10.0)
    wired.failing.add(org.admin.email)
    await _submit(session, org)

    assert await queue_worker.flush_queue() == 0

    [(raw, due)] = fake_redis.zsets[SCHEDULED].items()
    assert '"attempts": 1' in raw
    assert due > datetime.now(UTC).timestamp()
    assert wired.delivered == [org.manager.email, org.member.email]


async def test_unknown_task_type_is_skipped(fake_redis: FakeRedis) -> None:
    enqueue_task(
        QueuedTask(task_type="mystery", payload={}, created_at=datetime.now(UTC)),
        settings.rq_queue_name,
    )
    assert await queue_worker.flush_queue() == 0
    assert fake_redis.lists[settings.rq_queue_name] == []


async def test_requeue_pending_notifications_sweeps_outbox(
    session: AsyncSession,
    org: Seeded,
    wired: Mailbox,
    fake_redis: FakeRedis,
) -> None:
    del wired
    await _submit(session, org)
    fake_redis.lists.clear()

    assert await queue_worker.requeue_pending_notifications() == 1
    assert len(fake_redis.lists[settings.rq_queue_name]) == 1


async def test_malformed_payload_does_not_stop_the_batch(
    session: AsyncSession,
    org: Seeded,
    wired: Mailbox,
    fake_redis: FakeRedis,
) -> None:
    await _submit(session, org)
    fake_redis.lpush(settings.rq_queue_name, "not-json")

    assert await queue_worker.flush_queue() == 1
    assert len(wired.delivered) == 3


async def test_max_tasks_limits_one_batch(
    session: AsyncSession,
    org: Seeded,
    wired: Mailbox,
    fake_redis: FakeRedis,
) -> None:
    del wired
    await _submit(session, org)
    await _submit(session, org)

    assert await queue_worker.flush_queue(max_tasks=1) == 1
    assert len(fake_redis.lists[settings.rq_queue_name]) == 1


async def test_aged_sweep_skips_fresh_outbox_rows(
    session: AsyncSession,
    org: Seeded,
    wired: Mailbox,
    fake_redis: FakeRedis,
) -> None:
    del wired
    await _submit(session, org)
    fake_redis.lists.clear()

    assert await queue_worker.requeue_pending_notifications(min_age_seconds=3600) == 0
    assert settings.rq_queue_name not in fake_redis.lists
