"""Queue helpers for request notification outbox events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from portal.core.config import settings
from portal.core.logging import get_logger
from portal.services.queue import QueuedTask, enqueue_task
from portal.services.queue import requeue_if_failed as generic_requeue_if_failed

logger = get_logger(__name__)
TASK_TYPE = "request_notification"


@dataclass(frozen=True)
class QueuedNotification:
    """Pointer to a `notification_events` row awaiting dispatch."""

    event_id: UUID
    request_id: UUID
    event_type: str
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    attempts: int = 0


def _task_from_notification(notification: QueuedNotification) -> QueuedTask:
    return QueuedTask(
        task_type=TASK_TYPE,
        payload={
            "event_id": str(notification.event_id),
            "request_id": str(notification.request_id),
            "event_type": notification.event_type,
        },
        created_at=notification.created_at,
        attempts=notification.attempts,
    )


def decode_notification_task(task: QueuedTask) -> QueuedNotification:
    """Decode a QueuedTask into a QueuedNotification."""
    if task.task_type != TASK_TYPE:
        raise ValueError(f"Unexpected task_type={task.task_type!r}; expected {TASK_TYPE!r}")

    p: dict[str, Any] = task.payload
    return QueuedNotification(
        event_id=UUID(p["event_id"]),
        request_id=UUID(p["request_id"]),
        event_type=str(p["event_type"]),
        created_at=task.created_at,
        attempts=task.attempts,
    )


def enqueue_notification(notification: QueuedNotification) -> bool:
    """Hand an outbox event to the worker queue.

    A False return leaves the outbox row pending; it can be resent later.
    """
    queued = enqueue_task(
        _task_from_notification(notification),
        settings.rq_queue_name,
        redis_url=settings.rq_redis_url,
    )
    if queued:
        logger.info(
            "notifications.enqueued",
            extra={
                "event_id": str(notification.event_id),
                "request_id": str(notification.request_id),
                "event_type": notification.event_type,
            },
        )
    else:
        logger.warning(
            "notifications.enqueue_failed",
            extra={
                "event_id": str(notification.event_id),
                "request_id": str(notification.request_id),
                "event_type": notification.event_type,
            },
        )
    return queued


def requeue_notification_task(task: QueuedTask, *, delay_seconds: float = 0) -> bool:
    """Requeue a failed notification task with capped retries."""
    return generic_requeue_if_failed(
        task,
        settings.rq_queue_name,
        max_retries=settings.rq_dispatch_max_retries,
        redis_url=settings.rq_redis_url,
        delay_seconds=delay_seconds,
    )
