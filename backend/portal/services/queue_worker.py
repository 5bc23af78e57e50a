"""Generic queue worker with task-type dispatch."""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import redis

from portal.core.config import settings
from portal.core.logging import get_logger
from portal.db.session import async_session_maker
from portal.services.notifications.dispatch import (
    enqueue_pending_events,
    process_notification_queue_task,
)
from portal.services.notifications.queue import TASK_TYPE as NOTIFICATION_TASK_TYPE
from portal.services.notifications.queue import requeue_notification_task
from portal.services.queue import QueuedTask, dequeue_task

logger = get_logger(__name__)
_WORKER_BLOCK_TIMEOUT_SECONDS = 5.0
_PENDING_SWEEP_INTERVAL_SECONDS = 60.0


@dataclass(frozen=True)
class _TaskHandler:
    handler: Callable[[QueuedTask], Awaitable[None]]
    attempts_to_delay: Callable[[int], float]
    requeue: Callable[[QueuedTask, float], bool]


def _backoff_seconds(attempts: int) -> float:
    return min(
        settings.rq_dispatch_retry_base_seconds * (2 ** max(0, attempts)),
        settings.rq_dispatch_retry_max_seconds,
    )


_TASK_HANDLERS: dict[str, _TaskHandler] = {
    NOTIFICATION_TASK_TYPE: _TaskHandler(
        handler=process_notification_queue_task,
        attempts_to_delay=_backoff_seconds,
        requeue=lambda task, delay: requeue_notification_task(task, delay_seconds=delay),
    ),
}


def _compute_jitter(base_delay: float) -> float:
    return random.uniform(0, min(settings.rq_dispatch_retry_max_seconds / 10, base_delay * 0.1))


def _retry_or_drop(handler: _TaskHandler, task: QueuedTask) -> None:
    base_delay = handler.attempts_to_delay(task.attempts)
    delay = base_delay + _compute_jitter(base_delay)
    if handler.requeue(task, delay):
        logger.info(
            "queue.worker.retry_scheduled",
            extra={
                "task_type": task.task_type,
                "attempt": task.attempts + 1,
                "delay_seconds": round(delay, 2),
            },
        )
        return
    logger.warning(
        "queue.worker.drop_task",
        extra={
            "task_type": task.task_type,
            "attempt": task.attempts,
            "payload": task.payload,
        },
    )


async def flush_queue(
    *,
    block: bool = False,
    block_timeout: float = 0,
    max_tasks: int | None = None,
) -> int:
    """Consume queued tasks until the queue is empty (or `max_tasks` were taken).

    Returns how many tasks were handled successfully. Failed tasks go back on
    the delayed queue with exponential backoff until their retries run out.
    """
    processed = 0
    taken = 0
    while max_tasks is None or taken < max_tasks:
        try:
            task = dequeue_task(
                settings.rq_queue_name,
                redis_url=settings.rq_redis_url,
                block=block,
                block_timeout=block_timeout,
            )
        except (ValueError, KeyError, TypeError):
            # The malformed payload is already off the list; move on.
            logger.exception(
                "queue.worker.task_malformed",
                extra={"queue_name": settings.rq_queue_name},
            )
            continue
        except redis.RedisError:
            logger.exception(
                "queue.worker.dequeue_failed",
                extra={"queue_name": settings.rq_queue_name},
            )
            break

        if task is None:
            break
        taken += 1

        handler = _TASK_HANDLERS.get(task.task_type)
        if handler is None:
            logger.warning(
                "queue.worker.task_unhandled",
                extra={
                    "task_type": task.task_type,
                    "queue_name": settings.rq_queue_name,
                },
            )
            continue

        try:
            await handler.handler(task)
        except Exception as exc:
            logger.exception(
                "queue.worker.failed",
                extra={
                    "task_type": task.task_type,
                    "attempt": task.attempts,
                    "error": str(exc),
                },
            )
            _retry_or_drop(handler, task)
        else:
            processed += 1
            logger.info(
                "queue.worker.success",
                extra={
                    "task_type": task.task_type,
                    "attempt": task.attempts,
                },
            )
        await asyncio.sleep(settings.rq_dispatch_throttle_seconds)
    if processed > 0:
        logger.info("queue.worker.batch_complete", extra={"count": processed})
    return processed


async def requeue_pending_notifications(*, min_age_seconds: float = 0) -> int:
    """Push outbox rows left pending (e.g. Redis was down at commit) back onto the queue."""
    async with async_session_maker() as session:
        return await enqueue_pending_events(session, min_age_seconds=min_age_seconds)


async def _sweep_pending(*, min_age_seconds: float) -> None:
    try:
        await requeue_pending_notifications(min_age_seconds=min_age_seconds)
    except Exception:
        logger.exception("queue.worker.pending_sweep_failed")


async def _run_worker_loop() -> None:
    await _sweep_pending(min_age_seconds=0)
    last_sweep = time.monotonic()
    while True:
        if time.monotonic() - last_sweep >= _PENDING_SWEEP_INTERVAL_SECONDS:
            # Only rows older than one interval; fresh ones are still on the queue.
            await _sweep_pending(min_age_seconds=_PENDING_SWEEP_INTERVAL_SECONDS)
            last_sweep = time.monotonic()
        try:
            await flush_queue(
                block=True,
                # Finite timeout so delayed retries are drained regularly.
                block_timeout=_WORKER_BLOCK_TIMEOUT_SECONDS,
            )
        except Exception:
            logger.exception(
                "queue.worker.loop_failed",
                extra={"queue_name": settings.rq_queue_name},
            )
            await asyncio.sleep(1)


def run_worker() -> None:
    """Entrypoint for continuous notification processing."""
    logger.info(
        "queue.worker.batch_started",
        extra={"throttle_seconds": settings.rq_dispatch_throttle_seconds},
    )
    try:
        asyncio.run(_run_worker_loop())
    finally:
        logger.info("queue.worker.stopped", extra={"queue_name": settings.rq_queue_name})
