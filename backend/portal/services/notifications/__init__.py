"""Request notification outbox: queueing and dispatch."""

from portal.services.notifications.queue import (
    TASK_TYPE,
    QueuedNotification,
    decode_notification_task,
    enqueue_notification,
)

__all__ = [
    "TASK_TYPE",
    "QueuedNotification",
    "decode_notification_task",
    "enqueue_notification",
]
