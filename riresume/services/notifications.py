"""
Task completion notifications.

Delivery (push, email) is external; the backend only emits the event.
"""

from typing import Protocol

from structlog import get_logger

from riresume.models.domain import TaskCompletedEvent

logger = get_logger(__name__)


class Notifier(Protocol):
    """Receives task completion events."""

    async def task_completed(self, event: TaskCompletedEvent) -> None:
        """Handle a completed task."""
        ...


class LoggingNotifier:
    """Default notifier: records the event in the structured log."""

    async def task_completed(self, event: TaskCompletedEvent) -> None:
        logger.info(
            "task_completed_notification",
            user_id=event.user_id,
            task_type=event.task_type.value,
            task_id=str(event.task_id),
        )
