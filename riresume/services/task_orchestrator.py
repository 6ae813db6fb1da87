"""
Task Orchestrator - durable state machine for asynchronous generation jobs.

NO DICTIONARIES - Tasks are exposed as TaskData dataclasses
(payloads and results are the caller-owned opaque blobs).

    queued --claim--> processing --complete--> completed
                                 --fail------> failed

Every transition is a compare-and-swap UPDATE guarded by the expected
current status, so duplicate triggers and concurrent workers can never move
a task out of a terminal state or make progress go backwards.
"""

import asyncio
import time
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from riresume.config import Settings, get_settings
from riresume.db.models import JobApplication, LearningEntry, Task, utc_now
from riresume.exceptions import (
    AccountNotFoundError,
    InsufficientBalanceError,
    TaskNotFoundError,
    UpstreamProviderError,
    ValidationError,
)
from riresume.models.api import GenerationStatus, TaskStatus, TaskType
from riresume.models.domain import GenerationOutcome, TaskCompletedEvent, TaskData
from riresume.observability.logging import log_context
from riresume.observability.metrics import metrics
from riresume.observability.tracing import trace_operation
from riresume.services.ai_gateway import AIProviderGateway
from riresume.services.generation_lock import GenerationLock, GenerationTarget
from riresume.services.ledger import TokenLedger
from riresume.services.notifications import LoggingNotifier, Notifier
from riresume.services.task_handlers import (
    TaskHandler,
    build_handler_registry,
    cost_for,
    no_progress,
)

logger = get_logger(__name__)

RATE_LIMITED_MESSAGE = "The AI service is busy. Please try again shortly."
UPSTREAM_FAILED_MESSAGE = "AI generation failed. Please try again later."
TIMEOUT_MESSAGE = "Generation timed out"
CANCELLED_MESSAGE = "Generation was interrupted. Please try again."


def user_facing_error(exc: Exception) -> str:
    """Message recorded on a failed task and shown to the user."""
    if isinstance(exc, UpstreamProviderError):
        return RATE_LIMITED_MESSAGE if exc.rate_limited else UPSTREAM_FAILED_MESSAGE
    if isinstance(exc, TimeoutError):
        return TIMEOUT_MESSAGE
    return str(exc)


class TaskOrchestrator:
    """
    Owns Task status transitions and composes TokenLedger with the AI gateway.

    Tokens are charged on attempt: a debit is never refunded when the AI
    call fails afterwards.
    """

    def __init__(
        self,
        session: AsyncSession,
        gateway: AIProviderGateway,
        notifier: Notifier | None = None,
        handlers: dict[TaskType, TaskHandler] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.session = session
        self.gateway = gateway
        self.notifier = notifier or LoggingNotifier()
        self.handlers = handlers if handlers is not None else build_handler_registry(gateway)
        self.settings = settings or get_settings()
        self.ledger = TokenLedger(session, self.settings)

    # ========================================================================
    # Submission and reads
    # ========================================================================

    async def submit(self, user_id: str, task_type: TaskType | str, payload: Any) -> UUID:
        """
        Create a task in 'queued'. No side effects beyond persistence.

        Raises:
            ValidationError: unknown type, blank user id or payload missing fields
        """
        try:
            task_type = TaskType(task_type)
        except ValueError as exc:
            raise ValidationError(f"Unknown task type: {task_type}") from exc
        if not user_id or not user_id.strip():
            raise ValidationError("user_id cannot be empty")
        if not isinstance(payload, dict):
            raise ValidationError("payload must be an object")

        self._handler_for(task_type).validate(payload)

        task = Task(
            user_id=user_id,
            type=task_type.value,
            status=TaskStatus.QUEUED.value,
            progress=0,
            stage="Queued",
            payload=payload,
            cost=cost_for(task_type, self.settings),
        )
        self.session.add(task)
        await self.session.flush()
        task_id = task.id
        await self.session.commit()

        metrics.record_task_transition(task_type.value, TaskStatus.QUEUED.value)
        logger.info("task_submitted", task_id=str(task_id), user_id=user_id, task_type=task_type.value)
        return task_id

    async def get_task(self, task_id: UUID) -> TaskData:
        """
        Read the committed task state.

        Raises:
            TaskNotFoundError: unknown id
        """
        stmt = (
            select(Task)
            .where(Task.id == task_id)
            .execution_options(populate_existing=True)
        )
        task = (await self.session.execute(stmt)).scalar_one_or_none()
        if task is None:
            raise TaskNotFoundError(task_id)
        return self._to_domain(task)

    async def list_tasks(self, user_id: str, limit: int = 20) -> list[TaskData]:
        """Most recent tasks for a user."""
        stmt = (
            select(Task)
            .where(Task.user_id == user_id)
            .order_by(Task.created_at.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        tasks = (await self.session.execute(stmt)).scalars().all()
        return [self._to_domain(task) for task in tasks]

    # ========================================================================
    # State transitions
    # ========================================================================

    async def claim(self, task_id: UUID) -> tuple[TaskData, bool]:
        """
        Transition queued -> processing.

        Re-claiming a task that is already processing or terminal is a no-op.

        Returns:
            (current task state, whether this call performed the claim)

        Raises:
            TaskNotFoundError: unknown id
        """
        now = utc_now()
        stmt = (
            update(Task)
            .where(Task.id == task_id, Task.status == TaskStatus.QUEUED.value)
            .values(
                status=TaskStatus.PROCESSING.value,
                stage="Starting...",
                started_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        claimed = result.rowcount == 1
        if claimed:
            await self.session.commit()
        else:
            await self.session.rollback()

        task = await self.get_task(task_id)
        if claimed:
            metrics.record_task_transition(task.type.value, TaskStatus.PROCESSING.value)
            logger.info("task_claimed", task_id=str(task_id), task_type=task.type.value)
        else:
            logger.info("task_claim_noop", task_id=str(task_id), status=task.status.value)
        return task, claimed

    async def update_progress(self, task_id: UUID, progress: int, stage: str) -> bool:
        """
        Persist a progress update. Progress never decreases.

        Returns:
            True if applied; False if the task is not processing or the
            update would move progress backwards
        """
        if not 0 <= progress <= 100:
            raise ValidationError(f"progress must be between 0 and 100: {progress}")

        stmt = (
            update(Task)
            .where(
                Task.id == task_id,
                Task.status == TaskStatus.PROCESSING.value,
                Task.progress <= progress,
            )
            .values(progress=progress, stage=stage, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        applied = result.rowcount == 1
        if applied:
            await self.session.commit()
            logger.debug("task_progress", task_id=str(task_id), progress=progress, stage=stage)
        else:
            await self.session.rollback()
        return applied

    async def complete(
        self, task_id: UUID, result: dict[str, Any], result_id: str | None = None
    ) -> bool:
        """Transition processing -> completed and emit the completion event."""
        now = utc_now()
        stmt = (
            update(Task)
            .where(Task.id == task_id, Task.status == TaskStatus.PROCESSING.value)
            .values(
                status=TaskStatus.COMPLETED.value,
                progress=100,
                stage="Complete",
                result=result,
                result_id=result_id,
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if not await self._finish(stmt):
            return False

        task = await self.get_task(task_id)
        self._record_terminal(task)
        logger.info("task_completed", task_id=str(task_id), task_type=task.type.value)
        await self.notifier.task_completed(
            TaskCompletedEvent(user_id=task.user_id, task_type=task.type, task_id=task.id)
        )
        return True

    async def fail(self, task_id: UUID, error: str) -> bool:
        """Transition processing -> failed, recording the error."""
        now = utc_now()
        stmt = (
            update(Task)
            .where(Task.id == task_id, Task.status == TaskStatus.PROCESSING.value)
            .values(
                status=TaskStatus.FAILED.value,
                stage="Failed",
                error=error,
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if not await self._finish(stmt):
            return False

        task = await self.get_task(task_id)
        self._record_terminal(task)
        logger.warning("task_failed", task_id=str(task_id), task_type=task.type.value, error=error)
        return True

    # ========================================================================
    # Execution
    # ========================================================================

    async def run(self, task_id: UUID) -> TaskData:
        """
        Claim and execute a task to a terminal state.

        Failures are recorded on the task, never raised: the caller reads the
        outcome from the returned state. Duplicate triggers return the
        current state without doing any work.
        A cancelled run still marks the task failed before re-raising.
        """
        task, claimed = await self.claim(task_id)
        if not claimed:
            return task

        with log_context(task_id=str(task.id), user_id=task.user_id, task_type=task.type.value):
            with trace_operation("task.run", task_id=task.id, task_type=task.type.value):
                try:
                    await self._execute_claimed(task)
                except asyncio.CancelledError:
                    # Finish the bookkeeping even though our caller is going away
                    logger.warning("task_cancelled")
                    await asyncio.shield(self._abandon_task(task.id))
                    raise

        return await self.get_task(task_id)

    async def _execute_claimed(self, task: TaskData) -> None:
        if task.cost > 0:
            try:
                await self.ledger.debit(
                    task.user_id,
                    task.cost,
                    reason=f"{task.type.value} task",
                    resource_id=str(task.id),
                )
            except (InsufficientBalanceError, AccountNotFoundError, ValidationError) as exc:
                await self.fail(task.id, str(exc))
                return

        async def report(progress: int, stage: str) -> None:
            await self.update_progress(task.id, progress, stage)

        handler = self._handler_for(task.type)
        try:
            outcome = await asyncio.wait_for(
                handler.execute(task.payload, report),
                timeout=self.settings.ai_call_timeout_seconds,
            )
        except TimeoutError as exc:
            # The handler was cancelled mid-flight; discard any half-done statement
            await self.session.rollback()
            logger.error("task_ai_timeout", timeout_seconds=self.settings.ai_call_timeout_seconds)
            await self.fail(task.id, user_facing_error(exc))
        except UpstreamProviderError as exc:
            logger.error("task_ai_failed", error=str(exc), rate_limited=exc.rate_limited)
            await self.fail(task.id, user_facing_error(exc))
        except ValidationError as exc:
            await self.fail(task.id, str(exc))
        except Exception as exc:
            # Any other failure is terminal for this task and stays on the record
            logger.exception("task_handler_crashed")
            await self.session.rollback()
            await self.fail(task.id, str(exc) or type(exc).__name__)
        else:
            await self.complete(task.id, outcome.content, outcome.result_id)

    # ========================================================================
    # Resource-locked generation
    # ========================================================================

    async def generate_for_resource(
        self,
        model: GenerationTarget,
        resource_type: str,
        resource_id: str,
        user_id: str,
        task_type: TaskType,
        payload: dict[str, Any],
    ) -> GenerationOutcome:
        """
        Generate content for a resource at most once at a time.

        A completed resource returns its cached content without an AI call
        or a charge. A failed debit or AI call releases the lock as failed.

        Raises:
            ResourceNotFoundError, GenerationInProgressError,
            InsufficientBalanceError, AccountNotFoundError, UpstreamProviderError
        """
        handler = self._handler_for(task_type)
        handler.validate(payload)

        lock = GenerationLock(
            self.session,
            model,
            resource_type,
            stale_after_seconds=self.settings.generation_lease_seconds,
        )
        cached = await lock.acquire(resource_id, user_id)
        if cached is not None:
            return cached

        start = time.monotonic()
        try:
            cost = cost_for(task_type, self.settings)
            if cost > 0:
                await self.ledger.debit(
                    user_id,
                    cost,
                    reason=f"{task_type.value} generation",
                    resource_id=resource_id,
                )
            outcome = await asyncio.wait_for(
                handler.execute(payload, no_progress),
                timeout=self.settings.ai_call_timeout_seconds,
            )
        except TimeoutError as exc:
            await self.session.rollback()
            await lock.release_failed(resource_id, TIMEOUT_MESSAGE)
            raise UpstreamProviderError(TIMEOUT_MESSAGE) from exc
        except Exception as exc:
            await self.session.rollback()
            await lock.release_failed(resource_id, str(exc) or type(exc).__name__)
            raise
        except asyncio.CancelledError:
            logger.warning("generation_cancelled", resource_type=resource_type, resource_id=resource_id)
            await asyncio.shield(self._abandon_generation(lock, resource_id))
            raise

        await lock.release_completed(resource_id, outcome.content)
        metrics.task_duration_seconds.labels(task_type=task_type.value).observe(
            time.monotonic() - start
        )
        return GenerationOutcome(
            resource_id=resource_id,
            status=GenerationStatus.COMPLETED,
            content=outcome.content,
            cached=False,
        )

    async def generate_training_slideshow(
        self, user_id: str, entry_id: str, skill: str, position: str, company: str
    ) -> GenerationOutcome:
        """Training slideshow for a learning entry."""
        return await self.generate_for_resource(
            LearningEntry,
            "LearningEntry",
            entry_id,
            user_id,
            TaskType.TRAINING_SLIDESHOW,
            {"skill": skill, "position": position, "company": company},
        )

    async def generate_prep_guide(
        self,
        user_id: str,
        application_id: str,
        job_title: str,
        company: str,
        job_description: str | None = None,
        resume: dict[str, Any] | None = None,
    ) -> GenerationOutcome:
        """Interview prep guide for a job application."""
        payload: dict[str, Any] = {"job_title": job_title, "company": company}
        if job_description:
            payload["job_description"] = job_description
        if resume:
            payload["resume"] = resume
        return await self.generate_for_resource(
            JobApplication,
            "JobApplication",
            application_id,
            user_id,
            TaskType.PREP_GUIDE,
            payload,
        )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    def _handler_for(self, task_type: TaskType) -> TaskHandler:
        handler = self.handlers.get(task_type)
        if handler is None:
            raise ValidationError(f"No handler registered for task type: {task_type.value}")
        return handler

    async def _abandon_task(self, task_id: UUID) -> None:
        await self.session.rollback()
        await self.fail(task_id, CANCELLED_MESSAGE)

    async def _abandon_generation(self, lock: GenerationLock, resource_id: str) -> None:
        await self.session.rollback()
        await lock.release_failed(resource_id, CANCELLED_MESSAGE)

    async def _finish(self, stmt: Any) -> bool:
        result = await self.session.execute(stmt)
        if result.rowcount == 1:
            await self.session.commit()
            return True
        await self.session.rollback()
        return False

    def _record_terminal(self, task: TaskData) -> None:
        metrics.record_task_transition(task.type.value, task.status.value)
        if task.started_at is not None and task.completed_at is not None:
            metrics.task_duration_seconds.labels(task_type=task.type.value).observe(
                (task.completed_at - task.started_at).total_seconds()
            )

    def _to_domain(self, task: Task) -> TaskData:
        return TaskData(
            id=task.id,
            user_id=task.user_id,
            type=TaskType(task.type),
            status=TaskStatus(task.status),
            progress=task.progress,
            stage=task.stage,
            payload=task.payload or {},
            cost=task.cost,
            result=task.result,
            result_id=task.result_id,
            error=task.error,
            created_at=task.created_at,
            updated_at=task.updated_at,
            started_at=task.started_at,
            completed_at=task.completed_at,
        )
