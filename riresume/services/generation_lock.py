"""
Generation Lock - per-resource guard against duplicate costly generations.

The lock is a status column on the owning resource row, not a separate entity.
Acquisition is a single compare-and-swap UPDATE so two concurrent claimants
can never both move the resource into 'generating'.
"""

from datetime import timedelta
from typing import Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from riresume.db.models import JobApplication, LearningEntry, utc_now
from riresume.exceptions import GenerationInProgressError, ResourceNotFoundError
from riresume.models.api import GenerationStatus
from riresume.models.domain import GenerationOutcome
from riresume.observability.metrics import metrics

logger = get_logger(__name__)

GenerationTarget = type[LearningEntry] | type[JobApplication]

# A lock released between our failed CAS and the re-read is simply retried
_MAX_ACQUIRE_ATTEMPTS = 3


class GenerationLock:
    """Compare-and-swap lock over a resource's generation_status column."""

    def __init__(
        self,
        session: AsyncSession,
        model: GenerationTarget,
        resource_type: str,
        stale_after_seconds: int | None = None,
    ) -> None:
        self.session = session
        self.model = model
        self.resource_type = resource_type
        self.stale_after_seconds = stale_after_seconds

    async def acquire(self, resource_id: str, user_id: str) -> GenerationOutcome | None:
        """
        Move the resource into 'generating'.

        A 'generating' lock older than stale_after_seconds belongs to a
        holder that died without releasing it and is taken over.

        Returns:
            None when the lock was acquired and the caller should generate,
            or the cached outcome when the resource was already generated

        Raises:
            ResourceNotFoundError: resource missing or owned by another user
            GenerationInProgressError: another caller holds the lock
        """
        model = self.model
        for _ in range(_MAX_ACQUIRE_ATTEMPTS):
            stmt = (
                update(model)
                .where(
                    model.id == resource_id,
                    model.user_id == user_id,
                    self._claimable(),
                )
                .values(
                    generation_status=GenerationStatus.GENERATING.value,
                    generation_error=None,
                    updated_at=utc_now(),
                )
                .execution_options(synchronize_session=False)
            )
            result = await self.session.execute(stmt)
            if result.rowcount == 1:
                await self.session.commit()
                metrics.generation_lock_total.labels(outcome="acquired").inc()
                logger.info(
                    "generation_lock_acquired",
                    resource_type=self.resource_type,
                    resource_id=resource_id,
                )
                return None

            await self.session.rollback()
            status, content = await self._read_state(resource_id, user_id)

            if status == GenerationStatus.GENERATING:
                metrics.generation_lock_total.labels(outcome="in_progress").inc()
                logger.info(
                    "generation_lock_busy",
                    resource_type=self.resource_type,
                    resource_id=resource_id,
                )
                raise GenerationInProgressError(resource_id)

            if status == GenerationStatus.COMPLETED:
                metrics.generation_lock_total.labels(outcome="cached").inc()
                logger.info(
                    "generation_cached_result_returned",
                    resource_type=self.resource_type,
                    resource_id=resource_id,
                )
                return GenerationOutcome(
                    resource_id=resource_id,
                    status=GenerationStatus.COMPLETED,
                    content=content or {},
                    cached=True,
                )

        # Status kept flipping back to claimable under us; treat as contended
        raise GenerationInProgressError(resource_id)

    def _claimable(self) -> Any:
        model = self.model
        claimable = model.generation_status.in_(
            [GenerationStatus.NONE.value, GenerationStatus.FAILED.value]
        )
        if self.stale_after_seconds is None:
            return claimable
        stale_before = utc_now() - timedelta(seconds=self.stale_after_seconds)
        return or_(
            claimable,
            and_(
                model.generation_status == GenerationStatus.GENERATING.value,
                model.updated_at < stale_before,
            ),
        )

    async def release_completed(self, resource_id: str, content: dict[str, Any]) -> None:
        """Store the generated content and mark the resource completed."""
        await self._release(
            resource_id,
            generation_status=GenerationStatus.COMPLETED.value,
            generated_content=content,
            generation_error=None,
        )
        logger.info(
            "generation_lock_completed",
            resource_type=self.resource_type,
            resource_id=resource_id,
        )

    async def release_failed(self, resource_id: str, error: str) -> None:
        """Mark the resource failed so a later call may retry."""
        await self._release(
            resource_id,
            generation_status=GenerationStatus.FAILED.value,
            generation_error=error[:2000],
        )
        logger.warning(
            "generation_lock_failed",
            resource_type=self.resource_type,
            resource_id=resource_id,
            error=error,
        )

    async def _release(self, resource_id: str, **values: Any) -> None:
        model = self.model
        stmt = (
            update(model)
            .where(
                model.id == resource_id,
                model.generation_status == GenerationStatus.GENERATING.value,
            )
            .values(updated_at=utc_now(), **values)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)
        await self.session.commit()

    async def _read_state(
        self, resource_id: str, user_id: str
    ) -> tuple[GenerationStatus, dict[str, Any] | None]:
        model = self.model
        stmt = select(model.generation_status, model.generated_content).where(
            model.id == resource_id, model.user_id == user_id
        )
        row = (await self.session.execute(stmt)).one_or_none()
        if row is None:
            raise ResourceNotFoundError(self.resource_type, resource_id)
        return GenerationStatus(row.generation_status), row.generated_content
