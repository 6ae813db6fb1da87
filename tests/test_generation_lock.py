"""
Tests for GenerationLock and resource-locked generation.

Two concurrent requests for the same resource must produce at most one AI
call and one debit.
"""

import asyncio
from datetime import timedelta

import pytest
from conftest import (
    HangingHandler,
    RecordingSleep,
    ScriptedProvider,
    seed_account,
    seed_application,
    seed_learning_entry,
)
from sqlalchemy import select, update

from riresume.db.models import LearningEntry, utc_now
from riresume.exceptions import (
    GenerationInProgressError,
    InsufficientBalanceError,
    ProviderCallError,
    ResourceNotFoundError,
    UpstreamProviderError,
)
from riresume.models.api import GenerationStatus, TaskType
from riresume.models.domain import GenerationOutcome
from riresume.services.ai_gateway import AIProviderGateway
from riresume.services.generation_lock import GenerationLock
from riresume.services.ledger import TokenLedger
from riresume.services.task_orchestrator import CANCELLED_MESSAGE, TaskOrchestrator


async def _entry_status(session_factory, entry_id: str) -> str:
    async with session_factory() as s:
        stmt = select(LearningEntry.generation_status).where(LearningEntry.id == entry_id)
        return (await s.execute(stmt)).scalar_one()


class TestGenerationLock:
    """Lock acquisition and release on the resource row."""

    async def test_acquire_then_busy(self, session_factory):
        await seed_learning_entry(session_factory, "le-1", "alice")

        async with session_factory() as s:
            lock = GenerationLock(s, LearningEntry, "LearningEntry")
            assert await lock.acquire("le-1", "alice") is None

        async with session_factory() as s:
            with pytest.raises(GenerationInProgressError):
                await GenerationLock(s, LearningEntry, "LearningEntry").acquire("le-1", "alice")

    async def test_completed_returns_cached_content(self, session_factory, session):
        await seed_learning_entry(session_factory, "le-2", "alice")
        lock = GenerationLock(session, LearningEntry, "LearningEntry")

        await lock.acquire("le-2", "alice")
        await lock.release_completed("le-2", {"slides": ["a"]})
        outcome = await lock.acquire("le-2", "alice")

        assert outcome == GenerationOutcome(
            resource_id="le-2",
            status=GenerationStatus.COMPLETED,
            content={"slides": ["a"]},
            cached=True,
        )

    async def test_failed_release_allows_retry(self, session_factory, session):
        await seed_learning_entry(session_factory, "le-3", "alice")
        lock = GenerationLock(session, LearningEntry, "LearningEntry")

        await lock.acquire("le-3", "alice")
        await lock.release_failed("le-3", "provider down")
        assert await _entry_status(session_factory, "le-3") == "failed"

        assert await lock.acquire("le-3", "alice") is None

    async def test_missing_or_foreign_resource(self, session_factory, session):
        await seed_learning_entry(session_factory, "le-4", "alice")
        lock = GenerationLock(session, LearningEntry, "LearningEntry")

        with pytest.raises(ResourceNotFoundError):
            await lock.acquire("does-not-exist", "alice")
        with pytest.raises(ResourceNotFoundError):
            await lock.acquire("le-4", "mallory")

    async def test_stale_generating_lock_is_taken_over(self, session_factory):
        await seed_learning_entry(session_factory, "le-5", "alice")
        async with session_factory() as s:
            await s.execute(
                update(LearningEntry)
                .where(LearningEntry.id == "le-5")
                .values(generation_status="generating", updated_at=utc_now() - timedelta(hours=1))
            )
            await s.commit()

        async with session_factory() as s:
            lock = GenerationLock(s, LearningEntry, "LearningEntry", stale_after_seconds=300)
            assert await lock.acquire("le-5", "alice") is None

    async def test_live_lock_is_not_taken_over(self, session_factory):
        await seed_learning_entry(session_factory, "le-6", "alice")
        async with session_factory() as s:
            await GenerationLock(s, LearningEntry, "LearningEntry").acquire("le-6", "alice")

        async with session_factory() as s:
            lock = GenerationLock(s, LearningEntry, "LearningEntry", stale_after_seconds=300)
            with pytest.raises(GenerationInProgressError):
                await lock.acquire("le-6", "alice")


class TestLockedGeneration:
    """TaskOrchestrator.generate_* under the lock."""

    async def test_generates_charges_and_caches(
        self, session_factory, session, gateway, slides_provider: ScriptedProvider
    ):
        await seed_account(session_factory, "bob", balance=100)
        await seed_learning_entry(session_factory, "le-10", "bob")
        orchestrator = TaskOrchestrator(session, gateway)

        first = await orchestrator.generate_training_slideshow("bob", "le-10", "Go", "SRE", "Acme")
        second = await orchestrator.generate_training_slideshow("bob", "le-10", "Go", "SRE", "Acme")

        assert first.cached is False
        assert first.content["total_slides"] == 2
        assert second.cached is True
        assert second.content == first.content
        assert len(slides_provider.calls) == 1
        assert (await TokenLedger(session).get_account("bob")).balance == 70

    async def test_concurrent_requests_one_ai_call_one_debit(
        self, session_factory, gateway, slides_provider: ScriptedProvider
    ):
        await seed_account(session_factory, "carol", balance=100)
        await seed_learning_entry(session_factory, "le-11", "carol")

        async def request() -> GenerationOutcome | GenerationInProgressError:
            async with session_factory() as s:
                try:
                    return await TaskOrchestrator(s, gateway).generate_training_slideshow(
                        "carol", "le-11", "Go", "SRE", "Acme"
                    )
                except GenerationInProgressError as exc:
                    return exc

        results = await asyncio.gather(request(), request())

        fresh = [r for r in results if isinstance(r, GenerationOutcome) and not r.cached]
        others = [r for r in results if r not in fresh]
        assert len(fresh) == 1
        assert len(others) == 1
        assert isinstance(others[0], GenerationInProgressError) or others[0].cached
        assert len(slides_provider.calls) == 1
        async with session_factory() as s:
            assert (await TokenLedger(s).verify_conservation("carol")).balance == 70

    async def test_insufficient_balance_releases_lock(
        self, session_factory, session, gateway, slides_provider: ScriptedProvider
    ):
        await seed_account(session_factory, "dan", balance=10)
        await seed_learning_entry(session_factory, "le-12", "dan")
        orchestrator = TaskOrchestrator(session, gateway)

        with pytest.raises(InsufficientBalanceError):
            await orchestrator.generate_training_slideshow("dan", "le-12", "Go", "SRE", "Acme")

        assert slides_provider.calls == []
        assert await _entry_status(session_factory, "le-12") == "failed"

    async def test_ai_failure_keeps_charge_and_allows_retry(
        self, session_factory, session, recording_sleep: RecordingSleep
    ):
        await seed_account(session_factory, "erin", balance=100)
        await seed_application(session_factory, "app-1", "erin")
        provider = ScriptedProvider(
            "openai",
            [ProviderCallError("openai", "HTTP 500", 500), '{"sections": [{"title": "Intro"}]}'],
        )
        orchestrator = TaskOrchestrator(
            session, AIProviderGateway(primary=provider, sleep=recording_sleep)
        )

        with pytest.raises(UpstreamProviderError):
            await orchestrator.generate_prep_guide("erin", "app-1", "Platform Engineer", "Acme")

        outcome = await orchestrator.generate_prep_guide(
            "erin", "app-1", "Platform Engineer", "Acme"
        )

        assert outcome.cached is False
        assert outcome.content == {"sections": [{"title": "Intro"}]}
        # Both attempts were charged
        assert (await TokenLedger(session).get_account("erin")).balance == 0

    async def test_cancelled_generation_releases_lock(self, session_factory, session, gateway):
        await seed_account(session_factory, "gil", balance=100)
        await seed_learning_entry(session_factory, "le-13", "gil")
        handler = HangingHandler()
        orchestrator = TaskOrchestrator(
            session, gateway, handlers={TaskType.TRAINING_SLIDESHOW: handler}
        )

        request = asyncio.create_task(
            orchestrator.generate_training_slideshow("gil", "le-13", "Go", "SRE", "Acme")
        )
        await asyncio.wait_for(handler.started.wait(), timeout=5)
        request.cancel()
        with pytest.raises(asyncio.CancelledError):
            await request

        assert await _entry_status(session_factory, "le-13") == "failed"
        async with session_factory() as s:
            error = (
                await s.execute(
                    select(LearningEntry.generation_error).where(LearningEntry.id == "le-13")
                )
            ).scalar_one()
            assert error == CANCELLED_MESSAGE
            # The next request may generate again
            assert await GenerationLock(s, LearningEntry, "LearningEntry").acquire(
                "le-13", "gil"
            ) is None

    async def test_unknown_application(self, session_factory, session, gateway):
        await seed_account(session_factory, "fay", balance=100)

        with pytest.raises(ResourceNotFoundError):
            await TaskOrchestrator(session, gateway).generate_prep_guide(
                "fay", "missing-app", "SRE", "Acme"
            )

        assert (await TokenLedger(session).get_account("fay")).balance == 100
