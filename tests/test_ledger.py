"""
Tests for TokenLedger.

Unit tests with mocked sessions, plus concurrency properties against a real
SQLite database where the store's write serialization is what's under test.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
from conftest import scalar_result, seed_account
from sqlalchemy import func, select

from riresume.config import settings
from riresume.db.models import LedgerEntry
from riresume.exceptions import (
    AccountNotFoundError,
    InsufficientBalanceError,
    ValidationError,
)
from riresume.models.api import LedgerEntryKind
from riresume.services.ledger import TokenLedger


class TestDebitUnit:
    """Debit validation and failure paths with a mocked session."""

    async def test_rejects_non_positive_cost_before_touching_store(self, db_session: AsyncMock):
        ledger = TokenLedger(db_session)

        with pytest.raises(ValidationError):
            await ledger.debit("user-1", 0, "analyze task")

        db_session.execute.assert_not_called()

    async def test_rejects_empty_reason(self, db_session: AsyncMock):
        with pytest.raises(ValidationError):
            await TokenLedger(db_session).debit("user-1", 10, "")

    async def test_insufficient_balance_rolls_back_and_reports_amounts(self, db_session: AsyncMock):
        """Guarded update matched nothing; account exists with 20 tokens."""
        db_session.execute = AsyncMock(side_effect=[scalar_result(None), scalar_result(20)])
        ledger = TokenLedger(db_session)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await ledger.debit("user-1", 30, "training_slideshow task")

        assert exc_info.value.balance == 20
        assert exc_info.value.required == 30
        assert str(exc_info.value) == "Insufficient tokens. Balance: 20, Required: 30"
        db_session.rollback.assert_awaited_once()
        db_session.add.assert_not_called()
        db_session.commit.assert_not_called()

    async def test_missing_account(self, db_session: AsyncMock):
        db_session.execute = AsyncMock(side_effect=[scalar_result(None), scalar_result(None)])

        with pytest.raises(AccountNotFoundError):
            await TokenLedger(db_session).debit("ghost", 5, "analyze task")

    async def test_success_appends_debit_entry(self, db_session: AsyncMock):
        db_session.execute = AsyncMock(return_value=scalar_result(70))

        new_balance = await TokenLedger(db_session).debit(
            "user-1", 30, "prep guide", resource_id="app-1"
        )

        assert new_balance == 70
        entry = db_session.add.call_args[0][0]
        assert isinstance(entry, LedgerEntry)
        assert entry.kind == LedgerEntryKind.DEBIT.value
        assert entry.amount == 30
        assert entry.resulting_balance == 70
        assert entry.resource_id == "app-1"
        assert entry.id.startswith("debit:")
        db_session.commit.assert_awaited_once()


class TestCreditUnit:
    """Credit idempotency paths with a mocked session."""

    async def test_existing_entry_short_circuits(self, db_session: AsyncMock):
        """An entry for the event already exists: no update, no insert."""
        db_session.execute = AsyncMock(
            side_effect=[scalar_result("credit:evt_1"), scalar_result(500)]
        )

        result = await TokenLedger(db_session).credit("user-1", 500, "evt_1", "Purchased")

        assert result.already_processed is True
        assert result.balance == 500
        assert result.entry_id == "credit:evt_1"
        db_session.add.assert_not_called()

    async def test_existing_entry_with_missing_account_is_not_found(self, db_session: AsyncMock):
        """A duplicate credit never reports a made-up balance for a missing account."""
        db_session.execute = AsyncMock(
            side_effect=[scalar_result("credit:evt_1"), scalar_result(None)]
        )

        with pytest.raises(AccountNotFoundError):
            await TokenLedger(db_session).credit("user-1", 500, "evt_1", "Purchased")

    async def test_empty_event_id_rejected(self, db_session: AsyncMock):
        with pytest.raises(ValidationError):
            await TokenLedger(db_session).credit("user-1", 500, "", "Purchased")

    async def test_non_positive_amount_rejected(self, db_session: AsyncMock):
        with pytest.raises(ValidationError):
            await TokenLedger(db_session).credit("user-1", -5, "evt_1", "Purchased")


class TestDebitDatabase:
    """Debit semantics against SQLite."""

    async def test_debit_updates_balance_and_totals(self, session_factory, session):
        await seed_account(session_factory, "alice", balance=100)
        ledger = TokenLedger(session)

        assert await ledger.debit("alice", 30, "optimize task") == 70

        account = await ledger.get_account("alice")
        assert account.balance == 70
        assert account.total_credited == 100
        assert account.total_debited == 30

    async def test_insufficient_balance_writes_nothing(self, session_factory, session):
        await seed_account(session_factory, "bob", balance=20)
        ledger = TokenLedger(session)

        with pytest.raises(InsufficientBalanceError):
            await ledger.debit("bob", 30, "training_slideshow task")

        account = await ledger.get_account("bob")
        assert account.balance == 20
        entries, total = await ledger.list_entries("bob")
        assert total == 1
        assert entries[0].kind == LedgerEntryKind.CREDIT

    async def test_concurrent_debits_cannot_overdraft(self, session_factory):
        """Balance 100, two concurrent debits of 60: exactly one succeeds."""
        await seed_account(session_factory, "carol", balance=100)

        async def attempt() -> int | InsufficientBalanceError:
            async with session_factory() as s:
                try:
                    return await TokenLedger(s).debit("carol", 60, "concurrent debit")
                except InsufficientBalanceError as exc:
                    return exc

        results = await asyncio.gather(attempt(), attempt())

        successes = [r for r in results if isinstance(r, int)]
        failures = [r for r in results if isinstance(r, InsufficientBalanceError)]
        assert successes == [40]
        assert len(failures) == 1
        assert failures[0].balance == 40
        assert failures[0].required == 60

        async with session_factory() as s:
            account = await TokenLedger(s).verify_conservation("carol")
            assert account.balance == 40

    async def test_many_concurrent_debits_never_go_negative(self, session_factory):
        await seed_account(session_factory, "dave", balance=55)

        async def attempt() -> bool:
            async with session_factory() as s:
                try:
                    await TokenLedger(s).debit("dave", 10, "burst")
                    return True
                except InsufficientBalanceError:
                    return False

        results = await asyncio.gather(*(attempt() for _ in range(8)))

        assert sum(results) == 5
        async with session_factory() as s:
            account = await TokenLedger(s).verify_conservation("dave")
            assert account.balance == 5


class TestCreditDatabase:
    """Exactly-once crediting against SQLite."""

    async def _credit_entry_count(self, session_factory, entry_id: str) -> int:
        async with session_factory() as s:
            stmt = select(func.count()).select_from(LedgerEntry).where(LedgerEntry.id == entry_id)
            return (await s.execute(stmt)).scalar_one()

    async def test_sequential_duplicate_credit_is_noop(self, session_factory, session):
        await seed_account(session_factory, "erin")
        ledger = TokenLedger(session)

        first = await ledger.credit("erin", 500, "evt_1", "Purchased 500 tokens")
        second = await ledger.credit("erin", 500, "evt_1", "Purchased 500 tokens")

        assert first.already_processed is False
        assert first.balance == 500
        assert second.already_processed is True
        assert second.balance == 500
        assert await self._credit_entry_count(session_factory, "credit:evt_1") == 1

    async def test_concurrent_duplicate_credit_applies_once(self, session_factory):
        await seed_account(session_factory, "frank")

        async def deliver():
            async with session_factory() as s:
                return await TokenLedger(s).credit("frank", 500, "evt_1", "Purchased 500 tokens")

        results = await asyncio.gather(deliver(), deliver(), deliver())

        assert sorted(r.already_processed for r in results) == [False, True, True]
        assert await self._credit_entry_count(session_factory, "credit:evt_1") == 1
        async with session_factory() as s:
            account = await TokenLedger(s).verify_conservation("frank")
            assert account.balance == 500
            assert account.total_credited == 500

    async def test_distinct_events_commute(self, session_factory):
        await seed_account(session_factory, "gina")

        async def deliver(event_id: str, amount: int):
            async with session_factory() as s:
                return await TokenLedger(s).credit("gina", amount, event_id, "Purchased")

        await asyncio.gather(deliver("evt_a", 100), deliver("evt_b", 250), deliver("evt_c", 50))

        async with session_factory() as s:
            account = await TokenLedger(s).verify_conservation("gina")
            assert account.balance == 400

    async def test_credit_unknown_account(self, session):
        with pytest.raises(AccountNotFoundError):
            await TokenLedger(session).credit("nobody", 100, "evt_x", "Purchased")


class TestOpenAccount:
    """Account opening and the welcome bonus."""

    async def test_open_account_grants_welcome_bonus_once(self, session):
        ledger = TokenLedger(session)

        first = await ledger.open_account("henry")
        second = await ledger.open_account("henry")

        assert first.balance == settings.welcome_bonus_tokens
        assert second.balance == settings.welcome_bonus_tokens
        entries, total = await ledger.list_entries("henry")
        assert total == 1
        assert entries[0].id == "welcome:henry"

    async def test_concurrent_opens_collapse(self, session_factory):
        async def open_once():
            async with session_factory() as s:
                return await TokenLedger(s).open_account("iris")

        await asyncio.gather(open_once(), open_once())

        async with session_factory() as s:
            account = await TokenLedger(s).verify_conservation("iris")
            assert account.balance == settings.welcome_bonus_tokens

    async def test_welcome_bonus_follows_injected_settings(self, session):
        ledger = TokenLedger(session, settings.model_copy(update={"welcome_bonus_tokens": 25}))

        account = await ledger.open_account("jack")

        assert account.balance == 25
        entries, _ = await ledger.list_entries("jack")
        assert entries[0].reason == "Welcome Bonus: 25 Tokens"

    async def test_no_welcome_bonus_when_disabled(self, session):
        ledger = TokenLedger(session, settings.model_copy(update={"welcome_bonus_tokens": 0}))

        account = await ledger.open_account("kate")

        assert account.balance == 0
        assert (await ledger.list_entries("kate"))[1] == 0

    async def test_blank_user_rejected(self, session):
        with pytest.raises(ValidationError):
            await TokenLedger(session).open_account("  ")


class TestGrantAndHistory:
    """Manual grants and ledger history."""

    async def test_grant_idempotent_on_reference(self, session_factory, session):
        await seed_account(session_factory, "jack")
        ledger = TokenLedger(session)

        await ledger.grant("jack", 40, "support-123", "Goodwill")
        repeat = await ledger.grant("jack", 40, "support-123", "Goodwill")

        assert repeat.already_processed is True
        assert (await ledger.get_account("jack")).balance == 40

    async def test_list_entries_pagination(self, session_factory, session):
        await seed_account(session_factory, "kate", balance=100)
        ledger = TokenLedger(session)
        for _ in range(3):
            await ledger.debit("kate", 5, "analyze task")

        page, total = await ledger.list_entries("kate", limit=2, offset=0)

        assert total == 4
        assert len(page) == 2

    async def test_get_account_missing(self, session):
        with pytest.raises(AccountNotFoundError):
            await TokenLedger(session).get_account("nobody")
