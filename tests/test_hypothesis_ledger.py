"""
Hypothesis Property-Based Tests for the token ledger.

Conservation: for any sequence of credits and debits, balance equals
total credited minus total debited, and never goes negative.
"""

import asyncio
import tempfile
from pathlib import Path

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from riresume.db.models import Account
from riresume.db.session import build_engine, build_session_factory, create_all
from riresume.exceptions import InsufficientBalanceError
from riresume.models.domain import AccountData, CreditIntent, DebitIntent
from riresume.services.ledger import TokenLedger

# ============================================================================
# Hypothesis Strategies
# ============================================================================

positive_amounts = st.integers(min_value=1, max_value=500)
event_ids = st.sampled_from([f"evt_{i}" for i in range(6)])

ledger_ops = st.lists(
    st.one_of(
        st.tuples(st.just("credit"), positive_amounts, event_ids),
        st.tuples(st.just("debit"), positive_amounts, st.none()),
    ),
    min_size=1,
    max_size=15,
)


async def _apply_sequence(db_path: Path, ops: list[tuple[str, int, str | None]]) -> None:
    engine = build_engine(f"sqlite+aiosqlite:///{db_path}")
    await create_all(engine)
    factory = build_session_factory(engine)

    model_balance = 0
    credited_events: dict[str, int] = {}
    try:
        async with factory() as session:
            session.add(Account(user_id="prop-user"))
            await session.commit()
            ledger = TokenLedger(session)

            for kind, amount, event_id in ops:
                if kind == "credit":
                    assert event_id is not None
                    result = await ledger.credit("prop-user", amount, event_id, "Purchased")
                    if event_id in credited_events:
                        assert result.already_processed
                    else:
                        credited_events[event_id] = amount
                        model_balance += amount
                else:
                    try:
                        await ledger.debit("prop-user", amount, "debit")
                        model_balance -= amount
                    except InsufficientBalanceError as exc:
                        assert exc.balance < amount

                # Checked after every operation
                account = await ledger.verify_conservation("prop-user")
                assert account.balance == model_balance
                assert account.balance >= 0
                assert account.balance == account.total_credited - account.total_debited
    finally:
        await engine.dispose()


class TestLedgerConservation:
    """Conservation over arbitrary credit/debit sequences."""

    @given(ops=ledger_ops)
    @settings(max_examples=25, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    def test_balance_conserved_after_every_operation(self, ops):
        with tempfile.TemporaryDirectory() as tmp:
            asyncio.run(_apply_sequence(Path(tmp) / "prop.db", ops))


class TestDomainInvariants:
    """Domain dataclasses refuse invalid states."""

    @given(credited=st.integers(min_value=0, max_value=10_000), debited=st.integers(0, 10_000))
    def test_account_data_requires_conservation(self, credited, debited):
        from datetime import UTC, datetime

        now = datetime.now(UTC)
        balance = credited - debited
        if balance < 0:
            with pytest.raises(ValueError):
                AccountData("u", balance, credited, debited, 0, now, now)
        else:
            account = AccountData("u", balance, credited, debited, 0, now, now)
            assert account.balance == balance

        with pytest.raises(ValueError):
            AccountData("u", balance + 1, credited, debited, 0, now, now)

    @given(cost=st.integers(max_value=0))
    def test_debit_intent_rejects_non_positive_cost(self, cost):
        with pytest.raises(ValueError):
            DebitIntent(user_id="u", cost=cost, reason="r")

    @given(amount=st.integers(max_value=0))
    def test_credit_intent_rejects_non_positive_amount(self, amount):
        with pytest.raises(ValueError):
            CreditIntent(user_id="u", amount=amount, entry_id="credit:e", reason="r")
