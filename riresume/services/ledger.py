"""
Token Ledger - Atomic credit/debit over the account store.

NO DICTIONARIES - All operations use strongly typed domain models.

Every balance mutation follows the same pattern inside one transaction:
1. Guarded UPDATE of the account row (the database serializes writers)
2. INSERT of the append-only ledger entry
3. Commit, or rollback on any failure so the balance and the log never diverge
"""

from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from riresume.config import Settings, get_settings
from riresume.db.models import Account, LedgerEntry, utc_now
from riresume.exceptions import (
    AccountNotFoundError,
    DataIntegrityError,
    InsufficientBalanceError,
    ValidationError,
)
from riresume.models.api import LedgerEntryKind
from riresume.models.domain import (
    DEBIT_ENTRY_PREFIX,
    GRANT_ENTRY_PREFIX,
    WELCOME_ENTRY_PREFIX,
    AccountData,
    CreditIntent,
    CreditResult,
    DebitIntent,
    LedgerEntryData,
    credit_entry_id,
)
from riresume.observability.metrics import metrics
from riresume.observability.tracing import trace_operation

logger = get_logger(__name__)


class TokenLedger:
    """
    Token ledger with non-overdrafting debits and idempotent credits.

    The ledger is the only component allowed to mutate Account balances.
    """

    def __init__(self, session: AsyncSession, settings: Settings | None = None) -> None:
        """Initialize ledger with database session."""
        self.session = session
        self.settings = settings or get_settings()

    async def debit(
        self,
        user_id: str,
        cost: int,
        reason: str,
        resource_id: str | None = None,
    ) -> int:
        """
        Debit tokens from an account and append a debit entry.

        The balance check and decrement are a single compare-and-swap UPDATE,
        so two concurrent debits whose combined cost exceeds the balance can
        never both succeed: the second writer re-evaluates the guard against
        the committed balance.

        Returns:
            New balance

        Raises:
            ValidationError: cost is not positive or reason is empty
            AccountNotFoundError: Account doesn't exist
            InsufficientBalanceError: balance < cost (nothing is written)
        """
        try:
            intent = DebitIntent(
                user_id=user_id, cost=cost, reason=reason, resource_id=resource_id
            )
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        with trace_operation("ledger.debit", user_id=user_id, cost=cost) as span:
            stmt = (
                update(Account)
                .where(Account.user_id == intent.user_id, Account.balance >= intent.cost)
                .values(
                    balance=Account.balance - intent.cost,
                    total_debited=Account.total_debited + intent.cost,
                    version=Account.version + 1,
                    updated_at=utc_now(),
                )
                .returning(Account.balance)
                .execution_options(synchronize_session=False)
            )
            result = await self.session.execute(stmt)
            new_balance = result.scalar_one_or_none()

            if new_balance is None:
                await self.session.rollback()
                current = await self._read_balance(intent.user_id)
                if current is None:
                    metrics.record_debit(False, intent.cost, "AccountNotFoundError")
                    raise AccountNotFoundError(intent.user_id)
                metrics.record_debit(False, intent.cost, "InsufficientBalanceError")
                logger.warning(
                    "ledger_debit_insufficient_balance",
                    user_id=intent.user_id,
                    balance=current,
                    required=intent.cost,
                )
                raise InsufficientBalanceError(balance=current, required=intent.cost)

            entry = LedgerEntry(
                id=f"{DEBIT_ENTRY_PREFIX}{uuid4().hex}",
                user_id=intent.user_id,
                kind=LedgerEntryKind.DEBIT.value,
                amount=intent.cost,
                resulting_balance=new_balance,
                reason=intent.reason,
                resource_id=intent.resource_id,
            )
            self.session.add(entry)

            try:
                await self.session.flush()
                await self.session.commit()
            except Exception:
                await self.session.rollback()
                metrics.record_debit(False, intent.cost, "commit_failed")
                raise

            span.set_attribute("new_balance", new_balance)

        metrics.record_debit(True, intent.cost)
        logger.info(
            "ledger_debit_committed",
            user_id=intent.user_id,
            cost=intent.cost,
            new_balance=new_balance,
            resource_id=intent.resource_id,
            entry_id=entry.id,
        )
        return new_balance

    async def credit(
        self,
        user_id: str,
        amount: int,
        external_event_id: str,
        reason: str,
        package_id: str | None = None,
    ) -> CreditResult:
        """
        Credit tokens for an external payment event, exactly once.

        The ledger entry id is derived from external_event_id; a second call
        for the same event returns already_processed=True without re-crediting.

        Raises:
            ValidationError: amount not positive or event id empty
            AccountNotFoundError: Account doesn't exist
        """
        if not external_event_id:
            raise ValidationError("external_event_id cannot be empty")
        try:
            intent = CreditIntent(
                user_id=user_id,
                amount=amount,
                entry_id=credit_entry_id(external_event_id),
                reason=reason,
                external_event_id=external_event_id,
                package_id=package_id,
            )
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        return await self._apply_credit(intent)

    async def open_account(self, user_id: str) -> AccountData:
        """
        Get or create the user's account and grant the welcome bonus once.

        Concurrent opens collapse to one account and one bonus entry.
        """
        if not user_id or not user_id.strip():
            raise ValidationError("user_id cannot be empty")

        bonus = self.settings.welcome_bonus_tokens
        if await self._read_balance(user_id) is None:
            self.session.add(Account(user_id=user_id))
            try:
                await self.session.flush()
                await self.session.commit()
                logger.info("account_created", user_id=user_id)
            except IntegrityError:
                # Race condition - account created by another request
                await self.session.rollback()
                logger.info("account_creation_race_lost", user_id=user_id)

        if bonus > 0:
            await self._apply_credit(
                CreditIntent(
                    user_id=user_id,
                    amount=bonus,
                    entry_id=f"{WELCOME_ENTRY_PREFIX}{user_id}",
                    reason=f"Welcome Bonus: {bonus} Tokens",
                )
            )

        return await self.get_account(user_id)

    async def grant(self, user_id: str, amount: int, reference: str, reason: str) -> CreditResult:
        """Manual adjustment credit, idempotent on reference."""
        if not reference:
            raise ValidationError("reference cannot be empty")
        try:
            intent = CreditIntent(
                user_id=user_id,
                amount=amount,
                entry_id=f"{GRANT_ENTRY_PREFIX}{reference}",
                reason=reason,
            )
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        return await self._apply_credit(intent)

    async def get_account(self, user_id: str) -> AccountData:
        """
        Get account snapshot.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        stmt = select(
            Account.user_id,
            Account.balance,
            Account.total_credited,
            Account.total_debited,
            Account.version,
            Account.created_at,
            Account.updated_at,
        ).where(Account.user_id == user_id)
        row = (await self.session.execute(stmt)).one_or_none()
        if row is None:
            raise AccountNotFoundError(user_id)
        return AccountData(
            user_id=row.user_id,
            balance=row.balance,
            total_credited=row.total_credited,
            total_debited=row.total_debited,
            version=row.version,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    async def list_entries(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> tuple[list[LedgerEntryData], int]:
        """List ledger entries for a user, newest first, with the total count."""
        count_stmt = select(func.count()).select_from(LedgerEntry).where(
            LedgerEntry.user_id == user_id
        )
        total = (await self.session.execute(count_stmt)).scalar_one()

        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.user_id == user_id)
            .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id)
            .limit(limit)
            .offset(offset)
        )
        rows = (await self.session.execute(stmt)).scalars().all()
        return [self._entry_to_domain(row) for row in rows], total

    async def verify_conservation(self, user_id: str) -> AccountData:
        """
        Recompute totals from the ledger and compare with the account row.

        Raises:
            AccountNotFoundError: Account doesn't exist
            DataIntegrityError: ledger and account totals disagree
        """
        account = await self.get_account(user_id)

        stmt = (
            select(LedgerEntry.kind, func.coalesce(func.sum(LedgerEntry.amount), 0))
            .where(LedgerEntry.user_id == user_id)
            .group_by(LedgerEntry.kind)
        )
        sums = {kind: int(total) for kind, total in (await self.session.execute(stmt)).all()}
        credited = sums.get(LedgerEntryKind.CREDIT.value, 0)
        debited = sums.get(LedgerEntryKind.DEBIT.value, 0)

        if credited != account.total_credited or debited != account.total_debited:
            raise DataIntegrityError(
                f"Ledger drift for {user_id}: entries credited={credited} debited={debited}, "
                f"account credited={account.total_credited} debited={account.total_debited}"
            )
        return account

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _apply_credit(self, intent: CreditIntent) -> CreditResult:
        """
        Credit an account under a deterministic entry id.

        Fast path: an existing entry means the credit already happened.
        Race path: the entry insert is constrained by its primary key, so when
        two invocations race the loser's insert fails and its whole transaction
        (including the balance increment) rolls back.
        """
        with trace_operation("ledger.credit", user_id=intent.user_id, entry_id=intent.entry_id):
            if await self._entry_exists(intent.entry_id):
                return await self._already_processed(intent)

            stmt = (
                update(Account)
                .where(Account.user_id == intent.user_id)
                .values(
                    balance=Account.balance + intent.amount,
                    total_credited=Account.total_credited + intent.amount,
                    version=Account.version + 1,
                    updated_at=utc_now(),
                )
                .returning(Account.balance)
                .execution_options(synchronize_session=False)
            )
            result = await self.session.execute(stmt)
            new_balance = result.scalar_one_or_none()

            if new_balance is None:
                await self.session.rollback()
                raise AccountNotFoundError(intent.user_id)

            self.session.add(
                LedgerEntry(
                    id=intent.entry_id,
                    user_id=intent.user_id,
                    kind=LedgerEntryKind.CREDIT.value,
                    amount=intent.amount,
                    resulting_balance=new_balance,
                    reason=intent.reason,
                    external_event_id=intent.external_event_id,
                    package_id=intent.package_id,
                )
            )

            try:
                await self.session.flush()
                await self.session.commit()
            except IntegrityError:
                await self.session.rollback()
                logger.info("ledger_credit_race_lost", entry_id=intent.entry_id)
                return await self._already_processed(intent)

        metrics.record_credit(False, intent.amount)
        logger.info(
            "ledger_credit_committed",
            user_id=intent.user_id,
            amount=intent.amount,
            new_balance=new_balance,
            entry_id=intent.entry_id,
        )
        return CreditResult(
            user_id=intent.user_id,
            entry_id=intent.entry_id,
            balance=new_balance,
            already_processed=False,
        )

    async def _already_processed(self, intent: CreditIntent) -> CreditResult:
        """Build the duplicate-credit result from the current balance."""
        metrics.record_credit(True, intent.amount)
        logger.info(
            "ledger_credit_already_processed",
            user_id=intent.user_id,
            entry_id=intent.entry_id,
        )
        balance = await self._read_balance(intent.user_id)
        if balance is None:
            raise AccountNotFoundError(intent.user_id)
        return CreditResult(
            user_id=intent.user_id,
            entry_id=intent.entry_id,
            balance=balance,
            already_processed=True,
        )

    async def _read_balance(self, user_id: str) -> int | None:
        """Read the committed balance, bypassing the identity map."""
        stmt = select(Account.balance).where(Account.user_id == user_id)
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def _entry_exists(self, entry_id: str) -> bool:
        """Check whether a ledger entry id is already taken."""
        stmt = select(LedgerEntry.id).where(LedgerEntry.id == entry_id)
        return (await self.session.execute(stmt)).scalar_one_or_none() is not None

    def _entry_to_domain(self, entry: LedgerEntry) -> LedgerEntryData:
        """Convert ORM ledger entry to domain model."""
        return LedgerEntryData(
            id=entry.id,
            user_id=entry.user_id,
            kind=LedgerEntryKind(entry.kind),
            amount=entry.amount,
            resulting_balance=entry.resulting_balance,
            reason=entry.reason,
            resource_id=entry.resource_id,
            external_event_id=entry.external_event_id,
            package_id=entry.package_id,
            created_at=entry.created_at,
        )
