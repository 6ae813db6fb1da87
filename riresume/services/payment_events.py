"""
Payment Event Processor - exactly-once crediting of purchased tokens.

NO DICTIONARIES - Events and outcomes are typed dataclasses.

Duplicate delivery is detected by the ledger's deterministic credit entry id,
never by an in-process cache, so any number of processor instances may
handle the same event concurrently.
"""

from structlog import get_logger

from riresume.exceptions import ValidationError
from riresume.models.domain import CreditResult, PaymentEvent
from riresume.services.ledger import TokenLedger

logger = get_logger(__name__)


class PaymentEventProcessor:
    """Consumes verified payment events and credits the ledger once per event."""

    def __init__(self, ledger: TokenLedger) -> None:
        self.ledger = ledger

    async def process(self, event: PaymentEvent) -> CreditResult:
        """
        Credit the tokens bought by a payment event.

        Returns:
            CreditResult; already_processed=True for a duplicate delivery

        Raises:
            ValidationError: missing event id or user id, non-positive amount
            AccountNotFoundError: the purchasing user has no account
        """
        self._validate(event)

        logger.info(
            "payment_event_received",
            event_id=event.external_event_id,
            event_type=event.event_type,
            user_id=event.user_id,
            tokens=event.token_amount,
        )

        result = await self.ledger.credit(
            user_id=event.user_id,
            amount=event.token_amount,
            external_event_id=event.external_event_id,
            reason=f"Purchased {event.token_amount} tokens",
            package_id=event.package_id,
        )

        if result.already_processed:
            logger.info("payment_event_duplicate", event_id=event.external_event_id)
        else:
            logger.info(
                "payment_event_credited",
                event_id=event.external_event_id,
                user_id=event.user_id,
                balance=result.balance,
            )
        return result

    def _validate(self, event: PaymentEvent) -> None:
        if not event.external_event_id or not event.external_event_id.strip():
            raise ValidationError("external_event_id is required")
        if not event.user_id or not event.user_id.strip():
            raise ValidationError("user_id is required")
        if event.token_amount <= 0:
            raise ValidationError(f"token_amount must be positive: {event.token_amount}")
