"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from riresume.models.api import GenerationStatus, LedgerEntryKind, TaskStatus, TaskType

CREDIT_ENTRY_PREFIX = "credit:"
WELCOME_ENTRY_PREFIX = "welcome:"
GRANT_ENTRY_PREFIX = "grant:"
DEBIT_ENTRY_PREFIX = "debit:"


def credit_entry_id(external_event_id: str) -> str:
    """Deterministic ledger entry id for a payment event."""
    return f"{CREDIT_ENTRY_PREFIX}{external_event_id}"


@dataclass(frozen=True)
class AccountData:
    """Immutable account snapshot."""

    user_id: str
    balance: int
    total_credited: int
    total_debited: int
    version: int
    created_at: datetime
    updated_at: datetime

    def __post_init__(self) -> None:
        """Validate ledger invariants."""
        if self.balance < 0:
            raise ValueError(f"Balance cannot be negative: {self.balance}")
        if self.balance != self.total_credited - self.total_debited:
            raise ValueError(
                f"Balance {self.balance} != credited {self.total_credited} - debited {self.total_debited}"
            )


@dataclass(frozen=True)
class LedgerEntryData:
    """Immutable ledger entry after persistence."""

    id: str
    user_id: str
    kind: LedgerEntryKind
    amount: int
    resulting_balance: int
    reason: str
    resource_id: str | None
    external_event_id: str | None
    package_id: str | None
    created_at: datetime


@dataclass(frozen=True)
class DebitIntent:
    """Domain model for a debit before persistence - immutable intent."""

    user_id: str
    cost: int
    reason: str
    resource_id: str | None = None

    def __post_init__(self) -> None:
        """Validate debit constraints."""
        if not self.user_id:
            raise ValueError("user_id cannot be empty")
        if self.cost <= 0:
            raise ValueError(f"Debit cost must be positive: {self.cost}")
        if not self.reason:
            raise ValueError("Reason cannot be empty")


@dataclass(frozen=True)
class CreditIntent:
    """Domain model for a credit before persistence - immutable intent."""

    user_id: str
    amount: int
    entry_id: str
    reason: str
    external_event_id: str | None = None
    package_id: str | None = None

    def __post_init__(self) -> None:
        """Validate credit constraints."""
        if not self.user_id:
            raise ValueError("user_id cannot be empty")
        if self.amount <= 0:
            raise ValueError(f"Credit amount must be positive: {self.amount}")
        if not self.entry_id:
            raise ValueError("entry_id cannot be empty")
        if not self.reason:
            raise ValueError("Reason cannot be empty")


@dataclass(frozen=True)
class CreditResult:
    """Outcome of an idempotent credit."""

    user_id: str
    entry_id: str
    balance: int
    already_processed: bool


@dataclass(frozen=True)
class PaymentEvent:
    """A verified, provider-agnostic completed-payment notification."""

    external_event_id: str
    user_id: str
    token_amount: int
    package_id: str | None = None
    event_type: str = "payment.completed"


@dataclass(frozen=True)
class TaskData:
    """Immutable task snapshot."""

    id: UUID
    user_id: str
    type: TaskType
    status: TaskStatus
    progress: int
    stage: str
    payload: dict[str, Any]
    cost: int
    result: dict[str, Any] | None
    result_id: str | None
    error: str | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


@dataclass(frozen=True)
class TaskCompletedEvent:
    """Emitted to the notification collaborator when a task completes."""

    user_id: str
    task_type: TaskType
    task_id: UUID


@dataclass(frozen=True)
class CompletionRequest:
    """Request to the AI provider boundary."""

    system_instruction: str
    user_content: str
    max_output_tokens: int | None = None
    structured: bool = True

    def __post_init__(self) -> None:
        """Validate completion request."""
        if not self.user_content:
            raise ValueError("user_content cannot be empty")
        if self.max_output_tokens is not None and self.max_output_tokens <= 0:
            raise ValueError(f"max_output_tokens must be positive: {self.max_output_tokens}")


@dataclass(frozen=True)
class CompletionResult:
    """Response from the AI provider boundary: text, or parsed JSON in structured mode."""

    provider: str
    text: str
    data: dict[str, Any] | None = None


@dataclass(frozen=True)
class GenerationOutcome:
    """Result of a resource-locked generation."""

    resource_id: str
    status: GenerationStatus
    content: dict[str, Any]
    cached: bool
