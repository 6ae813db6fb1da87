"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
A duplicate payment event is not an exception: see CreditResult.already_processed.
"""

from uuid import UUID


class RiResumeError(Exception):
    """Base exception for all backend errors."""

    pass


class ValidationError(RiResumeError):
    """Raised when input is rejected before any side effect."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Validation failed: {message}")


class AccountNotFoundError(RiResumeError):
    """Raised when a user has no token account."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"Account not found: {user_id}")


class InsufficientBalanceError(RiResumeError):
    """Raised when a debit exceeds the available balance. Nothing is written."""

    def __init__(self, balance: int, required: int) -> None:
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient tokens. Balance: {balance}, Required: {required}")


class DataIntegrityError(RiResumeError):
    """Raised when a ledger invariant is violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class TaskNotFoundError(RiResumeError):
    """Raised when a task id is unknown."""

    def __init__(self, task_id: UUID) -> None:
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class ResourceNotFoundError(RiResumeError):
    """Raised when a generation target (learning entry, application) is missing."""

    def __init__(self, resource_type: str, resource_id: str) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} not found: {resource_id}")


class GenerationInProgressError(RiResumeError):
    """Raised when another caller holds the generation lock. Callers should poll."""

    def __init__(self, resource_id: str) -> None:
        self.resource_id = resource_id
        super().__init__(f"Generation already in progress for {resource_id}")


class ProviderCallError(RiResumeError):
    """Raised by a single AI provider when a call fails for a non rate-limit reason."""

    def __init__(self, provider: str, message: str, status_code: int | None = None) -> None:
        self.provider = provider
        self.status_code = status_code
        self.message = message
        super().__init__(f"{provider} call failed: {message}")


class RateLimitedError(ProviderCallError):
    """Raised by a single AI provider on HTTP 429. Retried by the gateway."""

    def __init__(self, provider: str, message: str = "rate limited") -> None:
        super().__init__(provider, message, status_code=429)


class UpstreamProviderError(RiResumeError):
    """Raised by the gateway once retries and fallback are exhausted."""

    def __init__(
        self,
        message: str,
        last_error: Exception | None = None,
        rate_limited: bool | None = None,
    ) -> None:
        self.message = message
        self.last_error = last_error
        self.rate_limited = (
            isinstance(last_error, RateLimitedError) if rate_limited is None else rate_limited
        )
        super().__init__(f"Upstream provider error: {message}")


class WebhookVerificationError(RiResumeError):
    """Raised when webhook verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")


class AuthenticationError(RiResumeError):
    """Raised when a service API key is missing, unknown, revoked or expired."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")
