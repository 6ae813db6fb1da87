"""
Tests for exception classes.

Covers the exception types, their attributes and how the API layer maps them.
"""

from uuid import uuid4

import pytest

from riresume.api.routes import to_http_exception
from riresume.exceptions import (
    AccountNotFoundError,
    AuthenticationError,
    DataIntegrityError,
    GenerationInProgressError,
    InsufficientBalanceError,
    ProviderCallError,
    RateLimitedError,
    ResourceNotFoundError,
    RiResumeError,
    TaskNotFoundError,
    UpstreamProviderError,
    ValidationError,
    WebhookVerificationError,
)
from riresume.services.task_orchestrator import (
    RATE_LIMITED_MESSAGE,
    TIMEOUT_MESSAGE,
    UPSTREAM_FAILED_MESSAGE,
    user_facing_error,
)


class TestRiResumeError:
    """Tests for base RiResumeError."""

    def test_is_exception(self):
        assert issubclass(RiResumeError, Exception)

    @pytest.mark.parametrize(
        "exc_class",
        [
            ValidationError,
            AccountNotFoundError,
            AuthenticationError,
            InsufficientBalanceError,
            DataIntegrityError,
            TaskNotFoundError,
            ResourceNotFoundError,
            GenerationInProgressError,
            ProviderCallError,
            UpstreamProviderError,
            WebhookVerificationError,
        ],
    )
    def test_all_are_riresume_errors(self, exc_class):
        assert issubclass(exc_class, RiResumeError)


class TestInsufficientBalanceError:
    """Tests for InsufficientBalanceError."""

    def test_attributes(self):
        exc = InsufficientBalanceError(balance=20, required=30)
        assert exc.balance == 20
        assert exc.required == 30

    def test_message_format(self):
        """Message shown verbatim on failed tasks."""
        exc = InsufficientBalanceError(balance=20, required=30)
        assert str(exc) == "Insufficient tokens. Balance: 20, Required: 30"


class TestProviderErrors:
    """Tests for provider and gateway errors."""

    def test_rate_limited_is_provider_error_with_429(self):
        exc = RateLimitedError("openai")
        assert isinstance(exc, ProviderCallError)
        assert exc.status_code == 429
        assert exc.provider == "openai"

    def test_upstream_infers_rate_limited_from_last_error(self):
        assert UpstreamProviderError("x", last_error=RateLimitedError("openai")).rate_limited is True
        hard_failure = ProviderCallError("openai", "boom")
        assert UpstreamProviderError("x", last_error=hard_failure).rate_limited is False
        assert UpstreamProviderError("x").rate_limited is False

    def test_upstream_explicit_rate_limited_wins(self):
        exc = UpstreamProviderError("x", last_error=ProviderCallError("p", "boom"), rate_limited=True)
        assert exc.rate_limited is True


class TestUserFacingError:
    """Failure messages recorded on tasks."""

    def test_rate_limited(self):
        assert user_facing_error(UpstreamProviderError("x", rate_limited=True)) == RATE_LIMITED_MESSAGE

    def test_upstream(self):
        assert user_facing_error(UpstreamProviderError("x")) == UPSTREAM_FAILED_MESSAGE

    def test_timeout(self):
        assert user_facing_error(TimeoutError()) == TIMEOUT_MESSAGE

    def test_other_errors_pass_through(self):
        exc = InsufficientBalanceError(balance=0, required=10)
        assert user_facing_error(exc) == str(exc)


class TestHttpMapping:
    """Domain errors to HTTP status codes."""

    @pytest.mark.parametrize(
        ("exc", "status_code"),
        [
            (ValidationError("bad"), 422),
            (AccountNotFoundError("u"), 404),
            (TaskNotFoundError(uuid4()), 404),
            (ResourceNotFoundError("LearningEntry", "le-1"), 404),
            (InsufficientBalanceError(balance=1, required=2), 402),
            (GenerationInProgressError("le-1"), 409),
            (UpstreamProviderError("x", rate_limited=True), 503),
            (UpstreamProviderError("x"), 502),
            (WebhookVerificationError("bad sig"), 400),
            (DataIntegrityError("broken"), 500),
        ],
    )
    def test_status_codes(self, exc, status_code):
        assert to_http_exception(exc).status_code == status_code

    def test_insufficient_balance_detail(self):
        http_exc = to_http_exception(InsufficientBalanceError(balance=20, required=30))
        assert http_exc.detail == {
            "message": "Insufficient tokens. Balance: 20, Required: 30",
            "balance": 20,
            "required": 30,
        }
