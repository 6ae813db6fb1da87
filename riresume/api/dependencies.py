"""
FastAPI Dependencies - service wiring for routes.

NO DICTIONARIES - All dependencies return typed objects.

Long-lived collaborators (AI gateway, notifier) are created once in the app
lifespan and stored on app.state; per-request services wrap the request's
database session.
Token-minting routes additionally require a service API key (X-API-Key).
"""

from collections.abc import Awaitable, Callable

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from riresume.config import settings
from riresume.db.session import get_db
from riresume.exceptions import AuthenticationError
from riresume.services.ai_gateway import AIProviderGateway
from riresume.services.api_key import APIKeyData, APIKeyService
from riresume.services.ledger import TokenLedger
from riresume.services.notifications import LoggingNotifier, Notifier
from riresume.services.payment_events import PaymentEventProcessor
from riresume.services.stripe_provider import StripeProvider
from riresume.services.task_orchestrator import TaskOrchestrator


def get_gateway(request: Request) -> AIProviderGateway:
    """AI gateway created at startup."""
    gateway: AIProviderGateway | None = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="AI provider not configured",
        )
    return gateway


def get_notifier(request: Request) -> Notifier:
    """Task completion notifier; logs by default."""
    notifier: Notifier | None = getattr(request.app.state, "notifier", None)
    return notifier or LoggingNotifier()


def get_ledger(db: AsyncSession = Depends(get_db)) -> TokenLedger:
    return TokenLedger(db)


def get_payment_processor(ledger: TokenLedger = Depends(get_ledger)) -> PaymentEventProcessor:
    return PaymentEventProcessor(ledger)


def get_orchestrator(
    db: AsyncSession = Depends(get_db),
    gateway: AIProviderGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
) -> TaskOrchestrator:
    return TaskOrchestrator(db, gateway, notifier=notifier)


def get_stripe_provider() -> StripeProvider:
    """Stripe webhook verifier; 503 until the webhook secret is configured."""
    if not settings.stripe_webhook_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider not configured",
        )
    return StripeProvider(
        api_key=settings.stripe_api_key,
        webhook_secret=settings.stripe_webhook_secret,
    )


async def get_api_key(
    x_api_key: str | None = Header(None, description="Service API key"),
    db: AsyncSession = Depends(get_db),
) -> APIKeyData:
    """
    FastAPI dependency to validate the API key from the X-API-Key header.

    Raises:
        HTTPException 401 if the header is missing or the key is invalid
    """
    if not x_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )
    try:
        return await APIKeyService(db).validate_api_key(x_api_key)
    except AuthenticationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "ApiKey"},
        ) from exc


def require_permission(required_permission: str) -> Callable[..., Awaitable[APIKeyData]]:
    """
    FastAPI dependency factory to check a specific permission.

    Usage:
        @router.post("/v1/payments/events")
        async def process_payment_event(
            request: PaymentEventRequest,
            api_key: APIKeyData = Depends(require_permission(TOKENS_WRITE)),
        ):
            ...
    """

    async def permission_checker(
        api_key: APIKeyData = Depends(get_api_key),
    ) -> APIKeyData:
        if required_permission not in api_key.permissions:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing required permission: {required_permission}",
            )
        return api_key

    return permission_checker
