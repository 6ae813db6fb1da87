"""
API Routes - FastAPI endpoints for tokens, payments, tasks and generation.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from riresume.api.dependencies import (
    get_gateway,
    get_ledger,
    get_notifier,
    get_orchestrator,
    get_payment_processor,
    get_stripe_provider,
    require_permission,
)
from riresume.db.session import get_db, get_session
from riresume.exceptions import (
    AccountNotFoundError,
    DataIntegrityError,
    GenerationInProgressError,
    InsufficientBalanceError,
    ResourceNotFoundError,
    RiResumeError,
    TaskNotFoundError,
    UpstreamProviderError,
    ValidationError,
    WebhookVerificationError,
)
from riresume.models.api import (
    AccountResponse,
    CreditResponse,
    GenerationResponse,
    GrantTokensRequest,
    HealthResponse,
    LedgerEntryResponse,
    LedgerListResponse,
    PaymentEventRequest,
    PaymentEventResponse,
    PrepGuideRequest,
    SubmitTaskRequest,
    SubmitTaskResponse,
    TaskListResponse,
    TaskResponse,
    TrainingSlideshowRequest,
)
from riresume.models.domain import AccountData, GenerationOutcome, PaymentEvent, TaskData
from riresume.services.ai_gateway import AIProviderGateway
from riresume.services.api_key import TOKENS_WRITE, APIKeyData
from riresume.services.ledger import TokenLedger
from riresume.services.notifications import Notifier
from riresume.services.payment_events import PaymentEventProcessor
from riresume.services.stripe_provider import StripeProvider
from riresume.services.task_orchestrator import RATE_LIMITED_MESSAGE, TaskOrchestrator

logger = get_logger(__name__)

router = APIRouter()


def to_http_exception(exc: RiResumeError) -> HTTPException:
    """Translate a domain error into the HTTP response the client sees."""
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.message)
    if isinstance(exc, AccountNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")
    if isinstance(exc, (TaskNotFoundError, ResourceNotFoundError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, InsufficientBalanceError):
        return HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={"message": str(exc), "balance": exc.balance, "required": exc.required},
        )
    if isinstance(exc, GenerationInProgressError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Generation already in progress. Please check back shortly.",
        )
    if isinstance(exc, UpstreamProviderError):
        if exc.rate_limited:
            return HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=RATE_LIMITED_MESSAGE
            )
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="AI provider error")
    if isinstance(exc, WebhookVerificationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)
    if isinstance(exc, DataIntegrityError):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Database integrity error"
        )
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _account_response(account: AccountData) -> AccountResponse:
    return AccountResponse(
        user_id=account.user_id,
        balance=account.balance,
        total_credited=account.total_credited,
        total_debited=account.total_debited,
        version=account.version,
        created_at=account.created_at,
        updated_at=account.updated_at,
    )


def _task_response(task: TaskData) -> TaskResponse:
    return TaskResponse(
        id=task.id,
        user_id=task.user_id,
        type=task.type,
        status=task.status,
        progress=task.progress,
        stage=task.stage,
        cost=task.cost,
        result=task.result,
        result_id=task.result_id,
        error=task.error,
        created_at=task.created_at,
        updated_at=task.updated_at,
        started_at=task.started_at,
        completed_at=task.completed_at,
    )


def _generation_response(outcome: GenerationOutcome) -> GenerationResponse:
    return GenerationResponse(
        resource_id=outcome.resource_id,
        status=outcome.status,
        cached=outcome.cached,
        content=outcome.content,
    )


async def run_task_in_background(
    task_id: UUID, gateway: AIProviderGateway, notifier: Notifier
) -> None:
    """Execute a submitted task on its own session after the response is sent."""
    async with get_session() as session:
        orchestrator = TaskOrchestrator(session, gateway, notifier=notifier)
        task = await orchestrator.run(task_id)
        logger.info("background_task_finished", task_id=str(task_id), status=task.status.value)


# =============================================================================
# Accounts / Ledger
# =============================================================================


@router.post(
    "/v1/accounts/{user_id}",
    response_model=AccountResponse,
    status_code=status.HTTP_201_CREATED,
)
async def open_account(user_id: str, ledger: TokenLedger = Depends(get_ledger)) -> AccountResponse:
    """
    Open a token account (idempotent).

    The welcome bonus is credited exactly once per user.
    """
    try:
        account = await ledger.open_account(user_id)
    except RiResumeError as exc:
        raise to_http_exception(exc) from exc
    return _account_response(account)


@router.get("/v1/accounts/{user_id}", response_model=AccountResponse)
async def get_account(user_id: str, ledger: TokenLedger = Depends(get_ledger)) -> AccountResponse:
    """Current balance and audit totals."""
    try:
        account = await ledger.get_account(user_id)
    except RiResumeError as exc:
        raise to_http_exception(exc) from exc
    return _account_response(account)


@router.get("/v1/accounts/{user_id}/ledger", response_model=LedgerListResponse)
async def list_ledger_entries(
    user_id: str,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    ledger: TokenLedger = Depends(get_ledger),
) -> LedgerListResponse:
    """Ledger history, newest first."""
    entries, total = await ledger.list_entries(user_id, limit=limit, offset=offset)
    return LedgerListResponse(
        entries=[
            LedgerEntryResponse(
                id=entry.id,
                user_id=entry.user_id,
                kind=entry.kind,
                amount=entry.amount,
                resulting_balance=entry.resulting_balance,
                reason=entry.reason,
                resource_id=entry.resource_id,
                external_event_id=entry.external_event_id,
                package_id=entry.package_id,
                created_at=entry.created_at,
            )
            for entry in entries
        ],
        total_count=total,
        has_more=offset + len(entries) < total,
    )


@router.post(
    "/v1/accounts/{user_id}/grants",
    response_model=CreditResponse,
    status_code=status.HTTP_201_CREATED,
)
async def grant_tokens(
    user_id: str,
    request: GrantTokensRequest,
    ledger: TokenLedger = Depends(get_ledger),
    api_key: APIKeyData = Depends(require_permission(TOKENS_WRITE)),
) -> CreditResponse:
    """Manual token adjustment, idempotent on reference."""
    try:
        result = await ledger.grant(user_id, request.amount, request.reference, request.reason)
    except RiResumeError as exc:
        raise to_http_exception(exc) from exc
    logger.info(
        "tokens_granted",
        user_id=user_id,
        amount=request.amount,
        reference=request.reference,
        key_name=api_key.name,
        already_processed=result.already_processed,
    )
    return CreditResponse(
        user_id=result.user_id,
        balance=result.balance,
        already_processed=result.already_processed,
    )


# =============================================================================
# Payments
# =============================================================================


@router.post("/v1/payments/events", response_model=PaymentEventResponse)
async def process_payment_event(
    request: PaymentEventRequest,
    processor: PaymentEventProcessor = Depends(get_payment_processor),
    api_key: APIKeyData = Depends(require_permission(TOKENS_WRITE)),
) -> PaymentEventResponse:
    """
    Credit an already-verified payment event.

    Duplicate deliveries return status=already_processed and change nothing.
    """
    event = PaymentEvent(
        external_event_id=request.external_event_id,
        user_id=request.user_id,
        token_amount=request.token_amount,
        package_id=request.package_id,
    )
    try:
        result = await processor.process(event)
    except RiResumeError as exc:
        raise to_http_exception(exc) from exc

    return PaymentEventResponse(
        status="already_processed" if result.already_processed else "credited",
        event_id=request.external_event_id,
        balance=result.balance,
    )


@router.post("/v1/payments/webhooks/stripe", response_model=PaymentEventResponse)
async def stripe_webhook(
    request: Request,
    stripe_provider: StripeProvider = Depends(get_stripe_provider),
    processor: PaymentEventProcessor = Depends(get_payment_processor),
) -> PaymentEventResponse:
    """
    Handle Stripe webhook events.

    Completed checkouts and succeeded payment intents credit tokens once;
    every other event is acknowledged and ignored.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")

    try:
        event = stripe_provider.verify_webhook(payload, signature)
        if event is None:
            return PaymentEventResponse(status="ignored", event_id="")

        result = await processor.process(event)
    except RiResumeError as exc:
        raise to_http_exception(exc) from exc

    logger.info(
        "stripe_payment_processed",
        event_id=event.external_event_id,
        already_processed=result.already_processed,
    )
    return PaymentEventResponse(
        status="already_processed" if result.already_processed else "credited",
        event_id=event.external_event_id,
        balance=result.balance,
    )


# =============================================================================
# Tasks
# =============================================================================


@router.post(
    "/v1/tasks",
    response_model=SubmitTaskResponse,
    status_code=status.HTTP_201_CREATED,
)
async def submit_task(
    request: SubmitTaskRequest,
    background_tasks: BackgroundTasks,
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
    gateway: AIProviderGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
) -> SubmitTaskResponse:
    """Queue a generation job and schedule its execution. Poll the task for progress."""
    try:
        task_id = await orchestrator.submit(request.user_id, request.type, request.payload)
    except RiResumeError as exc:
        raise to_http_exception(exc) from exc

    background_tasks.add_task(run_task_in_background, task_id, gateway, notifier)
    return SubmitTaskResponse(task_id=task_id)


@router.get("/v1/tasks/{task_id}", response_model=TaskResponse)
async def get_task(
    task_id: UUID, orchestrator: TaskOrchestrator = Depends(get_orchestrator)
) -> TaskResponse:
    """Task status, progress, stage and result or error."""
    try:
        task = await orchestrator.get_task(task_id)
    except RiResumeError as exc:
        raise to_http_exception(exc) from exc
    return _task_response(task)


@router.post("/v1/tasks/{task_id}/run", response_model=TaskResponse)
async def run_task(
    task_id: UUID, orchestrator: TaskOrchestrator = Depends(get_orchestrator)
) -> TaskResponse:
    """
    Claim and execute a task (worker trigger).

    Safe to trigger repeatedly: only the first trigger does any work.
    """
    try:
        task = await orchestrator.run(task_id)
    except RiResumeError as exc:
        raise to_http_exception(exc) from exc
    return _task_response(task)


@router.get("/v1/users/{user_id}/tasks", response_model=TaskListResponse)
async def list_user_tasks(
    user_id: str,
    limit: int = Query(20, ge=1, le=100),
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> TaskListResponse:
    """Most recent tasks for a user."""
    tasks = await orchestrator.list_tasks(user_id, limit=limit)
    return TaskListResponse(tasks=[_task_response(task) for task in tasks])


# =============================================================================
# Resource-locked generation
# =============================================================================


@router.post("/v1/learning/{entry_id}/slideshow", response_model=GenerationResponse)
async def generate_training_slideshow(
    entry_id: str,
    request: TrainingSlideshowRequest,
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> GenerationResponse:
    """Generate (or return the cached) training slideshow for a learning entry."""
    try:
        outcome = await orchestrator.generate_training_slideshow(
            user_id=request.user_id,
            entry_id=entry_id,
            skill=request.skill,
            position=request.position,
            company=request.company,
        )
    except RiResumeError as exc:
        raise to_http_exception(exc) from exc
    return _generation_response(outcome)


@router.post("/v1/applications/{application_id}/prep-guide", response_model=GenerationResponse)
async def generate_prep_guide(
    application_id: str,
    request: PrepGuideRequest,
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> GenerationResponse:
    """Generate (or return the cached) interview prep guide for an application."""
    try:
        outcome = await orchestrator.generate_prep_guide(
            user_id=request.user_id,
            application_id=application_id,
            job_title=request.job_title,
            company=request.company,
            job_description=request.job_description,
            resume=request.resume,
        )
    except RiResumeError as exc:
        raise to_http_exception(exc) from exc
    return _generation_response(outcome)


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database unavailable",
        ) from exc

    return HealthResponse(status="healthy", database="connected", timestamp=datetime.now(UTC))
