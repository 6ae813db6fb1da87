"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
Task payloads are the one exception: they are opaque caller-owned blobs.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class LedgerEntryKind(str, Enum):
    """Ledger entry kind enumeration."""

    CREDIT = "credit"
    DEBIT = "debit"


class TaskType(str, Enum):
    """Asynchronous generation job types."""

    ANALYZE = "analyze"
    OPTIMIZE = "optimize"
    ADD_SKILL = "add_skill"
    PREP_GUIDE = "prep_guide"
    COVER_LETTER = "cover_letter"
    TRAINING_SLIDESHOW = "training_slideshow"
    RECOMMENDATION = "recommendation"


class TaskStatus(str, Enum):
    """Task lifecycle states. COMPLETED and FAILED are terminal."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class GenerationStatus(str, Enum):
    """Per-resource generation lock states."""

    NONE = "none"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


# ============================================================================
# Account / Ledger Models
# ============================================================================


class AccountResponse(BaseModel):
    """GET /v1/accounts/{user_id} response."""

    user_id: str
    balance: int
    total_credited: int
    total_debited: int
    version: int
    created_at: datetime
    updated_at: datetime


class LedgerEntryResponse(BaseModel):
    """Single ledger entry."""

    id: str
    user_id: str
    kind: LedgerEntryKind
    amount: int
    resulting_balance: int
    reason: str
    resource_id: str | None = None
    external_event_id: str | None = None
    package_id: str | None = None
    created_at: datetime


class LedgerListResponse(BaseModel):
    """GET /v1/accounts/{user_id}/ledger response."""

    entries: list[LedgerEntryResponse]
    total_count: int
    has_more: bool


class GrantTokensRequest(BaseModel):
    """POST /v1/accounts/{user_id}/grants request body."""

    amount: int = Field(..., gt=0)
    reference: str = Field(..., min_length=1, max_length=200)
    reason: str = Field(..., min_length=1, max_length=500)


class CreditResponse(BaseModel):
    """Result of a credit (payment event or grant)."""

    user_id: str
    balance: int
    already_processed: bool


# ============================================================================
# Payment Event Models
# ============================================================================


class PaymentEventRequest(BaseModel):
    """POST /v1/payments/events request body (already verified upstream)."""

    external_event_id: str = Field(..., min_length=1, max_length=200)
    user_id: str = Field(..., min_length=1, max_length=128)
    token_amount: int = Field(..., gt=0)
    package_id: str | None = Field(None, max_length=100)


class PaymentEventResponse(BaseModel):
    """Payment event processing outcome."""

    received: bool = True
    status: str  # credited, already_processed, ignored
    event_id: str
    balance: int | None = None


# ============================================================================
# Task Models
# ============================================================================


class SubmitTaskRequest(BaseModel):
    """POST /v1/tasks request body."""

    user_id: str = Field(..., min_length=1, max_length=128)
    type: TaskType
    payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("user_id")
    @classmethod
    def validate_user_id(cls, v: str) -> str:
        """Reject whitespace-only user ids."""
        if not v.strip():
            raise ValueError("user_id cannot be blank")
        return v


class SubmitTaskResponse(BaseModel):
    """POST /v1/tasks response."""

    task_id: UUID


class TaskResponse(BaseModel):
    """GET /v1/tasks/{task_id} response."""

    id: UUID
    user_id: str
    type: TaskType
    status: TaskStatus
    progress: int
    stage: str
    cost: int
    result: dict[str, Any] | None = None
    result_id: str | None = None
    error: str | None = None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


class TaskListResponse(BaseModel):
    """GET /v1/users/{user_id}/tasks response."""

    tasks: list[TaskResponse]


# ============================================================================
# Generation (resource-locked) Models
# ============================================================================


class TrainingSlideshowRequest(BaseModel):
    """POST /v1/learning/{entry_id}/slideshow request body."""

    user_id: str = Field(..., min_length=1, max_length=128)
    skill: str = Field(..., min_length=1, max_length=200)
    position: str = Field(..., min_length=1, max_length=200)
    company: str = Field(..., min_length=1, max_length=200)


class PrepGuideRequest(BaseModel):
    """POST /v1/applications/{application_id}/prep-guide request body."""

    user_id: str = Field(..., min_length=1, max_length=128)
    job_title: str = Field(..., min_length=1, max_length=200)
    company: str = Field(..., min_length=1, max_length=200)
    job_description: str | None = None
    resume: dict[str, Any] | None = None


class GenerationResponse(BaseModel):
    """Resource-locked generation response."""

    resource_id: str
    status: GenerationStatus
    cached: bool
    content: dict[str, Any]


# ============================================================================
# Health
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: datetime
