"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
Column types are dialect-neutral so the schema runs on PostgreSQL and SQLite.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy import Uuid as SQLUuid
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class Account(Base):
    """
    ORM model for accounts table.

    One token account per user. Mutated only by TokenLedger.
    """

    __tablename__ = "accounts"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)

    # Balance and audit totals
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_credited: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_debited: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Optimistic concurrency marker, bumped on every balance change
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_balance_non_negative"),
        CheckConstraint("total_credited >= 0", name="ck_total_credited_non_negative"),
        CheckConstraint("total_debited >= 0", name="ck_total_debited_non_negative"),
        CheckConstraint(
            "balance = total_credited - total_debited", name="ck_balance_conservation"
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Account(user_id={self.user_id}, balance={self.balance}, version={self.version})>"


class LedgerEntry(Base):
    """
    ORM model for ledger_entries table.

    Immutable, append-only audit log of every balance change.
    Credit ids are derived from the external event id, so the primary key
    doubles as the idempotency constraint.
    """

    __tablename__ = "ledger_entries"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    kind: Mapped[str] = mapped_column(String(10), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    resulting_balance: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    resource_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    package_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_ledger_amount_positive"),
        CheckConstraint("resulting_balance >= 0", name="ck_ledger_balance_non_negative"),
        CheckConstraint("kind IN ('credit', 'debit')", name="ck_ledger_kind"),
        Index("idx_ledger_entries_user_created", "user_id", "created_at"),
        Index("idx_ledger_entries_resource_id", "resource_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<LedgerEntry(id={self.id}, user_id={self.user_id}, kind={self.kind}, "
            f"amount={self.amount}, resulting_balance={self.resulting_balance})>"
        )


class Task(Base):
    """
    ORM model for tasks table.

    Asynchronous generation job. Status transitions are owned by TaskOrchestrator.
    """

    __tablename__ = "tasks"

    id: Mapped[UUID] = mapped_column(SQLUuid(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="queued")
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stage: Mapped[str] = mapped_column(String(255), nullable=False, default="Queued")
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    cost: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Output
    result: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    result_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("progress >= 0 AND progress <= 100", name="ck_task_progress_range"),
        CheckConstraint(
            "status IN ('queued', 'processing', 'completed', 'failed')", name="ck_task_status"
        ),
        Index("idx_tasks_user_created", "user_id", "created_at"),
        Index("idx_tasks_status", "status"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Task(id={self.id}, type={self.type}, status={self.status}, progress={self.progress})>"
        )


class GenerationTargetMixin:
    """Generation lock columns carried by every resource that owns a costly generation."""

    generation_status: Mapped[str] = mapped_column(String(16), nullable=False, default="none")
    generated_content: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    generation_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )


class LearningEntry(GenerationTargetMixin, Base):
    """
    ORM model for learning_entries table.

    An upskilling item; its generated content is the training slideshow.
    """

    __tablename__ = "learning_entries"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    skill: Mapped[str] = mapped_column(String(200), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "generation_status IN ('none', 'generating', 'completed', 'failed')",
            name="ck_learning_generation_status",
        ),
    )


class JobApplication(GenerationTargetMixin, Base):
    """
    ORM model for job_applications table.

    A tracked application; its generated content is the interview prep guide.
    """

    __tablename__ = "job_applications"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    company: Mapped[str] = mapped_column(String(200), nullable=False)
    job_title: Mapped[str] = mapped_column(String(200), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "generation_status IN ('none', 'generating', 'completed', 'failed')",
            name="ck_application_generation_status",
        ),
    )


class APIKey(Base):
    """
    ORM model for api_keys table.

    Hashed service credentials for the token-minting endpoints.
    """

    __tablename__ = "api_keys"

    id: Mapped[UUID] = mapped_column(SQLUuid(as_uuid=True), primary_key=True, default=uuid4)

    # Key storage (hashed with Argon2id)
    key_hash: Mapped[str] = mapped_column(Text, nullable=False)
    key_prefix: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    permissions: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("status IN ('active', 'revoked')", name="ck_api_key_status"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<APIKey(id={self.id}, name={self.name}, status={self.status})>"
