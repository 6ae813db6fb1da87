"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fixtures for testing:
- Mock database sessions for unit tests
- A real SQLite (aiosqlite) database for concurrency properties
- Scripted AI providers and a recording sleep for gateway timing
- API test client wired to the SQLite database
"""

import asyncio
import os
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

# Set required environment variables BEFORE importing app modules
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("STRIPE_API_KEY", "sk_test_fake_key")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_fake_secret")
os.environ.setdefault("OPENAI_API_KEY", "sk-test-openai")
os.environ.setdefault("LOG_FORMAT", "console")

from riresume.db.models import Account, JobApplication, LearningEntry
from riresume.db.session import build_engine, build_session_factory, create_all
from riresume.exceptions import RateLimitedError
from riresume.models.domain import CompletionRequest
from riresume.services.ai_gateway import AIProviderGateway
from riresume.services.ledger import TokenLedger
from riresume.services.task_handlers import HandlerResult, ProgressCallback

# ============================================================================
# Database Session Fixtures
# ============================================================================


@pytest.fixture
def db_session() -> AsyncMock:
    """Create a mock database session with sensible defaults."""
    session = AsyncMock(spec=AsyncSession)

    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.close = AsyncMock()
    session.add = MagicMock()

    # Default execute returns empty result
    mock_result = MagicMock()
    mock_result.scalar_one_or_none = MagicMock(return_value=None)
    mock_result.scalars = MagicMock(return_value=MagicMock(all=MagicMock(return_value=[])))
    mock_result.rowcount = 0
    session.execute = AsyncMock(return_value=mock_result)

    return session


def scalar_result(value: Any, rowcount: int = 1) -> MagicMock:
    """Mock execute() result whose scalar_one_or_none returns value."""
    result = MagicMock()
    result.scalar_one_or_none = MagicMock(return_value=value)
    result.rowcount = rowcount
    return result


@pytest.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Real SQLite database file, schema created, disposed after the test."""
    test_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'riresume_test.db'}")
    await create_all(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory over the SQLite test database."""
    return build_session_factory(engine)


@pytest.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """One session over the SQLite test database."""
    async with session_factory() as test_session:
        yield test_session


async def seed_account(
    factory: async_sessionmaker[AsyncSession], user_id: str, balance: int = 0
) -> None:
    """Create an account holding exactly balance tokens (no welcome bonus)."""
    async with factory() as seed_session:
        seed_session.add(Account(user_id=user_id))
        await seed_session.commit()
        if balance > 0:
            await TokenLedger(seed_session).grant(user_id, balance, f"seed-{user_id}", "Test seed")


async def seed_learning_entry(
    factory: async_sessionmaker[AsyncSession], entry_id: str, user_id: str, skill: str = "Kubernetes"
) -> None:
    async with factory() as seed_session:
        seed_session.add(LearningEntry(id=entry_id, user_id=user_id, skill=skill))
        await seed_session.commit()


async def seed_application(
    factory: async_sessionmaker[AsyncSession], application_id: str, user_id: str
) -> None:
    async with factory() as seed_session:
        seed_session.add(
            JobApplication(
                id=application_id, user_id=user_id, company="Acme", job_title="Platform Engineer"
            )
        )
        await seed_session.commit()


# ============================================================================
# AI Provider Fixtures
# ============================================================================


class ScriptedProvider:
    """
    AI provider that replays a script of responses.

    Each script item is either a string (returned as the completion text) or
    an exception instance (raised). The last item repeats once the script runs out.
    """

    def __init__(self, name: str, script: list[Any]) -> None:
        self.name = name
        self.script = list(script)
        self.calls: list[CompletionRequest] = []

    async def complete(self, request: CompletionRequest) -> str:
        self.calls.append(request)
        index = min(len(self.calls) - 1, len(self.script) - 1)
        item = self.script[index]
        if isinstance(item, Exception):
            raise item
        return item


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


def rate_limited(provider: str = "openai") -> RateLimitedError:
    return RateLimitedError(provider)


class HangingHandler:
    """Task handler whose AI call never returns, for cancellation tests."""

    def __init__(self) -> None:
        self.started = asyncio.Event()

    def validate(self, payload: dict[str, Any]) -> None:
        return None

    async def execute(self, payload: dict[str, Any], progress: ProgressCallback) -> HandlerResult:
        self.started.set()
        await asyncio.Event().wait()
        return HandlerResult(content={})


@pytest.fixture
def slides_provider() -> ScriptedProvider:
    """Primary provider that always returns a valid structured response."""
    return ScriptedProvider(
        "openai",
        ['{"slides": [{"title": "Intro"}, {"title": "Pods"}], "sections": [], '
         '"optimizedResume": {"summary": "x"}, "atsScore": 80, "coverLetter": "Dear"}'],
    )


@pytest.fixture
def gateway(slides_provider: ScriptedProvider, recording_sleep: RecordingSleep) -> AIProviderGateway:
    return AIProviderGateway(primary=slides_provider, sleep=recording_sleep)


# ============================================================================
# FastAPI Test Client Fixtures
# ============================================================================


@pytest.fixture
async def api_client(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: AIProviderGateway,
    monkeypatch: pytest.MonkeyPatch,
) -> AsyncGenerator[AsyncClient, None]:
    """Async client against the app, backed by the SQLite test database."""
    from riresume.api import routes
    from riresume.db.session import get_db
    from riresume.main import app

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as request_session:
            yield request_session

    @asynccontextmanager
    async def test_get_session() -> AsyncIterator[AsyncSession]:
        async with session_factory() as background_session:
            yield background_session

    app.dependency_overrides[get_db] = override_get_db
    monkeypatch.setattr(routes, "get_session", test_get_session)
    app.state.gateway = gateway

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
    app.state.gateway = None


@pytest.fixture
async def service_headers(session_factory: async_sessionmaker[AsyncSession]) -> dict[str, str]:
    """X-API-Key header for a key allowed to mint tokens."""
    from riresume.services.api_key import TOKENS_WRITE, APIKeyService

    async with session_factory() as s:
        generated = await APIKeyService(s).create_api_key("test-service", [TOKENS_WRITE])
    return {"X-API-Key": generated.plaintext_key}
