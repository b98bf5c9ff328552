"""
Pytest configuration and shared fixtures.

Tests run against a throwaway SQLite file by default. Set TEST_DATABASE_URL
to a postgresql+asyncpg URL to run the same suite against PostgreSQL, where
the claim really uses FOR UPDATE SKIP LOCKED.
"""

import os
from collections.abc import AsyncGenerator
from typing import Any

# Settings are cached on first use, so the environment must be set first
os.environ.setdefault("OTEL_ENABLED", "false")
os.environ.setdefault("LOG_FORMAT", "console")
os.environ.setdefault("API_ADMIN_KEY", "test-admin-key")
os.environ.setdefault("API_SECRET_KEY", "test-secret-key")

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from mailqueue.api.auth import create_access_token
from mailqueue.api.main import create_app
from mailqueue.api.routes.emails import get_queue_service
from mailqueue.constants import EmailType
from mailqueue.db import Base, create_session_factory, create_tables, get_async_session
from mailqueue.db.connection import get_test_engine
from mailqueue.db.repository import EmailQueueRepository
from mailqueue.exceptions import ProviderError
from mailqueue.service import EmailQueueService
from mailqueue.types.job import ProviderMessage, QueuedEmailSpec

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


@pytest.fixture
def database_url(tmp_path) -> str:
    """Get the test database URL."""
    return TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'mailqueue.db'}"


@pytest_asyncio.fixture
async def async_engine(database_url: str) -> AsyncGenerator[AsyncEngine]:
    """Create an engine with a fresh schema."""
    engine = get_test_engine(database_url)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await create_tables(engine)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return create_session_factory(async_engine)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create a database session for tests."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def repo(db_session: AsyncSession) -> EmailQueueRepository:
    """Create a repository instance."""
    return EmailQueueRepository(db_session)


@pytest.fixture
def service(session_factory: async_sessionmaker[AsyncSession]) -> EmailQueueService:
    """Queue service bound to the test database."""
    return EmailQueueService(session_factory)


def make_spec(**overrides: Any) -> QueuedEmailSpec:
    """Build a valid inline email spec."""
    fields: dict[str, Any] = {
        "email_type": EmailType.NOTIFICATION,
        "recipient_email": "reader@example.com",
        "subject": "Hello",
        "html_content": "<p>Hello</p>",
    }
    fields.update(overrides)
    return QueuedEmailSpec(**fields)


class FakeProvider:
    """
    In-memory provider that records calls.

    Outcomes are consumed in order; an Exception instance is raised, anything
    else counts as success. Once exhausted every send succeeds.
    """

    def __init__(self, outcomes: list[Any] | None = None, fail_for: set[str] | None = None):
        self.outcomes = list(outcomes or [])
        self.fail_for = fail_for or set()
        self.sent: list[dict[str, Any]] = []
        self.templated: list[dict[str, Any]] = []
        self._counter = 0

    def _next(self, to: str) -> ProviderMessage:
        self._counter += 1
        if to in self.fail_for:
            raise ProviderError(f"Mailbox unavailable: {to}", status_code=422)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
        return ProviderMessage(id=f"msg-{self._counter}")

    async def send(
        self,
        to: str,
        subject: str,
        html: str | None = None,
        text: str | None = None,
        from_email: str | None = None,
        from_name: str | None = None,
    ) -> ProviderMessage:
        self.sent.append(
            {
                "to": to,
                "subject": subject,
                "html": html,
                "text": text,
                "from_email": from_email,
                "from_name": from_name,
            }
        )
        return self._next(to)

    async def send_template(
        self,
        to: str,
        template_id: str,
        data: dict[str, Any],
        subject: str | None = None,
    ) -> ProviderMessage:
        self.templated.append(
            {"to": to, "template_id": template_id, "data": data, "subject": subject}
        )
        return self._next(to)


@pytest.fixture
def provider() -> FakeProvider:
    """Provider that accepts every message."""
    return FakeProvider()


@pytest_asyncio.fixture
async def app(session_factory: async_sessionmaker[AsyncSession]) -> FastAPI:
    """Create a FastAPI app wired to the test database."""
    app = create_app(use_lifespan=False)

    async def override_session() -> AsyncGenerator[AsyncSession]:
        async with session_factory() as session:
            yield session
            await session.commit()

    app.dependency_overrides[get_async_session] = override_session
    app.dependency_overrides[get_queue_service] = lambda: EmailQueueService(session_factory)
    return app


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def auth_headers() -> dict[str, str]:
    """Create authentication headers for testing."""
    token = create_access_token(operator="test-operator")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def spec_factory():
    """Factory for valid email specs; keyword arguments override fields."""
    return make_spec


@pytest.fixture
def provider_factory():
    """Factory for FakeProvider instances with scripted outcomes."""
    return FakeProvider
