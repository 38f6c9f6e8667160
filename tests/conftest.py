"""
Pytest configuration and shared fixtures.
"""

import os
from collections.abc import AsyncGenerator
from typing import Any
from uuid import uuid4

# Settings are cached on first use; configure them before importing the package
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("API_SECRET_KEY", "test-secret-key")
os.environ.setdefault("LOG_FORMAT", "console")
os.environ.setdefault("SERVER_AUTOSTART", "true")

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from jobqueue.api.auth import create_access_token
from jobqueue.api.main import create_app
from jobqueue.client import Job, LocalTransport
from jobqueue.db import create_engine, create_session_factory, create_tables
from jobqueue.server import JobServer, JobStateMachine


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine]:
    """Create a file-backed SQLite engine with the schema in place."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}")
    await create_tables(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the session factory for the test database."""
    return create_session_factory(engine)


@pytest.fixture
def state_machine(session_factory: async_sessionmaker[AsyncSession]) -> JobStateMachine:
    """Create a state machine over the test database."""
    return JobStateMachine(session_factory)


@pytest_asyncio.fixture
async def server(state_machine: JobStateMachine) -> AsyncGenerator[JobServer]:
    """
    Create a started job server.

    The sweeper runs one round at start and then sleeps for an hour, so
    tests drive promotion explicitly.
    """
    server = JobServer(state_machine, promote_interval=3600, shutdown_timeout_ms=0)
    await server.start_server()

    yield server

    await server.close()


@pytest.fixture
def transport(server: JobServer) -> LocalTransport:
    """Create a trusted in-process transport."""
    return LocalTransport(server)


@pytest_asyncio.fixture
async def app(server: JobServer) -> FastAPI:
    """Create a FastAPI app exposing the test job server."""
    return create_app(job_server=server)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def test_caller_id() -> str:
    """Generate a test caller ID."""
    return f"test-caller-{uuid4().hex[:8]}"


@pytest.fixture
def auth_headers(test_caller_id: str) -> dict[str, str]:
    """Create authentication headers for testing."""
    token = create_access_token(caller_id=test_caller_id)
    return {
        "Authorization": f"Bearer {token}",
    }


@pytest.fixture
def admin_headers(server: JobServer, test_caller_id: str, auth_headers: dict[str, str]) -> dict[str, str]:
    """Authentication headers for a caller granted the admin group."""
    server.allow(admin=[test_caller_id])
    return auth_headers


@pytest.fixture
def sample_job_data() -> dict[str, Any]:
    """Create a sample job payload."""
    return {"message": "Hello, World!"}


@pytest.fixture
def claim(transport: LocalTransport):
    """Claim exactly one job of a type, failing the test otherwise."""

    async def _claim(job_type: str, **kwargs: Any) -> Job:
        job = await Job.get_work(transport, job_type, **kwargs)
        assert job is not None, f"no {job_type} job was ready"
        return job

    return _claim
