import os

# Set required env vars BEFORE any app imports trigger Settings()
os.environ.setdefault("API_KEY", "test-api-key-for-testing")
os.environ.setdefault("DB_USER", "test")
os.environ.setdefault("DB_PASSWORD", "test")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("HEALTH_PROBE_ENABLED", "false")

import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, MagicMock, patch
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from regsync.main import app
from regsync.database import Base
from regsync.auth import require_api_key
from regsync.repositories.sync_runs import SyncLogLedger
from regsync.services.circuit import CircuitBreaker
from regsync.services.dedup import DedupEngine
from regsync.services.health import SourceHealthEvaluator
from regsync.services.orchestrator import PipelineOrchestrator
from regsync.sources.registry import SourceProfile
from tests.factories import FakeAdapter, make_candidate

TEST_API_KEY = "test-api-key-for-testing"


class AsyncIterEmpty:
    """Async iterator that yields nothing (for scan_iter mock)."""
    def __aiter__(self):
        return self

    async def __anext__(self):
        raise StopAsyncIteration


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    # file-backed so concurrent sessions really contend on the same database
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'regsync.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def ledger(session_factory):
    return SyncLogLedger(session_factory)


@pytest.fixture
def dedup(session_factory):
    return DedupEngine(session_factory)


@pytest.fixture
def make_orchestrator(dedup, ledger):
    def _make(*adapters, **kwargs):
        kwargs.setdefault("retry_backoff", 0)
        kwargs.setdefault("source_timeout", 2.0)
        return PipelineOrchestrator({a.name: a for a in adapters}, dedup, ledger, **kwargs)
    return _make


@pytest.fixture
def mock_redis():
    # pipeline() is synchronous in redis-py, returns a pipeline object
    mock_pipe = AsyncMock()
    mock_pipe.execute = AsyncMock(return_value=[None, False])

    mock_r = AsyncMock()
    mock_r.ping = AsyncMock(return_value=True)
    mock_r.get = AsyncMock(return_value=None)
    mock_r.setex = AsyncMock(return_value=True)
    mock_r.delete = AsyncMock(return_value=1)
    mock_r.lrange = AsyncMock(return_value=[])
    mock_r.pipeline = MagicMock(return_value=mock_pipe)
    mock_r.scan_iter = MagicMock(return_value=AsyncIterEmpty())

    with patch("regsync.cache._pool", new=True), \
         patch("regsync.cache.get_redis", return_value=mock_r):
        yield mock_r


@pytest.fixture
def adapters():
    return [
        FakeAdapter("FDA", [make_candidate("FDA", "F-1"), make_candidate("FDA", "F-2")]),
        FakeAdapter("EPA", [make_candidate("EPA", "E-1")]),
    ]


@pytest_asyncio.fixture
async def client(session_factory, ledger, dedup, adapters, mock_redis):
    async def override_api_key():
        return TEST_API_KEY

    breaker = CircuitBreaker()
    app.state.session_factory = session_factory
    app.state.ledger = ledger
    app.state.breaker = breaker
    app.state.orchestrator = PipelineOrchestrator(
        {a.name: a for a in adapters}, dedup, ledger,
        retry_backoff=0, source_timeout=2.0, breaker=breaker,
    )
    app.state.evaluator = SourceHealthEvaluator(
        session_factory, ledger,
        [SourceProfile(a.name, 24) for a in adapters],
        probe_enabled=False,
    )
    app.dependency_overrides[require_api_key] = override_api_key

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as c:
        yield c

    app.dependency_overrides.clear()
