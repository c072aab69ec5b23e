import structlog
import logging
import contextlib

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.exceptions import HTTPException

from regsync.config import settings
from regsync.database import SessionLocal, init_db, close_db
from regsync.cache import init_redis_pool, close_redis_pool, invalidate_status
from regsync.exceptions import AppError, app_error_handler, http_error_handler
from regsync.middleware import LoggingMiddleware
from regsync.repositories.sync_runs import SyncLogLedger
from regsync.routers.admin import health_router, router as admin_router
from regsync.routers.logs import router as logs_router
from regsync.routers.sync import router as sync_router
from regsync.services.circuit import CircuitBreaker
from regsync.services.dedup import DedupEngine
from regsync.services.health import SourceHealthEvaluator
from regsync.services.orchestrator import PipelineOrchestrator
from regsync.services.scheduler import start_scheduler, stop_scheduler
from regsync.sources.registry import build_adapters, source_profiles

# ── Structured logging setup ──────────────────────────────────────────────────
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
)
logging.basicConfig(level=logging.DEBUG if settings.DEBUG else logging.INFO)

log = structlog.get_logger(__name__)


def build_pipeline(app: FastAPI, client: httpx.AsyncClient, session_factory) -> None:
    """Attach the pipeline objects to ``app.state``; routers reach them via dependencies."""
    ledger = SyncLogLedger(session_factory)
    breaker = CircuitBreaker(
        failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
        recovery_seconds=settings.CIRCUIT_RECOVERY_SECONDS,
    )
    app.state.session_factory = session_factory
    app.state.ledger = ledger
    app.state.breaker = breaker
    app.state.orchestrator = PipelineOrchestrator(
        build_adapters(client, settings),
        DedupEngine(session_factory),
        ledger,
        max_concurrency=settings.MAX_CONCURRENT_SOURCES,
        source_timeout=settings.SOURCE_TIMEOUT_SECONDS,
        retry_backoff=settings.SOURCE_RETRY_BACKOFF_SECONDS,
        default_since_days=settings.DEFAULT_SINCE_DAYS,
        breaker=breaker,
        on_complete=invalidate_status,
    )
    app.state.evaluator = SourceHealthEvaluator(
        session_factory,
        ledger,
        source_profiles(settings),
        client=client,
        probe_enabled=settings.HEALTH_PROBE_ENABLED,
        probe_timeout=settings.HEALTH_PROBE_TIMEOUT,
    )


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("app.starting", env=settings.ENVIRONMENT, version=settings.APP_VERSION)
    await init_db()
    await init_redis_pool()
    limits = httpx.Limits(max_connections=settings.HTTP_MAX_CONNECTIONS, max_keepalive_connections=10)
    async with httpx.AsyncClient(
        limits=limits,
        timeout=settings.HTTP_TIMEOUT,
        headers={"User-Agent": settings.HTTP_USER_AGENT},
        follow_redirects=True,
    ) as client:
        build_pipeline(app, client, SessionLocal)
        start_scheduler(app.state.orchestrator, app.state.ledger)
        log.info("app.ready", sources=app.state.orchestrator.sources)
        yield
        log.info("app.shutting_down")
        stop_scheduler()
    await close_redis_pool()
    await close_db()
    log.info("app.stopped")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs" if settings.ENVIRONMENT == "development" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT == "development" else None,
    lifespan=lifespan,
)

# ── Middleware (outermost first) ──────────────────────────────────────────────
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(LoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["X-API-Key", "X-Actor", "Content-Type"],
)

# ── Exception handlers ────────────────────────────────────────────────────────
app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)

# ── Routers ───────────────────────────────────────────────────────────────────
app.include_router(sync_router)
app.include_router(logs_router)
app.include_router(health_router)
app.include_router(admin_router)
