from __future__ import annotations
from typing import Any, ClassVar, Dict, Optional
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse


# ── Typed domain exceptions ───────────────────────────────────────────────────

class AppError(Exception):
    """Base for all application-level errors."""
    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"

    def __init__(self, detail: str, context: Optional[Dict[str, Any]] = None):
        self.detail = detail
        self.context = context or {}
        super().__init__(detail)


class NotFoundError(AppError):
    status_code = 404
    error_code = "NOT_FOUND"


class UnknownSourceError(NotFoundError):
    error_code = "UNKNOWN_SOURCE"


class CacheError(AppError):
    status_code = 503
    error_code = "CACHE_UNAVAILABLE"


# ── Ledger contract violations (never recovered locally) ─────────────────────

class LedgerError(AppError):
    status_code = 500
    error_code = "LEDGER_INCONSISTENCY"


class UnknownRunError(LedgerError):
    pass


class InvalidStatusError(LedgerError):
    pass


# ── Source adapter failures ───────────────────────────────────────────────────
#
# Raised by adapters, caught per source by the orchestrator and folded into the
# run summary. ``transient`` marks failures worth the orchestrator's one retry.

class SourceError(AppError):
    status_code = 502
    error_code = "UPSTREAM_FETCH_FAILED"
    kind: ClassVar[str] = "upstream"
    transient: ClassVar[bool] = False

    def __init__(self, source: str, detail: str, context: Optional[Dict[str, Any]] = None):
        self.source = source
        super().__init__(detail, {"source": source, **(context or {})})


class SourceAuthError(SourceError):
    error_code = "UPSTREAM_AUTH_REJECTED"
    kind = "auth"


class SourceTimeoutError(SourceError):
    error_code = "UPSTREAM_TIMEOUT"
    kind = "timeout"
    transient = True


class SourceNetworkError(SourceError):
    kind = "network"
    transient = True


class SourceUpstreamError(SourceError):
    kind = "upstream"
    transient = True


class MalformedResponseError(SourceError):
    error_code = "UPSTREAM_MALFORMED"
    kind = "malformed"


class EmptyResultError(SourceError):
    """The agency explicitly reported that nothing matched the query."""
    error_code = "UPSTREAM_EMPTY"
    kind = "empty"


class CircuitOpenError(SourceError):
    status_code = 503
    error_code = "CIRCUIT_OPEN"
    kind = "circuit_open"


# ── FastAPI exception handlers ────────────────────────────────────────────────

async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.error_code,
            "detail": exc.detail,
            "context": exc.context,
        },
    )


async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "HTTP_ERROR",
            "detail": exc.detail,
        },
    )
