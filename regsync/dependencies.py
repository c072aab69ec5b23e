"""Request-scoped accessors for the pipeline objects built in the app lifespan."""

from __future__ import annotations

from fastapi import Request

from regsync.repositories.sync_runs import SyncLogLedger
from regsync.services.circuit import CircuitBreaker
from regsync.services.health import SourceHealthEvaluator
from regsync.services.orchestrator import PipelineOrchestrator


def get_orchestrator(request: Request) -> PipelineOrchestrator:
    return request.app.state.orchestrator


def get_ledger(request: Request) -> SyncLogLedger:
    return request.app.state.ledger


def get_evaluator(request: Request) -> SourceHealthEvaluator:
    return request.app.state.evaluator


def get_breaker(request: Request) -> CircuitBreaker:
    return request.app.state.breaker


def get_session_factory(request: Request):
    return request.app.state.session_factory
