from __future__ import annotations

import asyncio
import time
from typing import Callable, Dict

import structlog

log = structlog.get_logger(__name__)


class CircuitBreaker:
    """
    Per-source breaker shared by every run in the process.

    After ``failure_threshold`` consecutive failed fetches a source is
    short-circuited for ``recovery_seconds``; then one probe run is let
    through (half-open) and a success closes the circuit again.
    In-process only; multi-worker deployments each keep their own state.
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        recovery_seconds: float = 900,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_seconds = recovery_seconds
        self._clock = clock
        self._lock = asyncio.Lock()
        self._state: Dict[str, dict] = {}

    async def is_open(self, source: str) -> bool:
        async with self._lock:
            state = self._state.get(source)
            if not state:
                return False
            if state["failures"] >= self.failure_threshold:
                if self._clock() - state["opened_at"] < self.recovery_seconds:
                    return True
                # Half-open: allow one probe
                state["failures"] = self.failure_threshold - 1
            return False

    async def record_failure(self, source: str) -> None:
        async with self._lock:
            state = self._state.setdefault(source, {"failures": 0, "opened_at": 0.0})
            state["failures"] += 1
            if state["failures"] >= self.failure_threshold:
                state["opened_at"] = self._clock()
                log.warning("circuit.opened", source=source, failures=state["failures"])

    async def record_success(self, source: str) -> None:
        async with self._lock:
            self._state.pop(source, None)

    async def status(self) -> dict:
        async with self._lock:
            return {
                source: {
                    "failures": s["failures"],
                    "open": s["failures"] >= self.failure_threshold,
                }
                for source, s in self._state.items()
            }
