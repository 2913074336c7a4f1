from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

from todo_sync.config import Settings, settings
from todo_sync.errors import SyncAlreadyRunningError, SyncError
from todo_sync.integrations.external_todo_api import ExternalTodoAPI, HttpxExternalTodoAPI
from todo_sync.models import utc_now
from todo_sync.resilience import CircuitBreaker, RetryPolicy
from todo_sync.services.sync_orchestrator import SyncMode, SyncOrchestrator, SyncRunResult

logger = logging.getLogger(__name__)


class SyncRunner:
    """Single-flight wrapper: at most one sync pass at a time, bounded in duration.

    A pass that exceeds ``max_duration_seconds`` is cancelled; whatever it did not reach
    is still flagged pending and is picked up by the next pass.
    """

    def __init__(
        self,
        *,
        orchestrator_factory: Callable[[], SyncOrchestrator],
        max_duration_seconds: float,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._orchestrator_factory = orchestrator_factory
        self._max_duration = max_duration_seconds
        self._clock = clock
        self._lock = asyncio.Lock()
        self.last_result: SyncRunResult | None = None

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def run(self, mode: SyncMode) -> SyncRunResult:
        if self._lock.locked():
            raise SyncAlreadyRunningError("a sync pass is already running")

        async with self._lock:
            started = self._clock()
            logger.info("sync pass started: mode=%s", mode)
            orchestrator = self._orchestrator_factory()
            try:
                result = await asyncio.wait_for(orchestrator.run(mode), timeout=self._max_duration)
            except asyncio.TimeoutError:
                logger.error(
                    "sync pass mode=%s exceeded %.0fs; remaining work deferred to the next pass",
                    mode,
                    self._max_duration,
                )
                result = SyncRunResult(
                    mode=mode,
                    ok=False,
                    started_at=started,
                    finished_at=self._clock(),
                    error=f"sync pass timed out after {self._max_duration:.0f}s",
                )
            except SyncError as e:
                logger.error("sync pass mode=%s failed: %s", mode, e, exc_info=True)
                result = SyncRunResult(
                    mode=mode,
                    ok=False,
                    started_at=started,
                    finished_at=self._clock(),
                    error=f"{type(e).__name__}: {e}",
                )
            self.last_result = result
            logger.info("sync pass finished: mode=%s ok=%s", mode, result.ok)
            return result

    async def run_forever(
        self,
        *,
        interval_seconds: float,
        run_on_startup: bool = False,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        """Background ticker: run a full pass every ``interval_seconds``; busy ticks are skipped."""
        first = True
        while True:
            if not first or run_on_startup:
                await self._tick()
            first = False
            await sleep(interval_seconds)

    async def _tick(self) -> None:
        try:
            await self.run("full")
        except SyncAlreadyRunningError:
            logger.info("scheduled sync skipped: previous pass still running")
        except Exception:
            # Keep the ticker alive; the next tick retries.
            logger.exception("scheduled sync crashed")


_breaker: CircuitBreaker | None = None
_runner: SyncRunner | None = None


def get_circuit_breaker(s: Settings | None = None) -> CircuitBreaker:
    # One breaker per process: its window has to see the outcomes of every pass.
    global _breaker
    if _breaker is None:
        _breaker = CircuitBreaker.from_settings(s or settings)
    return _breaker


def build_external_api(s: Settings | None = None) -> ExternalTodoAPI:
    cfg = s or settings
    policy = RetryPolicy.from_settings(cfg, circuit_breaker=get_circuit_breaker(cfg))
    return HttpxExternalTodoAPI.from_settings(cfg, retry_policy=policy)


def get_sync_runner() -> SyncRunner:
    global _runner
    if _runner is None:
        _runner = SyncRunner(
            orchestrator_factory=lambda: SyncOrchestrator(
                api=build_external_api(),
                strategy=settings.sync_conflict_strategy,
            ),
            max_duration_seconds=settings.sync_max_duration_seconds,
        )
    return _runner


def reset_sync_runtime() -> None:
    global _breaker, _runner
    _breaker = None
    _runner = None
