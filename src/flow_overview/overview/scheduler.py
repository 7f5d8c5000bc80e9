"""Per-user overview cycle: cooldown gate, then detect, analyze, execute.

Every cycle ends by scheduling the next one through the job queue, so a
user's worker keeps itself alive once started.  The watermark
(``last_run_at``) only advances after all three stages succeeded.
"""

from __future__ import annotations

import math
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timedelta
from typing import Any, TypeVar

import structlog

from flow_overview.constants import (
    DEFAULT_COOLDOWN_SECONDS,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_UNIQUE_WINDOW_SECONDS,
)
from flow_overview.logging import get_logger
from flow_overview.overview.analyzer import Analyzer
from flow_overview.overview.detector import ChangeDetector
from flow_overview.overview.exceptions import (
    AnalysisError,
    DetectionError,
    ExecutionError,
    OverviewError,
    WorkerStateNotFound,
)
from flow_overview.overview.executor import ActionExecutor
from flow_overview.overview.models import (
    ALL_KINDS,
    CycleOutcome,
    CycleResult,
    SkipReason,
    WorkerState,
    validate_cooldown,
    validate_observed_kinds,
)
from flow_overview.overview.queue import JobQueue
from flow_overview.overview.storage import WorkerStateStorage
from flow_overview.utils import ensure_utc, timed_operation, utcnow

log = get_logger("flow_overview.overview.scheduler")

T = TypeVar("T")


class WorkerScheduler:
    """Runs overview cycles and exposes the worker's admin operations."""

    def __init__(
        self,
        storage: WorkerStateStorage,
        detector: ChangeDetector,
        analyzer: Analyzer,
        executor: ActionExecutor,
        queue: JobQueue,
        *,
        default_cooldown: int = DEFAULT_COOLDOWN_SECONDS,
        poll_interval: int = DEFAULT_POLL_INTERVAL_SECONDS,
        unique_within: int = DEFAULT_UNIQUE_WINDOW_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._storage = storage
        self._detector = detector
        self._analyzer = analyzer
        self._executor = executor
        self._queue = queue
        self._default_cooldown = validate_cooldown(default_cooldown)
        self._poll_interval = poll_interval
        self._unique_within = timedelta(seconds=unique_within)
        self._clock = clock

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self, user_id: str) -> CycleResult:
        """Run one cycle for ``user_id``.

        Raises:
            DetectionError, AnalysisError, ExecutionError: A stage failed;
                the worker state is untouched and a re-check is scheduled.
            PersistenceError: The worker state or the queue is unreachable.
        """
        with structlog.contextvars.bound_contextvars(user_id=user_id):
            now = self._clock()
            state = await self._storage.get(user_id)
            if state is None:
                state, created = await self._storage.create_if_absent(
                    user_id, now, self._default_cooldown
                )
                if created:
                    return await self._skip(
                        user_id, SkipReason.CREATED, state.cooldown_period_seconds
                    )

            if not state.enabled:
                return await self._skip(user_id, SkipReason.DISABLED, self._poll_interval)

            due_at = ensure_utc(state.last_run_at) + timedelta(
                seconds=state.cooldown_period_seconds
            )
            if now < due_at:
                remaining = math.ceil((due_at - now).total_seconds())
                return await self._skip(
                    user_id, SkipReason.COOLDOWN, min(remaining, self._poll_interval)
                )

            return await self._run_pipeline(user_id, state, now)

    async def _run_pipeline(self, user_id: str, state: WorkerState, now: datetime) -> CycleResult:
        log.info("overview_cycle_started", watermark=state.last_run_at.isoformat())
        try:
            async with timed_operation("overview_detect", log=log):
                change_set = await self._stage(
                    "detect",
                    DetectionError,
                    self._detector.detect(user_id, state.last_run_at, state.observed_kinds),
                )
            async with timed_operation("overview_analyze", log=log):
                recommendation = await self._stage(
                    "analyze", AnalysisError, self._analyzer.analyze(user_id, change_set)
                )
            async with timed_operation("overview_execute", log=log):
                execution = await self._stage(
                    "execute", ExecutionError, self._executor.execute(user_id, recommendation)
                )
            await self._storage.record_success(user_id, now)
        except OverviewError as exc:
            log.error(
                "overview_cycle_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            await self._schedule_best_effort(user_id, self._poll_interval)
            raise

        await self._schedule(user_id, state.cooldown_period_seconds)

        log.info(
            "overview_cycle_completed",
            total_changes=change_set.summary.total_changes,
            **execution.to_dict(),
        )
        return CycleResult(
            user_id=user_id,
            outcome=CycleOutcome.COMPLETED,
            change_summary=change_set.summary,
            execution=execution,
            next_run_in_seconds=state.cooldown_period_seconds,
        )

    @staticmethod
    async def _stage(name: str, error_cls: type[OverviewError], step: Awaitable[T]) -> T:
        try:
            return await step
        except OverviewError:
            raise
        except Exception as exc:
            raise error_cls(f"{name} failed: {exc}") from exc

    async def _skip(self, user_id: str, reason: SkipReason, next_in: int) -> CycleResult:
        log.debug("overview_cycle_skipped", reason=reason.value, next_run_in_seconds=next_in)
        await self._schedule(user_id, next_in)
        return CycleResult(
            user_id=user_id,
            outcome=CycleOutcome.SKIPPED,
            skip_reason=reason,
            next_run_in_seconds=next_in,
        )

    async def _schedule(self, user_id: str, seconds: int) -> bool:
        return await self._queue.enqueue(
            user_id, timedelta(seconds=seconds), self._unique_within
        )

    async def _schedule_best_effort(self, user_id: str, seconds: int) -> None:
        try:
            await self._schedule(user_id, seconds)
        except Exception as exc:
            log.warning("overview_reschedule_failed", error=str(exc))

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------

    async def enable(
        self,
        user_id: str,
        cooldown_period_seconds: int = DEFAULT_COOLDOWN_SECONDS,
        observed_kinds: Iterable[str] | None = None,
    ) -> WorkerState:
        """Start (or restart) the worker; the first run is one cooldown away.

        Raises:
            ValueError: On an invalid cooldown or unknown entity kind.
        """
        kinds = (
            validate_observed_kinds(observed_kinds)
            if observed_kinds is not None
            else list(ALL_KINDS)
        )
        state = WorkerState(
            user_id=user_id,
            last_run_at=self._clock(),
            cooldown_period_seconds=validate_cooldown(cooldown_period_seconds),
            observed_kinds=kinds,
            enabled=True,
        )
        saved = await self._storage.upsert(state)
        await self._schedule(user_id, saved.cooldown_period_seconds)
        log.info(
            "overview_worker_enabled",
            user_id=user_id,
            cooldown_period_seconds=saved.cooldown_period_seconds,
            observed_kinds=[k.value for k in saved.observed_kinds],
        )
        return saved

    async def disable(self, user_id: str) -> WorkerState:
        """Stop running the pipeline for ``user_id``.

        Raises:
            WorkerStateNotFound: If the worker was never set up.
        """
        state = await self._storage.update_config(user_id, enabled=False)
        if state is None:
            raise WorkerStateNotFound(user_id)
        log.info("overview_worker_disabled", user_id=user_id)
        return state

    async def update_config(self, user_id: str, **attrs: Any) -> WorkerState:
        """Apply a partial configuration update.

        Raises:
            ValueError: On unknown fields or invalid values.
            WorkerStateNotFound: If the worker was never set up.
        """
        state = await self._storage.update_config(user_id, **attrs)
        if state is None:
            raise WorkerStateNotFound(user_id)
        log.info("overview_worker_updated", user_id=user_id, fields=sorted(attrs))
        return state

    async def run_now(self, user_id: str) -> bool:
        """Queue an immediate cycle.

        Shares the routine dedup key, so it is dropped when a cycle was
        queued for this user within the uniqueness window.  The cooldown
        still applies when the cycle runs.
        """
        queued = await self._schedule(user_id, 0)
        log.info("overview_run_requested", user_id=user_id, queued=queued)
        return queued

    async def get_status(self, user_id: str) -> dict[str, Any]:
        state = await self._storage.get(user_id)
        if state is None:
            return {"enabled": False}
        return {
            "enabled": state.enabled,
            "last_run_at": state.last_run_at.isoformat(),
            "cooldown_period_seconds": state.cooldown_period_seconds,
            "observed_kinds": [k.value for k in state.observed_kinds],
            "metadata": state.metadata,
        }
