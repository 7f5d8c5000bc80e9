"""Postgres-backed job queue for overview cycles.

Jobs are keyed ``overview:{user_id}``.  The key serializes work per user:

- ``enqueue`` drops a job when a pending job with the same key was
  inserted within the uniqueness window.
- ``claim`` never hands out a job whose key already has an executing job,
  and at most one job per key per batch.

A failed job is retried with backoff until ``max_attempts`` is reached,
then discarded.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol

import asyncpg  # type: ignore[import-not-found,import-untyped]
import structlog

from flow_overview.constants import DEFAULT_MAX_ATTEMPTS
from flow_overview.logging import get_logger
from flow_overview.overview.exceptions import PersistenceError

if TYPE_CHECKING:
    from asyncpg.pool import PoolConnectionProxy

    from flow_overview.overview.scheduler import WorkerScheduler

log = get_logger("flow_overview.overview.queue")

QUEUE_NAME = "overview_analysis"

STATE_AVAILABLE = "available"
STATE_EXECUTING = "executing"
STATE_COMPLETED = "completed"
STATE_DISCARDED = "discarded"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS overview_jobs (
    id BIGSERIAL PRIMARY KEY,
    queue TEXT NOT NULL DEFAULT 'overview_analysis',
    unique_key TEXT NOT NULL,
    user_id UUID NOT NULL,
    state TEXT NOT NULL DEFAULT 'available'
        CHECK (state IN ('available', 'executing', 'completed', 'discarded')),
    attempt INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    scheduled_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    inserted_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    attempted_at TIMESTAMPTZ,
    finished_at TIMESTAMPTZ,
    last_error TEXT
);

CREATE INDEX IF NOT EXISTS idx_overview_jobs_due
    ON overview_jobs (state, scheduled_at);

CREATE INDEX IF NOT EXISTS idx_overview_jobs_unique
    ON overview_jobs (unique_key, state, inserted_at);
"""

_JOB_COLUMNS = "id, unique_key, user_id, attempt, max_attempts, scheduled_at, inserted_at"


def unique_key_for(user_id: str) -> str:
    return f"overview:{user_id}"


def backoff_for(attempt: int) -> timedelta:
    """Retry delay after the given (1-based) attempt: 15s + attempt^4."""
    return timedelta(seconds=15 + attempt**4)


@dataclass
class Job:
    """A claimed overview job."""

    id: int
    unique_key: str
    user_id: str
    attempt: int
    max_attempts: int
    scheduled_at: datetime
    inserted_at: datetime

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt >= self.max_attempts

    @classmethod
    def from_row(cls, row: Any) -> Job:
        return cls(
            id=row["id"],
            unique_key=row["unique_key"],
            user_id=str(row["user_id"]),
            attempt=row["attempt"],
            max_attempts=row["max_attempts"],
            scheduled_at=row["scheduled_at"],
            inserted_at=row["inserted_at"],
        )


class JobQueue(Protocol):
    """Scheduling primitive used by the worker scheduler."""

    async def enqueue(
        self,
        user_id: str,
        run_after: timedelta,
        unique_within: timedelta,
    ) -> bool:
        """Schedule a cycle ``run_after`` from now.

        Returns False when a pending job with the same key was inserted
        within ``unique_within``.
        """
        ...


class PostgresJobQueue:
    """``JobQueue`` over the ``overview_jobs`` table."""

    def __init__(self, *, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> None:
        self._pool: asyncpg.Pool | None = None
        self._max_attempts = max_attempts

    async def initialize(self, pool: asyncpg.Pool) -> None:
        """Create the table and store the connection pool reference."""
        self._pool = pool
        async with self._connection() as conn:
            await conn.execute(_SCHEMA)
        log.info("job_queue.initialized", queue=QUEUE_NAME)

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[PoolConnectionProxy]:
        if self._pool is None:
            raise PersistenceError("job queue is not initialized")
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except (asyncpg.PostgresError, OSError) as exc:
            log.error("job_queue.db_error", error=str(exc))
            raise PersistenceError(str(exc)) from exc

    async def enqueue(
        self,
        user_id: str,
        run_after: timedelta,
        unique_within: timedelta,
    ) -> bool:
        key = unique_key_for(user_id)
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO overview_jobs (unique_key, user_id, max_attempts, scheduled_at)
                SELECT $1, $2::uuid, $3, NOW() + $4::interval
                WHERE NOT EXISTS (
                    SELECT 1 FROM overview_jobs
                    WHERE unique_key = $1
                      AND state = 'available'
                      AND inserted_at > NOW() - $5::interval
                )
                RETURNING id
                """,
                key,
                user_id,
                self._max_attempts,
                run_after,
                unique_within,
            )
        if row is None:
            log.debug("job_deduplicated", user_id=user_id, unique_key=key)
            return False
        log.debug(
            "job_enqueued",
            user_id=user_id,
            job_id=row["id"],
            run_after_seconds=int(run_after.total_seconds()),
        )
        return True

    async def claim(self, limit: int) -> list[Job]:
        """Atomically claim up to ``limit`` due jobs, one per key."""
        async with self._connection() as conn, conn.transaction():
            candidates = await conn.fetch(
                """
                SELECT j.id, j.unique_key
                FROM overview_jobs j
                WHERE j.state = 'available'
                  AND j.scheduled_at <= NOW()
                  AND NOT EXISTS (
                      SELECT 1 FROM overview_jobs e
                      WHERE e.unique_key = j.unique_key
                        AND e.state = 'executing'
                  )
                ORDER BY j.scheduled_at
                LIMIT $1
                FOR UPDATE SKIP LOCKED
                """,
                limit,
            )
            ids: list[int] = []
            seen: set[str] = set()
            for row in candidates:
                if row["unique_key"] in seen:
                    continue
                seen.add(row["unique_key"])
                ids.append(row["id"])
            if not ids:
                return []
            rows = await conn.fetch(
                f"""
                UPDATE overview_jobs
                SET state = 'executing', attempt = attempt + 1, attempted_at = NOW()
                WHERE id = ANY($1::bigint[])
                RETURNING {_JOB_COLUMNS}
                """,
                ids,
            )
        jobs = sorted((Job.from_row(r) for r in rows), key=lambda j: j.scheduled_at)
        log.debug("jobs_claimed", count=len(jobs))
        return jobs

    async def complete(self, job_id: int) -> None:
        async with self._connection() as conn:
            await conn.execute(
                """
                UPDATE overview_jobs
                SET state = 'completed', finished_at = NOW(), last_error = NULL
                WHERE id = $1
                """,
                job_id,
            )

    async def fail(self, job: Job, error: str) -> str:
        """Record a failed attempt; returns the job's new state."""
        if job.is_last_attempt:
            async with self._connection() as conn:
                await conn.execute(
                    """
                    UPDATE overview_jobs
                    SET state = 'discarded', finished_at = NOW(), last_error = $2
                    WHERE id = $1
                    """,
                    job.id,
                    error,
                )
            log.error(
                "job_discarded",
                job_id=job.id,
                user_id=job.user_id,
                attempt=job.attempt,
                error=error,
            )
            return STATE_DISCARDED

        delay = backoff_for(job.attempt)
        async with self._connection() as conn:
            await conn.execute(
                """
                UPDATE overview_jobs
                SET state = 'available', scheduled_at = NOW() + $2::interval, last_error = $3
                WHERE id = $1
                """,
                job.id,
                delay,
                error,
            )
        log.warning(
            "job_retry_scheduled",
            job_id=job.id,
            user_id=job.user_id,
            attempt=job.attempt,
            retry_in_seconds=int(delay.total_seconds()),
            error=error,
        )
        return STATE_AVAILABLE

    async def rescue_orphaned(self, older_than: timedelta) -> int:
        """Return jobs stuck in ``executing`` (e.g. after a crash) to the queue."""
        async with self._connection() as conn:
            status = await conn.execute(
                """
                UPDATE overview_jobs
                SET state = CASE WHEN attempt >= max_attempts
                                 THEN 'discarded' ELSE 'available' END,
                    last_error = 'orphaned while executing'
                WHERE state = 'executing'
                  AND attempted_at < NOW() - $1::interval
                """,
                older_than,
            )
        rescued = int(status.split()[-1]) if status else 0
        if rescued:
            log.warning("jobs_rescued", count=rescued)
        return rescued


class JobRunner:
    """Polls the queue and runs one scheduler cycle per claimed job."""

    def __init__(
        self,
        queue: PostgresJobQueue,
        scheduler: WorkerScheduler,
        *,
        batch_size: int = 10,
        poll_interval: float = 1.0,
        rescue_after: timedelta = timedelta(minutes=30),
    ) -> None:
        self._queue = queue
        self._scheduler = scheduler
        self._batch_size = batch_size
        self._poll_interval = poll_interval
        self._rescue_after = rescue_after
        self._stopping = asyncio.Event()

    async def run_once(self) -> int:
        """Claim and run one batch.  Returns the number of jobs processed."""
        jobs = await self._queue.claim(self._batch_size)
        if jobs:
            await asyncio.gather(*(self._run_job(job) for job in jobs))
        return len(jobs)

    async def _run_job(self, job: Job) -> None:
        with structlog.contextvars.bound_contextvars(job_id=job.id, attempt=job.attempt):
            try:
                await self._scheduler.run_cycle(job.user_id)
            except Exception as exc:
                log.warning(
                    "job_failed",
                    user_id=job.user_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                await self._queue.fail(job, f"{type(exc).__name__}: {exc}")
                return
            await self._queue.complete(job.id)

    async def run_forever(self) -> None:
        """Poll until :meth:`stop` is called."""
        log.info("job_runner_started", queue=QUEUE_NAME, batch_size=self._batch_size)
        await self._queue.rescue_orphaned(self._rescue_after)
        while not self._stopping.is_set():
            try:
                processed = await self.run_once()
            except PersistenceError as exc:
                log.error("job_poll_failed", error=str(exc))
                processed = 0
            if processed:
                continue
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._poll_interval)
            except TimeoutError:
                pass
        log.info("job_runner_stopped")

    def stop(self) -> None:
        self._stopping.set()
