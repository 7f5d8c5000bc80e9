"""PostgreSQL storage for per-user overview worker state.

Initialise with an asyncpg pool, then use the async methods::

    storage = WorkerStateStorage()
    await storage.initialize(pool)
    state = await storage.get(user_id)

Every database failure surfaces as :class:`PersistenceError`.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Any

import asyncpg  # type: ignore[import-not-found,import-untyped]

from flow_overview.logging import get_logger
from flow_overview.overview.exceptions import PersistenceError
from flow_overview.overview.models import (
    WorkerState,
    validate_cooldown,
    validate_observed_kinds,
)

if TYPE_CHECKING:
    from asyncpg.pool import PoolConnectionProxy

log = get_logger("flow_overview.overview.storage")

# ------------------------------------------------------------------
# SQL schema
# ------------------------------------------------------------------

_SCHEMA = """
CREATE TABLE IF NOT EXISTS overview_worker_state (
    user_id UUID PRIMARY KEY,
    last_run_at TIMESTAMPTZ NOT NULL,
    cooldown_period INTEGER NOT NULL DEFAULT 900 CHECK (cooldown_period >= 60),
    observers TEXT[] NOT NULL DEFAULT ARRAY['contacts', 'deals', 'events'],
    enabled BOOLEAN NOT NULL DEFAULT TRUE,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    inserted_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

_COLUMNS = (
    "user_id, last_run_at, cooldown_period, observers, enabled, metadata, inserted_at, updated_at"
)

# Fields ``update_config`` accepts, mapped to their column names
_CONFIG_COLUMNS: dict[str, str] = {
    "cooldown_period_seconds": "cooldown_period",
    "observed_kinds": "observers",
    "enabled": "enabled",
    "metadata": "metadata",
}


def _row_to_state(row: Any) -> WorkerState:
    metadata = row["metadata"]
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return WorkerState(
        user_id=str(row["user_id"]),
        last_run_at=row["last_run_at"],
        cooldown_period_seconds=row["cooldown_period"],
        observed_kinds=validate_observed_kinds(row["observers"] or []),
        enabled=row["enabled"],
        metadata=metadata or {},
        created_at=row["inserted_at"],
        updated_at=row["updated_at"],
    )


class WorkerStateStorage:
    """Read and write ``overview_worker_state`` rows (one per user)."""

    def __init__(self) -> None:
        self._pool: asyncpg.Pool | None = None

    async def initialize(self, pool: asyncpg.Pool) -> None:
        """Create the table and store the connection pool reference."""
        self._pool = pool
        async with self._connection() as conn:
            await conn.execute(_SCHEMA)
        log.info("worker_state_storage.initialized")

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[PoolConnectionProxy]:
        if self._pool is None:
            raise PersistenceError("worker state storage is not initialized")
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except (asyncpg.PostgresError, OSError) as exc:
            log.error("worker_state_storage.db_error", error=str(exc))
            raise PersistenceError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, user_id: str) -> WorkerState | None:
        """Return the user's state, or None if the worker was never set up."""
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM overview_worker_state WHERE user_id = $1::uuid",
                user_id,
            )
        return _row_to_state(row) if row is not None else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_if_absent(
        self,
        user_id: str,
        now: datetime,
        cooldown_period_seconds: int,
    ) -> tuple[WorkerState, bool]:
        """Seed a state with ``last_run_at = now`` unless one already exists.

        Returns the state and whether it was created by this call.
        """
        validate_cooldown(cooldown_period_seconds)
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO overview_worker_state (user_id, last_run_at, cooldown_period)
                VALUES ($1::uuid, $2, $3)
                ON CONFLICT (user_id) DO NOTHING
                RETURNING {_COLUMNS}
                """,
                user_id,
                now,
                cooldown_period_seconds,
            )
            if row is not None:
                log.info("worker_state.created", user_id=user_id)
                return _row_to_state(row), True
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM overview_worker_state WHERE user_id = $1::uuid",
                user_id,
            )
        if row is None:
            raise PersistenceError(f"worker state for {user_id} vanished during creation")
        return _row_to_state(row), False

    async def upsert(self, state: WorkerState) -> WorkerState:
        """Create or fully replace the user's configuration.

        Existing metadata is preserved and merged with ``state.metadata``.
        """
        validate_cooldown(state.cooldown_period_seconds)
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO overview_worker_state
                    (user_id, last_run_at, cooldown_period, observers, enabled, metadata)
                VALUES ($1::uuid, $2, $3, $4, $5, $6::jsonb)
                ON CONFLICT (user_id) DO UPDATE SET
                    last_run_at = EXCLUDED.last_run_at,
                    cooldown_period = EXCLUDED.cooldown_period,
                    observers = EXCLUDED.observers,
                    enabled = EXCLUDED.enabled,
                    metadata = overview_worker_state.metadata || EXCLUDED.metadata,
                    updated_at = NOW()
                RETURNING {_COLUMNS}
                """,
                state.user_id,
                state.last_run_at,
                state.cooldown_period_seconds,
                [k.value for k in state.observed_kinds],
                state.enabled,
                json.dumps(state.metadata),
            )
        return _row_to_state(row)

    async def update_config(self, user_id: str, **attrs: Any) -> WorkerState | None:
        """Apply a validated partial update.  Returns None if no state exists.

        Raises:
            ValueError: For unknown attributes or invalid values.
        """
        unknown = set(attrs) - set(_CONFIG_COLUMNS)
        if unknown:
            raise ValueError(f"unsupported worker config fields: {sorted(unknown)}")

        values: dict[str, Any] = {}
        if "cooldown_period_seconds" in attrs:
            values["cooldown_period"] = validate_cooldown(attrs["cooldown_period_seconds"])
        if "observed_kinds" in attrs:
            kinds = validate_observed_kinds(attrs["observed_kinds"])
            values["observers"] = [k.value for k in kinds]
        if "enabled" in attrs:
            if not isinstance(attrs["enabled"], bool):
                raise ValueError("enabled must be a boolean")
            values["enabled"] = attrs["enabled"]
        if "metadata" in attrs:
            if not isinstance(attrs["metadata"], dict):
                raise ValueError("metadata must be a mapping")
            values["metadata"] = json.dumps(attrs["metadata"])

        if not values:
            return await self.get(user_id)

        assignments = []
        params: list[Any] = [user_id]
        for column, value in values.items():
            params.append(value)
            cast = "::jsonb" if column == "metadata" else ""
            assignments.append(f"{column} = ${len(params)}{cast}")

        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE overview_worker_state
                SET {", ".join(assignments)}, updated_at = NOW()
                WHERE user_id = $1::uuid
                RETURNING {_COLUMNS}
                """,
                *params,
            )
        return _row_to_state(row) if row is not None else None

    async def record_success(self, user_id: str, now: datetime) -> WorkerState:
        """Advance the watermark to ``now`` and stamp ``metadata.last_success_at``.

        The watermark never moves backwards.
        """
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE overview_worker_state
                SET last_run_at = GREATEST(last_run_at, $2),
                    metadata = metadata || jsonb_build_object('last_success_at', $3::text),
                    updated_at = NOW()
                WHERE user_id = $1::uuid
                RETURNING {_COLUMNS}
                """,
                user_id,
                now,
                now.isoformat(),
            )
        if row is None:
            raise PersistenceError(f"worker state for {user_id} disappeared before update")
        log.debug("worker_state.advanced", user_id=user_id, last_run_at=now.isoformat())
        return _row_to_state(row)
