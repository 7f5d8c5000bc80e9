"""Read-only access to the CRM tables the overview worker observes.

The contacts, deals and calendar tables belong to other services; this
module only issues bounded ``SELECT`` queries against them.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Protocol

import asyncpg  # type: ignore[import-not-found,import-untyped]

from flow_overview.constants import MAX_CHANGES_PER_KIND
from flow_overview.logging import get_logger
from flow_overview.overview.models import EntityKind, ForecastSnapshot
from flow_overview.utils import utcnow

log = get_logger("flow_overview.overview.sources")


class EntityStore(Protocol):
    """Source of changed records for one entity kind."""

    async def list_changed_since(
        self,
        user_id: str,
        watermark: datetime,
        limit: int = MAX_CHANGES_PER_KIND,
    ) -> list[dict[str, Any]]:
        """Return the user's records updated strictly after ``watermark``.

        Rows are newest first, exclude soft-deleted records, and carry
        ``id``, ``updated_at``, ``inserted_at`` plus the kind's summary
        fields.
        """
        ...


class ForecastSource(Protocol):
    """Source of the user's current pipeline figures."""

    async def get_forecast(self, user_id: str) -> ForecastSnapshot: ...


# ---------------------------------------------------------------------------
# SQL per kind
# ---------------------------------------------------------------------------

# (table, projected columns, soft-delete filter)
_KIND_QUERIES: dict[EntityKind, tuple[str, tuple[str, ...], bool]] = {
    EntityKind.CONTACTS: (
        "contacts",
        ("name", "company", "health_score", "sentiment", "churn_risk"),
        True,
    ),
    EntityKind.DEALS: (
        "deals",
        ("title", "company", "value", "stage", "probability"),
        True,
    ),
    # Calendar events are hard-deleted, so there is no deleted_at column.
    EntityKind.EVENTS: (
        "calendar_events",
        ("title", "type", "start_time", "status"),
        False,
    ),
}

SUMMARY_FIELDS: dict[EntityKind, tuple[str, ...]] = {
    kind: columns for kind, (_, columns, _) in _KIND_QUERIES.items()
}


def _build_changed_query(kind: EntityKind) -> str:
    table, columns, soft_delete = _KIND_QUERIES[kind]
    deleted_filter = "AND deleted_at IS NULL" if soft_delete else ""
    return f"""
        SELECT id, {", ".join(columns)}, updated_at, inserted_at
        FROM {table}
        WHERE user_id = $1::uuid
          AND updated_at > $2
          {deleted_filter}
        ORDER BY updated_at DESC
        LIMIT $3
    """


class PostgresEntityStore:
    """``EntityStore`` over one of the CRM tables."""

    def __init__(self, kind: EntityKind, pool: asyncpg.Pool) -> None:
        self._kind = kind
        self._pool = pool
        self._query = _build_changed_query(kind)

    @property
    def kind(self) -> EntityKind:
        return self._kind

    async def list_changed_since(
        self,
        user_id: str,
        watermark: datetime,
        limit: int = MAX_CHANGES_PER_KIND,
    ) -> list[dict[str, Any]]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(self._query, user_id, watermark, limit)
        return [_normalise_row(dict(row)) for row in rows]


def _normalise_row(row: dict[str, Any]) -> dict[str, Any]:
    """Make ids strings and decimals floats so rows are JSON friendly."""
    out: dict[str, Any] = {}
    for key, value in row.items():
        if key == "id":
            out[key] = str(value)
        elif isinstance(value, Decimal):
            out[key] = float(value)
        else:
            out[key] = value
    return out


def build_entity_stores(pool: asyncpg.Pool) -> dict[EntityKind, EntityStore]:
    """One Postgres-backed store per observed kind."""
    return {kind: PostgresEntityStore(kind, pool) for kind in _KIND_QUERIES}


# ---------------------------------------------------------------------------
# Forecast
# ---------------------------------------------------------------------------


class PostgresForecastSource:
    """Pipeline totals over open deals (stage not closed)."""

    _QUERY = """
        SELECT
            COALESCE(SUM(value), 0) AS total_pipeline,
            COALESCE(SUM(value * probability / 100.0), 0) AS weighted_forecast,
            COUNT(*) FILTER (
                WHERE date_trunc('month', expected_close_date) = date_trunc('month', $2::date)
            ) AS deals_closing_this_month
        FROM deals
        WHERE user_id = $1::uuid
          AND deleted_at IS NULL
          AND stage NOT IN ('closed_won', 'closed_lost')
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get_forecast(self, user_id: str, *, today: date | None = None) -> ForecastSnapshot:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(self._QUERY, user_id, today or utcnow().date())
        if row is None:
            return ForecastSnapshot()
        return ForecastSnapshot(
            total_pipeline=float(row["total_pipeline"] or 0),
            weighted_forecast=float(row["weighted_forecast"] or 0),
            deals_closing_this_month=int(row["deals_closing_this_month"] or 0),
        )
