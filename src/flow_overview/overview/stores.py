"""Write access to dashboard action items and notifications.

Both tables are owned by the dashboard service; the overview worker only
inserts rows and deletes open action items by title pattern.

Inserts are idempotent so a retried cycle does not duplicate what an
earlier attempt already wrote:

- an action item is skipped while an open item with the same title
  (case-insensitive) exists for the user;
- a notification is skipped when one with the same type and title was
  stored for the user within the dedup window.

A skipped insert returns None.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Protocol

import asyncpg  # type: ignore[import-not-found,import-untyped]

from flow_overview.constants import NOTIFICATION_DEDUP_WINDOW_SECONDS
from flow_overview.logging import get_logger
from flow_overview.overview.models import NotificationDraft

log = get_logger("flow_overview.overview.stores")

NOTIFICATION_KINDS = frozenset(
    {
        "deal_update",
        "message_received",
        "meeting_reminder",
        "ai_insight",
        "task_due",
        "at_risk_alert",
    }
)
NOTIFICATION_PRIORITIES = frozenset({"high", "medium", "low"})


class ActionItemStore(Protocol):
    """Create and remove dashboard action items."""

    async def create(self, user_id: str, icon: str, title: str, category: str) -> str | None:
        """Insert an action item and return its id, or None if it already exists."""
        ...

    async def delete_matching(self, user_id: str, pattern: str) -> int:
        """Delete the user's non-dismissed items whose title contains ``pattern``.

        Matching is case-insensitive.  Returns the number of rows deleted.
        """
        ...


class NotificationStore(Protocol):
    """Persist user notifications."""

    async def create(self, user_id: str, draft: NotificationDraft) -> dict[str, Any] | None:
        """Insert a notification and return the stored row, or None for a duplicate."""
        ...


def escape_like(pattern: str) -> str:
    """Escape LIKE wildcards so ``pattern`` matches literally."""
    return pattern.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _affected_rows(status: str | None) -> int:
    """Parse the row count from an asyncpg status string like ``DELETE 3``."""
    if not status:
        return 0
    try:
        return int(status.split()[-1])
    except ValueError:
        return 0


class PostgresActionItemStore:
    """``ActionItemStore`` over the ``action_items`` table."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def create(self, user_id: str, icon: str, title: str, category: str) -> str | None:
        if not title.strip() or not category.strip():
            raise ValueError("action item title and category are required")
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO action_items
                    (id, user_id, icon, title, item_type, dismissed, inserted_at, updated_at)
                SELECT gen_random_uuid(), $1::uuid, $2::text, $3::text, $4::text, FALSE,
                       NOW(), NOW()
                WHERE NOT EXISTS (
                    SELECT 1 FROM action_items
                    WHERE user_id = $1::uuid
                      AND dismissed = FALSE
                      AND lower(title) = lower($3::text)
                )
                RETURNING id
                """,
                user_id,
                icon.strip() or None,
                title.strip(),
                category.strip(),
            )
        if row is None:
            log.debug("action_item_duplicate_skipped", user_id=user_id, title=title.strip())
            return None
        return str(row["id"])

    async def delete_matching(self, user_id: str, pattern: str) -> int:
        async with self._pool.acquire() as conn:
            status = await conn.execute(
                """
                DELETE FROM action_items
                WHERE user_id = $1::uuid
                  AND dismissed = FALSE
                  AND title ILIKE $2
                """,
                user_id,
                f"%{escape_like(pattern)}%",
            )
        return _affected_rows(status)


class PostgresNotificationStore:
    """``NotificationStore`` over the ``notifications`` table."""

    def __init__(
        self,
        pool: asyncpg.Pool,
        *,
        dedup_window: timedelta = timedelta(seconds=NOTIFICATION_DEDUP_WINDOW_SECONDS),
    ) -> None:
        self._pool = pool
        self._dedup_window = dedup_window

    async def create(self, user_id: str, draft: NotificationDraft) -> dict[str, Any] | None:
        kind = draft.kind.strip()
        priority = draft.priority.strip().lower()
        if kind not in NOTIFICATION_KINDS:
            raise ValueError(f"unsupported notification type: {kind!r}")
        if priority not in NOTIFICATION_PRIORITIES:
            raise ValueError(f"unsupported notification priority: {priority!r}")
        if not draft.title.strip() or not draft.message.strip():
            raise ValueError("notification title and message are required")

        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO notifications
                    (id, user_id, type, title, message, priority, read, inserted_at)
                SELECT gen_random_uuid(), $1::uuid, $2::text, $3::text, $4::text, $5::text,
                       FALSE, NOW()
                WHERE NOT EXISTS (
                    SELECT 1 FROM notifications
                    WHERE user_id = $1::uuid
                      AND type = $2::text
                      AND title = $3::text
                      AND inserted_at > NOW() - $6::interval
                )
                RETURNING id, type, title, message, priority, read, inserted_at
                """,
                user_id,
                kind,
                draft.title.strip(),
                draft.message.strip(),
                priority,
                self._dedup_window,
            )
        if row is None:
            log.debug("notification_duplicate_skipped", user_id=user_id, kind=kind)
            return None
        return {
            "id": str(row["id"]),
            "type": row["type"],
            "title": row["title"],
            "message": row["message"],
            "priority": row["priority"],
            "read": row["read"],
            "inserted_at": row["inserted_at"].isoformat() if row["inserted_at"] else None,
        }
