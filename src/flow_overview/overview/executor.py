"""Applies a recommendation: forecast refresh, action items, notifications.

Each operation is independent and best-effort.  A failed item is logged,
left out of the counts and recorded in ``failed_operations``; the cycle
still completes, because a retry would repeat the model call and every
write that already went through.  The stage only fails when every store
operation it attempted hit an error and nothing was applied, which points
at an unreachable store rather than a bad item.

Items the store rejects as invalid (``ValueError``) are dropped.  Items the
store reports as already present (``None``) are skipped without a push.
"""

from __future__ import annotations

from dataclasses import dataclass

from flow_overview.logging import get_logger
from flow_overview.overview.delivery import (
    EVENT_FORECAST_UPDATED,
    EVENT_NOTIFICATION_NEW,
    DeliverySink,
)
from flow_overview.overview.exceptions import ExecutionError
from flow_overview.overview.models import (
    AddActionItem,
    ExecutionResult,
    NotificationDraft,
    Recommendation,
    RemoveActionItems,
)
from flow_overview.overview.stores import ActionItemStore, NotificationStore
from flow_overview.utils import utcnow

log = get_logger("flow_overview.overview.executor")


@dataclass
class _GroupOutcome:
    count: int = 0
    attempted: int = 0
    errors: int = 0


class ActionExecutor:
    """Carries out a :class:`Recommendation` for one user."""

    def __init__(
        self,
        action_items: ActionItemStore,
        notifications: NotificationStore,
        sink: DeliverySink,
    ) -> None:
        self._action_items = action_items
        self._notifications = notifications
        self._sink = sink

    async def execute(self, user_id: str, recommendation: Recommendation) -> ExecutionResult:
        """Apply ``recommendation`` and report what succeeded.

        Raises:
            ExecutionError: If every attempted store operation failed and
                nothing was applied.
        """
        result = ExecutionResult()

        if recommendation.forecast_should_update:
            result.forecast_updated = await self._push_forecast(
                user_id, recommendation.forecast_reason
            )

        added = await self._add_items(user_id, recommendation.additions)
        removed = await self._remove_items(user_id, recommendation.removals)
        sent = await self._send_notifications(user_id, recommendation.notifications)
        groups = (added, removed, sent)

        result.items_added = added.count
        result.items_removed = removed.count
        result.notifications_sent = sent.count
        result.failed_operations = sum(g.errors for g in groups)

        attempted = sum(g.attempted for g in groups)
        if attempted and result.failed_operations == attempted and not result.forecast_updated:
            log.error("actions_failed", user_id=user_id, **result.to_dict())
            raise ExecutionError(f"all {attempted} store operations failed")

        if result.failed_operations:
            log.warning("actions_partially_executed", user_id=user_id, **result.to_dict())
        else:
            log.info("actions_executed", user_id=user_id, **result.to_dict())
        return result

    async def _push_forecast(self, user_id: str, reason: str) -> bool:
        pushed = await self._sink.push(
            user_id,
            EVENT_FORECAST_UPDATED,
            {"reason": reason, "updated_at": utcnow().isoformat()},
        )
        if not pushed:
            log.warning("forecast_push_failed", user_id=user_id)
        return pushed

    async def _add_items(self, user_id: str, ops: list[AddActionItem]) -> _GroupOutcome:
        outcome = _GroupOutcome(attempted=len(ops))
        for op in ops:
            try:
                item_id = await self._action_items.create(user_id, op.icon, op.title, op.category)
            except ValueError as exc:
                log.warning(
                    "action_item_rejected", user_id=user_id, title=op.title, error=str(exc)
                )
                continue
            except Exception as exc:
                outcome.errors += 1
                log.warning(
                    "action_item_create_failed",
                    user_id=user_id,
                    title=op.title,
                    error=str(exc),
                )
                continue
            if item_id is not None:
                outcome.count += 1
        return outcome

    async def _remove_items(self, user_id: str, ops: list[RemoveActionItems]) -> _GroupOutcome:
        outcome = _GroupOutcome(attempted=len(ops))
        for op in ops:
            try:
                outcome.count += await self._action_items.delete_matching(user_id, op.pattern)
            except Exception as exc:
                outcome.errors += 1
                log.warning(
                    "action_item_remove_failed",
                    user_id=user_id,
                    pattern=op.pattern,
                    error=str(exc),
                )
        return outcome

    async def _send_notifications(
        self, user_id: str, drafts: list[NotificationDraft]
    ) -> _GroupOutcome:
        """Count only notifications that were both stored and pushed."""
        outcome = _GroupOutcome(attempted=len(drafts))
        for draft in drafts:
            try:
                row = await self._notifications.create(user_id, draft)
            except ValueError as exc:
                log.warning(
                    "notification_rejected", user_id=user_id, kind=draft.kind, error=str(exc)
                )
                continue
            except Exception as exc:
                outcome.errors += 1
                log.warning(
                    "notification_create_failed",
                    user_id=user_id,
                    kind=draft.kind,
                    error=str(exc),
                )
                continue
            if row is None:
                continue
            if await self._sink.push(user_id, EVENT_NOTIFICATION_NEW, row):
                outcome.count += 1
            else:
                log.warning("notification_push_failed", user_id=user_id, id=row.get("id"))
        return outcome
