"""Unit tests for the action executor."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from flow_overview.overview.delivery import EVENT_FORECAST_UPDATED, EVENT_NOTIFICATION_NEW
from flow_overview.overview.exceptions import ExecutionError
from flow_overview.overview.executor import ActionExecutor
from flow_overview.overview.models import (
    AddActionItem,
    NotificationDraft,
    Recommendation,
    RemoveActionItems,
)


@pytest.fixture
def action_items():
    store = MagicMock()
    store.create = AsyncMock(side_effect=lambda *args: f"item-{store.create.await_count}")
    store.delete_matching = AsyncMock(return_value=1)
    return store


@pytest.fixture
def notifications():
    store = MagicMock()
    store.create = AsyncMock(
        side_effect=lambda user_id, draft: {"id": f"n-{draft.title}", "title": draft.title}
    )
    return store


@pytest.fixture
def sink():
    sink = MagicMock()
    sink.push = AsyncMock(return_value=True)
    return sink


@pytest.fixture
def executor(action_items, notifications, sink):
    return ActionExecutor(action_items, notifications, sink)


def _draft(title: str) -> NotificationDraft:
    return NotificationDraft("deal_update", "high", title, "details")


class TestForecast:
    """Forecast refresh handling."""

    async def test_forecast_only_recommendation(self, executor, action_items, sink, user_id):
        """One deal changed and the model asked only for a forecast refresh."""
        rec = Recommendation(forecast_should_update=True, forecast_reason="Deal stage changed")

        result = await executor.execute(user_id, rec)

        assert result.forecast_updated is True
        assert result.items_added == 0
        sink.push.assert_awaited_once()
        pushed_user, event, payload = sink.push.call_args.args
        assert pushed_user == user_id
        assert event == EVENT_FORECAST_UPDATED
        assert payload["reason"] == "Deal stage changed"
        action_items.create.assert_not_awaited()

    async def test_no_forecast_push_when_not_requested(self, executor, sink, user_id):
        result = await executor.execute(user_id, Recommendation.noop())

        assert result.forecast_updated is False
        sink.push.assert_not_awaited()

    async def test_failed_forecast_push_is_not_fatal(self, executor, sink, user_id):
        sink.push.return_value = False

        result = await executor.execute(user_id, Recommendation(forecast_should_update=True))

        assert result.forecast_updated is False


class TestActionItems:
    """Action item additions and removals."""

    async def test_two_adds_and_one_remove(self, executor, action_items, user_id):
        rec = Recommendation(
            action_item_ops=[
                AddActionItem("phone", "Call Ada", "suggestion"),
                AddActionItem("mail", "Email Bob", "suggestion"),
                RemoveActionItems("stale report"),
            ]
        )

        result = await executor.execute(user_id, rec)

        assert result.items_added == 2
        assert result.items_removed == 1
        assert action_items.create.await_count == 2
        action_items.create.assert_any_await(user_id, "phone", "Call Ada", "suggestion")
        action_items.delete_matching.assert_awaited_once_with(user_id, "stale report")

    async def test_removed_counts_are_summed(self, executor, action_items, user_id):
        action_items.delete_matching.side_effect = [3, 0]
        rec = Recommendation(
            action_item_ops=[RemoveActionItems("stale"), RemoveActionItems("old")]
        )

        result = await executor.execute(user_id, rec)

        assert result.items_removed == 3

    async def test_partial_add_failure_is_counted_out(self, executor, action_items, user_id):
        action_items.create.side_effect = ["item-1", OSError("timeout"), "item-3"]
        rec = Recommendation(
            action_item_ops=[AddActionItem("i", f"Item {n}", "suggestion") for n in range(3)]
        )

        result = await executor.execute(user_id, rec)

        assert result.items_added == 2

    async def test_all_adds_failing_raises(self, executor, action_items, user_id):
        action_items.create.side_effect = OSError("store unreachable")
        rec = Recommendation(
            action_item_ops=[AddActionItem("i", f"Item {n}", "suggestion") for n in range(2)]
        )

        with pytest.raises(ExecutionError, match="2 store operations failed"):
            await executor.execute(user_id, rec)

    async def test_all_removals_failing_raises(self, executor, action_items, user_id):
        action_items.delete_matching.side_effect = OSError("store unreachable")
        rec = Recommendation(action_item_ops=[RemoveActionItems("stale")])

        with pytest.raises(ExecutionError, match="1 store operations failed"):
            await executor.execute(user_id, rec)

    async def test_rejected_items_do_not_fail_the_stage(self, executor, action_items, user_id):
        action_items.create.side_effect = ValueError("title required")
        rec = Recommendation(action_item_ops=[AddActionItem("i", " ", "suggestion")])

        result = await executor.execute(user_id, rec)

        assert result.items_added == 0


class TestNotifications:
    """Notification persistence and delivery."""

    async def test_created_and_pushed(self, executor, notifications, sink, user_id):
        rec = Recommendation(notifications=[_draft("Deal moved"), _draft("Deal won")])

        result = await executor.execute(user_id, rec)

        assert result.notifications_sent == 2
        assert notifications.create.await_count == 2
        events = [call.args[1] for call in sink.push.await_args_list]
        assert events == [EVENT_NOTIFICATION_NEW, EVENT_NOTIFICATION_NEW]
        assert sink.push.await_args_list[0].args[2] == {"id": "n-Deal moved", "title": "Deal moved"}

    async def test_only_pushed_notifications_are_counted(self, executor, sink, user_id):
        sink.push.side_effect = [True, False]
        rec = Recommendation(notifications=[_draft("a"), _draft("b")])

        result = await executor.execute(user_id, rec)

        assert result.notifications_sent == 1

    async def test_invalid_notification_is_skipped(self, executor, notifications, sink, user_id):
        notifications.create.side_effect = [
            ValueError("unsupported notification type"),
            {"id": "n-2"},
        ]
        rec = Recommendation(notifications=[_draft("bad"), _draft("good")])

        result = await executor.execute(user_id, rec)

        assert result.notifications_sent == 1
        sink.push.assert_awaited_once()

    async def test_duplicate_notification_is_not_pushed(
        self, executor, notifications, sink, user_id
    ):
        notifications.create.side_effect = None
        notifications.create.return_value = None

        result = await executor.execute(user_id, Recommendation(notifications=[_draft("a")]))

        assert result.notifications_sent == 0
        assert result.failed_operations == 0
        sink.push.assert_not_awaited()


class TestStageFailure:
    """When the stage as a whole fails, and when it only reports partial counts."""

    async def test_single_notification_error_does_not_fail_the_cycle(
        self, executor, action_items, notifications, user_id
    ):
        """Items already created must not be created again by a retried cycle."""
        notifications.create.side_effect = OSError("transient")
        rec = Recommendation(
            action_item_ops=[
                AddActionItem("phone", "Call Ada", "suggestion"),
                AddActionItem("mail", "Email Bob", "suggestion"),
            ],
            notifications=[_draft("Deal moved")],
        )

        result = await executor.execute(user_id, rec)

        assert result.items_added == 2
        assert result.notifications_sent == 0
        assert result.failed_operations == 1
        assert action_items.create.await_count == 2

    async def test_every_store_operation_failing_raises(
        self, executor, action_items, notifications, user_id
    ):
        action_items.create.side_effect = OSError("store unreachable")
        action_items.delete_matching.side_effect = OSError("store unreachable")
        notifications.create.side_effect = OSError("store unreachable")
        rec = Recommendation(
            action_item_ops=[AddActionItem("i", "Call", "suggestion"), RemoveActionItems("old")],
            notifications=[_draft("a")],
        )

        with pytest.raises(ExecutionError, match="3 store operations failed"):
            await executor.execute(user_id, rec)

        notifications.create.assert_awaited_once()

    async def test_pushed_forecast_counts_as_applied(
        self, executor, notifications, sink, user_id
    ):
        notifications.create.side_effect = OSError("store unreachable")
        rec = Recommendation(forecast_should_update=True, notifications=[_draft("a")])

        result = await executor.execute(user_id, rec)

        assert result.forecast_updated is True
        assert result.failed_operations == 1

    async def test_repeated_execution_creates_nothing_new(
        self, executor, action_items, notifications, sink, user_id
    ):
        """The stores report already-present rows as None on the second run."""
        action_items.create.side_effect = ["item-1", "item-2", None, None]
        notifications.create.side_effect = [{"id": "n-1"}, None]
        rec = Recommendation(
            action_item_ops=[
                AddActionItem("phone", "Call Ada", "suggestion"),
                AddActionItem("mail", "Email Bob", "suggestion"),
            ],
            notifications=[_draft("Deal moved")],
        )

        first = await executor.execute(user_id, rec)
        second = await executor.execute(user_id, rec)

        assert (first.items_added, first.notifications_sent) == (2, 1)
        assert (second.items_added, second.notifications_sent) == (0, 0)
        assert second.failed_operations == 0
        sink.push.assert_awaited_once()
