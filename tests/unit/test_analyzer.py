"""Unit tests for the analyzer and the recommendation decoder."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from flow_overview.llm.types import CompletionResponse, LLMError, LLMErrorReason, Role
from flow_overview.overview.analyzer import Analyzer, build_context, parse_recommendation
from flow_overview.overview.exceptions import AnalysisError
from flow_overview.overview.models import (
    AddActionItem,
    ChangeRecord,
    ChangeSet,
    ChangeType,
    EntityKind,
    ForecastSnapshot,
    RemoveActionItems,
)
from flow_overview.overview.prompts import ANALYSIS_SYSTEM_PROMPT

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)

FULL_RESPONSE = """
Here is my analysis.

<forecast_update_needed>true</forecast_update_needed>
<forecast_update_reason>Acme renewal moved to negotiation</forecast_update_reason>

<action_items>
ADD: phone|Call Acme about renewal terms|suggestion
ADD: alert-triangle|Check in with at-risk contact: Jane Doe|warning
REMOVE: stale report
ADD: broken line without pipes
REMOVE:
</action_items>

<notifications>
deal_update|high|Deal moved|Acme renewal is now in negotiation
at_risk_alert|medium|Contact at risk
</notifications>

<insights>
deals|d-1|Probability jumped from 40% to 75% | worth a call
contacts|only-two
</insights>
"""


def _deal(i: int, change_type: ChangeType = ChangeType.UPDATED) -> ChangeRecord:
    return ChangeRecord(
        kind=EntityKind.DEALS,
        id=f"d-{i}",
        fields={
            "title": f"Deal {i}",
            "company": "Acme",
            "value": 12500.0,
            "stage": "negotiation",
            "probability": 75,
        },
        updated_at=T0,
        inserted_at=T0,
        change_type=change_type,
    )


def _gateway(content: str = FULL_RESPONSE) -> MagicMock:
    gateway = MagicMock()
    gateway.complete = AsyncMock(return_value=CompletionResponse(content=content, model="m"))
    return gateway


def _forecast_source() -> MagicMock:
    source = MagicMock()
    source.get_forecast = AsyncMock(
        return_value=ForecastSnapshot(
            total_pipeline=150000.0, weighted_forecast=61000.0, deals_closing_this_month=2
        )
    )
    return source


# ------------------------------------------------------------------
# parse_recommendation
# ------------------------------------------------------------------


class TestParseRecommendation:
    """Tests for decoding the tagged model response."""

    def test_full_response(self):
        rec = parse_recommendation(FULL_RESPONSE)

        assert rec.forecast_should_update is True
        assert rec.forecast_reason == "Acme renewal moved to negotiation"
        assert rec.action_item_ops == [
            AddActionItem("phone", "Call Acme about renewal terms", "suggestion"),
            AddActionItem("alert-triangle", "Check in with at-risk contact: Jane Doe", "warning"),
            RemoveActionItems("stale report"),
        ]
        assert len(rec.notifications) == 1
        assert rec.notifications[0].kind == "deal_update"
        assert rec.notifications[0].priority == "high"
        assert rec.notifications[0].message == "Acme renewal is now in negotiation"
        assert len(rec.insights) == 1
        assert rec.insights[0].entity_id == "d-1"
        assert rec.insights[0].text == "Probability jumped from 40% to 75% | worth a call"

    def test_forecast_only(self):
        """One deal changed and the model only asks for a forecast refresh."""
        rec = parse_recommendation(
            "<forecast_update_needed>true</forecast_update_needed>"
            "<forecast_update_reason>Deal stage changed</forecast_update_reason>"
            "<action_items></action_items><notifications></notifications>"
        )

        assert rec.forecast_should_update is True
        assert rec.action_item_ops == []
        assert rec.notifications == []

    def test_two_adds_and_a_remove(self):
        rec = parse_recommendation(
            "<action_items>\n"
            "ADD: phone|Call Ada|suggestion\n"
            "ADD: mail|Email Bob|suggestion\n"
            "REMOVE: stale report\n"
            "</action_items>"
        )

        assert len(rec.additions) == 2
        assert rec.removals == [RemoveActionItems("stale report")]
        assert rec.forecast_should_update is False

    @pytest.mark.parametrize(
        "text",
        ["", "no tags at all", "<forecast_update_needed>", None, 42, "<action_items>ADD: x"],
    )
    def test_malformed_input_yields_defaults(self, text):
        rec = parse_recommendation(text)

        assert rec.forecast_should_update is False
        assert rec.forecast_reason == "No reason provided"
        assert rec.action_item_ops == []
        assert rec.notifications == []
        assert rec.insights == []

    @pytest.mark.parametrize("flag", ["True", "no", "maybe", ""])
    def test_forecast_flag_is_strict(self, flag):
        rec = parse_recommendation(f"<forecast_update_needed>{flag}</forecast_update_needed>")
        assert rec.forecast_should_update is False

    @pytest.mark.parametrize("flag", ["true", "yes", "1", " yes\n"])
    def test_forecast_flag_accepts_truthy_spellings(self, flag):
        rec = parse_recommendation(f"<forecast_update_needed>{flag}</forecast_update_needed>")
        assert rec.forecast_should_update is True

    def test_empty_reason_uses_default(self):
        rec = parse_recommendation("<forecast_update_reason>  </forecast_update_reason>")
        assert rec.forecast_reason == "No reason provided"

    def test_lowercase_keywords_are_ignored(self):
        rec = parse_recommendation("<action_items>add: a|b|c\nremove: x</action_items>")
        assert rec.action_item_ops == []


# ------------------------------------------------------------------
# build_context
# ------------------------------------------------------------------


class TestBuildContext:
    """Tests for the context document sent to the model."""

    def test_includes_forecast_and_digests(self):
        change_set = ChangeSet.build({EntityKind.DEALS: [_deal(1, ChangeType.NEW)]})
        forecast = ForecastSnapshot(150000.0, 61000.0, 2)

        context = build_context(change_set, forecast)

        assert "Total pipeline: $150,000" in context
        assert "Weighted forecast: $61,000" in context
        assert "Deals closing this month: 2" in context
        assert "- NEW: Deal 1 - $12,500 - Stage: negotiation (75%)" in context
        assert "Contacts" not in context

    def test_digests_are_limited_per_kind(self):
        change_set = ChangeSet.build({EntityKind.DEALS: [_deal(i) for i in range(14)]})

        context = build_context(change_set, ForecastSnapshot(), summary_limit=10)

        assert context.count("- UPDATED: Deal") == 10
        assert "### Deals (14 changed)" in context
        assert "... and 4 more" in context

    def test_contact_and_event_digests(self):
        contact = ChangeRecord(
            kind=EntityKind.CONTACTS,
            id="c-1",
            fields={
                "name": "Jane Doe",
                "company": None,
                "health_score": 40,
                "sentiment": "negative",
                "churn_risk": "high",
            },
            updated_at=T0,
            inserted_at=T0,
            change_type=ChangeType.UPDATED,
        )
        event = ChangeRecord(
            kind=EntityKind.EVENTS,
            id="e-1",
            fields={"title": "QBR", "type": "meeting", "start_time": T0, "status": "scheduled"},
            updated_at=T0,
            inserted_at=T0,
            change_type=ChangeType.NEW,
        )
        change_set = ChangeSet.build(
            {EntityKind.CONTACTS: [contact], EntityKind.EVENTS: [event]}
        )

        context = build_context(change_set, ForecastSnapshot())

        assert "- UPDATED: Jane Doe (no company)" in context
        assert "Churn risk: high" in context
        assert f"- NEW: QBR (meeting) at {T0.isoformat()} - scheduled" in context


# ------------------------------------------------------------------
# Analyzer.analyze
# ------------------------------------------------------------------


class TestAnalyze:
    """Tests for Analyzer.analyze."""

    async def test_no_changes_short_circuits(self, user_id):
        gateway, source = _gateway(), _forecast_source()
        analyzer = Analyzer(gateway, source)

        rec = await analyzer.analyze(user_id, ChangeSet.build({}))

        assert rec.forecast_should_update is False
        assert rec.forecast_reason == "No changes detected"
        gateway.complete.assert_not_awaited()
        source.get_forecast.assert_not_awaited()

    async def test_calls_gateway_with_prompt_and_options(self, user_id):
        gateway, source = _gateway(), _forecast_source()
        analyzer = Analyzer(
            gateway, source, provider="gemini", model="gemini-1.5-pro", temperature=0.2
        )
        change_set = ChangeSet.build({EntityKind.DEALS: [_deal(1)]})

        rec = await analyzer.analyze(user_id, change_set)

        source.get_forecast.assert_awaited_once_with(user_id)
        call = gateway.complete.call_args
        assert call.args[0] == ANALYSIS_SYSTEM_PROMPT
        [message] = call.args[1]
        assert message.role is Role.USER
        assert "Deal 1" in message.content
        assert call.kwargs == {"provider": "gemini", "model": "gemini-1.5-pro", "temperature": 0.2}
        assert rec.forecast_should_update is True
        assert len(rec.additions) == 2

    async def test_llm_error_becomes_analysis_error(self, user_id):
        gateway = _gateway()
        gateway.complete.side_effect = LLMError(LLMErrorReason.TIMEOUT, "too slow")
        analyzer = Analyzer(gateway, _forecast_source())

        with pytest.raises(AnalysisError, match="timeout") as exc_info:
            await analyzer.analyze(user_id, ChangeSet.build({EntityKind.DEALS: [_deal(1)]}))

        assert isinstance(exc_info.value.__cause__, LLMError)

    async def test_unexpected_gateway_error_becomes_analysis_error(self, user_id):
        gateway = _gateway()
        gateway.complete.side_effect = RuntimeError("boom")
        analyzer = Analyzer(gateway, _forecast_source())

        with pytest.raises(AnalysisError):
            await analyzer.analyze(user_id, ChangeSet.build({EntityKind.DEALS: [_deal(1)]}))

    async def test_forecast_failure_becomes_analysis_error(self, user_id):
        gateway, source = _gateway(), _forecast_source()
        source.get_forecast.side_effect = OSError("db down")
        analyzer = Analyzer(gateway, source)

        with pytest.raises(AnalysisError):
            await analyzer.analyze(user_id, ChangeSet.build({EntityKind.DEALS: [_deal(1)]}))
        gateway.complete.assert_not_awaited()

    async def test_garbage_response_yields_empty_recommendation(self, user_id):
        analyzer = Analyzer(_gateway("I cannot help with that."), _forecast_source())

        rec = await analyzer.analyze(user_id, ChangeSet.build({EntityKind.DEALS: [_deal(1)]}))

        assert rec.forecast_should_update is False
        assert rec.action_item_ops == []
