"""LLM-backed analysis of a change set.

The analyzer turns detected changes into a :class:`Recommendation`.  The
model's reply is free text that follows the tag format in
:mod:`flow_overview.overview.prompts`; decoding it is the pure function
:func:`parse_recommendation`, which never raises.
"""

from __future__ import annotations

from typing import Any

from flow_overview.constants import MAX_SUMMARY_ITEMS_PER_KIND
from flow_overview.llm.parser import (
    iter_lines,
    parse_bool,
    parse_delimited_lines,
    parse_tags,
)
from flow_overview.llm.provider import LLMGateway
from flow_overview.llm.types import LLMError, Message, Role
from flow_overview.logging import get_logger
from flow_overview.overview.exceptions import AnalysisError
from flow_overview.overview.models import (
    ActionItemOp,
    AddActionItem,
    ChangeRecord,
    ChangeSet,
    EntityKind,
    ForecastSnapshot,
    Insight,
    NotificationDraft,
    Recommendation,
    RemoveActionItems,
)
from flow_overview.overview.prompts import ANALYSIS_SYSTEM_PROMPT
from flow_overview.overview.sources import ForecastSource

log = get_logger("flow_overview.overview.analyzer")

RESPONSE_TAGS = (
    "forecast_update_needed",
    "forecast_update_reason",
    "action_items",
    "notifications",
    "insights",
)

DEFAULT_FORECAST_REASON = "No reason provided"


# ---------------------------------------------------------------------------
# Response decoding
# ---------------------------------------------------------------------------


def parse_action_items(block: Any) -> list[ActionItemOp]:
    """Decode ``ADD: icon|title|category`` and ``REMOVE: pattern`` lines."""
    ops: list[ActionItemOp] = []
    for line in iter_lines(block):
        if line.startswith("ADD:"):
            parts = line[len("ADD:") :].strip().split("|")
            if len(parts) == 3:
                icon, title, category = (p.strip() for p in parts)
                ops.append(AddActionItem(icon=icon, title=title, category=category))
        elif line.startswith("REMOVE:"):
            pattern = line[len("REMOVE:") :].strip()
            if pattern:
                ops.append(RemoveActionItems(pattern=pattern))
    return ops


def parse_notifications(block: Any) -> list[NotificationDraft]:
    return [
        NotificationDraft(
            kind=kind.strip(),
            priority=priority.strip(),
            title=title.strip(),
            message=message.strip(),
        )
        for kind, priority, title, message in parse_delimited_lines(block, 4)
    ]


def parse_insights(block: Any) -> list[Insight]:
    # The insight text may itself contain "|".
    return [
        Insight(entity_kind=kind.strip(), entity_id=entity_id.strip(), text=text.strip())
        for kind, entity_id, text in parse_delimited_lines(block, 3, maxsplit=3)
    ]


def parse_recommendation(text: Any) -> Recommendation:
    """Decode a model reply into a recommendation.

    Missing or malformed sections fall back to their defaults: no forecast
    update, ``"No reason provided"``, and empty lists.
    """
    sections = parse_tags(text, list(RESPONSE_TAGS))
    return Recommendation(
        forecast_should_update=parse_bool(sections.get("forecast_update_needed")),
        forecast_reason=sections.get("forecast_update_reason") or DEFAULT_FORECAST_REASON,
        action_item_ops=parse_action_items(sections.get("action_items")),
        notifications=parse_notifications(sections.get("notifications")),
        insights=parse_insights(sections.get("insights")),
    )


# ---------------------------------------------------------------------------
# Context building
# ---------------------------------------------------------------------------


def _fmt_money(value: Any) -> str:
    try:
        return f"${float(value):,.0f}"
    except (TypeError, ValueError):
        return "$0"


def _digest(record: ChangeRecord) -> str:
    """One line per changed record, shaped by kind."""
    f = record.fields
    label = record.change_type.value.upper()
    if record.kind is EntityKind.DEALS:
        return (
            f"- {label}: {f.get('title')} - {_fmt_money(f.get('value'))}"
            f" - Stage: {f.get('stage')} ({f.get('probability') or 0}%)"
        )
    if record.kind is EntityKind.CONTACTS:
        return (
            f"- {label}: {f.get('name')} ({f.get('company') or 'no company'})"
            f" - Health: {f.get('health_score')}, Sentiment: {f.get('sentiment')},"
            f" Churn risk: {f.get('churn_risk')}"
        )
    start = f.get("start_time")
    when = start.isoformat() if hasattr(start, "isoformat") else start
    return f"- {label}: {f.get('title')} ({f.get('type')}) at {when} - {f.get('status')}"


def build_context(
    change_set: ChangeSet,
    forecast: ForecastSnapshot,
    *,
    summary_limit: int = MAX_SUMMARY_ITEMS_PER_KIND,
) -> str:
    """Render the user message sent to the model."""
    counts = change_set.summary.by_kind
    lines = [
        "## Current Forecast",
        f"Total pipeline: {_fmt_money(forecast.total_pipeline)}",
        f"Weighted forecast: {_fmt_money(forecast.weighted_forecast)}",
        f"Deals closing this month: {forecast.deals_closing_this_month}",
        "",
        "## Recent Changes",
        f"Total changes: {change_set.summary.total_changes}",
    ]
    titles = {
        EntityKind.CONTACTS: "Contacts",
        EntityKind.DEALS: "Deals",
        EntityKind.EVENTS: "Calendar Events",
    }
    for kind, title in titles.items():
        records = change_set.for_kind(kind)
        if not records:
            continue
        lines.append("")
        lines.append(f"### {title} ({counts.get(kind.value, len(records))} changed)")
        lines.extend(_digest(r) for r in records[:summary_limit])
        if len(records) > summary_limit:
            lines.append(f"- ... and {len(records) - summary_limit} more")

    lines.append("")
    lines.append("Analyze these changes and respond in the required format.")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------


class Analyzer:
    """Asks the language model what to do about a change set."""

    def __init__(
        self,
        gateway: LLMGateway,
        forecast_source: ForecastSource,
        *,
        provider: str | None = None,
        model: str | None = None,
        temperature: float | None = 0.7,
        summary_limit: int = MAX_SUMMARY_ITEMS_PER_KIND,
    ) -> None:
        self._gateway = gateway
        self._forecast_source = forecast_source
        self._provider = provider
        self._model = model
        self._temperature = temperature
        self._summary_limit = summary_limit

    async def analyze(self, user_id: str, change_set: ChangeSet) -> Recommendation:
        """Return a recommendation for ``change_set``.

        An empty change set short-circuits to :meth:`Recommendation.noop`.

        Raises:
            AnalysisError: If the forecast lookup or the model call fails.
        """
        if not change_set.summary.has_changes:
            log.debug("analysis_skipped_no_changes", user_id=user_id)
            return Recommendation.noop()

        try:
            forecast = await self._forecast_source.get_forecast(user_id)
        except Exception as exc:
            log.error("forecast_lookup_failed", user_id=user_id, error=str(exc))
            raise AnalysisError(f"forecast lookup failed: {exc}") from exc

        context = build_context(change_set, forecast, summary_limit=self._summary_limit)

        try:
            response = await self._gateway.complete(
                ANALYSIS_SYSTEM_PROMPT,
                [Message(role=Role.USER, content=context)],
                provider=self._provider,
                model=self._model,
                temperature=self._temperature,
            )
        except LLMError as exc:
            log.error(
                "analysis_llm_failed",
                user_id=user_id,
                reason=exc.reason.value,
                error=exc.message,
            )
            raise AnalysisError(f"LLM call failed ({exc.reason.value}): {exc.message}") from exc
        except Exception as exc:
            log.error("analysis_llm_failed", user_id=user_id, error=str(exc))
            raise AnalysisError(f"LLM call failed: {exc}") from exc

        recommendation = parse_recommendation(response.content)
        log.info(
            "analysis_completed",
            user_id=user_id,
            model=response.model,
            **recommendation.to_dict(),
        )
        return recommendation
