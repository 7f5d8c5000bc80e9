"""Data models for the overview pipeline.

``WorkerState`` is the only persisted model owned here; everything else is
produced fresh for a single cycle.  All models are plain dataclasses with
``to_dict`` for logging and delivery payloads.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from flow_overview.constants import DEFAULT_COOLDOWN_SECONDS, MIN_COOLDOWN_SECONDS

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class EntityKind(StrEnum):
    """Entity kinds the change detector can observe."""

    CONTACTS = "contacts"
    DEALS = "deals"
    EVENTS = "events"


ALL_KINDS: tuple[EntityKind, ...] = (EntityKind.CONTACTS, EntityKind.DEALS, EntityKind.EVENTS)


class ChangeType(StrEnum):
    """Whether a changed record was just created or modified."""

    NEW = "new"
    UPDATED = "updated"


class CycleOutcome(StrEnum):
    """Terminal state of one scheduler cycle."""

    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class SkipReason(StrEnum):
    """Why a cycle ended without running the pipeline."""

    CREATED = "created"
    DISABLED = "disabled"
    COOLDOWN = "cooldown"


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def validate_cooldown(value: Any) -> int:
    """Return ``value`` as an int, rejecting anything below the minimum."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"cooldown_period_seconds must be an integer, got {value!r}")
    if value < MIN_COOLDOWN_SECONDS:
        raise ValueError(
            f"cooldown_period_seconds must be at least {MIN_COOLDOWN_SECONDS}, got {value}"
        )
    return value


def validate_observed_kinds(values: Any) -> list[EntityKind]:
    """Normalise an iterable of kind names, rejecting unknown ones.

    Order follows ``ALL_KINDS`` and duplicates are dropped.
    """
    if isinstance(values, str) or not hasattr(values, "__iter__"):
        raise ValueError(f"observed_kinds must be a list, got {values!r}")
    requested: set[EntityKind] = set()
    for value in values:
        try:
            requested.add(EntityKind(value))
        except ValueError:
            raise ValueError(f"unknown entity kind: {value!r}") from None
    return [kind for kind in ALL_KINDS if kind in requested]


# ---------------------------------------------------------------------------
# Worker state (persisted)
# ---------------------------------------------------------------------------


@dataclass
class WorkerState:
    """Per-user scheduling state; ``last_run_at`` is the detection watermark."""

    user_id: str
    last_run_at: datetime
    cooldown_period_seconds: int = DEFAULT_COOLDOWN_SECONDS
    observed_kinds: list[EntityKind] = field(default_factory=lambda: list(ALL_KINDS))
    enabled: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "last_run_at": self.last_run_at.isoformat(),
            "cooldown_period_seconds": self.cooldown_period_seconds,
            "observed_kinds": [k.value for k in self.observed_kinds],
            "enabled": self.enabled,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkerState:
        def _dt(value: Any) -> datetime | None:
            if value is None or isinstance(value, datetime):
                return value
            return datetime.fromisoformat(value)

        last_run_at = _dt(data.get("last_run_at"))
        if last_run_at is None:
            raise ValueError("last_run_at is required")
        return cls(
            user_id=str(data["user_id"]),
            last_run_at=last_run_at,
            cooldown_period_seconds=int(
                data.get("cooldown_period_seconds", DEFAULT_COOLDOWN_SECONDS)
            ),
            observed_kinds=validate_observed_kinds(
                data.get("observed_kinds", [k.value for k in ALL_KINDS])
            ),
            enabled=bool(data.get("enabled", True)),
            metadata=dict(data.get("metadata") or {}),
            created_at=_dt(data.get("created_at")),
            updated_at=_dt(data.get("updated_at")),
        )


# ---------------------------------------------------------------------------
# Change detection (ephemeral)
# ---------------------------------------------------------------------------


@dataclass
class ChangeRecord:
    """A compact projection of one modified entity."""

    kind: EntityKind
    id: str
    fields: dict[str, Any]
    updated_at: datetime
    inserted_at: datetime
    change_type: ChangeType

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "id": self.id,
            "fields": self.fields,
            "updated_at": self.updated_at.isoformat(),
            "change_type": self.change_type.value,
        }


@dataclass
class ChangeSummary:
    """Counts per kind for a change set."""

    total_changes: int = 0
    by_kind: dict[str, int] = field(default_factory=dict)

    @property
    def has_changes(self) -> bool:
        return self.total_changes > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_changes": self.total_changes,
            "by_kind": dict(self.by_kind),
            "has_changes": self.has_changes,
        }


@dataclass
class ChangeSet:
    """Everything that changed since the watermark, grouped by kind."""

    contacts: list[ChangeRecord] = field(default_factory=list)
    deals: list[ChangeRecord] = field(default_factory=list)
    events: list[ChangeRecord] = field(default_factory=list)
    summary: ChangeSummary = field(default_factory=ChangeSummary)

    @classmethod
    def build(cls, records: dict[EntityKind, list[ChangeRecord]]) -> ChangeSet:
        """Assemble a change set and compute its summary."""
        contacts = records.get(EntityKind.CONTACTS, [])
        deals = records.get(EntityKind.DEALS, [])
        events = records.get(EntityKind.EVENTS, [])
        by_kind = {
            EntityKind.CONTACTS.value: len(contacts),
            EntityKind.DEALS.value: len(deals),
            EntityKind.EVENTS.value: len(events),
        }
        return cls(
            contacts=contacts,
            deals=deals,
            events=events,
            summary=ChangeSummary(total_changes=sum(by_kind.values()), by_kind=by_kind),
        )

    def for_kind(self, kind: EntityKind) -> list[ChangeRecord]:
        return {
            EntityKind.CONTACTS: self.contacts,
            EntityKind.DEALS: self.deals,
            EntityKind.EVENTS: self.events,
        }[kind]


@dataclass
class ForecastSnapshot:
    """Aggregate figures over the user's open deals."""

    total_pipeline: float = 0.0
    weighted_forecast: float = 0.0
    deals_closing_this_month: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_pipeline": self.total_pipeline,
            "weighted_forecast": self.weighted_forecast,
            "deals_closing_this_month": self.deals_closing_this_month,
        }


# ---------------------------------------------------------------------------
# Recommendation (ephemeral, decoded from model output)
# ---------------------------------------------------------------------------


@dataclass
class AddActionItem:
    """Create an action item."""

    icon: str
    title: str
    category: str


@dataclass
class RemoveActionItems:
    """Delete open action items whose title contains ``pattern``."""

    pattern: str


ActionItemOp = AddActionItem | RemoveActionItems


@dataclass
class NotificationDraft:
    """A notification to persist and deliver."""

    kind: str
    priority: str
    title: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {
            "kind": self.kind,
            "priority": self.priority,
            "title": self.title,
            "message": self.message,
        }


@dataclass
class Insight:
    """A free-text finding about one entity."""

    entity_kind: str
    entity_id: str
    text: str


@dataclass
class Recommendation:
    """The bounded instruction set the executor applies."""

    forecast_should_update: bool = False
    forecast_reason: str = ""
    action_item_ops: list[ActionItemOp] = field(default_factory=list)
    notifications: list[NotificationDraft] = field(default_factory=list)
    insights: list[Insight] = field(default_factory=list)

    @classmethod
    def noop(cls, reason: str = "No changes detected") -> Recommendation:
        return cls(forecast_should_update=False, forecast_reason=reason)

    @property
    def additions(self) -> list[AddActionItem]:
        return [op for op in self.action_item_ops if isinstance(op, AddActionItem)]

    @property
    def removals(self) -> list[RemoveActionItems]:
        return [op for op in self.action_item_ops if isinstance(op, RemoveActionItems)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "forecast_should_update": self.forecast_should_update,
            "forecast_reason": self.forecast_reason,
            "additions": len(self.additions),
            "removals": len(self.removals),
            "notifications": len(self.notifications),
            "insights": len(self.insights),
        }


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class ExecutionResult:
    """Best-effort counters from the action executor."""

    forecast_updated: bool = False
    items_added: int = 0
    items_removed: int = 0
    notifications_sent: int = 0
    failed_operations: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "forecast_updated": self.forecast_updated,
            "items_added": self.items_added,
            "items_removed": self.items_removed,
            "notifications_sent": self.notifications_sent,
            "failed_operations": self.failed_operations,
        }


@dataclass
class CycleResult:
    """What one ``run_cycle`` call did."""

    user_id: str
    outcome: CycleOutcome
    skip_reason: SkipReason | None = None
    change_summary: ChangeSummary | None = None
    execution: ExecutionResult | None = None
    next_run_in_seconds: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "outcome": self.outcome.value,
            "skip_reason": self.skip_reason.value if self.skip_reason else None,
            "change_summary": self.change_summary.to_dict() if self.change_summary else None,
            "execution": self.execution.to_dict() if self.execution else None,
            "next_run_in_seconds": self.next_run_in_seconds,
        }
