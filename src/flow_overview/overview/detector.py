"""Change detection for the overview worker.

Queries every observed entity kind for records updated after the
watermark.  The per-kind queries are independent reads and run
concurrently; the detector has no side effects.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Any

from flow_overview.constants import MAX_CHANGES_PER_KIND, NEW_RECORD_WINDOW_SECONDS
from flow_overview.logging import get_logger
from flow_overview.overview.exceptions import DetectionError
from flow_overview.overview.models import (
    ChangeRecord,
    ChangeSet,
    ChangeType,
    EntityKind,
)
from flow_overview.overview.sources import SUMMARY_FIELDS, EntityStore
from flow_overview.utils import ensure_utc, utcnow

log = get_logger("flow_overview.overview.detector")

NEW_RECORD_WINDOW = timedelta(seconds=NEW_RECORD_WINDOW_SECONDS)


def classify_change(inserted_at: datetime, now: datetime) -> ChangeType:
    """``new`` if the record was created less than five minutes before ``now``.

    A record created exactly five minutes ago is ``updated``.
    """
    if ensure_utc(now) - ensure_utc(inserted_at) < NEW_RECORD_WINDOW:
        return ChangeType.NEW
    return ChangeType.UPDATED


def to_change_record(kind: EntityKind, row: dict[str, Any], now: datetime) -> ChangeRecord:
    """Project a store row onto a ``ChangeRecord``."""
    updated_at = ensure_utc(row["updated_at"])
    inserted_at = ensure_utc(row.get("inserted_at") or updated_at)
    return ChangeRecord(
        kind=kind,
        id=str(row["id"]),
        fields={name: row.get(name) for name in SUMMARY_FIELDS[kind]},
        updated_at=updated_at,
        inserted_at=inserted_at,
        change_type=classify_change(inserted_at, now),
    )


class ChangeDetector:
    """Finds records changed since a watermark across the observed kinds."""

    def __init__(
        self,
        stores: dict[EntityKind, EntityStore],
        *,
        limit: int = MAX_CHANGES_PER_KIND,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._stores = stores
        self._limit = limit
        self._clock = clock

    async def detect(
        self,
        user_id: str,
        watermark: datetime,
        observed_kinds: Iterable[EntityKind],
    ) -> ChangeSet:
        """Return the change set for ``user_id`` since ``watermark``.

        Raises:
            DetectionError: If any store query fails.
        """
        kinds = [EntityKind(k) for k in observed_kinds]
        now = self._clock()

        results = await asyncio.gather(
            *(self._detect_kind(user_id, kind, watermark) for kind in kinds),
            return_exceptions=True,
        )

        records: dict[EntityKind, list[ChangeRecord]] = {}
        for kind, result in zip(kinds, results, strict=True):
            if isinstance(result, BaseException):
                log.error(
                    "change_detection_failed",
                    user_id=user_id,
                    kind=kind.value,
                    error=str(result),
                )
                raise DetectionError(f"failed to query {kind.value}: {result}") from result
            records[kind] = [to_change_record(kind, row, now) for row in result[: self._limit]]

        change_set = ChangeSet.build(records)
        log.info(
            "changes_detected",
            user_id=user_id,
            watermark=watermark.isoformat(),
            **change_set.summary.by_kind,
        )
        capped = [k.value for k, rows in records.items() if len(rows) >= self._limit]
        if capped:
            # Rows past the cap are not revisited once the watermark advances.
            log.warning(
                "change_detection_capped",
                user_id=user_id,
                kinds=capped,
                limit=self._limit,
            )
        return change_set

    async def _detect_kind(
        self,
        user_id: str,
        kind: EntityKind,
        watermark: datetime,
    ) -> list[dict[str, Any]]:
        store = self._stores.get(kind)
        if store is None:
            raise DetectionError(f"no entity store configured for {kind.value}")
        return await store.list_changed_since(user_id, watermark, limit=self._limit)
