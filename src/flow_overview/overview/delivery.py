"""Real-time delivery of overview events to connected clients.

Events are pushed on the per-user topic ``user:{user_id}``.  Delivery is
fire-and-forget: ``push`` never raises and returns whether the event was
handed off.
"""

from __future__ import annotations

from typing import Any, Protocol

import httpx

from flow_overview.logging import get_logger

log = get_logger("flow_overview.overview.delivery")

EVENT_FORECAST_UPDATED = "forecast:updated"
EVENT_NOTIFICATION_NEW = "notification:new"


class DeliverySink(Protocol):
    """Pushes an event to a user's live sessions."""

    async def push(self, user_id: str, event: str, payload: dict[str, Any]) -> bool: ...


def user_topic(user_id: str) -> str:
    return f"user:{user_id}"


class HttpDeliverySink:
    """POSTs events to a real-time broadcast gateway."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        *,
        timeout: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout

    async def push(self, user_id: str, event: str, payload: dict[str, Any]) -> bool:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["X-Api-Key"] = self._api_key
        body = {"topic": user_topic(user_id), "event": event, "payload": payload}

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(
                    f"{self._base_url}/api/v1/broadcast",
                    json=body,
                    headers=headers,
                )
        except httpx.RequestError as exc:
            log.warning("delivery_push_failed", event=event, user_id=user_id, error=str(exc))
            return False

        if 200 <= resp.status_code < 300:
            log.debug("delivery_pushed", event=event, user_id=user_id)
            return True
        log.warning(
            "delivery_push_rejected",
            event=event,
            user_id=user_id,
            status=resp.status_code,
            body=resp.text[:200],
        )
        return False


class LoggingDeliverySink:
    """Sink for deployments without a broadcast gateway; events are only logged."""

    async def push(self, user_id: str, event: str, payload: dict[str, Any]) -> bool:
        log.info("delivery_event", event=event, user_id=user_id, payload_keys=sorted(payload))
        return True
