import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

import httpx
from pydantic import BaseModel, Field

from src.core.engagement.models import EngagementEventRecord
from src.core.errors import DownstreamDispatchError

logger = logging.getLogger(__name__)

EventListener = Callable[[EngagementEventRecord], None]


class DispatchResult(BaseModel):
    published: int = Field(default=0, ge=0)
    delivered: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)


def build_event(
    *,
    event_type: str,
    entity_id: str,
    occurred_at: datetime,
    payload: Optional[dict[str, Any]] = None,
    dedupe_key: Optional[str] = None,
) -> EngagementEventRecord:
    return EngagementEventRecord(
        event_id=f"evt_{uuid.uuid4().hex[:12]}",
        event_type=event_type,
        entity_id=entity_id,
        payload=payload or {},
        occurred_at=occurred_at,
        dedupe_key=dedupe_key,
    )


class EventDispatcher:
    """Fire-and-forget fan-out to notification listeners.

    Events are published only after the transaction that recorded them has
    committed. A listener failure is logged and counted; it never propagates
    and never undoes the transition that produced the event.
    """

    def __init__(self, listeners: Iterable[EventListener] = ()) -> None:
        self._listeners: list[EventListener] = list(listeners)

    def subscribe(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    @property
    def listeners(self) -> tuple[EventListener, ...]:
        return tuple(self._listeners)

    def close(self) -> None:
        """Release listener resources such as pooled HTTP connections."""
        for listener in self._listeners:
            close = getattr(listener, "close", None)
            if callable(close):
                close()

    def publish(self, events: Iterable[EngagementEventRecord]) -> DispatchResult:
        result = DispatchResult()
        for event in events:
            result.published += 1
            for listener in self._listeners:
                try:
                    listener(event)
                except Exception:
                    result.failed += 1
                    logger.exception(
                        "event.dispatch_failed",
                        extra={
                            "extra_fields": {
                                "event_id": event.event_id,
                                "event_type": event.event_type,
                                "entity_id": event.entity_id,
                            }
                        },
                    )
                else:
                    result.delivered += 1
        return result


class RecordingListener:
    """Keeps every delivered event in memory; used for local runs and tests."""

    def __init__(self) -> None:
        self.events: list[EngagementEventRecord] = []

    def __call__(self, event: EngagementEventRecord) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[EngagementEventRecord]:
        return [event for event in self.events if event.event_type == event_type]


class WebhookEventListener:
    """Posts each event as JSON to the notification service endpoint."""

    def __init__(self, *, url: str, timeout_seconds: float = 5.0, client=None) -> None:
        if not url:
            raise ValueError("EVENT_WEBHOOK_URL_REQUIRED")
        self._url = url
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout_seconds))

    def __call__(self, event: EngagementEventRecord) -> None:
        try:
            response = self._client.post(self._url, json=event.model_dump(mode="json"))
        except httpx.HTTPError as exc:
            raise DownstreamDispatchError(f"EVENT_WEBHOOK_UNREACHABLE: {exc}") from exc
        if response.status_code >= 400:
            raise DownstreamDispatchError(
                f"EVENT_WEBHOOK_REJECTED: {event.event_type} status={response.status_code}"
            )

    @property
    def is_closed(self) -> bool:
        return self._client.is_closed

    def close(self) -> None:
        self._client.close()
