import json
from datetime import datetime, timezone

import httpx
import pytest

from src.core.engagement import EventDispatcher, RecordingListener, WebhookEventListener, build_event
from src.core.errors import DownstreamDispatchError

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _event(event_type: str = "invite.sent"):
    return build_event(
        event_type=event_type,
        entity_id="inv_001",
        occurred_at=NOW,
        payload={"brief_id": "br_001"},
    )


def test_build_event_assigns_identifier_and_defaults() -> None:
    event = build_event(event_type="brief.submitted", entity_id="br_001", occurred_at=NOW)
    assert event.event_id.startswith("evt_")
    assert event.payload == {}
    assert event.dedupe_key is None


def test_dispatcher_counts_deliveries_and_isolates_failures() -> None:
    recorder = RecordingListener()

    def broken(_event) -> None:
        raise RuntimeError("listener down")

    dispatcher = EventDispatcher([broken, recorder])
    result = dispatcher.publish([_event(), _event("invite.accepted")])

    assert result.published == 2
    assert result.delivered == 2
    assert result.failed == 2
    assert [event.event_type for event in recorder.events] == ["invite.sent", "invite.accepted"]


def test_subscribed_listener_receives_later_events() -> None:
    dispatcher = EventDispatcher()
    recorder = RecordingListener()
    dispatcher.subscribe(recorder)

    dispatcher.publish([_event()])

    assert len(recorder.of_type("invite.sent")) == 1


def test_webhook_listener_posts_event_json() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(202)

    listener = WebhookEventListener(
        url="https://notify.local/events",
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )
    event = _event()
    listener(event)
    listener.close()

    assert seen[0]["event_id"] == event.event_id
    assert seen[0]["event_type"] == "invite.sent"
    assert seen[0]["payload"] == {"brief_id": "br_001"}


def test_webhook_listener_raises_on_rejection() -> None:
    listener = WebhookEventListener(
        url="https://notify.local/events",
        client=httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500))),
    )
    with pytest.raises(DownstreamDispatchError, match="EVENT_WEBHOOK_REJECTED"):
        listener(_event())


def test_webhook_listener_wraps_transport_errors() -> None:
    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    listener = WebhookEventListener(
        url="https://notify.local/events",
        client=httpx.Client(transport=httpx.MockTransport(unreachable)),
    )
    with pytest.raises(DownstreamDispatchError, match="EVENT_WEBHOOK_UNREACHABLE"):
        listener(_event())


def test_webhook_listener_requires_url() -> None:
    with pytest.raises(ValueError, match="EVENT_WEBHOOK_URL_REQUIRED"):
        WebhookEventListener(url="")


def test_dispatcher_close_releases_webhook_clients() -> None:
    webhook = WebhookEventListener(
        url="https://notify.local/events",
        client=httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(204))),
    )
    recorder = RecordingListener()
    dispatcher = EventDispatcher([recorder, webhook])

    dispatcher.close()

    assert webhook.is_closed is True
    assert dispatcher.listeners == (recorder, webhook)
