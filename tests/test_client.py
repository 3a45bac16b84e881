from __future__ import annotations

import json

import httpx
import pytest

from chat_relay.client import ChatApiClient
from chat_relay.errors import SyncLoadFailed, Unauthorized

ROW = {"id": 4, "owner_id": "alice", "text": "Hi there!", "is_bot_reply": True, "created_at": "2024-05-01T12:00:00+00:00"}


def _api(handler) -> ChatApiClient:
    http = httpx.Client(base_url="http://relay.test", transport=httpx.MockTransport(handler))
    return ChatApiClient(http=http, token="tok-alice")


def test_feed_parses_events_and_skips_noise():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/messages/feed"
        assert request.headers["authorization"] == "Bearer tok-alice"
        body = (
            ": subscribed\n\n"
            ": keep-alive\n\n"
            f"data: {json.dumps(ROW)}\n\n"
            "data: {broken\n\n"
        )
        return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

    feed = _api(handler).open_feed()
    messages = list(feed)
    assert len(messages) == 1
    assert messages[0].id == 4 and messages[0].is_bot_reply
    feed.close()
    assert feed.closed


@pytest.mark.parametrize("status,exc", [(401, Unauthorized), (503, SyncLoadFailed)])
def test_feed_error_statuses(status, exc):
    api = _api(lambda request: httpx.Response(status, json={"error": "nope"}))
    with pytest.raises(exc):
        api.open_feed()


def test_history_rejects_malformed_body():
    api = _api(lambda request: httpx.Response(200, json={"messages": [{"id": "x"}]}))
    with pytest.raises(SyncLoadFailed):
        api.fetch_history()


def test_requires_base_url_or_client():
    with pytest.raises(ValueError):
        ChatApiClient()
