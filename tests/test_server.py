from __future__ import annotations

import asyncio
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

from chat_relay.auth import SessionAuthenticator
from chat_relay.client import ChatApiClient
from chat_relay.errors import ProviderError, SendFailed, SyncLoadFailed, Unauthorized
from chat_relay.server import create_app, feed_events
from chat_relay.store import MessageStore

from conftest import StubProvider

AUTH = {"Authorization": "Bearer tok-alice"}


def _app(tmp_path: Path, provider: StubProvider, store: MessageStore):
    auth = SessionAuthenticator({"tok-alice": "alice", "tok-bob": "bob"})
    return create_app(
        config_path=str(tmp_path / "missing.yaml"),
        provider=provider,
        store=store,
        authenticator=auth,
    )


@pytest.fixture
def client(tmp_path: Path, provider: StubProvider, store: MessageStore) -> TestClient:
    return TestClient(_app(tmp_path, provider, store))


def test_chat_roundtrip_persists_both_rows(client: TestClient, store: MessageStore):
    r = client.post("/chat", json={"message": "Hello"}, headers=AUTH)
    assert r.status_code == 200
    assert r.json() == {"reply": "Hi there!"}
    rows = store.select_ordered("alice")
    assert [(m.text, m.is_bot_reply) for m in rows] == [("Hello", False), ("Hi there!", True)]


def test_chat_without_session_is_401_and_writes_nothing(client: TestClient, store: MessageStore):
    r = client.post("/chat", json={"message": "Hello"})
    assert r.status_code == 401
    assert r.json() == {"error": "Unauthorized"}
    r = client.post("/chat", json={"message": "Hello"}, headers={"Authorization": "Bearer wrong"})
    assert r.status_code == 401
    assert store.select_ordered("alice") == []


def test_session_cookie_is_accepted(client: TestClient):
    client.cookies.set("session", "tok-bob")
    r = client.post("/chat", json={"message": "Hello"})
    assert r.status_code == 200


def test_provider_failure_is_500_with_details(tmp_path: Path, store: MessageStore):
    client = TestClient(_app(tmp_path, StubProvider(fail=True), store))
    r = client.post("/chat", json={"message": "Hello"}, headers=AUTH)
    assert r.status_code == 500
    body = r.json()
    assert body["error"].endswith("failed")
    assert "boom" in body["details"]
    rows = store.select_ordered("alice")
    assert [m.is_bot_reply for m in rows] == [False]


def test_empty_message_is_rejected(client: TestClient, store: MessageStore):
    r = client.post("/chat", json={"message": ""}, headers=AUTH)
    assert r.status_code == 422
    assert store.select_ordered("alice") == []


def test_history_is_owner_scoped_and_ordered(client: TestClient, store: MessageStore):
    store.insert("alice", "a1", False)
    store.insert("bob", "b1", False)
    store.insert("alice", "a2", True)
    r = client.get("/messages", headers=AUTH)
    assert r.status_code == 200
    assert [m["text"] for m in r.json()["messages"]] == ["a1", "a2"]
    assert client.get("/messages").status_code == 401


def test_feed_requires_session(client: TestClient, store: MessageStore):
    r = client.get("/messages/feed")
    assert r.status_code == 401
    assert store.subscriber_count() == 0


def test_feed_events_render_and_release(store: MessageStore):
    sub = store.subscribe_inserts("alice")

    async def scenario():
        gen = feed_events(sub, heartbeat=0.01, poll_interval=0.01)
        assert await gen.__anext__() == ": subscribed\n\n"
        assert await gen.__anext__() == ": keep-alive\n\n"
        store.insert("alice", "Hello", False)
        event = await gen.__anext__()
        assert event.startswith("data: ") and '"text": "Hello"' in event
        await gen.aclose()

    asyncio.run(scenario())
    assert sub.closed
    assert store.subscriber_count() == 0


def test_feed_events_stop_once_client_is_gone(store: MessageStore):
    sub = store.subscribe_inserts("alice")
    checks = []

    async def is_disconnected() -> bool:
        checks.append(1)
        return len(checks) > 1

    async def scenario():
        events = []
        async for event in feed_events(sub, heartbeat=0.05, is_disconnected=is_disconnected, poll_interval=0.05):
            events.append(event)
        return events

    events = asyncio.run(scenario())
    assert events == [": subscribed\n\n", ": keep-alive\n\n"]
    assert sub.closed
    assert store.subscriber_count() == 0


def test_anonymous_chat_is_401_before_body_validation(client: TestClient, store: MessageStore):
    assert client.post("/chat", json={"message": ""}).status_code == 401
    r = client.post("/chat", json={})
    assert r.status_code == 401
    assert r.json() == {"error": "Unauthorized"}
    assert store.select_ordered("alice") == []


def test_health(client: TestClient):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True
    assert r.json()["provider"] == "stub"


# -----------------------------
# HTTP client against the app
# -----------------------------
def test_api_client_history_and_send(client: TestClient, store: MessageStore):
    api = ChatApiClient(http=client, token="tok-alice")
    assert api.fetch_history() == []
    assert api.post_chat("Hello") == "Hi there!"
    history = api.fetch_history()
    assert [m.text for m in history] == ["Hello", "Hi there!"]
    assert history[1].is_bot_reply


def test_api_client_maps_errors(tmp_path: Path, store: MessageStore):
    client = TestClient(_app(tmp_path, StubProvider(fail=True), store))
    api = ChatApiClient(http=client, token="tok-alice")
    with pytest.raises(ProviderError) as ei:
        api.post_chat("Hello")
    assert "boom" in ei.value.details

    anon = ChatApiClient(http=TestClient(_app(tmp_path, StubProvider(), store)))
    with pytest.raises(Unauthorized):
        anon.post_chat("Hello")
    with pytest.raises(SyncLoadFailed):
        anon.fetch_history()


def test_api_client_transport_failure_is_send_failed():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    http = httpx.Client(base_url="http://relay.test", transport=httpx.MockTransport(handler))
    api = ChatApiClient(http=http, token="t")
    with pytest.raises(SendFailed):
        api.post_chat("Hello")
    with pytest.raises(SyncLoadFailed):
        api.fetch_history()
