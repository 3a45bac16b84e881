"""Feed teardown over a real socket (TestClient buffers streamed bodies)."""
from __future__ import annotations

import socket
import threading
import time
from pathlib import Path

import pytest
import uvicorn

from chat_relay.auth import SessionAuthenticator
from chat_relay.client import ChatApiClient
from chat_relay.server import create_app
from chat_relay.store import MessageStore
from chat_relay.sync import SyncEngine

from conftest import StubProvider


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def _eventually(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


@pytest.fixture
def base_url(tmp_path: Path, provider: StubProvider, store: MessageStore):
    cfg = tmp_path / "relay.yaml"
    cfg.write_text(
        "server:\n  feed_heartbeat_seconds: 30\n  feed_poll_seconds: 0.2\nlogging:\n  level: WARNING\n",
        encoding="utf-8",
    )
    app = create_app(
        config_path=str(cfg),
        provider=provider,
        store=store,
        authenticator=SessionAuthenticator({"tok-alice": "alice"}),
    )
    port = _free_port()
    server = uvicorn.Server(uvicorn.Config(app, host="127.0.0.1", port=port, log_level="warning", lifespan="off"))
    thread = threading.Thread(target=server.run, daemon=True)
    thread.start()
    if not _eventually(lambda: server.started, timeout=10.0):
        pytest.fail("uvicorn did not start")
    yield f"http://127.0.0.1:{port}"
    server.should_exit = True
    thread.join(10)


def test_server_releases_feed_after_client_disconnects(base_url: str, store: MessageStore):
    api = ChatApiClient(base_url, token="tok-alice")
    try:
        for _ in range(5):
            feed = api.open_feed()
            assert store.subscriber_count() >= 1
            feed.close()
        # Well inside the 30 s heartbeat, so only disconnect detection can release them.
        assert _eventually(lambda: store.subscriber_count() == 0)
    finally:
        api.close()


def test_engine_close_is_prompt_over_http(base_url: str, store: MessageStore):
    api = ChatApiClient(base_url, token="tok-alice")
    engine = SyncEngine(api, "alice", reply_delay=0)
    try:
        engine.start()
        engine.send("Hello")
        assert engine.wait_until(lambda e: all(x.confirmed for x in e.transcript.entries) and len(e.transcript) == 2)

        started = time.monotonic()
        engine.close()
        assert time.monotonic() - started < 2.0
        assert not engine._consumer.is_alive()
        assert _eventually(lambda: store.subscriber_count() == 0)
    finally:
        engine.close()
        api.close()
