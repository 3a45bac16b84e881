"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import sys
from pathlib import Path
from typing import List

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from chat_relay.errors import ProviderError, SyncLoadFailed  # noqa: E402
from chat_relay.models import Message  # noqa: E402
from chat_relay.relay import RelayHandler  # noqa: E402
from chat_relay.store import MessageStore  # noqa: E402


class StubProvider:
    """Provider double that replies with a fixed text or fails."""

    name = "stub"

    def __init__(self, reply: str = "Hi there!", fail: bool = False):
        self.reply = reply
        self.fail = fail
        self.prompts: List[str] = []

    def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.fail:
            raise ProviderError("stub API failed", details='{"error": "boom"}', status=500)
        return self.reply


class InProcessTransport:
    """Sync transport wired straight to a store and relay, no HTTP."""

    def __init__(self, store: MessageStore, relay: RelayHandler, owner_id: str, fail_history: bool = False):
        self.store = store
        self.relay = relay
        self.owner_id = owner_id
        self.fail_history = fail_history
        self.sent: List[str] = []

    def fetch_history(self) -> List[Message]:
        if self.fail_history:
            raise SyncLoadFailed("history unavailable")
        return self.store.select_ordered(self.owner_id)

    def post_chat(self, text: str) -> str:
        self.sent.append(text)
        return self.relay.handle(self.owner_id, text).reply

    def open_feed(self):
        return self.store.subscribe_inserts(self.owner_id)


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="function")
def store(tmp_path: Path) -> MessageStore:
    return MessageStore(str(tmp_path / "data"))


@pytest.fixture(scope="function")
def provider() -> StubProvider:
    return StubProvider()


@pytest.fixture(scope="function")
def relay(store: MessageStore, provider: StubProvider) -> RelayHandler:
    return RelayHandler(store, provider)


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    for var in ["CHAT_RELAY_CONFIG", "CLAUDE_API_KEY"]:
        monkeypatch.delenv(var, raising=False)
    yield

