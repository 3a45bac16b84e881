"""Terminal chat client that mirrors a transcript through the sync engine."""

from __future__ import annotations

import argparse
import os
import sys
import threading
from typing import List

SRC_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from chat_relay.client import ChatApiClient  # noqa: E402
from chat_relay.config import load_config  # noqa: E402
from chat_relay.models import TranscriptEntry  # noqa: E402
from chat_relay.sync import DEFAULT_ERROR_TEXT, DEFAULT_GREETING, SUGGESTIONS, SyncEngine  # noqa: E402


class Printer:
    """Prints entries as they are appended (rendering is append-only)."""

    def __init__(self) -> None:
        self._shown = 0
        self._lock = threading.Lock()

    def __call__(self, entries: List[TranscriptEntry]) -> None:
        with self._lock:
            for entry in entries[self._shown:]:
                who = "Bot" if entry.is_bot_reply else "You"
                print(f"[{entry.created_at.astimezone():%H:%M}] {who}: {entry.text}")
            self._shown = max(self._shown, len(entries))


def main() -> None:
    parser = argparse.ArgumentParser(description="Chat with the relay server from a terminal.")
    parser.add_argument("--config", type=str, default=None, help="Path to a YAML config file")
    parser.add_argument("--url", type=str, default=None, help="Server base URL")
    parser.add_argument("--token", type=str, default=os.environ.get("CHAT_RELAY_TOKEN"), help="Session token")
    parser.add_argument("--owner", type=str, required=True, help="Owner id bound to the session token")
    args = parser.parse_args()

    cfg = load_config(args.config)
    client_cfg = cfg.get("client", {})
    api = ChatApiClient(args.url or client_cfg.get("base_url"), token=args.token)
    engine = SyncEngine(
        api,
        args.owner,
        reply_delay=float(client_cfg.get("reply_delay_seconds", 1.0)),
        dedup_tolerance=float(client_cfg.get("dedup_tolerance_seconds", 30.0)),
        greeting=client_cfg.get("greeting") or DEFAULT_GREETING,
        error_text=client_cfg.get("error_text") or DEFAULT_ERROR_TEXT,
    )
    engine.on_change(Printer())

    try:
        with engine:
            if engine.show_suggestions:
                print("How can I help? Try: " + ", ".join(SUGGESTIONS))
            while True:
                try:
                    line = input()
                except (EOFError, KeyboardInterrupt):
                    break
                if line.strip() in {"/quit", "/exit"}:
                    break
                engine.set_input(line)
                engine.submit()
    finally:
        api.close()


if __name__ == "__main__":
    main()
