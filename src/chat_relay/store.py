"""Append-only message table on disk with an in-process change feed."""
from __future__ import annotations

import json
import logging
import queue
import threading
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Protocol

from .errors import StoreWriteFailed
from .models import Message, utc_now

logger = logging.getLogger(__name__)

_CLOSED = object()


class MessageStoreLike(Protocol):
    """What the relay and the HTTP layer need from a store."""

    def insert(self, owner_id: str, text: str, is_bot_reply: bool) -> Message:
        ...

    def select_ordered(self, owner_id: str) -> List[Message]:
        ...

    def subscribe_inserts(self, owner_id: Optional[str] = None) -> "Subscription":
        ...


# -----------------------------
# Subscription
# -----------------------------
class Subscription:
    """Single-consumer, unbounded FIFO of inserted messages.

    Producers never block. ``get`` returns ``None`` on timeout; iteration
    ends once the subscription is closed.
    """

    def __init__(self, store: "MessageStore", owner_id: Optional[str]) -> None:
        self.owner_id = owner_id
        self._store = store
        self._queue: "queue.SimpleQueue[Any]" = queue.SimpleQueue()
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def _deliver(self, message: Message) -> None:
        if self._closed.is_set():
            return
        if self.owner_id is not None and message.owner_id != self.owner_id:
            return
        self._queue.put(message)

    def get(self, timeout: Optional[float] = None) -> Optional[Message]:
        """Next message, or ``None`` if nothing arrived within ``timeout``.

        Raises ``EOFError`` once the subscription is closed and drained.
        """
        if self._closed.is_set() and self._queue.empty():
            raise EOFError("subscription closed")
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            raise EOFError("subscription closed")
        return item

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._store._unsubscribe(self)
        # Wake a consumer blocked in get().
        self._queue.put(_CLOSED)

    def __iter__(self) -> Iterator[Message]:
        while True:
            try:
                item = self.get()
            except EOFError:
                return
            if item is not None:
                yield item

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


# -----------------------------
# MessageStore
# -----------------------------
class MessageStore:
    """JSONL-backed message table (thread-safe, append-only).

    Layout:
        data_dir/
          messages.jsonl     # one row per message, in commit order

    Ids are consecutive integers starting at 1. ``created_at`` never goes
    backwards, so ``(created_at, id)`` order equals commit order.
    """

    def __init__(self, data_dir: str) -> None:
        self.root = Path(data_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self.path = self.root / "messages.jsonl"
        self._lock = threading.RLock()
        self._subscribers: List[Subscription] = []
        self._last_id = 0
        self._last_ts = None
        for msg in self._read_all():
            if msg.id > self._last_id:
                self._last_id = msg.id
            if self._last_ts is None or msg.created_at > self._last_ts:
                self._last_ts = msg.created_at

    # --------- core API ----------
    def insert(self, owner_id: str, text: str, is_bot_reply: bool) -> Message:
        """Append one row and notify subscribers in commit order."""
        with self._lock:
            created_at = utc_now()
            if self._last_ts is not None and created_at < self._last_ts:
                created_at = self._last_ts
            message = Message(
                id=self._last_id + 1,
                owner_id=owner_id,
                text=text,
                is_bot_reply=is_bot_reply,
                created_at=created_at,
            )
            try:
                self._append_row(message.to_row())
            except (OSError, TypeError, ValueError) as e:
                raise StoreWriteFailed(f"Failed to insert message for {owner_id}: {e}") from e
            self._last_id = message.id
            self._last_ts = created_at
            for sub in list(self._subscribers):
                sub._deliver(message)
            return message

    def select_ordered(self, owner_id: str) -> List[Message]:
        """Return the owner's transcript ordered by ``(created_at, id)``."""
        rows = [m for m in self._read_all() if m.owner_id == owner_id]
        return sorted(rows, key=lambda m: m.sort_key)

    def subscribe_inserts(self, owner_id: Optional[str] = None) -> Subscription:
        """Open a live insert feed, optionally scoped to one owner."""
        sub = Subscription(self, owner_id)
        with self._lock:
            self._subscribers.append(sub)
        return sub

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    # --------- internals ----------
    def _unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            try:
                self._subscribers.remove(sub)
            except ValueError:
                pass

    def _append_row(self, row: Dict[str, Any]) -> None:
        line = json.dumps(row, ensure_ascii=False)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")

    def _read_all(self) -> List[Message]:
        if not self.path.exists():
            return []
        out: List[Message] = []
        with self._lock:
            with self.path.open("r", encoding="utf-8") as f:
                for line_no, line in enumerate(f, 1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        out.append(Message.from_row(json.loads(line)))
                    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                        logger.warning("Skipping corrupt line %d in %s: %s", line_no, self.path, e)
        return out
