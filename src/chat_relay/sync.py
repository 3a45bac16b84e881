"""Client-side transcript synchronisation.

A transcript is fed by three sources:

1. optimistic entries added locally on send,
2. the reply returned by ``POST /chat``,
3. insert events from the change feed (including our own inserts).

The same logical message can arrive through 2 and 3, in either order, and
an optimistic entry is later echoed back by 3. :class:`Transcript` merges
them so each logical message is displayed once, using
:func:`~chat_relay.models.logically_equal` where ids are not available.

Rendering is append-only: confirming an entry updates it in place and never
moves it.
"""
from __future__ import annotations

import dataclasses
import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Callable, Iterable, Iterator, List, Optional, Protocol

from .errors import ChatRelayError
from .models import Message, TranscriptEntry, logically_equal, utc_now

logger = logging.getLogger(__name__)

DEFAULT_GREETING = "👋 Hi! I'm your AI assistant. How can I help you today?"
DEFAULT_ERROR_TEXT = "❌ Error: Could not get a reply from the assistant."
SUGGESTIONS = ("Write an email", "Build a website", "Research a topic", "Create an image")

Listener = Callable[[List[TranscriptEntry]], None]


class Feed(Protocol):
    def __iter__(self) -> Iterator[Message]:
        ...

    def close(self) -> None:
        ...


class SyncTransport(Protocol):
    def fetch_history(self) -> List[Message]:
        ...

    def post_chat(self, text: str) -> str:
        ...

    def open_feed(self) -> Feed:
        ...


# -----------------------------
# Transcript
# -----------------------------
class Transcript:
    """Ordered, duplicate-free list of entries. Not thread-safe on its own."""

    def __init__(self, tolerance: timedelta = timedelta(seconds=30)) -> None:
        self.tolerance = tolerance
        self.entries: List[TranscriptEntry] = []

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[TranscriptEntry]:
        return iter(self.entries)

    def load(self, messages: Iterable[Message]) -> None:
        """Replace the content with confirmed history in ``(created_at, id)`` order."""
        self.entries = []
        for m in sorted(messages, key=lambda m: m.sort_key):
            entry = TranscriptEntry.from_message(m)
            # Nothing is in flight at load time.
            entry.reconciled = True
            self.entries.append(entry)

    def has_id(self, message_id: int) -> bool:
        return any(e.confirmed and e.key == message_id for e in self.entries)

    def apply_confirmed(self, message: Message) -> Optional[TranscriptEntry]:
        """Merge a store-confirmed message (feed event).

        Returns the entry that now represents it, or ``None`` if the id was
        already present.
        """
        if self.has_id(message.id):
            return None
        for entry in self.entries:
            if entry.confirmed or entry.local_only:
                continue
            if logically_equal(entry, message, self.tolerance):
                entry.key = message.id
                entry.created_at = message.created_at
                entry.confirmed = True
                entry.reconciled = True
                return entry
        entry = TranscriptEntry.from_message(message)
        self.entries.append(entry)
        return entry

    def add_optimistic(
        self,
        owner_id: str,
        text: str,
        is_bot_reply: bool = False,
        at: Optional[datetime] = None,
    ) -> TranscriptEntry:
        entry = TranscriptEntry.optimistic(owner_id, text, is_bot_reply, at)
        self.entries.append(entry)
        return entry

    def apply_reply(self, owner_id: str, text: str, at: Optional[datetime] = None) -> TranscriptEntry:
        """Merge a bot reply received over HTTP.

        If the feed already delivered it, the confirmed entry absorbs the
        reply. Otherwise an optimistic bot entry is appended for the feed
        event to confirm later.
        """
        candidate = TranscriptEntry.optimistic(owner_id, text, True, at)
        for entry in self.entries:
            if not entry.confirmed or entry.reconciled or not entry.is_bot_reply:
                continue
            if logically_equal(entry, candidate, self.tolerance):
                entry.reconciled = True
                return entry
        self.entries.append(candidate)
        return candidate

    def add_local_only(
        self,
        owner_id: str,
        text: str,
        is_bot_reply: bool = True,
        at: Optional[datetime] = None,
    ) -> TranscriptEntry:
        entry = TranscriptEntry.optimistic(owner_id, text, is_bot_reply, at)
        entry.local_only = True
        self.entries.append(entry)
        return entry

    def snapshot(self) -> List[TranscriptEntry]:
        return [dataclasses.replace(e) for e in self.entries]


# -----------------------------
# SyncEngine
# -----------------------------
class SyncEngine:
    """Keeps one owner's transcript in sync with the server.

    Use as a context manager: entering loads history and opens the live
    feed, leaving closes the feed and stops the consumer thread, on every
    exit path.
    """

    def __init__(
        self,
        transport: SyncTransport,
        owner_id: str,
        *,
        reply_delay: float = 1.0,
        dedup_tolerance: float = 30.0,
        greeting: str = DEFAULT_GREETING,
        error_text: str = DEFAULT_ERROR_TEXT,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.transport = transport
        self.owner_id = owner_id
        self.reply_delay = max(0.0, float(reply_delay))
        self.greeting = greeting
        self.error_text = error_text
        self._clock = clock
        self._sleep = sleep

        self.transcript = Transcript(timedelta(seconds=dedup_tolerance))
        self.awaiting_reply = False
        self.input_text = ""
        self.show_suggestions = False
        self.load_error: Optional[ChatRelayError] = None

        self._cond = threading.Condition(threading.RLock())
        self._listeners: List[Listener] = []
        self._feed: Optional[Feed] = None
        self._consumer: Optional[threading.Thread] = None
        self._started = False
        self._closed = False

    # --------- lifecycle ----------
    def start(self) -> "SyncEngine":
        if self._started:
            return self
        self._started = True

        # Open the feed first so inserts racing with the history load are
        # buffered; duplicates are dropped by id when applied.
        try:
            self._feed = self.transport.open_feed()
        except ChatRelayError as e:
            logger.warning("Live feed unavailable for %s: %s", self.owner_id, e)
            self._feed = None

        self._load_history()

        if self._feed is not None:
            self._consumer = threading.Thread(
                target=self._consume, args=(self._feed,), name=f"sync-feed-{self.owner_id}", daemon=True
            )
            self._consumer.start()
        return self

    def close(self, timeout: float = 5.0) -> None:
        with self._cond:
            if self._closed:
                return
            self._closed = True
            feed, self._feed = self._feed, None
            self._cond.notify_all()
        if feed is not None:
            feed.close()
        consumer = self._consumer
        if consumer is not None and consumer is not threading.current_thread():
            consumer.join(timeout)
            if consumer.is_alive():
                logger.warning("Feed consumer for %s did not stop within %.1fs", self.owner_id, timeout)

    def __enter__(self) -> "SyncEngine":
        return self.start()

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    # --------- listeners / state ----------
    def on_change(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def entries(self) -> List[TranscriptEntry]:
        with self._cond:
            return self.transcript.snapshot()

    def wait_until(self, predicate: Callable[["SyncEngine"], bool], timeout: float = 5.0) -> bool:
        """Block until ``predicate(self)`` holds or ``timeout`` elapses."""
        with self._cond:
            return self._cond.wait_for(lambda: predicate(self), timeout=timeout)

    def _changed(self) -> None:
        with self._cond:
            snapshot = self.transcript.snapshot()
            self._cond.notify_all()
        for listener in list(self._listeners):
            listener(snapshot)

    # --------- history ----------
    def _load_history(self) -> None:
        try:
            history = self.transport.fetch_history()
        except ChatRelayError as e:
            logger.error("Error loading messages for %s: %s", self.owner_id, e)
            with self._cond:
                self.load_error = e
                self.transcript.entries = []
                self.transcript.add_local_only(self.owner_id, self.greeting, True, self._clock())
                self.show_suggestions = False
        else:
            with self._cond:
                self.transcript.load(history)
                self.show_suggestions = not history
        self._changed()

    # --------- feed ----------
    def _consume(self, feed: Feed) -> None:
        try:
            for message in feed:
                if message.owner_id != self.owner_id:
                    continue
                with self._cond:
                    if self._closed:
                        return
                    entry = self.transcript.apply_confirmed(message)
                    if entry is not None and self.show_suggestions:
                        self.show_suggestions = False
                if entry is not None:
                    self._changed()
        except Exception as e:
            if self._closed:
                return
            logger.exception("Live feed for %s stopped: %s", self.owner_id, e)
        else:
            if not self._closed:
                logger.warning("Live feed for %s ended", self.owner_id)

    # --------- sending ----------
    def set_input(self, text: str) -> None:
        with self._cond:
            self.input_text = text

    def submit(self) -> Optional[TranscriptEntry]:
        """Send whatever is in the input field."""
        return self.send(self.input_text)

    def send_suggestion(self, prompt: str) -> Optional[TranscriptEntry]:
        return self.send(prompt)

    def send(self, text: str) -> Optional[TranscriptEntry]:
        """Send ``text`` and block until the reply (or error) is displayed.

        Returns the entry that shows the reply or the error, or ``None`` if
        nothing was sent (blank text, a reply already pending, or closed).
        """
        if not (text or "").strip():
            return None
        with self._cond:
            if self._closed:
                return None
            if self.awaiting_reply:
                logger.warning("Ignoring send while a reply is pending")
                return None
            self.input_text = ""
            self.show_suggestions = False
            self.transcript.add_optimistic(self.owner_id, text, False, self._clock())
            self.awaiting_reply = True
        self._changed()

        started = time.monotonic()
        reply: Optional[str] = None
        try:
            reply = self.transport.post_chat(text)
        except ChatRelayError as e:
            logger.error("Send failed for %s: %s", self.owner_id, e)
        except Exception:
            logger.exception("Unexpected error sending for %s", self.owner_id)

        remaining = self.reply_delay - (time.monotonic() - started)
        if remaining > 0:
            self._sleep(remaining)

        with self._cond:
            if reply is not None:
                entry = self.transcript.apply_reply(self.owner_id, reply, self._clock())
            else:
                entry = self.transcript.add_local_only(self.owner_id, self.error_text, True, self._clock())
            self.awaiting_reply = False
        self._changed()
        return entry
