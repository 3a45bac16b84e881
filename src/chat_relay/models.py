"""Message types shared by the server and the sync client."""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Literal, Tuple, Union

Role = Literal["user", "bot"]

LOCAL_ID_PREFIX = "local-"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Union[str, datetime]) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def new_local_id() -> str:
    # Store ids are positive integers, so a string key can never collide.
    return f"{LOCAL_ID_PREFIX}{uuid.uuid4().hex}"


@dataclass(frozen=True)
class Message:
    """A persisted chat message as assigned by the store."""

    id: int
    owner_id: str
    text: str
    is_bot_reply: bool
    created_at: datetime

    @property
    def role(self) -> Role:
        return "bot" if self.is_bot_reply else "user"

    @property
    def sort_key(self) -> Tuple[datetime, int]:
        return (self.created_at, self.id)

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "text": self.text,
            "is_bot_reply": self.is_bot_reply,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Message":
        return cls(
            id=int(row["id"]),
            owner_id=str(row["owner_id"]),
            text=str(row["text"]),
            is_bot_reply=bool(row["is_bot_reply"]),
            created_at=parse_timestamp(row["created_at"]),
        )


@dataclass
class TranscriptEntry:
    """One rendered line of a client transcript.

    ``key`` is the store id once the entry is confirmed, or a local id while
    it is optimistic. ``local_only`` entries (greeting, send errors) are never
    persisted and never take part in reconciliation. ``reconciled`` marks a
    confirmed entry that has already absorbed its HTTP counterpart.
    """

    key: Union[int, str]
    owner_id: str
    text: str
    is_bot_reply: bool
    created_at: datetime
    confirmed: bool = False
    local_only: bool = False
    reconciled: bool = False

    @property
    def role(self) -> Role:
        return "bot" if self.is_bot_reply else "user"

    @classmethod
    def from_message(cls, message: Message) -> "TranscriptEntry":
        return cls(
            key=message.id,
            owner_id=message.owner_id,
            text=message.text,
            is_bot_reply=message.is_bot_reply,
            created_at=message.created_at,
            confirmed=True,
        )

    @classmethod
    def optimistic(
        cls,
        owner_id: str,
        text: str,
        is_bot_reply: bool,
        created_at: datetime | None = None,
    ) -> "TranscriptEntry":
        return cls(
            key=new_local_id(),
            owner_id=owner_id,
            text=text,
            is_bot_reply=is_bot_reply,
            created_at=created_at or utc_now(),
        )


def logically_equal(
    a: Union[Message, TranscriptEntry],
    b: Union[Message, TranscriptEntry],
    tolerance: timedelta,
) -> bool:
    """Equality under (owner, role, text, approximate time).

    Used to deduplicate a message that reaches the client both through the
    HTTP response and through the change feed, where only one of the two
    copies carries a store id.
    """
    if a.owner_id != b.owner_id or a.is_bot_reply != b.is_bot_reply:
        return False
    if a.text != b.text:
        return False
    return abs(a.created_at - b.created_at) <= tolerance
