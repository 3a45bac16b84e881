"""Server-side relay: persist the inbound message, ask the provider, persist the reply."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .errors import StoreWriteFailed, Unauthorized
from .models import Message
from .provider import CompletionProvider
from .store import MessageStoreLike

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RelayResult:
    reply: str
    # None when the corresponding write failed.
    human_message: Optional[Message] = None
    bot_message: Optional[Message] = None


class RelayHandler:
    """Runs one chat turn per call; holds no per-request state.

    Steps run strictly in sequence. Both writes are best-effort: a failed
    insert is logged and the turn continues. The provider call decides the
    outcome: if it raises, no bot message is written and the
    :class:`~chat_relay.errors.ProviderError` reaches the caller.
    """

    def __init__(self, store: MessageStoreLike, provider: CompletionProvider) -> None:
        self.store = store
        self.provider = provider

    def handle(self, owner_id: Optional[str], text: str) -> RelayResult:
        if not owner_id:
            raise Unauthorized()

        human = self._persist(owner_id, text, is_bot_reply=False)

        # ProviderError propagates; nothing below runs.
        reply = self.provider.complete(text)

        bot = self._persist(owner_id, reply, is_bot_reply=True)
        return RelayResult(reply=reply, human_message=human, bot_message=bot)

    def _persist(self, owner_id: str, text: str, *, is_bot_reply: bool) -> Optional[Message]:
        kind = "bot" if is_bot_reply else "user"
        try:
            message = self.store.insert(owner_id, text, is_bot_reply)
        except StoreWriteFailed as e:
            logger.error("Error saving %s message for %s: %s", kind, owner_id, e)
            return None
        logger.info("%s message saved: id=%s owner=%s", kind.capitalize(), message.id, owner_id)
        return message
