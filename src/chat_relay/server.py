"""FastAPI application relaying chat messages to a completion provider."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from .auth import Authenticator, SessionAuthenticator
from .config import load_config
from .errors import ChatRelayError, Unauthorized
from .provider import CompletionProvider, create_provider
from .relay import RelayHandler
from .store import MessageStore, MessageStoreLike, Subscription

logger = logging.getLogger(__name__)


# -----------------------------
# Pydantic request/response
# -----------------------------
class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1)


class ChatResponse(BaseModel):
    reply: str


class MessageRow(BaseModel):
    id: int
    owner_id: str
    text: str
    is_bot_reply: bool
    created_at: str


class HistoryResponse(BaseModel):
    messages: List[MessageRow]


# -----------------------------
# Utilities
# -----------------------------
def configure_logging(cfg: Dict[str, Any]) -> None:
    log_cfg = cfg.get("logging", {})
    logging.basicConfig(
        level=str(log_cfg.get("level", "INFO")).upper(),
        format=log_cfg.get("format") or "%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _make_store(cfg: Dict[str, Any]) -> MessageStore:
    data_dir = cfg.get("store", {}).get("data_dir") or "data"
    return MessageStore(data_dir)


def _make_authenticator(cfg: Dict[str, Any]) -> SessionAuthenticator:
    auth_cfg = cfg.get("auth", {})
    return SessionAuthenticator(
        sessions=auth_cfg.get("sessions") or {},
        cookie_name=auth_cfg.get("cookie_name") or "session",
    )


async def feed_events(
    sub: Subscription,
    heartbeat: float,
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    poll_interval: float = 1.0,
) -> AsyncIterator[str]:
    """Render a subscription as a text/event-stream body.

    Emits one ``data:`` event per inserted message and a comment line when
    nothing arrived for ``heartbeat`` seconds. The subscription is polled
    in slices of at most ``poll_interval`` seconds; between slices the
    stream ends if ``is_disconnected()`` reports the client gone. Always
    releases ``sub``.
    """
    poll = max(0.01, min(heartbeat, poll_interval))
    idle = 0.0
    try:
        yield ": subscribed\n\n"
        while True:
            if is_disconnected is not None and await is_disconnected():
                logger.info("Feed client for %s disconnected", sub.owner_id)
                return
            try:
                message = await asyncio.to_thread(sub.get, poll)
            except EOFError:
                return
            if message is None:
                idle += poll
                if idle >= heartbeat:
                    idle = 0.0
                    yield ": keep-alive\n\n"
                continue
            idle = 0.0
            yield f"data: {json.dumps(message.to_row(), ensure_ascii=False)}\n\n"
    finally:
        # Also wakes a get() still running in the worker thread.
        sub.close()


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    provider: Optional[CompletionProvider] = None,
    store: Optional[MessageStoreLike] = None,
    authenticator: Optional[Authenticator] = None,
) -> FastAPI:
    cfg = load_config(config_path)
    configure_logging(cfg)

    server_cfg = cfg.get("server", {})
    cors_origins = server_cfg.get("cors_origins", ["*"])
    heartbeat = float(server_cfg.get("feed_heartbeat_seconds", 15.0))
    poll_interval = float(server_cfg.get("feed_poll_seconds", 1.0))

    # Services
    store = store or _make_store(cfg)
    provider = provider or create_provider(cfg)
    authenticator = authenticator or _make_authenticator(cfg)
    relay = RelayHandler(store, provider)

    app = FastAPI(title="Chat Relay", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ChatRelayError)
    def relay_error(request: Request, exc: ChatRelayError) -> JSONResponse:
        return JSONResponse(exc.to_payload(), status_code=exc.http_status)

    def require_user(request: Request) -> str:
        # Runs before request-body validation, so an anonymous request is
        # a 401 whatever its body. Only unparseable JSON is rejected first.
        owner_id = authenticator.current_user(request)
        if not owner_id:
            raise Unauthorized()
        return owner_id

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "provider": getattr(provider, "name", None),
            "data_dir": getattr(store, "root", None) and str(store.root),
        }

    @app.post("/chat", response_model=ChatResponse)
    def chat(req: ChatRequest, owner_id: str = Depends(require_user)):
        result = relay.handle(owner_id, req.message)
        return ChatResponse(reply=result.reply)

    @app.get("/messages", response_model=HistoryResponse)
    def history(owner_id: str = Depends(require_user)):
        rows = [MessageRow(**m.to_row()) for m in store.select_ordered(owner_id)]
        return HistoryResponse(messages=rows)

    @app.get("/messages/feed")
    def feed(request: Request, owner_id: str = Depends(require_user)):
        # Subscribe before the response starts so no insert after the
        # client sees the headers can be missed.
        sub = store.subscribe_inserts(owner_id)
        logger.info("Feed opened for %s", owner_id)
        return StreamingResponse(
            feed_events(sub, heartbeat, request.is_disconnected, poll_interval),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache"},
        )

    return app
