"""HTTP transport used by the sync engine to talk to the relay server."""
from __future__ import annotations

import json
import logging
import socket
import threading
from typing import Any, Iterator, List, Optional

import httpx

from .errors import ProviderError, SendFailed, SyncLoadFailed, Unauthorized
from .models import Message

logger = logging.getLogger(__name__)

TIMEOUT = httpx.Timeout(connect=5.0, read=60.0, write=10.0, pool=5.0)


class FeedStream:
    """Iterator over ``Message`` events from ``GET /messages/feed``.

    The underlying response is opened eagerly so the server-side
    subscription exists once the constructor returns. ``close`` may be
    called from another thread to stop a consumer.
    """

    def __init__(self, http: httpx.Client, path: str = "/messages/feed", read_timeout: Optional[float] = None) -> None:
        timeout = httpx.Timeout(TIMEOUT.connect, read=read_timeout, write=TIMEOUT.write, pool=TIMEOUT.pool)
        self._cm = http.stream("GET", path, timeout=timeout)
        self._resp = self._cm.__enter__()
        self._closed = threading.Event()
        if self._resp.status_code != 200:
            status = self._resp.status_code
            self.close()
            if status == 401:
                raise Unauthorized()
            raise SyncLoadFailed(f"Feed request failed with HTTP {status}")

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def __iter__(self) -> Iterator[Message]:
        try:
            for line in self._resp.iter_lines():
                if self._closed.is_set():
                    return
                if not line.startswith("data:"):
                    continue
                data = line[5:].strip()
                try:
                    yield Message.from_row(json.loads(data))
                except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                    logger.warning("Skipping malformed feed event %r: %s", data[:200], e)
        except (httpx.HTTPError, httpx.StreamError):
            if self._closed.is_set():
                return
            raise

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        # Closing the response alone does not wake a reader blocked in
        # recv() on another thread; shutting the socket down does.
        self._shutdown_socket()
        try:
            self._cm.__exit__(None, None, None)
        except (httpx.HTTPError, httpx.StreamError) as e:
            logger.debug("Error while closing feed: %s", e)

    def _shutdown_socket(self) -> None:
        stream = self._resp.extensions.get("network_stream")
        sock = stream.get_extra_info("socket") if stream is not None else None
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logger.debug("Feed socket already gone: %s", e)


class ChatApiClient:
    """Talks to the relay server over HTTP.

    Pass either ``base_url`` or a ready ``http`` client (any
    :class:`httpx.Client`, including FastAPI's ``TestClient``).
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        token: Optional[str] = None,
        http: Optional[httpx.Client] = None,
        feed_read_timeout: Optional[float] = 60.0,
    ) -> None:
        if http is None:
            if not base_url:
                raise ValueError("base_url or http client is required")
            http = httpx.Client(base_url=base_url, timeout=TIMEOUT)
            self._owns_http = True
        else:
            self._owns_http = False
        if token:
            http.headers["Authorization"] = f"Bearer {token}"
        self.http = http
        self.feed_read_timeout = feed_read_timeout

    def fetch_history(self) -> List[Message]:
        try:
            resp = self.http.get("/messages")
        except httpx.HTTPError as e:
            raise SyncLoadFailed(f"History request failed: {e}") from e
        if resp.status_code != 200:
            raise SyncLoadFailed(f"History request failed with HTTP {resp.status_code}")
        try:
            rows = resp.json().get("messages") or []
            return [Message.from_row(r) for r in rows]
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise SyncLoadFailed(f"Malformed history response: {e}") from e

    def post_chat(self, text: str) -> str:
        try:
            resp = self.http.post("/chat", json={"message": text})
        except httpx.HTTPError as e:
            raise SendFailed(f"Send failed: {e}") from e

        body = self._json(resp)
        if resp.status_code == 200 and isinstance(body.get("reply"), str):
            return body["reply"]
        if resp.status_code == 401:
            raise Unauthorized(str(body.get("error") or "Unauthorized"))
        if resp.status_code >= 500 and "error" in body:
            raise ProviderError(
                str(body.get("error")),
                details=str(body.get("details") or ""),
                status=resp.status_code,
            )
        raise SendFailed(f"Unexpected response from /chat: HTTP {resp.status_code}")

    def open_feed(self) -> FeedStream:
        try:
            return FeedStream(self.http, read_timeout=self.feed_read_timeout)
        except httpx.HTTPError as e:
            raise SyncLoadFailed(f"Feed request failed: {e}") from e

    def close(self) -> None:
        if self._owns_http:
            self.http.close()

    @staticmethod
    def _json(resp: httpx.Response) -> dict[str, Any]:
        try:
            body = resp.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}
