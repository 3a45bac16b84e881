"""Error taxonomy shared by the relay server and the sync client.

Every error that crosses a module boundary derives from
:class:`ChatRelayError`, so the HTTP layer can render any of them as a JSON
body with a status code.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class ChatRelayError(Exception):
    """Base error.

    Attributes:
        code: machine-readable error code (e.g. ``"PROVIDER_ERROR"``).
        message: short human-readable message, sent as ``error``.
        http_status: status code used when the error is rendered over HTTP.
        extra: additional fields (``details`` is rendered when present).
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra: Any):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message}
        if self.extra.get("details") is not None:
            payload["details"] = self.extra["details"]
        return payload


class Unauthorized(ChatRelayError):
    """No identity could be resolved for the caller."""

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(code="UNAUTHORIZED", message=message, http_status=401)


class StoreWriteFailed(ChatRelayError):
    """Persisting a message failed. Logged by the relay, never surfaced."""

    def __init__(self, message: str):
        super().__init__(code="STORE_WRITE_FAILED", message=message, http_status=500)


class ProviderError(ChatRelayError):
    """The completion provider failed or answered with a non-success status."""

    def __init__(
        self,
        message: str,
        details: str = "",
        status: Optional[int] = None,
    ):
        super().__init__(
            code="PROVIDER_ERROR",
            message=message,
            http_status=500,
            details=details,
            status=status,
        )

    @property
    def details(self) -> str:
        return self.extra.get("details") or ""

    @property
    def status(self) -> Optional[int]:
        return self.extra.get("status")


class SyncLoadFailed(ChatRelayError):
    """Fetching the transcript history failed on the client."""

    def __init__(self, message: str):
        super().__init__(code="SYNC_LOAD_FAILED", message=message, http_status=502)


class SendFailed(ChatRelayError):
    """The send call itself failed (network level, not provider level)."""

    def __init__(self, message: str):
        super().__init__(code="SEND_FAILED", message=message, http_status=502)
