"""Session lookup: maps a request's session token to an owner id."""
from __future__ import annotations

from typing import Mapping, Optional, Protocol

from fastapi import Request


class Authenticator(Protocol):
    def current_user(self, request: Request) -> Optional[str]:
        ...


class SessionAuthenticator:
    """Resolve identity from ``Authorization: Bearer`` or a session cookie.

    Sessions are issued elsewhere; this only looks tokens up.
    """

    def __init__(self, sessions: Optional[Mapping[str, str]] = None, cookie_name: str = "session") -> None:
        self._sessions = dict(sessions or {})
        self.cookie_name = cookie_name

    def _token(self, request: Request) -> Optional[str]:
        header = request.headers.get("authorization") or ""
        scheme, _, value = header.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
        return request.cookies.get(self.cookie_name) or None

    def current_user(self, request: Request) -> Optional[str]:
        token = self._token(request)
        if not token:
            return None
        owner = self._sessions.get(token)
        return str(owner) if owner else None
