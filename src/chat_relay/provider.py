"""Completion provider clients.

Each client turns a single prompt into a single reply string:

- one outbound HTTP call per :meth:`complete`, no retries;
- the first textual completion is extracted from the provider response;
- a response with no extractable text yields the fallback reply;
- transport errors and non-2xx statuses raise :class:`ProviderError` with
  the raw payload for diagnostics.

Clients keep no state between calls and can be shared across requests.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx

from .errors import ProviderError

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_REPLY = "Sorry, no reply."
ANTHROPIC_VERSION = "2023-06-01"


class CompletionProvider(Protocol):
    name: str

    def complete(self, prompt: str) -> str:
        ...


@dataclass
class ProviderSettings:
    base_url: str
    model: str
    api_key: Optional[str] = None
    max_tokens: int = 500
    timeout_seconds: float = 30.0
    connect_timeout_seconds: float = 5.0
    fallback_reply: str = DEFAULT_FALLBACK_REPLY

    @property
    def timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self.timeout_seconds, connect=self.connect_timeout_seconds)


class _HTTPProvider:
    """Shared request/response plumbing; subclasses define the wire format."""

    name = "provider"

    def __init__(self, settings: ProviderSettings, transport: Optional[httpx.BaseTransport] = None) -> None:
        self.settings = settings
        self._transport = transport

    # ---- hooks ----
    def _url(self) -> str:
        raise NotImplementedError

    def _headers(self) -> Dict[str, str]:
        raise NotImplementedError

    def _payload(self, prompt: str) -> Dict[str, Any]:
        raise NotImplementedError

    def _extract_text(self, data: Any) -> Optional[str]:
        raise NotImplementedError

    # ---- public ----
    def complete(self, prompt: str) -> str:
        if not self.settings.api_key:
            raise ProviderError(f"{self.name} API failed", details="API key not configured")
        try:
            with httpx.Client(timeout=self.settings.timeout, transport=self._transport) as client:
                resp = client.post(self._url(), json=self._payload(prompt), headers=self._headers())
        except httpx.RequestError as e:
            logger.error("%s request failed: %s", self.name, e)
            raise ProviderError(f"{self.name} API failed", details=str(e)) from e

        if resp.status_code >= 400:
            logger.error("%s API error %d: %s", self.name, resp.status_code, resp.text)
            raise ProviderError(
                f"{self.name} API failed",
                details=resp.text,
                status=resp.status_code,
            )

        try:
            data = resp.json()
        except json.JSONDecodeError:
            logger.warning("%s returned a non-JSON body; using fallback reply", self.name)
            return self.settings.fallback_reply

        text = self._extract_text(data)
        if not text:
            logger.info("%s response had no text; using fallback reply", self.name)
            return self.settings.fallback_reply
        return text


class AnthropicProvider(_HTTPProvider):
    """Anthropic Messages API (``POST /v1/messages``)."""

    name = "anthropic"

    def _url(self) -> str:
        return f"{self.settings.base_url.rstrip('/')}/v1/messages"

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.settings.api_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
        }

    def _payload(self, prompt: str) -> Dict[str, Any]:
        return {
            "model": self.settings.model,
            "max_tokens": self.settings.max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }

    def _extract_text(self, data: Any) -> Optional[str]:
        if not isinstance(data, dict):
            return None
        for block in data.get("content") or []:
            if isinstance(block, dict) and isinstance(block.get("text"), str) and block["text"]:
                return block["text"]
        return None


class OpenAIChatProvider(_HTTPProvider):
    """OpenAI-compatible ``/chat/completions`` endpoint."""

    name = "openai"

    def _url(self) -> str:
        return f"{self.settings.base_url.rstrip('/')}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.settings.api_key}",
        }

    def _payload(self, prompt: str) -> Dict[str, Any]:
        return {
            "model": self.settings.model,
            "max_tokens": self.settings.max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }

    def _extract_text(self, data: Any) -> Optional[str]:
        if not isinstance(data, dict):
            return None
        for choice in data.get("choices") or []:
            msg = (choice or {}).get("message") or {}
            content = msg.get("content")
            if isinstance(content, str) and content:
                return content
        return None


_PROVIDERS = {
    "anthropic": AnthropicProvider,
    "openai": OpenAIChatProvider,
}


# -----------------------------
# Convenience factory
# -----------------------------
def create_provider(cfg: Dict[str, Any], transport: Optional[httpx.BaseTransport] = None) -> _HTTPProvider:
    """Create the configured provider from a config dict (e.g., loaded YAML)."""
    p_cfg = (cfg or {}).get("provider", {}) if isinstance(cfg, dict) else {}
    kind = str(p_cfg.get("kind") or "anthropic").lower()
    if kind not in _PROVIDERS:
        raise ValueError(f"Unknown provider kind: {kind!r}")

    api_key = p_cfg.get("api_key")
    if not api_key and p_cfg.get("api_key_env"):
        api_key = os.environ.get(str(p_cfg["api_key_env"]))

    settings = ProviderSettings(
        base_url=str(p_cfg.get("base_url") or "https://api.anthropic.com"),
        model=str(p_cfg.get("model") or "claude-3-haiku-20240307"),
        api_key=api_key,
        max_tokens=int(p_cfg.get("max_tokens", 500)),
        timeout_seconds=float(p_cfg.get("timeout_seconds", 30.0)),
        fallback_reply=str(p_cfg.get("fallback_reply") or DEFAULT_FALLBACK_REPLY),
    )
    return _PROVIDERS[kind](settings, transport=transport)
