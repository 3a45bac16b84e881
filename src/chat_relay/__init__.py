"""Chat relay: a FastAPI server that relays messages to a completion provider,
plus a client-side sync engine that mirrors the stored transcript.

Typical usage
-------------
from chat_relay import create_app
app = create_app()

or, from the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

from .server import create_app
from .sync import SyncEngine

__all__ = ["create_app", "SyncEngine", "__version__", "get_version"]

__version__ = "0.1.0"


def get_version() -> str:
    """Return the package version."""
    return __version__
