"""BitBraniac tutor chat server.

A FastAPI backend for a computer-science tutoring chat: persisted chats,
per-user personalization, and a Gemini-backed response generator with
windowed history, retries and model fallback.

Typical usage
-------------
from tutor_server import create_app
app = create_app()

or, from the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

from .server import create_app

__all__ = ["create_app", "__version__", "get_version"]

__version__ = "0.1.0"


def get_version() -> str:
    """Return the package version."""
    return __version__
