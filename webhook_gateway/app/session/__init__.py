"""
Session Package

Server-side sessions: the cookie holds a signed opaque id, the data lives
in a SessionStore (memory for development, Redis otherwise).

Modules:
- store: SessionStore contract, memory and Redis implementations
- middleware: Session object and the ASGI middleware that loads/commits it
"""

from .middleware import Session, SessionMiddleware
from .store import (
    SESSION_TTL_SECONDS,
    MemorySessionStore,
    RedisSessionStore,
    SessionStore,
    build_session_store,
    open_session_store,
)

__all__ = [
    "Session",
    "SessionMiddleware",
    "SessionStore",
    "MemorySessionStore",
    "RedisSessionStore",
    "SESSION_TTL_SECONDS",
    "build_session_store",
    "open_session_store",
]
