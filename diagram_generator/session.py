"""Last-image state used by refine_image.

A SessionStore keeps at most one Session per key. Entries older than the
TTL are treated as absent and evicted the next time they are read; there is
no background sweep. Stores live only in memory: each ToolDispatcher owns
its own store, so nothing is shared between connections or survives a
restart.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Optional

# Session expiry (1 hour)
SESSION_TTL_SECONDS = 60 * 60

# Key used by single-connection bindings (stdio, proxy).
DEFAULT_SESSION_KEY = "default"


@dataclass(frozen=True)
class Session:
    """The most recent successfully generated image for one caller."""
    prompt: str
    output_path: Path
    diagram_type: str
    aspect_ratio: str
    size: str
    created_at: float = field(default_factory=time.time)


class SessionStore:
    """Holds the single most recent Session per key, with lazy expiry."""

    def __init__(self, ttl: float = SESSION_TTL_SECONDS, clock: Callable[[], float] = time.time) -> None:
        self._ttl = ttl
        self._clock = clock
        self._sessions: Dict[str, Session] = {}

    def get(self, key: str) -> Optional[Session]:
        """Return the live Session for ``key``; expired entries are evicted."""
        session = self._sessions.get(key)
        if session is None:
            return None
        if self._clock() - session.created_at > self._ttl:
            del self._sessions[key]
            return None
        return session

    def put(self, key: str, session: Session) -> None:
        self._sessions[key] = session

    def clear(self, key: str) -> None:
        self._sessions.pop(key, None)

    def new_session(self, **fields) -> Session:
        """Build a Session stamped with this store's clock."""
        return Session(created_at=self._clock(), **fields)

    def __len__(self) -> int:
        return len(self._sessions)
