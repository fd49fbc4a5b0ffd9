"""Bookkeeping for live client connections of the centralized HTTP binding.

Each handshake (a Streamable HTTP ``initialize`` or a legacy SSE stream)
becomes a TransportSession with its own ToolDispatcher, and therefore its own
refinement state. The registry maps transport session ids to those records
and releases them on explicit close, SSE disconnect, shutdown, or once the
transport itself has dropped an idle session. Lazy expiry here is only a
backstop for sessions whose client never comes back.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .dispatcher import ToolDispatcher
from .session import SESSION_TTL_SECONDS

logger = logging.getLogger(__name__)

STREAMABLE_HTTP = "streamable-http"
SSE = "sse"
TRANSPORT_KINDS = (STREAMABLE_HTTP, SSE)


class TransportSessionError(Exception):
    """A request named a session that cannot serve it."""

    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.status = status


@dataclass
class TransportSession:
    session_id: str
    kind: str
    dispatcher: ToolDispatcher
    created_at: float
    last_seen: float = field(default=0.0)
    # Requests being served right now, open GET streams included.
    in_flight: int = 0

    def close(self) -> None:
        self.dispatcher.close()


class TransportRegistry:
    """Live TransportSessions keyed by transport session id."""

    def __init__(
        self,
        dispatcher_factory: Callable[[str], ToolDispatcher],
        *,
        idle_timeout: float = SESSION_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._factory = dispatcher_factory
        self._idle_timeout = idle_timeout
        self._clock = clock
        self._sessions: Dict[str, TransportSession] = {}
        self._lock = threading.Lock()
        self._accepting = True

    @property
    def accepting(self) -> bool:
        return self._accepting

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def register(self, session_id: str, kind: str) -> TransportSession:
        """Create the TransportSession for a completed handshake.

        Raises:
            TransportSessionError: If the registry is shutting down (503), the
                kind is unknown or the id is already taken.
        """
        if kind not in TRANSPORT_KINDS:
            raise TransportSessionError(f"Unknown transport kind: {kind}")
        if not session_id:
            raise TransportSessionError("Bad Request: missing session ID")
        with self._lock:
            if not self._accepting:
                raise TransportSessionError("Server is shutting down", status=503)
            if session_id in self._sessions:
                raise TransportSessionError(f"Session already exists: {session_id}")
            now = self._clock()
            session = TransportSession(
                session_id=session_id,
                kind=kind,
                dispatcher=self._factory(session_id),
                created_at=now,
                last_seen=now,
            )
            self._sessions[session_id] = session
        logger.debug("Registered %s session %s", kind, session_id)
        return session

    def _expire_idle(self) -> None:
        now = self._clock()
        expired = [
            s for s in self._sessions.values()
            if s.kind == STREAMABLE_HTTP
            and s.in_flight == 0
            and now - s.last_seen > self._idle_timeout
        ]
        for session in expired:
            self._sessions.pop(session.session_id, None)
            logger.debug("Released idle session %s", session.session_id)
            session.close()

    def get(self, session_id: Optional[str]) -> Optional[TransportSession]:
        """Return the live session, or None (idle streamable sessions are released here)."""
        if not session_id:
            return None
        with self._lock:
            self._expire_idle()
            return self._sessions.get(session_id)

    def resolve(self, session_id: Optional[str], kind: str) -> TransportSession:
        """Return the session for a follow-up request and mark it active.

        Raises:
            TransportSessionError: If the id is missing or unknown, the
                session belongs to the other transport kind, or the
                registry is shutting down.
        """
        if not self._accepting:
            raise TransportSessionError("Server is shutting down", status=503)
        session = self.get(session_id)
        if session is None:
            raise TransportSessionError("Bad Request: No valid session ID provided")
        if session.kind != kind:
            raise TransportSessionError(
                "Bad Request: Session exists but uses a different transport protocol"
            )
        session.last_seen = self._clock()
        return session

    def begin(self, session_id: Optional[str], kind: str) -> TransportSession:
        """Resolve the session and count a request against it until ``finish``."""
        session = self.resolve(session_id, kind)
        session.in_flight += 1
        return session

    def finish(self, session_id: str) -> None:
        """End a request started with ``begin``; the idle clock restarts now."""
        session = self._sessions.get(session_id)
        if session is not None:
            session.in_flight = max(0, session.in_flight - 1)
            session.last_seen = self._clock()

    def sessions(self, kind: Optional[str] = None) -> List[TransportSession]:
        """Snapshot of the live sessions, optionally of one kind."""
        with self._lock:
            return [s for s in self._sessions.values() if kind is None or s.kind == kind]

    def release(self, session_id: str) -> bool:
        """Drop a session and close its dispatcher; False if it was not registered."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        logger.debug("Released %s session %s", session.kind, session_id)
        session.close()
        return True

    def close_all(self) -> None:
        """Stop accepting handshakes and close every session, tolerating failures."""
        with self._lock:
            self._accepting = False
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            try:
                session.close()
            except Exception:  # pylint: disable=broad-except
                logger.exception("Error closing transport for session %s", session.session_id)
        if sessions:
            logger.info("Closed %d transport session(s)", len(sessions))
