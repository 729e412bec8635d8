"""Client sessions and an in-memory session store."""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .message import Message

_EPOCH = datetime.fromtimestamp(0, timezone.utc)


@dataclass
class Session:
    """The persisted state of one client session."""

    client_id: str = ""
    will: Message | None = None
    will_delay_interval: int = 0
    connected_at: datetime = field(default=_EPOCH)
    expiry_interval: int = 0


class MemorySessionStore:
    """Thread-safe session store kept in memory, keyed by client id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, Session] = {}

    def set(self, session: Session) -> None:
        """Store or replace the session of its client."""
        with self._lock:
            self._sessions[session.client_id] = session

    def remove(self, client_id: str) -> None:
        """Forget the session of a client; unknown ids are ignored."""
        with self._lock:
            self._sessions.pop(client_id, None)

    def get(self, client_id: str) -> Session | None:
        """Return the session of a client, or None."""
        with self._lock:
            return self._sessions.get(client_id)

    def iterate(self, fn: Callable[[Session], bool]) -> None:
        """Call fn for each session until it returns False."""
        with self._lock:
            for session in list(self._sessions.values()):
                if not fn(session):
                    break

    def set_session_expiry(self, client_id: str, expiry: int) -> None:
        """Set the expiry interval of an existing session."""
        with self._lock:
            session = self._sessions.get(client_id)
            if session is not None:
                session.expiry_interval = expiry