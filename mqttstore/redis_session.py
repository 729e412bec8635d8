"""A session store persisted in redis hashes."""

from __future__ import annotations

import math
import threading
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from .codec import decode_message_from_bytes, encode_message
from .sessions import Session

SESSION_PREFIX = "session:"
_FIELDS = ("client_id", "will", "will_delay_interval", "connected_at", "expiry_interval")


def _key(client_id: str) -> str:
    return SESSION_PREFIX + client_id


def _int(value: Any) -> int:
    if value is None or value == b"" or value == "":
        return 0
    return int(value)


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


class RedisSessionStore:
    """Sessions kept in the redis hashes ``session:<client id>``.

    The client must return raw bytes (no response decoding).
    """

    def __init__(self, client: Any) -> None:
        self._lock = threading.RLock()
        self._client = client

    def set(self, session: Session) -> None:
        """Store or overwrite a session."""
        will = encode_message(session.will) if session.will is not None else b""
        with self._lock:
            self._client.hset(
                _key(session.client_id),
                mapping={
                    "client_id": session.client_id,
                    "will": will,
                    "will_delay_interval": session.will_delay_interval,
                    "connected_at": math.floor(session.connected_at.timestamp()),
                    "expiry_interval": session.expiry_interval,
                },
            )

    def remove(self, client_id: str) -> None:
        """Delete a session."""
        with self._lock:
            self._client.delete(_key(client_id))

    def _get_locked(self, key: str) -> Session | None:
        values = self._client.hmget(key, list(_FIELDS))
        client_id, will, will_delay, connected_at, expiry = values
        if client_id is None:
            return None
        return Session(
            client_id=_text(client_id),
            will=decode_message_from_bytes(bytes(will or b"")),
            will_delay_interval=_int(will_delay),
            connected_at=datetime.fromtimestamp(_int(connected_at), timezone.utc),
            expiry_interval=_int(expiry),
        )

    def get(self, client_id: str) -> Session | None:
        """Return the session of a client, or None if there is none."""
        with self._lock:
            return self._get_locked(_key(client_id))

    def iterate(self, fn: Callable[[Session], bool]) -> None:
        """Call fn for each stored session until it returns False."""
        with self._lock:
            cursor = 0
            while True:
                cursor, keys = self._client.scan(cursor=cursor, match=SESSION_PREFIX + "*")
                for key in keys:
                    session = self._get_locked(_text(key))
                    if session is None:
                        continue
                    if not fn(session):
                        return
                if int(cursor) == 0:
                    break

    def set_session_expiry(self, client_id: str, expiry: int) -> None:
        """Update the expiry interval of a session."""
        with self._lock:
            self._client.hset(_key(client_id), "expiry_interval", expiry)