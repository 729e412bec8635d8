"""A client message queue kept in memory."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone

from .message import Version
from .queue import (
    DropError,
    DropExceedsMaxPacketSize,
    DropExpired,
    DropQueueFull,
    Elem,
    InitOptions,
    OnMsgDropped,
    Publish,
    QueueClosedError,
    drop,
    elem_expired,
)


class MemoryQueue:
    """In-memory queue of one client.

    Elements before the read position are inflight; the rest are unread.
    """

    def __init__(
        self,
        max_queued_msg: int,
        client_id: str,
        drop_handler: OnMsgDropped | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._cond = threading.Condition()
        self._client_id = client_id
        self._max = max_queued_msg
        self._on_msg_dropped = drop_handler
        self._log = logger or logging.getLogger("mqttstore.queue.memory")
        self._elems: list[Elem] = []
        self._current = 0
        self._inflight_drained = False
        self._closed = False
        self._version = Version.V311
        self._read_bytes_limit = 0

    def close(self) -> None:
        """Mark the queue closed and wake any blocked reader."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def init(self, opts: InitOptions) -> None:
        """Prepare the queue for a (re)connected client."""
        with self._cond:
            self._closed = False
            self._inflight_drained = False
            if opts.clean_start:
                self._elems = []
            self._read_bytes_limit = opts.read_bytes_limit
            self._version = opts.version
            self._current = 0
            self._cond.notify_all()

    def clean(self) -> None:
        """Nothing outlives the process, so there is nothing to clean."""

    def _drop(self, elem: Elem, err: DropError) -> None:
        item = elem.item
        assert isinstance(item, Publish)
        drop(self._on_msg_dropped, self._log, self._client_id, item.message, err)

    def _remove_at(self, index: int) -> Elem:
        removed = self._elems.pop(index)
        if index < self._current:
            self._current -= 1
        return removed

    def _choose_victim(self, elem: Elem, now: datetime) -> tuple[int | None, DropError]:
        if self._inflight_drained and self._current >= len(self._elems):
            return None, DropQueueFull()
        qos0_index = None
        for index, candidate in enumerate(self._elems[self._current :], self._current):
            item = candidate.item
            if not isinstance(item, Publish) or item.id != 0:
                continue
            if elem_expired(now, candidate):
                return index, DropExpired()
            if item.message.qos == 0 and qos0_index is None:
                qos0_index = index
        if qos0_index is not None:
            return qos0_index, DropQueueFull()
        new_item = elem.item
        if isinstance(new_item, Publish) and new_item.message.qos == 0:
            return None, DropQueueFull()
        if self._inflight_drained:
            return self._current, DropQueueFull()
        return None, DropQueueFull()

    def add(self, elem: Elem) -> None:
        """Append an element, dropping one message first if the queue is full.

        Drop priority: the new element when nothing is unread, an expired
        message, a QoS 0 message, the front unread message, else the new one.
        """
        now = datetime.now(timezone.utc)
        with self._cond:
            try:
                if len(self._elems) >= self._max:
                    victim, reason = self._choose_victim(elem, now)
                    if victim is None:
                        self._drop(elem, reason)
                        return
                    self._drop(self._remove_at(victim), reason)
                self._elems.append(elem)
            finally:
                self._cond.notify_all()

    def replace(self, elem: Elem) -> bool:
        """Replace the inflight element with the same packet id."""
        with self._cond:
            for index, existing in enumerate(self._elems[: self._current]):
                if existing.id == elem.id:
                    self._elems[index] = elem
                    return True
            return False

    def read(self, pids: list[int]) -> list[Elem]:
        """Read up to len(pids) unread messages, blocking until one is available.

        QoS 0 messages are removed once read; others get the next packet id.
        Expired and oversized messages are dropped.
        """
        now = datetime.now(timezone.utc)
        with self._cond:
            if not self._inflight_drained:
                raise RuntimeError(
                    "must call read_inflight to drain all inflight messages before read"
                )
            while self._current >= len(self._elems) and not self._closed:
                self._cond.wait()
            if self._closed:
                raise QueueClosedError()
            ids = iter(pids)
            result: list[Elem] = []
            for _ in range(min(len(self._elems), len(pids))):
                if self._current >= len(self._elems):
                    break
                elem = self._elems[self._current]
                pub = elem.item
                assert isinstance(pub, Publish)
                if elem_expired(now, elem):
                    self._remove_at(self._current)
                    self._drop(elem, DropExpired())
                    continue
                if pub.message.total_bytes(self._version) > self._read_bytes_limit:
                    self._remove_at(self._current)
                    self._drop(elem, DropExceedsMaxPacketSize())
                    continue
                if pub.message.qos == 0:
                    self._remove_at(self._current)
                else:
                    pub.id = next(ids)
                    self._current += 1
                result.append(elem)
            return result

    def read_inflight(self, max_size: int) -> list[Elem]:
        """Read at most max_size inflight elements; an empty list means none remain."""
        with self._cond:
            if self._current >= len(self._elems):
                self._inflight_drained = True
                return []
            result: list[Elem] = []
            for _ in range(min(max_size, len(self._elems))):
                if self._current >= len(self._elems):
                    break
                elem = self._elems[self._current]
                if elem.id == 0:
                    self._inflight_drained = True
                    break
                result.append(elem)
                self._current += 1
            return result

    def remove(self, pid: int) -> None:
        """Remove the inflight element with the given packet id."""
        with self._cond:
            for index, elem in enumerate(self._elems[: self._current]):
                if elem.id == pid:
                    self._remove_at(index)
                    return