"""Queued packets of one client, their storage encoding and queue errors."""

from __future__ import annotations

import io
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from .codec import DecodeError, decode_message, encode_message, read_uint16, write_uint16
from .message import Message, Version

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
# Unix seconds of the zero time (0001-01-01 UTC), used for "never expires".
_ZERO_TIME_UNIX = -62_135_596_800
_HEADER_SIZE = 19
_TAG_PUBLISH = 0
_TAG_PUBREL = 1


class QueueError(Exception):
    """Base class of queue store errors."""

    default_message = "queue error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class QueueClosedError(QueueError):
    """Raised by a read on a queue that has been closed."""

    default_message = "queue has been closed"


class DropError(QueueError):
    """Reason a message was dropped from a queue."""

    default_message = "the message is dropped"


class DropExceedsMaxPacketSize(DropError):
    """The message is larger than the client accepts."""

    default_message = "maximum packet size exceeded"


class DropQueueFull(DropError):
    """The queue reached its maximum length."""

    default_message = "the message queue is full"


class DropExpired(DropError):
    """The message expired before it was delivered."""

    default_message = "the message is expired"


class InternalError(QueueError):
    """Wraps an error of the backend storage."""

    def __init__(self, err: BaseException) -> None:
        super().__init__(str(err))
        self.err = err


OnMsgDropped = Callable[[str, Message, DropError], None]


@dataclass
class Publish:
    """A queued publish message."""

    message: Message

    @property
    def id(self) -> int:
        """The packet id; 0 means not yet sent."""
        return self.message.packet_id

    @id.setter
    def id(self, value: int) -> None:
        self.message.packet_id = value


@dataclass
class Pubrel:
    """A queued PUBREL waiting for its PUBCOMP."""

    packet_id: int

    @property
    def id(self) -> int:
        """The packet id."""
        return self.packet_id

    @id.setter
    def id(self, value: int) -> None:
        self.packet_id = value


def _unix(moment: datetime) -> int:
    return math.floor(moment.timestamp())


def _from_unix(seconds: int) -> datetime:
    try:
        return _EPOCH + timedelta(seconds=seconds)
    except OverflowError:
        raise DecodeError(f"timestamp out of range: {seconds}") from None


@dataclass
class Elem:
    """An element of a client queue.

    ``expiry`` of None means the element never expires.
    """

    item: Publish | Pubrel
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    expiry: datetime | None = None

    @property
    def id(self) -> int:
        """The packet id of the queued packet."""
        return self.item.id

    def encode(self) -> bytes:
        """Encode as: 8-byte entry time | pad | 8-byte expiry | pad | tag | data."""
        header = bytearray(_HEADER_SIZE)
        header[0:8] = _unix(self.at).to_bytes(8, "big", signed=True)
        expiry = _ZERO_TIME_UNIX if self.expiry is None else _unix(self.expiry)
        header[9:17] = expiry.to_bytes(8, "big", signed=True)
        if isinstance(self.item, Publish):
            header[18] = _TAG_PUBLISH
            body = encode_message(self.item.message)
        elif isinstance(self.item, Pubrel):
            header[18] = _TAG_PUBREL
            buf = bytearray()
            write_uint16(buf, self.item.packet_id)
            body = bytes(buf)
        else:
            raise TypeError(f"cannot encode queue item {self.item!r}")
        return bytes(header) + body

    @classmethod
    def decode(cls, data: bytes) -> Elem:
        """Decode an element written by encode."""
        if len(data) < _HEADER_SIZE:
            raise DecodeError("invalid input length")
        at = _from_unix(int.from_bytes(data[0:8], "big", signed=True))
        raw_expiry = int.from_bytes(data[9:17], "big", signed=True)
        expiry = None if raw_expiry == _ZERO_TIME_UNIX else _from_unix(raw_expiry)
        body = io.BytesIO(data[_HEADER_SIZE:])
        tag = data[18]
        item: Publish | Pubrel
        if tag == _TAG_PUBLISH:
            item = Publish(decode_message(body))
        elif tag == _TAG_PUBREL:
            item = Pubrel(read_uint16(body))
        else:
            raise DecodeError("invalid identifier")
        return cls(item=item, at=at, expiry=expiry)


@dataclass
class InitOptions:
    """Client information handed to a queue when the client connects."""

    clean_start: bool = False
    version: Version = Version.V311
    read_bytes_limit: int = 0


def elem_expired(now: datetime, elem: Elem) -> bool:
    """Return whether the element has expired at the given moment."""
    return elem.expiry is not None and now > elem.expiry


def drop(
    on_msg_dropped: OnMsgDropped | None,
    logger: logging.Logger,
    client_id: str,
    msg: Message,
    err: DropError,
) -> None:
    """Log a dropped message and report it to the handler, if there is one."""
    if on_msg_dropped is not None:
        logger.warning("message dropped: client_id=%s error=%s", client_id, err)
        on_msg_dropped(client_id, msg, err)