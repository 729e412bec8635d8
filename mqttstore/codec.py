"""Binary encoding of messages and sessions for storage backends.

Integers are big-endian; strings and byte blobs carry a two-byte length
prefix. Optional message fields follow the fixed header as tagged MQTT v5
properties and run to the end of the input.
"""

from __future__ import annotations

import io
import math
from datetime import datetime, timezone
from typing import BinaryIO

from .message import Message, PayloadFormat, UserProperty
from .sessions import Session

PROP_PAYLOAD_FORMAT = 0x01
PROP_MESSAGE_EXPIRY = 0x02
PROP_CONTENT_TYPE = 0x03
PROP_RESPONSE_TOPIC = 0x08
PROP_CORRELATION_DATA = 0x09
PROP_SUBSCRIPTION_IDENTIFIER = 0x0B
PROP_USER = 0x26

MAX_REMAINING_LENGTH = 268_435_455


class DecodeError(ValueError):
    """Raised when stored bytes cannot be decoded."""


def _encode_text(text: str) -> bytes:
    return text.encode("utf-8", "surrogateescape")


def _decode_text(data: bytes) -> str:
    return data.decode("utf-8", "surrogateescape")


def _read_exact(reader: BinaryIO, size: int) -> bytes:
    data = reader.read(size)
    if len(data) < size:
        raise DecodeError("unexpected end of data")
    return data


def _read_byte(reader: BinaryIO) -> int:
    return _read_exact(reader, 1)[0]


def write_uint16(buf: bytearray, value: int) -> None:
    """Append a big-endian 16-bit integer."""
    buf.extend(value.to_bytes(2, "big"))


def write_uint32(buf: bytearray, value: int) -> None:
    """Append a big-endian 32-bit integer."""
    buf.extend(value.to_bytes(4, "big"))


def write_bool(buf: bytearray, value: bool) -> None:
    """Append a boolean as one byte."""
    buf.append(1 if value else 0)


def write_string(buf: bytearray, data: bytes) -> None:
    """Append bytes with a two-byte length prefix."""
    if len(data) > 0xFFFF:
        raise ValueError("string too long for a two-byte length prefix")
    write_uint16(buf, len(data))
    buf.extend(data)


def read_bool(reader: BinaryIO) -> bool:
    """Read one byte as a boolean; any non-zero value is True."""
    return _read_byte(reader) != 0


def read_uint16(reader: BinaryIO) -> int:
    """Read a big-endian 16-bit integer."""
    return int.from_bytes(_read_exact(reader, 2), "big")


def read_uint32(reader: BinaryIO) -> int:
    """Read a big-endian 32-bit integer."""
    return int.from_bytes(_read_exact(reader, 4), "big")


def read_string(reader: BinaryIO) -> bytes:
    """Read bytes preceded by a two-byte length."""
    return _read_exact(reader, read_uint16(reader))


def encode_remaining_length(length: int) -> bytes:
    """Encode an integer as an MQTT variable byte integer."""
    if not 0 <= length <= MAX_REMAINING_LENGTH:
        raise ValueError(f"remaining length out of range: {length}")
    out = bytearray()
    while True:
        byte = length % 128
        length //= 128
        if length:
            byte |= 0x80
        out.append(byte)
        if not length:
            return bytes(out)


def decode_remaining_length(reader: BinaryIO) -> int:
    """Read an MQTT variable byte integer."""
    value = 0
    multiplier = 1
    for _ in range(4):
        byte = _read_byte(reader)
        value += (byte & 0x7F) * multiplier
        if not byte & 0x80:
            return value
        multiplier *= 128
    raise DecodeError("malformed variable byte integer")


def encode_message(msg: Message | None) -> bytes:
    """Encode a message; None encodes to no bytes."""
    if msg is None:
        return b""
    buf = bytearray()
    write_bool(buf, msg.dup)
    buf.append(msg.qos)
    write_bool(buf, msg.retained)
    write_string(buf, _encode_text(msg.topic))
    write_string(buf, msg.payload)
    write_uint16(buf, msg.packet_id)
    if msg.content_type:
        buf.append(PROP_CONTENT_TYPE)
        write_string(buf, _encode_text(msg.content_type))
    if msg.correlation_data:
        buf.append(PROP_CORRELATION_DATA)
        write_string(buf, msg.correlation_data)
    if msg.message_expiry:
        buf.append(PROP_MESSAGE_EXPIRY)
        write_uint32(buf, msg.message_expiry)
    buf.append(PROP_PAYLOAD_FORMAT)
    buf.append(int(msg.payload_format))
    if msg.response_topic:
        buf.append(PROP_RESPONSE_TOPIC)
        write_string(buf, _encode_text(msg.response_topic))
    for sid in msg.subscription_identifier:
        buf.append(PROP_SUBSCRIPTION_IDENTIFIER)
        buf.extend(encode_remaining_length(sid))
    for prop in msg.user_properties:
        buf.append(PROP_USER)
        write_string(buf, prop.key)
        write_string(buf, prop.value)
    return bytes(buf)


def decode_message(reader: BinaryIO) -> Message:
    """Decode a message, consuming the reader to its end."""
    msg = Message()
    msg.dup = read_bool(reader)
    msg.qos = _read_byte(reader)
    msg.retained = read_bool(reader)
    msg.topic = _decode_text(read_string(reader))
    msg.payload = read_string(reader)
    msg.packet_id = read_uint16(reader)
    while True:
        tag = reader.read(1)
        if not tag:
            return msg
        prop = tag[0]
        if prop == PROP_CONTENT_TYPE:
            msg.content_type = _decode_text(read_string(reader))
        elif prop == PROP_CORRELATION_DATA:
            msg.correlation_data = read_string(reader)
        elif prop == PROP_MESSAGE_EXPIRY:
            msg.message_expiry = read_uint32(reader)
        elif prop == PROP_PAYLOAD_FORMAT:
            value = _read_byte(reader)
            try:
                msg.payload_format = PayloadFormat(value)
            except ValueError:
                raise DecodeError(f"invalid payload format: {value}") from None
        elif prop == PROP_RESPONSE_TOPIC:
            msg.response_topic = _decode_text(read_string(reader))
        elif prop == PROP_SUBSCRIPTION_IDENTIFIER:
            msg.subscription_identifier.append(decode_remaining_length(reader))
        elif prop == PROP_USER:
            key = read_string(reader)
            value_bytes = read_string(reader)
            msg.user_properties.append(UserProperty(key, value_bytes))


def decode_message_from_bytes(data: bytes) -> Message | None:
    """Decode a message from bytes; empty input gives None."""
    if not data:
        return None
    return decode_message(io.BytesIO(data))


def encode_session(session: Session) -> bytes:
    """Encode a session.

    Layout: client id | will flag | [will length, will, will delay] |
    8-byte connect time in unix seconds | expiry interval.
    """
    buf = bytearray()
    write_string(buf, _encode_text(session.client_id))
    if session.will is not None:
        buf.append(1)
        will = encode_message(session.will)
        write_uint32(buf, len(will))
        buf.extend(will)
        write_uint32(buf, session.will_delay_interval)
    else:
        buf.append(0)
    seconds = math.floor(session.connected_at.timestamp())
    buf.extend(seconds.to_bytes(8, "big", signed=True))
    write_uint32(buf, session.expiry_interval)
    return bytes(buf)


def decode_session(reader: BinaryIO) -> Session:
    """Decode a session written by encode_session."""
    session = Session()
    session.client_id = _decode_text(read_string(reader))
    if _read_byte(reader) == 1:
        will = _read_exact(reader, read_uint32(reader))
        session.will = decode_message(io.BytesIO(will))
        session.will_delay_interval = read_uint32(reader)
    seconds = int.from_bytes(_read_exact(reader, 8), "big", signed=True)
    session.connected_at = datetime.fromtimestamp(seconds, timezone.utc)
    session.expiry_interval = read_uint32(reader)
    return session