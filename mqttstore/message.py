"""Application messages as they travel through the broker's stores."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import IntEnum


class Version(IntEnum):
    """MQTT protocol level."""

    V31 = 3
    V311 = 4
    V5 = 5


class PayloadFormat(IntEnum):
    """Payload format indicator of a v5 publish."""

    BYTES = 0
    STRING = 1


@dataclass(frozen=True)
class UserProperty:
    """A v5 user property: a key/value pair of raw bytes."""

    key: bytes
    value: bytes


def variable_length_size(length: int) -> int:
    """Return the number of bytes a variable byte integer needs, or 0 if too large."""
    if length <= 127:
        return 1
    if length <= 16383:
        return 2
    if length <= 2097151:
        return 3
    if length <= 268435455:
        return 4
    return 0


def _text_bytes(text: str) -> bytes:
    return text.encode("utf-8", "surrogateescape")


@dataclass
class Message:
    """A publish message.

    The v5 fields are ignored when the message represents a v3 publish.
    """

    dup: bool = False
    qos: int = 0
    retained: bool = False
    topic: str = ""
    payload: bytes = b""
    packet_id: int = 0
    content_type: str = ""
    correlation_data: bytes = b""
    message_expiry: int = 0
    payload_format: PayloadFormat = PayloadFormat.BYTES
    response_topic: str = ""
    subscription_identifier: list[int] = field(default_factory=list)
    user_properties: list[UserProperty] = field(default_factory=list)

    def copy(self) -> Message:
        """Return a deep copy of the message."""
        return dataclasses.replace(
            self,
            subscription_identifier=list(self.subscription_identifier),
            user_properties=[
                UserProperty(bytes(p.key), bytes(p.value)) for p in self.user_properties
            ],
        )

    def total_bytes(self, version: Version) -> int:
        """Return the size in bytes of the publish packet for this message."""
        remaining = len(self.payload) + 2 + len(_text_bytes(self.topic))
        if self.qos > 0:
            remaining += 2
        if version == Version.V5:
            props = 0
            if self.payload_format == PayloadFormat.STRING:
                props += 2
            if self.content_type:
                props += 3 + len(_text_bytes(self.content_type))
            if self.correlation_data:
                props += 3 + len(self.correlation_data)
            for sid in self.subscription_identifier:
                props += 1 + variable_length_size(sid)
            if self.message_expiry:
                props += 5
            if self.response_topic:
                props += 3 + len(_text_bytes(self.response_topic))
            for prop in self.user_properties:
                props += 5 + len(prop.key) + len(prop.value)
            remaining += props + variable_length_size(props)
        if remaining <= 127:
            return 2 + remaining
        if remaining <= 16383:
            return 3 + remaining
        if remaining <= 2097151:
            return 4 + remaining
        return 5 + remaining