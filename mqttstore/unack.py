"""Stores of unacknowledged QoS 2 packet ids."""

from __future__ import annotations


class MemoryUnackStore:
    """In-memory set of QoS 2 packet ids received but not yet released."""

    def __init__(self, client_id: str = "") -> None:
        self.client_id = client_id
        self._ids: set[int] = set()

    def init(self, clean_start: bool) -> None:
        """Prepare for a connecting client; a clean start forgets all ids."""
        if clean_start:
            self._ids = set()

    def set(self, packet_id: int) -> bool:
        """Record the id; return whether it was already recorded."""
        if packet_id in self._ids:
            return True
        self._ids.add(packet_id)
        return False

    def remove(self, packet_id: int) -> None:
        """Forget the id; unknown ids are ignored."""
        self._ids.discard(packet_id)