"""State stores for an MQTT broker: message queues, sessions, a subscription topic trie, unacknowledged packet ids and configuration."""

__version__ = "0.1.0"