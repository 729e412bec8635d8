"""Subscriptions, iteration options and helpers shared by subscription stores."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import IntFlag
from typing import Protocol

SHARE_PREFIX = "$share/"


class ClientNotExistsError(LookupError):
    """Raised when statistics are requested for an unknown client."""

    def __init__(self, client_id: str = "") -> None:
        super().__init__("client not exists")
        self.client_id = client_id


@dataclass
class Subscription:
    """A client subscription to a topic filter."""

    share_name: str = ""
    topic_filter: str = ""
    id: int = 0
    qos: int = 0
    no_local: bool = False
    retain_as_published: bool = False
    retain_handling: int = 0


@dataclass
class Topic:
    """A topic filter with its subscription options, as found in a SUBSCRIBE packet."""

    name: str = ""
    qos: int = 0
    no_local: bool = False
    retain_as_published: bool = False
    retain_handling: int = 0


class IterationType(IntFlag):
    """Kinds of subscription an iteration visits."""

    SYS = 1
    SHARED = 2
    NON_SHARED = 4
    ALL = 7


class MatchType(IntFlag):
    """How the topic name of an iteration is compared with topic filters."""

    NAME = 1
    FILTER = 2


@dataclass
class IterationOptions:
    """Selects which subscriptions an iteration visits.

    With ``MatchType.NAME`` the callback sees subscriptions whose filter equals
    ``topic_name``; with ``MatchType.FILTER`` those whose filter matches it.
    """

    type: IterationType = IterationType(0)
    client_id: str = ""
    topic_name: str = ""
    match_type: MatchType = MatchType(0)


@dataclass
class Stats:
    """Subscription counters of a store or of one client."""

    subscriptions_total: int = 0
    subscriptions_current: int = 0


@dataclass
class SubscribeResultEntry:
    """Outcome of one subscription added by a subscribe call."""

    subscription: Subscription
    already_existed: bool = False


IterateFn = Callable[[str, Subscription], bool]
ClientSubscriptions = dict[str, list[Subscription]]


class _IterableStore(Protocol):
    def iterate(self, fn: IterateFn, options: IterationOptions) -> None: ...


def split_topic(topic: str) -> tuple[str, str]:
    """Return (share name, topic filter); an invalid shared topic gives ("", "")."""
    if topic.startswith(SHARE_PREFIX):
        parts = topic.split("/", 2)
        if len(parts) < 3:
            return "", ""
        return parts[1], parts[2]
    return "", topic


def get_full_topic_name(share_name: str, topic_filter: str) -> str:
    """Return the topic as written in a SUBSCRIBE packet."""
    if share_name:
        return f"{SHARE_PREFIX}{share_name}/{topic_filter}"
    return topic_filter


def from_topic(topic: Topic, subscription_id: int) -> Subscription:
    """Build the subscription for a requested topic and subscription id."""
    share_name, topic_filter = split_topic(topic.name)
    return Subscription(
        share_name=share_name,
        topic_filter=topic_filter,
        id=subscription_id,
        qos=topic.qos,
        no_local=topic.no_local,
        retain_as_published=topic.retain_as_published,
        retain_handling=topic.retain_handling,
    )


def _group(store: _IterableStore, options: IterationOptions) -> ClientSubscriptions:
    result: ClientSubscriptions = {}

    def collect(client_id: str, sub: Subscription) -> bool:
        result.setdefault(client_id, []).append(sub)
        return True

    store.iterate(collect, options)
    return result


def get_topic_matched(
    store: _IterableStore, topic_filter: str, iteration_type: IterationType
) -> ClientSubscriptions:
    """Return the subscriptions matching a topic name, grouped by client id."""
    return _group(
        store,
        IterationOptions(
            type=iteration_type, topic_name=topic_filter, match_type=MatchType.FILTER
        ),
    )


def get(
    store: _IterableStore, topic_filter: str, iteration_type: IterationType
) -> ClientSubscriptions:
    """Return the subscriptions whose filter equals the given one, grouped by client id."""
    return _group(
        store,
        IterationOptions(
            type=iteration_type, topic_name=topic_filter, match_type=MatchType.NAME
        ),
    )


def get_client_subscriptions(
    store: _IterableStore, client_id: str, iteration_type: IterationType
) -> list[Subscription]:
    """Return the subscriptions of one client."""
    result: list[Subscription] = []

    def collect(_client_id: str, sub: Subscription) -> bool:
        result.append(sub)
        return True

    store.iterate(collect, IterationOptions(type=iteration_type, client_id=client_id))
    return result