"""A trie of topic filters used to store and match subscriptions in memory."""

from __future__ import annotations

from .subscription import ClientSubscriptions, IterateFn, Subscription


class TopicNode:
    """A node of the topic trie; one level of a topic filter."""

    def __init__(self, parent: TopicNode | None = None) -> None:
        self.children: dict[str, TopicNode] = {}
        # non-shared subscriptions, keyed by client id
        self.clients: dict[str, Subscription] = {}
        # shared subscriptions, keyed by share name then client id
        self.shared: dict[str, dict[str, Subscription]] = {}
        self.parent = parent
        self.topic_name = ""

    def new_child(self) -> TopicNode:
        """Return a new node whose parent is this one."""
        return TopicNode(self)


def is_system_topic(topic_name: str) -> bool:
    """Return whether the topic starts with '$'."""
    return topic_name.startswith("$")


def _set_rs(node: TopicNode, rs: ClientSubscriptions) -> None:
    for client_id, sub in node.clients.items():
        rs.setdefault(client_id, []).append(sub)
    for group in node.shared.values():
        for client_id, sub in group.items():
            rs.setdefault(client_id, []).append(sub)


def _match(node: TopicNode, levels: list[str], rs: ClientSubscriptions) -> None:
    last = len(levels) == 1
    hash_node = node.children.get("#")
    if hash_node is not None:
        _set_rs(hash_node, rs)
    for key in ("+", levels[0]):
        child = node.children.get(key)
        if child is None:
            continue
        if last:
            _set_rs(child, rs)
            tail = child.children.get("#")
            if tail is not None:
                _set_rs(tail, rs)
        else:
            _match(child, levels[1:], rs)


def _traverse(node: TopicNode, fn: IterateFn) -> bool:
    if node.topic_name:
        for client_id, sub in list(node.clients.items()):
            if not fn(client_id, sub):
                return False
        for group in list(node.shared.values()):
            for client_id, sub in list(group.items()):
                if not fn(client_id, sub):
                    return False
    return all(_traverse(child, fn) for child in list(node.children.values()))


class TopicTrie:
    """Subscriptions organised by the levels of their topic filters."""

    def __init__(self) -> None:
        self.root = TopicNode()

    def _walk(self, topic_filter: str) -> TopicNode | None:
        node = self.root
        for level in topic_filter.split("/"):
            child = node.children.get(level)
            if child is None:
                return None
            node = child
        return node

    def subscribe(self, client_id: str, sub: Subscription) -> TopicNode:
        """Add a subscription and return the node of its topic filter."""
        node = self.root
        for level in sub.topic_filter.split("/"):
            child = node.children.get(level)
            if child is None:
                child = node.children[level] = node.new_child()
            node = child
        if sub.share_name:
            node.shared.setdefault(sub.share_name, {})[client_id] = sub
        else:
            node.clients[client_id] = sub
        node.topic_name = sub.topic_filter
        return node

    def find(self, topic_filter: str) -> TopicNode | None:
        """Return the node holding exactly this topic filter, or None."""
        node = self._walk(topic_filter)
        if node is not None and node.topic_name == topic_filter:
            return node
        return None

    def unsubscribe(self, client_id: str, topic_name: str, share_name: str) -> None:
        """Remove a client's subscription, pruning its node when left empty."""
        node = self._walk(topic_name)
        if node is None:
            return
        last = topic_name.split("/")[-1]
        if share_name:
            group = node.shared.get(share_name)
            if group is None:
                return
            group.pop(client_id, None)
            if not group:
                del node.shared[share_name]
            if not node.shared and not node.children and node.parent is not None:
                node.parent.children.pop(last, None)
        else:
            node.clients.pop(client_id, None)
            if not node.clients and not node.children and node.parent is not None:
                node.parent.children.pop(last, None)

    def get_matched_topic_filter(self, topic_name: str) -> ClientSubscriptions:
        """Return the subscriptions whose filters match the topic, by client id."""
        rs: ClientSubscriptions = {}
        _match(self.root, topic_name.split("/"), rs)
        return rs

    def pre_order_traverse(self, fn: IterateFn) -> bool:
        """Call fn for every subscription; return False if fn stopped the walk."""
        return _traverse(self.root, fn)