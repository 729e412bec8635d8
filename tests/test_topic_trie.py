import pytest

from mqttstore.subscription import Subscription
from mqttstore.topic_trie import TopicTrie, is_system_topic

TOPIC_MATCH = [
    ("#", "/abc/def", True),
    ("/a", "a", False),
    ("a/#", "a", True),
    ("+", "/a", False),
    ("a/", "a", False),
    ("a/+", "a/123/4", False),
    ("a/#", "a/123/4", True),
    ("/a/+/+/abcd", "/a/dfdf/3434/abcd", True),
    ("/a/+/+/abcd", "/a/dfdf/3434/abcdd", False),
    ("/a/+/abc/", "/a/dfdf/abc/", True),
    ("/a/+/abc/", "/a/dfdf/abc", False),
    ("/a/+/+/", "/a/dfdf/", False),
    ("/a/+/+", "/a/dfdf/", True),
    ("/a/+/+/#", "/a/dfdf/", True),
]


@pytest.mark.parametrize("sub_topic, topic, is_match", TOPIC_MATCH)
def test_matched_clients(sub_topic, topic, is_match):
    trie = TopicTrie()
    trie.subscribe("cid", Subscription(topic_filter=sub_topic))
    rs = trie.get_matched_topic_filter(topic)
    if is_match:
        assert rs["cid"][0].qos == 0
    else:
        assert "cid" not in rs


def test_matched_clients_qos():
    trie = TopicTrie()
    for name, qos in (("a/b", 1), ("a/#", 2), ("a/+", 0)):
        trie.subscribe("cid", Subscription(topic_filter=name, qos=qos))
    rs = trie.get_matched_topic_filter("a/b")
    assert rs["cid"][0].qos == 2
    assert len(rs["cid"]) == 3


def test_subscribe_and_find():
    trie = TopicTrie()
    subs = {
        "cid1": [("t1/t2/+", 1), ("t1/t2/", 2), ("t1/t2/cid1", 0)],
        "cid2": [("t1/t2/+", 2), ("t1/t2/", 1), ("t1/t2/cid2", 0)],
    }
    for cid, topics in subs.items():
        for name, qos in topics:
            trie.subscribe(cid, Subscription(topic_filter=name, qos=qos))
    finds = {
        "cid1": [
            (True, "t1/t2/+", 1),
            (True, "t1/t2/", 2),
            (False, "t1/t2/cid2", 0),
            (False, "t1/t2/cid3", 0),
        ],
        "cid2": [
            (True, "t1/t2/+", 2),
            (True, "t1/t2/", 1),
            (False, "t1/t2/cid1", 0),
        ],
    }
    for cid, cases in finds.items():
        for exist, name, want_qos in cases:
            node = trie.find(name)
            if exist:
                assert node.clients[cid].qos == want_qos
            else:
                assert node is None or cid not in node.clients


def test_unsubscribe():
    trie = TopicTrie()
    subs = {
        "cid1": [("t1/t2/t3", 1), ("t1/t2", 2)],
        "cid2": [("t1/t2/t3", 2), ("t1/t2", 1)],
    }
    for cid, topics in subs.items():
        for name, qos in topics:
            trie.subscribe(cid, Subscription(topic_filter=name, qos=qos))
    for cid, topics in {"cid1": ["t1/t2/t3", "t4/t5"], "cid2": ["t1/t2/t3"]}.items():
        for name in topics:
            trie.unsubscribe(cid, name, "")
    after = {
        "cid1": [(False, "t1/t2/t3", 0), (True, "t1/t2", 2)],
        "cid2": [(False, "t1/t2/+", 0), (True, "t1/t2", 1)],
    }
    for cid, cases in after.items():
        for exist, name, want_qos in cases:
            matched = trie.get_matched_topic_filter(name)
            if exist:
                assert matched[cid][0].qos == want_qos
            else:
                assert len(matched) == 0


def test_unsubscribe_shared_prunes_node():
    trie = TopicTrie()
    trie.subscribe("cid", Subscription(share_name="g", topic_filter="a/b"))
    assert trie.find("a/b") is not None
    trie.unsubscribe("cid", "a/b", "g")
    assert trie.find("a/b") is None
    assert trie.get_matched_topic_filter("a/b") == {}


def test_shared_subscription_matches():
    trie = TopicTrie()
    sub = Subscription(share_name="g", topic_filter="a/+")
    trie.subscribe("cid", sub)
    assert trie.get_matched_topic_filter("a/x") == {"cid": [sub]}


def test_pre_order_traverse():
    trie = TopicTrie()
    topics = [("a/b/c", 0), ("/a/b/c", 1), ("b/c/d", 2)]
    for name, qos in topics:
        trie.subscribe("abc", Subscription(topic_filter=name, qos=qos))
    seen = []

    def visit(client_id, sub):
        seen.append((client_id, sub.topic_filter, sub.qos))
        return True

    assert trie.pre_order_traverse(visit) is True
    assert sorted(seen) == sorted(("abc", name, qos) for name, qos in topics)


def test_pre_order_traverse_stops():
    trie = TopicTrie()
    for name in ("a", "b", "c"):
        trie.subscribe("abc", Subscription(topic_filter=name))
    calls = []

    def visit(client_id, sub):
        calls.append(sub)
        return False

    assert trie.pre_order_traverse(visit) is False
    assert len(calls) == 1


def test_find_requires_exact_filter():
    trie = TopicTrie()
    trie.subscribe("cid", Subscription(topic_filter="a/b/c"))
    assert trie.find("a/b") is None
    assert trie.find("a/b/c").topic_name == "a/b/c"


@pytest.mark.parametrize("topic, expected", [("$SYS/a", True), ("a/$b", False), ("", False)])
def test_is_system_topic(topic, expected):
    assert is_system_topic(topic) is expected