import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from mqttstore.mem_queue import MemoryQueue
from mqttstore.message import Message, Version
from mqttstore.queue import (
    DropExceedsMaxPacketSize,
    DropExpired,
    DropQueueFull,
    Elem,
    InitOptions,
    Publish,
    Pubrel,
    QueueClosedError,
)

CLIENT_ID = "cid"


class DropRecorder:
    def __init__(self):
        self.calls = []

    def __call__(self, client_id, msg, err):
        self.calls.append((client_id, msg, err))

    def expect(self, message, error_type):
        assert len(self.calls) == 1
        client_id, msg, err = self.calls[0]
        assert client_id == CLIENT_ID
        assert msg == message
        assert isinstance(err, error_type)
        self.calls.clear()


def _elem(qos, topic, payload, packet_id=0, expiry=None):
    return Elem(
        item=Publish(Message(qos=qos, topic=topic, payload=payload, packet_id=packet_id)),
        expiry=expiry,
    )


def _initial_elems():
    # 2 inflight messages + 3 new messages
    return [
        _elem(1, "/topic1_qos1", b"qos1", 1),
        _elem(2, "/topic1_qos2", b"qos2", 2),
        _elem(1, "/topic1_qos1", b"qos1"),
        _elem(0, "/topic1_qos0", b"qos0"),
        _elem(2, "/topic1_qos2", b"qos2"),
    ]


def _options(clean_start):
    return InitOptions(clean_start=clean_start, version=Version.V5, read_bytes_limit=100)


def _reconnect(store, clean_start):
    store.close()
    store.init(_options(clean_start))


@pytest.fixture
def recorder():
    return DropRecorder()


@pytest.fixture
def store(recorder):
    queue = MemoryQueue(5, CLIENT_ID, drop_handler=recorder)
    queue.init(_options(True))
    return queue


@pytest.fixture
def initial(store):
    elems = _initial_elems()
    for elem in elems:
        store.add(Elem(at=elem.at, expiry=elem.expiry, item=Publish(elem.item.message.copy())))
    return elems


def _stage_read(store, initial):
    assert store.read_inflight(1) == [initial[0]]
    assert store.read_inflight(2) == [initial[1]]
    elems = store.read([3, 4, 5])
    # packet ids are consumed in order and not skipped for qos0 messages
    assert [e.id for e in elems] == [3, 0, 4]
    store.remove(3)
    store.remove(4)


def _stage_drop(store, recorder):
    for _ in range(3):
        store.add(_elem(2, "123", b"123"))
    elems = store.read([5, 6, 7])
    assert [e.id for e in elems] == [5, 6, 7]

    # drop case 1: no more non-inflight messages, drop the new one
    drop_new = _elem(1, "123", b"123")
    store.add(drop_new)
    recorder.expect(drop_new.item.message, DropQueueFull)
    store.remove(1)
    store.remove(2)

    drop_qos0 = _elem(0, "/t_qos0", b"test")
    store.add(drop_qos0)
    drop_expired = _elem(
        0, "/drop", b"test", expiry=datetime.now(timezone.utc) - timedelta(seconds=10)
    )
    store.add(drop_expired)
    assert recorder.calls == []

    # drop case 2: expired message
    drop_front = _elem(0, "/drop_front", b"test")
    store.add(drop_front)
    recorder.expect(drop_expired.item.message, DropExpired)

    # drop case 3: qos0 message
    store.add(_elem(1, "/t_qos1", b"test"))
    recorder.expect(drop_qos0.item.message, DropQueueFull)

    # drop case 4: front message
    store.add(_elem(1, "/t", b"test"))
    recorder.expect(drop_front.item.message, DropQueueFull)


def _stage_replace(store):
    for pid in range(5, 9):
        replaced = store.replace(Elem(item=Pubrel(pid)))
        assert replaced is (pid <= 7), "must not replace unread packet"
    _reconnect(store, False)
    inflights = store.read_inflight(5)
    assert [e.item for e in inflights] == [Pubrel(5), Pubrel(6), Pubrel(7)]


def _stage_clean_start(store):
    _reconnect(store, True)
    assert store.read_inflight(10) == []


def _stage_read_exceeds_drop(store, recorder):
    exceeded = _elem(1, "/drop_exceed", bytes(100))
    store.add(exceeded)
    assert store.read([1]) == []
    recorder.expect(exceeded.item.message, DropExceedsMaxPacketSize)

    expired = _elem(
        1, "/drop_exceed", bytes(100), expiry=datetime.now(timezone.utc) - timedelta(seconds=1)
    )
    store.add(expired)
    assert store.read([1]) == []
    recorder.expect(expired.item.message, DropExpired)


def test_read(store, initial):
    _stage_read(store, initial)


def test_drop(store, recorder, initial):
    _stage_read(store, initial)
    _stage_drop(store, recorder)


def test_replace(store, recorder, initial):
    _stage_read(store, initial)
    _stage_drop(store, recorder)
    _stage_replace(store)


def test_clean_start(store, recorder, initial):
    _stage_read(store, initial)
    _stage_drop(store, recorder)
    _stage_replace(store)
    _stage_clean_start(store)


def test_read_exceeds_drop(store, recorder, initial):
    _stage_read(store, initial)
    _stage_drop(store, recorder)
    _stage_replace(store)
    _stage_clean_start(store)
    _stage_read_exceeds_drop(store, recorder)


def _read_in_thread(store, pids):
    outcome = {}

    def target():
        try:
            outcome["value"] = store.read(pids)
        except Exception as exc:  # noqa: BLE001
            outcome["error"] = exc

    thread = threading.Thread(target=target, daemon=True)
    thread.start()
    return thread, outcome


def test_close_unblocks_read(store):
    assert store.read_inflight(10) == []
    thread, outcome = _read_in_thread(store, [1, 2, 3])
    thread.join(0.2)
    assert thread.is_alive(), "read must block before close"
    store.close()
    thread.join(5)
    assert not thread.is_alive()
    assert "value" not in outcome
    assert isinstance(outcome["error"], QueueClosedError)


def test_read_unblocks_on_add(store):
    assert store.read_inflight(10) == []
    thread, outcome = _read_in_thread(store, [9])
    time.sleep(0.1)
    store.add(_elem(1, "a/b", b"x"))
    thread.join(5)
    assert not thread.is_alive()
    assert [e.id for e in outcome["value"]] == [9]


def test_read_before_inflight_drained_raises(store, initial):
    with pytest.raises(RuntimeError):
        store.read([1])


def test_full_queue_of_inflight_drops_new_message(recorder):
    queue = MemoryQueue(2, CLIENT_ID, drop_handler=recorder)
    queue.init(_options(True))
    queue.add(_elem(1, "a", b"1", 1))
    queue.add(_elem(1, "b", b"2", 2))
    newcomer = _elem(1, "c", b"3")
    queue.add(newcomer)
    recorder.expect(newcomer.item.message, DropQueueFull)
    assert [e.id for e in queue.read_inflight(10)] == [1, 2]