from mqttstore.unack import MemoryUnackStore


def test_set_remove_cycle():
    store = MemoryUnackStore("cid")
    store.init(False)
    for pid in range(1, 10):
        assert store.set(pid) is False
        assert store.set(pid) is True
        store.remove(pid)
        assert store.set(pid) is False


def test_ids_survive_non_clean_init():
    store = MemoryUnackStore("cid")
    store.init(False)
    for pid in range(1, 10):
        store.set(pid)
    store.init(False)
    for pid in range(1, 10):
        assert store.set(pid) is True
        store.remove(pid)
        assert store.set(pid) is False


def test_clean_start_forgets_ids():
    store = MemoryUnackStore("cid")
    for pid in range(1, 10):
        store.set(pid)
    store.init(True)
    for pid in range(1, 10):
        assert store.set(pid) is False


def test_remove_unknown_id():
    store = MemoryUnackStore("cid")
    store.remove(42)
    assert store.set(42) is False