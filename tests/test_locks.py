import threading
import time

from services.locks import KeyedLocks


def test_same_key_is_serialized():
    locks = KeyedLocks()
    inside = []
    overlaps = []

    def worker():
        with locks.hold(7):
            if inside:
                overlaps.append(True)
            inside.append(1)
            time.sleep(0.01)
            inside.pop()

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert overlaps == []
    assert locks.key_count() == 0


def test_hold_is_reentrant_and_keys_are_independent():
    locks = KeyedLocks()
    with locks.hold(1):
        with locks.hold("1"):
            with locks.hold(2):
                pass
    assert locks.key_count() == 0


def test_released_keys_are_evicted():
    locks = KeyedLocks()
    for key in range(100):
        with locks.hold(key):
            assert locks.key_count() == 1
    assert locks.key_count() == 0
