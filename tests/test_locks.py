import threading

import pytest

from deployment_agent.deploy.locks import KeyedLocks


def test_entry_is_dropped_after_release():
    locks = KeyedLocks()

    with locks.hold("a"):
        assert locks.locked("a")
        assert len(locks) == 1

    assert not locks.locked("a")
    assert len(locks) == 0


def test_distinct_keys_do_not_block_each_other():
    locks = KeyedLocks()
    with locks.hold("a"):
        with locks.hold("b"):
            assert len(locks) == 2
    assert len(locks) == 0


def test_waiter_keeps_entry_alive():
    locks = KeyedLocks()
    first_inside = threading.Event()
    release_first = threading.Event()
    second_inside = threading.Event()

    def first():
        with locks.hold("target"):
            first_inside.set()
            release_first.wait(5)

    def second():
        first_inside.wait(5)
        with locks.hold("target"):
            second_inside.set()

    t1 = threading.Thread(target=first)
    t2 = threading.Thread(target=second)
    t1.start()
    t2.start()
    try:
        assert first_inside.wait(5)
        assert not second_inside.wait(0.2)
        assert len(locks) == 1
    finally:
        release_first.set()
        t1.join(5)
        t2.join(5)

    assert second_inside.is_set()
    assert len(locks) == 0


def test_entry_is_dropped_when_body_raises():
    locks = KeyedLocks()
    with pytest.raises(RuntimeError):
        with locks.hold("a"):
            raise RuntimeError("boom")
    assert len(locks) == 0
