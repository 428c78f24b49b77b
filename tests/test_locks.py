"""
Tests for per-key locking.
"""
import threading

from subscription_lifecycle.core.locks import KeyedLocks


class TestKeyedLocks:
    """Test mutual exclusion and cleanup of idle keys."""

    def test_released_key_is_dropped(self):
        locks = KeyedLocks()
        with locks.hold("pay_1"):
            assert len(locks) == 1
        assert len(locks) == 0

    def test_released_on_error(self):
        locks = KeyedLocks()
        try:
            with locks.hold("pay_1"):
                raise RuntimeError("boom")
        except RuntimeError:
            pass
        assert len(locks) == 0

    def test_same_key_is_exclusive(self):
        locks = KeyedLocks()
        active = []
        overlaps = []
        barrier = threading.Barrier(8)

        def work():
            barrier.wait()
            with locks.hold("pay_1"):
                active.append(1)
                if len(active) > 1:
                    overlaps.append(len(active))
                active.pop()

        threads = [threading.Thread(target=work) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert overlaps == []
        assert len(locks) == 0

    def test_different_keys_do_not_block(self):
        locks = KeyedLocks()
        entered = threading.Event()

        def other_key():
            with locks.hold("pay_2"):
                entered.set()

        with locks.hold("pay_1"):
            thread = threading.Thread(target=other_key)
            thread.start()
            assert entered.wait(2.0)
            thread.join()
        assert len(locks) == 0
