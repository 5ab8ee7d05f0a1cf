"""Tests for the event-id deduplication window."""

import unittest

from eventpoll.stream import DEFAULT_DEDUP_WINDOW_SIZE, DedupWindow


class TestDedupWindow(unittest.TestCase):

    def test_default_capacity(self):
        self.assertEqual(DedupWindow().capacity, DEFAULT_DEDUP_WINDOW_SIZE)
        self.assertEqual(DEFAULT_DEDUP_WINDOW_SIZE, 5000)

    def test_seen_is_false_until_recorded(self):
        window = DedupWindow(capacity=3)
        self.assertFalse(window.seen("e1"))
        window.record("e1")
        self.assertTrue(window.seen("e1"))
        self.assertIn("e1", window)

    def test_seen_does_not_mutate(self):
        window = DedupWindow(capacity=3)
        window.seen("e1")
        self.assertEqual(len(window), 0)

    def test_recording_existing_id_is_a_no_op(self):
        window = DedupWindow(capacity=2)
        window.record("e1")
        window.record("e1")
        self.assertEqual(len(window), 1)

    def test_evicts_oldest_inserted_id_when_full(self):
        window = DedupWindow(capacity=2)
        window.record("e1")
        window.record("e2")
        window.record("e3")

        self.assertEqual(len(window), 2)
        self.assertFalse(window.seen("e1"))
        self.assertTrue(window.seen("e2"))
        self.assertTrue(window.seen("e3"))

    def test_eviction_is_fifo_not_lru(self):
        """Checking or re-recording an id does not refresh it."""
        window = DedupWindow(capacity=2)
        window.record("e1")
        window.record("e2")
        window.seen("e1")
        window.record("e1")
        window.record("e3")

        self.assertFalse(window.seen("e1"))
        self.assertTrue(window.seen("e2"))

    def test_size_never_exceeds_capacity(self):
        window = DedupWindow(capacity=10)
        for i in range(100):
            window.record(f"e{i}")
            self.assertLessEqual(len(window), 10)
        self.assertTrue(window.seen("e99"))
        self.assertFalse(window.seen("e89"))

    def test_clear(self):
        window = DedupWindow(capacity=2)
        window.record("e1")
        window.clear()
        self.assertEqual(len(window), 0)
        self.assertFalse(window.seen("e1"))

    def test_rejects_non_positive_capacity(self):
        with self.assertRaises(AssertionError):
            DedupWindow(capacity=0)


if __name__ == "__main__":
    unittest.main()
