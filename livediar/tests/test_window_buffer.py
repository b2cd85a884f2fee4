import unittest

import numpy as np

from livediar.components.window_buffer import StreamingWindowBuffer


class TestStreamingWindowBuffer(unittest.TestCase):

    def setUp(self):
        self.buf = StreamingWindowBuffer(sample_rate=100, initial_capacity_seconds=1)

    def test_window_handoff_clears_live_keeps_full(self):
        """Handing off a window empties the live buffer only."""
        self.buf.append(np.arange(60, dtype=np.float32))
        self.assertFalse(self.buf.has_window(80))
        self.buf.append(np.arange(60, 120, dtype=np.float32))
        self.assertTrue(self.buf.has_window(80))

        window = self.buf.take_window()

        self.assertEqual(window.num_samples, 120)
        self.assertEqual(window.start_sample, 0)
        self.assertEqual(window.sequence, 1)
        self.assertTrue(np.array_equal(window.samples, np.arange(120, dtype=np.float32)))
        self.assertEqual(self.buf.live_samples, 0)
        self.assertAlmostEqual(self.buf.full_session_seconds, 1.2)

    def test_drop_oldest_is_fifo_and_shifts_timeline(self):
        """Drops remove the oldest live samples; the next window starts after them."""
        self.buf.append(np.arange(90, dtype=np.float32))
        dropped = self.buf.drop_oldest(30)
        self.assertEqual(dropped, 30)

        window = self.buf.take_window()
        self.assertEqual(window.start_sample, 30)
        self.assertEqual(float(window.samples[0]), 30.0)
        self.assertAlmostEqual(window.start_time, 0.3)
        # Full session is untouched by drops
        self.assertEqual(len(self.buf.snapshot_full_session()), 90)

    def test_drop_more_than_available(self):
        """Dropping past the live length empties the live buffer."""
        self.buf.append(np.ones(10, dtype=np.float32))
        self.assertEqual(self.buf.drop_oldest(50), 10)
        self.assertEqual(self.buf.live_samples, 0)
        self.assertIsNone(self.buf.take_window())

    def test_ring_wraps_and_grows(self):
        """Content survives ring wrap-around and capacity growth."""
        data = np.arange(1000, dtype=np.float32)
        for start in range(0, 1000, 70):
            self.buf.append(data[start:start + 70])
            if self.buf.live_samples > 80:
                self.buf.drop_oldest(self.buf.live_samples - 80)
        window = self.buf.take_window()
        self.assertTrue(np.array_equal(window.samples, data[-80:]))

        self.buf.append(np.arange(500, dtype=np.float32))
        self.assertGreaterEqual(self.buf.capacity, 500)
        self.assertTrue(np.array_equal(self.buf.take_window().samples, np.arange(500, dtype=np.float32)))

    def test_drain_then_restore_full_session(self):
        """Drained audio can be restored ahead of newer audio."""
        self.buf.append(np.ones(50, dtype=np.float32))
        drained = self.buf.drain_full_session()
        self.assertEqual(len(drained), 50)
        self.assertEqual(len(self.buf.drain_full_session()), 0)

        self.buf.append(np.full(10, 2.0, dtype=np.float32))
        self.buf.restore_full_session(drained)
        full = self.buf.snapshot_full_session()
        self.assertEqual(len(full), 60)
        self.assertEqual(float(full[0]), 1.0)
        self.assertEqual(float(full[-1]), 2.0)

    def test_append_copies_input(self):
        """Mutating the caller's array after append does not change buffered audio."""
        chunk = np.zeros(20, dtype=np.float32)
        self.buf.append(chunk)
        chunk[:] = 9.0
        self.assertEqual(float(self.buf.take_window().samples.max()), 0.0)
        self.assertEqual(float(self.buf.snapshot_full_session().max()), 0.0)


if __name__ == '__main__':
    unittest.main()
