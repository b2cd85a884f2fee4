import random
import unittest

import numpy as np

from livediar.components.backpressure import BackpressureController, BackpressureState, Transition
from livediar.components.window_buffer import StreamingWindowBuffer
from livediar.tests.fakes import ManualClock

SR = 100


class TestBackpressureController(unittest.TestCase):

    def setUp(self):
        self.clock = ManualClock()
        self.buf = StreamingWindowBuffer(sample_rate=SR, initial_capacity_seconds=2)
        self.bp = BackpressureController(
            sample_rate=SR,
            max_live_seconds=2.0,
            drop_threshold=3,
            cooldown_seconds=15.0,
            terminal_drop_ceiling=50,
            max_pause_cycles=3,
            notice_interval=10.0,
            clock=self.clock,
        )

    def _append(self, n=10):
        self.buf.append(np.zeros(n, dtype=np.float32))
        return self.bp.on_append(self.buf)

    def _saturate(self):
        self.buf.append(np.zeros(200, dtype=np.float32))
        self.bp.on_append(self.buf)

    def test_live_buffer_is_bounded(self):
        """After every append the live buffer is within the limit."""
        rng = random.Random(3)
        for _ in range(300):
            self._append(rng.randint(1, 120))
            self.assertLessEqual(self.buf.live_samples, 200)
            if rng.random() < 0.1:
                self.buf.take_window()

    def test_pause_after_consecutive_drops(self):
        """Three consecutive drops pause live processing and notify once."""
        self._saturate()
        d1 = self._append()
        d2 = self._append()
        self.assertEqual((d1.consecutive_drops, d2.consecutive_drops), (1, 2))
        self.assertIsNone(d2.transition)

        d3 = self._append()
        self.assertIs(d3.transition, Transition.PAUSED)
        self.assertTrue(d3.notify)
        self.assertTrue(self.bp.is_paused)
        self.assertFalse(self.bp.accepting_windows)
        self.assertAlmostEqual(self.bp.cooldown_remaining(), 15.0)

    def test_paused_drops_are_throttled_and_not_consecutive(self):
        """While paused, drops are counted apart and notices repeat at most every 10s."""
        self._saturate()
        for _ in range(3):
            self._append()

        d = self._append()
        self.assertEqual(d.dropped_samples, 10)
        self.assertFalse(d.notify)
        self.assertEqual(self.bp.consecutive_drops, 3)
        self.assertEqual(self.bp.paused_drops, 1)

        self.clock.advance(10.0)
        self.assertTrue(self._append().notify)
        self.assertFalse(self._append().notify)

    def test_cooldown_resumes(self):
        """poll() reports the resume once the cooldown elapses."""
        self._saturate()
        for _ in range(3):
            self._append()
        self.clock.advance(14.9)
        self.assertIsNone(self.bp.poll())
        self.clock.advance(0.2)
        self.assertIs(self.bp.poll(), Transition.RESUMED)
        self.assertIs(self.bp.state, BackpressureState.NORMAL)
        self.assertIsNone(self.bp.poll())

    def test_clean_window_resets_counters(self):
        """A window completed without drops clears drops and pause cycles."""
        self._saturate()
        for _ in range(3):
            self._append()
        self.clock.advance(16.0)
        self.bp.poll()
        self.buf.take_window()

        self.bp.on_window_submitted()
        self._append()  # within bounds, no drop
        self.bp.on_window_completed()

        self.assertEqual(self.bp.consecutive_drops, 0)
        self.assertEqual(self.bp.pause_cycles, 0)
        self.assertEqual(self.bp.total_pauses, 1)

    def test_window_with_drop_does_not_reset(self):
        """Drops since submission keep the counters."""
        self._saturate()
        self._append()
        self.bp.on_window_submitted()
        self._append()
        self.bp.on_window_completed()
        self.assertEqual(self.bp.consecutive_drops, 2)

    def test_repeated_pauses_become_terminal(self):
        """More than max_pause_cycles pauses without a clean window is terminal."""
        self._saturate()
        transitions = []
        for _ in range(100):
            d = self._append()
            if d.transition is not None:
                transitions.append(d.transition)
            if d.transition is Transition.TERMINAL:
                break
            if self.bp.is_paused:
                self.clock.advance(15.0)
                if self.bp.poll() is Transition.RESUMED:
                    transitions.append(Transition.RESUMED)

        self.assertTrue(self.bp.is_terminal)
        self.assertEqual(transitions.count(Transition.PAUSED), 3)
        self.assertEqual(transitions[-1], Transition.TERMINAL)
        # Terminal is sticky
        self.clock.advance(100.0)
        self.assertIsNone(self.bp.poll())
        self.assertTrue(self.bp.is_terminal)

    def test_drop_ceiling_is_terminal(self):
        """Reaching the drop ceiling goes straight to terminal."""
        bp = BackpressureController(
            sample_rate=SR, max_live_seconds=2.0, drop_threshold=3,
            terminal_drop_ceiling=3, clock=self.clock,
        )
        self.buf.append(np.zeros(200, dtype=np.float32))
        bp.on_append(self.buf)
        transitions = []
        for _ in range(3):
            self.buf.append(np.zeros(10, dtype=np.float32))
            transitions.append(bp.on_append(self.buf).transition)
        self.assertEqual(transitions, [None, None, Transition.TERMINAL])
        self.assertEqual(bp.snapshot()["state"], "terminal")


if __name__ == '__main__':
    unittest.main()
