import random
import unittest

from livediar.components.window_scheduler import AdaptiveWindowScheduler
from livediar.config import DiarizerConfig
from livediar.dtos import PipelineTimings


def _timings(window: float, processing: float) -> PipelineTimings:
    return PipelineTimings(window_sequence=0, window_duration=window, processing_time=processing)


class TestAdaptiveWindowScheduler(unittest.TestCase):

    def test_slow_inference_grows_to_max(self):
        """Processing at 90% of the window grows it one step per window until max."""
        sched = AdaptiveWindowScheduler(min_window=1.0, default_window=3.0, max_window=6.0, step=0.5)
        seen = [sched.window_seconds]
        for _ in range(10):
            w = sched.window_seconds
            seen.append(sched.observe(_timings(w, 0.9 * w)))

        self.assertEqual(seen[:8], [3.0, 3.5, 4.0, 4.5, 5.0, 5.5, 6.0, 6.0])
        self.assertEqual(sched.window_seconds, 6.0)

    def test_fast_inference_shrinks_to_min(self):
        """Processing under 30% of the window shrinks it down to min."""
        sched = AdaptiveWindowScheduler(min_window=1.0, default_window=3.0, max_window=6.0, step=0.5)
        for _ in range(10):
            w = sched.window_seconds
            sched.observe(_timings(w, 0.1 * w))
        self.assertEqual(sched.window_seconds, 1.0)

    def test_mid_band_holds(self):
        """A ratio between the thresholds leaves the window alone."""
        sched = AdaptiveWindowScheduler(min_window=1.0, default_window=3.0, max_window=6.0, step=0.5)
        for ratio in (0.4, 0.5, 0.7):
            sched.observe(_timings(3.0, ratio * 3.0))
        self.assertEqual(sched.window_seconds, 3.0)
        self.assertEqual(len(sched.recent()), 3)

    def test_window_stays_in_bounds(self):
        """Arbitrary latency sequences never push the window out of [min, max]."""
        rng = random.Random(7)
        sched = AdaptiveWindowScheduler(min_window=1.0, default_window=5.0, max_window=10.0, step=0.5)
        for _ in range(500):
            w = sched.window_seconds
            sched.observe(_timings(w, rng.uniform(0.0, 2.0) * w))
            self.assertGreaterEqual(sched.window_seconds, 1.0)
            self.assertLessEqual(sched.window_seconds, 10.0)
        self.assertEqual(len(sched.recent()), AdaptiveWindowScheduler.HISTORY)

    def test_nudge_and_reset(self):
        """nudge() is clamped; reset() restores the default."""
        sched = AdaptiveWindowScheduler.from_config(DiarizerConfig())
        self.assertEqual(sched.window_seconds, 5.0)
        self.assertEqual(sched.window_samples, 80000)
        self.assertEqual(sched.nudge(100.0), 10.0)
        sched.reset()
        self.assertEqual(sched.window_seconds, 5.0)

    def test_invalid_bounds(self):
        with self.assertRaises(ValueError):
            AdaptiveWindowScheduler(min_window=5.0, max_window=1.0)


if __name__ == '__main__':
    unittest.main()
