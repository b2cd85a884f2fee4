import unittest
from unittest import mock

import numpy as np

from livediar.components import aligned_buffer
from livediar.components.aligned_buffer import AlignedBufferAllocator, aligned_empty, is_aligned
from livediar.components.conversion_metrics import ConversionMetrics
from livediar.errors import AlignedAllocationFailure


class TestAlignedBuffer(unittest.TestCase):

    def test_aligned_empty_honours_alignment(self):
        """Data pointer is a multiple of the requested alignment."""
        for n in (1, 7, 1600, 16000):
            for alignment in (16, 64, 128):
                arr = aligned_empty(n, alignment)
                self.assertEqual(len(arr), n)
                self.assertEqual(arr.dtype, np.float32)
                self.assertTrue(is_aligned(arr, alignment))

    def test_prepare_copies_into_aligned_scratch(self):
        """Prepared samples are aligned, equal to the input, and counted."""
        metrics = ConversionMetrics(log_interval=0)
        allocator = AlignedBufferAllocator(alignment=64, metrics=metrics)
        samples = np.random.default_rng(0).standard_normal(12345).astype(np.float32)

        out = allocator.prepare(samples)

        self.assertTrue(is_aligned(out, 64))
        self.assertTrue(np.array_equal(out, samples))
        self.assertFalse(np.shares_memory(out, samples))
        self.assertEqual(metrics.aligned_successes, 1)
        self.assertEqual(metrics.aligned_fallbacks, 0)

    def test_scratch_is_reused_for_smaller_windows(self):
        """A shrinking window reuses the existing scratch allocation."""
        allocator = AlignedBufferAllocator(metrics=ConversionMetrics(log_interval=0))
        first = allocator.prepare(np.ones(8000, dtype=np.float32))
        second = allocator.prepare(np.zeros(4000, dtype=np.float32))
        self.assertTrue(np.shares_memory(first, second))
        self.assertEqual(len(second), 4000)

    def test_allocation_failure_falls_back_silently(self):
        """An aligned allocation failure yields a standard buffer, never an error."""
        metrics = ConversionMetrics(log_interval=0)
        allocator = AlignedBufferAllocator(metrics=metrics)
        samples = np.arange(100, dtype=np.float32)
        with mock.patch.object(aligned_buffer, "aligned_empty", side_effect=AlignedAllocationFailure("oom")):
            out = allocator.prepare(samples)
        self.assertTrue(np.array_equal(out, samples))
        self.assertEqual(metrics.aligned_fallbacks, 1)
        self.assertEqual(metrics.aligned_success_rate, 0.0)

    def test_disabled_allocator_passes_through(self):
        """With the layer disabled no metrics are recorded."""
        metrics = ConversionMetrics(log_interval=0)
        allocator = AlignedBufferAllocator(enabled=False, metrics=metrics)
        samples = np.arange(10, dtype=np.float32)
        out = allocator.prepare(samples)
        self.assertTrue(np.array_equal(out, samples))
        self.assertEqual(metrics.aligned_successes + metrics.aligned_fallbacks, 0)


if __name__ == '__main__':
    unittest.main()
