import logging
import threading

logger = logging.getLogger("ConversionMetrics")


class ConversionMetrics:
    """
    Session-wide conversion counters.

    Shared by the FormatConverter (capture context) and the AlignedBufferAllocator
    (inference context), so every update takes the lock.
    """

    def __init__(self, log_interval: int = 100, slow_threshold_ms: float = 50.0):
        self.log_interval = log_interval
        self.slow_threshold_ms = slow_threshold_ms
        self.lock = threading.Lock()
        self.reset()

    def reset(self):
        with self.lock:
            self.total_conversions = 0
            self.total_time_ms = 0.0
            self.fast_path_hits = 0
            self.fallback_count = 0
            self.aligned_successes = 0
            self.aligned_fallbacks = 0
            self.aligned_time_ms = 0.0

    def record_conversion(self, elapsed_ms: float, fast_path: bool = False):
        with self.lock:
            self.total_conversions += 1
            self.total_time_ms += elapsed_ms
            if fast_path:
                self.fast_path_hits += 1
            count = self.total_conversions

        if elapsed_ms > self.slow_threshold_ms:
            logger.warning(f"Slow conversion: {elapsed_ms:.2f}ms (threshold {self.slow_threshold_ms:.0f}ms)")
        if self.log_interval and count % self.log_interval == 0:
            logger.info(self.summary())

    def record_failure(self):
        with self.lock:
            self.fallback_count += 1

    def record_aligned(self, elapsed_ms: float, success: bool):
        with self.lock:
            if success:
                self.aligned_successes += 1
            else:
                self.aligned_fallbacks += 1
            self.aligned_time_ms += elapsed_ms

    @property
    def average_time_ms(self) -> float:
        with self.lock:
            if self.total_conversions == 0:
                return 0.0
            return self.total_time_ms / self.total_conversions

    @property
    def aligned_success_rate(self) -> float:
        with self.lock:
            attempts = self.aligned_successes + self.aligned_fallbacks
            if attempts == 0:
                return 0.0
            return self.aligned_successes / attempts * 100.0

    @property
    def average_aligned_time_ms(self) -> float:
        with self.lock:
            attempts = self.aligned_successes + self.aligned_fallbacks
            if attempts == 0:
                return 0.0
            return self.aligned_time_ms / attempts

    def snapshot(self) -> dict:
        avg = self.average_time_ms
        rate = self.aligned_success_rate
        aligned_avg = self.average_aligned_time_ms
        with self.lock:
            return {
                "total_conversions": self.total_conversions,
                "total_time_ms": self.total_time_ms,
                "average_time_ms": avg,
                "fast_path_hits": self.fast_path_hits,
                "fallback_count": self.fallback_count,
                "aligned_successes": self.aligned_successes,
                "aligned_fallbacks": self.aligned_fallbacks,
                "aligned_success_rate": rate,
                "average_aligned_time_ms": aligned_avg,
            }

    def summary(self) -> str:
        snap = self.snapshot()
        return (
            f"Conversions: {snap['total_conversions']}, Avg: {snap['average_time_ms']:.2f}ms, "
            f"Fast path: {snap['fast_path_hits']}, Failed: {snap['fallback_count']}, "
            f"Aligned: {snap['aligned_success_rate']:.1f}% "
            f"({snap['aligned_successes']}/{snap['aligned_fallbacks']} ok/fallback)"
        )
