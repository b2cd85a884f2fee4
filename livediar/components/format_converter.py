import logging
import threading
import time
from typing import Callable, Optional, Tuple

import numpy as np
import soxr

from livediar import config
from livediar.components.conversion_metrics import ConversionMetrics
from livediar.dtos import AudioFormat, AudioFrame, SampleType
from livediar.errors import ConversionFailure

logger = logging.getLogger("FormatConverter")

_INT_SCALE = {
    SampleType.INT16: 32768.0,
    SampleType.INT32: 2147483648.0,
}


class FormatConverter:
    """
    Converts native device frames to canonical mono float32 at the target rate.

    Responsibility:
    - One cached soxr.ResampleStream per (source, target) format pair. The stream
      carries resampler state across frames, so it is rebuilt ONLY when the
      source format changes; rebuilding per frame causes timestamp drift.
    - Fast path: canonical input is returned as a zero-copy view.
    - Failures are per-frame. Consecutive failures are exposed as a device fault.
    """

    def __init__(
        self,
        target_rate: int = config.SAMPLE_RATE,
        metrics: Optional[ConversionMetrics] = None,
        failure_threshold: int = config.CONVERTER_FAILURE_THRESHOLD,
        failure_window: float = config.CONVERTER_FAILURE_WINDOW,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.target_format = AudioFormat.canonical(target_rate)
        self.metrics = metrics or ConversionMetrics()
        self.failure_threshold = failure_threshold
        self.failure_window = failure_window
        self.clock = clock
        self.lock = threading.Lock()

        self._key: Optional[Tuple[AudioFormat, AudioFormat]] = None
        self._resampler: Optional[soxr.ResampleStream] = None
        self.rebuild_count = 0
        self.consecutive_failures = 0
        self._last_failure_at: Optional[float] = None

    @property
    def target_rate(self) -> int:
        return self.target_format.sample_rate

    @property
    def device_fault(self) -> bool:
        return self.consecutive_failures >= self.failure_threshold

    def convert(self, frame: AudioFrame) -> np.ndarray:
        """
        Returns a 1D float32 array at the target rate. May be empty while the
        resampler primes. Raises ConversionFailure; the caller drops the frame.
        """
        started = time.perf_counter()
        fmt = frame.format

        if fmt.is_canonical and fmt.sample_rate == self.target_rate and frame.samples.dtype == np.float32:
            if self._key is not None:
                # Leaving a resampled route: its stream state must not carry over
                with self.lock:
                    self._key = None
                    self._resampler = None
            out = frame.samples.reshape(-1)
            if not out.flags.c_contiguous:
                out = np.ascontiguousarray(out)
            self._on_success()
            self.metrics.record_conversion((time.perf_counter() - started) * 1000.0, fast_path=True)
            return out

        with self.lock:
            try:
                out = self._convert_locked(frame)
            except Exception as e:
                self._on_failure(fmt)
                raise ConversionFailure(f"Cannot convert {fmt} -> {self.target_format}: {e}") from e

        self._on_success()
        self.metrics.record_conversion((time.perf_counter() - started) * 1000.0)
        return out

    def _convert_locked(self, frame: AudioFrame) -> np.ndarray:
        fmt = frame.format
        key = (fmt, self.target_format)
        if self._key != key:
            self._rebuild(key)

        data = frame.samples
        scale = _INT_SCALE.get(fmt.sample_type)
        if scale is not None:
            audio = data.astype(np.float32) / scale
        else:
            audio = data.astype(np.float32, copy=False)

        # Mixdown
        if audio.ndim == 2:
            audio = audio.mean(axis=1, dtype=np.float32) if audio.shape[1] > 1 else audio[:, 0]
        audio = np.ascontiguousarray(audio, dtype=np.float32)

        if self._resampler is not None:
            audio = self._resampler.resample_chunk(audio)

        if len(audio) == 0:
            return np.zeros(0, dtype=np.float32)

        if not np.all(np.isfinite(audio)):
            raise ValueError("non-finite samples after conversion")

        # Light peak normalization; only kicks in for out-of-range input
        peak = float(np.max(np.abs(audio)))
        if peak > 1.0:
            audio = audio / peak

        return audio.astype(np.float32, copy=False)

    def _rebuild(self, key):
        fmt = key[0]
        if fmt.sample_rate != self.target_rate:
            self._resampler = soxr.ResampleStream(fmt.sample_rate, self.target_rate, 1, dtype=np.float32)
        else:
            self._resampler = None
        if self._key is not None:
            logger.info(f"Rebuilt converter: {self._key[0]} -> {fmt}")
        else:
            logger.info(f"Converter ready: {fmt} -> {self.target_format}")
        self._key = key
        self.rebuild_count += 1

    def _on_success(self):
        if self.consecutive_failures:
            self.consecutive_failures = 0
            self._last_failure_at = None

    def _on_failure(self, fmt: AudioFormat):
        now = self.clock()
        if self._last_failure_at is not None and now - self._last_failure_at <= self.failure_window:
            self.consecutive_failures += 1
        else:
            self.consecutive_failures = 1
        self._last_failure_at = now
        self.metrics.record_failure()
        # Drop cached state; a persisting mismatch gets a fresh converter next frame
        self._key = None
        self._resampler = None
        logger.warning(f"Conversion failed for {fmt} ({self.consecutive_failures} consecutive)")

    def flush(self) -> np.ndarray:
        """
        Drain samples still held by the resampler. Called once on stop.
        """
        with self.lock:
            if self._resampler is None:
                return np.zeros(0, dtype=np.float32)
            try:
                tail = self._resampler.resample_chunk(np.zeros(0, dtype=np.float32), last=True)
            except Exception as e:
                logger.warning(f"Resampler flush failed: {e}")
                tail = np.zeros(0, dtype=np.float32)
            self._resampler = None
            self._key = None
        return np.clip(tail.astype(np.float32, copy=False), -1.0, 1.0)

    def reset(self):
        with self.lock:
            self._key = None
            self._resampler = None
            self.consecutive_failures = 0
            self._last_failure_at = None
