import logging
import threading
from collections import deque
from typing import Deque, List

from livediar import config
from livediar.dtos import PipelineTimings

logger = logging.getLogger("AdaptiveWindowScheduler")


class AdaptiveWindowScheduler:
    """
    Grows or shrinks the live window from observed inference latency.

    ratio = processing_time / window_duration
      ratio > grow_ratio   -> window += step (capped at max)
      ratio < shrink_ratio -> window -= step (floored at min)
    """

    HISTORY = 50

    def __init__(
        self,
        sample_rate: int = config.SAMPLE_RATE,
        min_window: float = config.MIN_WINDOW_SECONDS,
        default_window: float = config.DEFAULT_WINDOW_SECONDS,
        max_window: float = config.MAX_WINDOW_SECONDS,
        step: float = config.WINDOW_STEP_SECONDS,
        grow_ratio: float = config.GROW_RATIO,
        shrink_ratio: float = config.SHRINK_RATIO,
    ):
        if not 0 < min_window <= max_window:
            raise ValueError(f"invalid window bounds [{min_window}, {max_window}]")
        self.sample_rate = sample_rate
        self.min_window = min_window
        self.max_window = max_window
        self.default_window = self._clamp(default_window)
        self.step = step
        self.grow_ratio = grow_ratio
        self.shrink_ratio = shrink_ratio

        self._lock = threading.Lock()
        self._window_seconds = self.default_window
        self.history: Deque[PipelineTimings] = deque(maxlen=self.HISTORY)

    @classmethod
    def from_config(cls, cfg) -> "AdaptiveWindowScheduler":
        return cls(
            sample_rate=cfg.sample_rate,
            min_window=cfg.min_window_seconds,
            default_window=cfg.default_window_seconds,
            max_window=cfg.max_window_seconds,
            step=cfg.window_step_seconds,
            grow_ratio=cfg.grow_ratio,
            shrink_ratio=cfg.shrink_ratio,
        )

    @property
    def window_seconds(self) -> float:
        with self._lock:
            return self._window_seconds

    @property
    def window_samples(self) -> int:
        return int(round(self.window_seconds * self.sample_rate))

    def observe(self, timings: PipelineTimings) -> float:
        """
        Apply the adaptive rule after a window's inference returns.
        Returns the (possibly updated) window length in seconds.
        """
        ratio = timings.ratio
        with self._lock:
            self.history.append(timings)
            previous = self._window_seconds
            if ratio > self.grow_ratio:
                self._window_seconds = self._clamp(previous + self.step)
            elif ratio < self.shrink_ratio:
                self._window_seconds = self._clamp(previous - self.step)
            current = self._window_seconds

        if current != previous:
            logger.info(
                f"Window {previous:.1f}s -> {current:.1f}s "
                f"(processing {timings.processing_time:.3f}s, ratio {ratio:.2f})"
            )
        return current

    def nudge(self, delta: float) -> float:
        with self._lock:
            self._window_seconds = self._clamp(self._window_seconds + delta)
            return self._window_seconds

    def reset(self):
        with self._lock:
            self._window_seconds = self.default_window
            self.history.clear()

    def recent(self) -> List[PipelineTimings]:
        with self._lock:
            return list(self.history)

    def _clamp(self, value: float) -> float:
        # Round away float accumulation from repeated 0.5 steps
        return round(min(self.max_window, max(self.min_window, value)), 6)
