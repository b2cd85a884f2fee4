import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from livediar import config
from livediar.components.window_buffer import StreamingWindowBuffer

logger = logging.getLogger("Backpressure")


class BackpressureState(str, Enum):
    NORMAL = "normal"
    PAUSED = "paused"
    TERMINAL = "terminal"


class Transition(str, Enum):
    PAUSED = "paused"
    RESUMED = "resumed"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class BackpressureDecision:
    """
    Outcome of one append pass.
    """
    dropped_samples: int = 0
    transition: Optional[Transition] = None
    notify: bool = False
    live_seconds: float = 0.0
    consecutive_drops: int = 0
    pause_cycles: int = 0


class BackpressureController:
    """
    Bounds the live buffer and escalates under sustained overload.

    State machine: NORMAL <-> PAUSED(cooldown_until) -> TERMINAL

    - Every append: trim the live buffer to max_live_seconds (oldest first).
      A trim in NORMAL counts as a consecutive drop.
    - consecutive drops >= drop_threshold -> PAUSED for cooldown_seconds.
      While PAUSED the live buffer is still bounded but windows are not fed.
    - A window that completes with no drop since it was submitted resets the
      drop counter and the pause-cycle counter.
    - Drop counter >= terminal_drop_ceiling, or more than max_pause_cycles
      pauses without a clean window -> TERMINAL (sticky).
    """

    def __init__(
        self,
        sample_rate: int = config.SAMPLE_RATE,
        max_live_seconds: float = config.MAX_LIVE_BUFFER_SECONDS,
        drop_threshold: int = config.BACKPRESSURE_DROP_THRESHOLD,
        cooldown_seconds: float = config.COOLDOWN_SECONDS,
        terminal_drop_ceiling: int = config.TERMINAL_DROP_CEILING,
        max_pause_cycles: int = config.MAX_PAUSE_CYCLES,
        notice_interval: float = config.BACKPRESSURE_NOTICE_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.sample_rate = sample_rate
        self.max_live_samples = int(max_live_seconds * sample_rate)
        self.drop_threshold = drop_threshold
        self.cooldown_seconds = cooldown_seconds
        self.terminal_drop_ceiling = terminal_drop_ceiling
        self.max_pause_cycles = max_pause_cycles
        self.notice_interval = notice_interval
        self.clock = clock

        self._lock = threading.Lock()
        self.reset()

    @classmethod
    def from_config(cls, cfg, clock: Callable[[], float] = time.monotonic) -> "BackpressureController":
        return cls(
            sample_rate=cfg.sample_rate,
            max_live_seconds=cfg.max_live_buffer_seconds,
            drop_threshold=cfg.backpressure_drop_threshold,
            cooldown_seconds=cfg.cooldown_seconds,
            terminal_drop_ceiling=cfg.terminal_drop_ceiling,
            max_pause_cycles=cfg.max_pause_cycles,
            notice_interval=cfg.backpressure_notice_interval,
            clock=clock,
        )

    def reset(self):
        with self._lock:
            self.state = BackpressureState.NORMAL
            self.cooldown_until: Optional[float] = None
            self.consecutive_drops = 0
            self.pause_cycles = 0
            self.total_drops = 0
            self.total_dropped_samples = 0
            self.paused_drops = 0
            self.total_pauses = 0
            self._dropped_since_submit = False
            self._last_notice_at: Optional[float] = None

    @property
    def is_paused(self) -> bool:
        return self.state is BackpressureState.PAUSED

    @property
    def is_terminal(self) -> bool:
        return self.state is BackpressureState.TERMINAL

    @property
    def accepting_windows(self) -> bool:
        return self.state is BackpressureState.NORMAL

    def on_append(self, buffer: StreamingWindowBuffer) -> BackpressureDecision:
        """
        Run after every append. Guarantees live_samples <= max_live_samples on return.
        """
        with self._lock:
            now = self.clock()
            transition = self._check_cooldown_locked(now)

            excess = buffer.live_samples - self.max_live_samples
            dropped = buffer.drop_oldest(excess) if excess > 0 else 0
            notify = False

            if dropped:
                self.total_drops += 1
                self.total_dropped_samples += dropped
                self._dropped_since_submit = True

                if self.state is BackpressureState.PAUSED:
                    self.paused_drops += 1
                    if self._notice_due(now):
                        notify = True
                        self._last_notice_at = now
                elif self.state is BackpressureState.NORMAL:
                    self.consecutive_drops += 1
                    live = buffer.live_samples / self.sample_rate
                    logger.warning(
                        f"Dropped {dropped} samples ({dropped / self.sample_rate:.2f}s), "
                        f"live {live:.1f}s, consecutive drops {self.consecutive_drops}"
                    )
                    if self.consecutive_drops >= self.terminal_drop_ceiling:
                        transition = self._enter_terminal_locked()
                    elif self.consecutive_drops >= self.drop_threshold:
                        transition = self._enter_pause_locked(now)
                        notify = transition is Transition.PAUSED
                        if notify:
                            self._last_notice_at = now

            return BackpressureDecision(
                dropped_samples=dropped,
                transition=transition,
                notify=notify,
                live_seconds=buffer.live_samples / self.sample_rate,
                consecutive_drops=self.consecutive_drops,
                pause_cycles=self.pause_cycles,
            )

    def poll(self) -> Optional[Transition]:
        """
        Check the cooldown timer without appending.
        """
        with self._lock:
            return self._check_cooldown_locked(self.clock())

    def on_window_submitted(self):
        with self._lock:
            self._dropped_since_submit = False

    def on_window_completed(self):
        with self._lock:
            if self._dropped_since_submit or self.state is not BackpressureState.NORMAL:
                return
            if self.consecutive_drops or self.pause_cycles:
                logger.info("Clean window completed; backpressure counters reset.")
            self.consecutive_drops = 0
            self.pause_cycles = 0

    def cooldown_remaining(self) -> float:
        with self._lock:
            if self.state is not BackpressureState.PAUSED or self.cooldown_until is None:
                return 0.0
            return max(0.0, self.cooldown_until - self.clock())

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "state": self.state.value,
                "consecutive_drops": self.consecutive_drops,
                "pause_cycles": self.pause_cycles,
                "total_drops": self.total_drops,
                "total_dropped_seconds": self.total_dropped_samples / self.sample_rate,
                "paused_drops": self.paused_drops,
                "total_pauses": self.total_pauses,
            }

    # --- Transitions (lock held) ---

    def _check_cooldown_locked(self, now: float) -> Optional[Transition]:
        if self.state is BackpressureState.PAUSED and self.cooldown_until is not None and now >= self.cooldown_until:
            self.state = BackpressureState.NORMAL
            self.cooldown_until = None
            logger.info("Backpressure cooldown elapsed; resuming live processing.")
            return Transition.RESUMED
        return None

    def _enter_pause_locked(self, now: float) -> Transition:
        self.pause_cycles += 1
        self.total_pauses += 1
        if self.pause_cycles > self.max_pause_cycles:
            return self._enter_terminal_locked()
        self.state = BackpressureState.PAUSED
        self.cooldown_until = now + self.cooldown_seconds
        logger.warning(
            f"Backpressure: pausing live processing for {self.cooldown_seconds:.0f}s "
            f"({self.consecutive_drops} consecutive drops, cycle {self.pause_cycles})"
        )
        return Transition.PAUSED

    def _enter_terminal_locked(self) -> Transition:
        self.state = BackpressureState.TERMINAL
        self.cooldown_until = None
        logger.error(
            f"Terminal backpressure: {self.consecutive_drops} consecutive drops, "
            f"{self.pause_cycles} pause cycles. Session must stop."
        )
        return Transition.TERMINAL

    def _notice_due(self, now: float) -> bool:
        return self._last_notice_at is None or now - self._last_notice_at >= self.notice_interval
