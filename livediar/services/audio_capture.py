import logging
import queue
import threading
from enum import Enum
from typing import Callable, Optional

import numpy as np

from livediar.config import DiarizerConfig
from livediar.dtos import AudioFormat, AudioFrame
from livediar.errors import DeviceConfigurationError, StopCause
from livediar.infrastructure.event_bus import EventBus
from livediar.infrastructure.events import Event
from livediar.services.audio_device import CaptureHandle, InputDevice

logger = logging.getLogger("AudioCapture")


class CaptureState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    CAPTURING = "capturing"
    RECONFIGURING = "reconfiguring"
    STOPPED = "stopped"


class AudioCaptureEngine:
    """
    Owns the device callback and the capture path.

    Responsibility:
    - Install capture at the device's NATIVE format.
    - Callback only copies + enqueues. A worker thread forwards frames to the sink.
    - Watchdog: no frame within the timeout after start or any reinstall ->
      reinstall with escalating timeouts; after watchdog_max_attempts -> SilenceTimeout.
    - Route changes / device faults -> reinstall, buffered audio is kept.
    - stop() is idempotent: stop callback, flush queued frames, release device.

    State machine: IDLE -> STARTING -> CAPTURING <-> RECONFIGURING -> STOPPED
    """

    def __init__(self, device: InputDevice, sink: Callable[[AudioFrame], None],
                 bus: Optional[EventBus] = None, cfg: Optional[DiarizerConfig] = None,
                 on_self_stop: Optional[Callable[[StopCause], None]] = None,
                 timer_factory: Callable = threading.Timer):
        self.device = device
        self.sink = sink
        self.bus = bus or EventBus()
        self.cfg = cfg or DiarizerConfig()
        self.on_self_stop = on_self_stop
        self.timer_factory = timer_factory

        self.state = CaptureState.IDLE
        self.stop_cause: Optional[StopCause] = None
        self.format: Optional[AudioFormat] = None
        self.handle: Optional[CaptureHandle] = None

        self.packet_queue: queue.Queue = queue.Queue()
        self.worker_thread: Optional[threading.Thread] = None

        self.lock = threading.RLock()
        self.watchdog: Optional[threading.Timer] = None
        self._watchdog_generation = 0
        self._reconfiguring = False

        self.no_audio_attempts = 0
        self.reconfigure_count = 0
        self.install_generation = 0
        self._frames_since_install = 0
        self.has_received_audio = False  # Since the last install
        self.ever_received_audio = False
        self.frames_captured = 0

    # --- Lifecycle ---

    def start(self):
        with self.lock:
            if self.state is not CaptureState.IDLE:
                raise RuntimeError(f"Capture engine cannot start from {self.state.value}")
            self.state = CaptureState.STARTING
            self.worker_thread = threading.Thread(target=self._worker_loop, daemon=True, name="CaptureWorker")
            self.worker_thread.start()
            self._install()
            self.state = CaptureState.CAPTURING
            self._arm_watchdog(self.cfg.watchdog_initial_timeout)
        logger.info("Capture started")

    def stop(self, cause: StopCause = StopCause.USER):
        with self.lock:
            if self.state in (CaptureState.STOPPED, CaptureState.IDLE):
                if self.state is CaptureState.IDLE:
                    self.state = CaptureState.STOPPED
                    self.stop_cause = cause
                return
            self.state = CaptureState.STOPPED
            self.stop_cause = cause
            self._cancel_watchdog()
            self._reconfiguring = False
            self._teardown()

        # Flush: every frame queued before the sentinel reaches the sink
        self.packet_queue.put(None)
        if self.worker_thread and threading.current_thread() is not self.worker_thread:
            self.worker_thread.join(timeout=5.0)
        logger.info(f"Capture stopped ({cause.value}); {self.frames_captured} frames captured")

    @property
    def is_active(self) -> bool:
        return self.state in (CaptureState.STARTING, CaptureState.CAPTURING, CaptureState.RECONFIGURING)

    # --- Reconfiguration ---

    def schedule_reconfigure(self, reason: str) -> bool:
        """
        Tear down and reinstall the capture path. Safe from any thread except
        the device callback. Returns False when ignored.
        """
        with self.lock:
            if self.state in (CaptureState.STOPPED, CaptureState.IDLE):
                logger.debug(f"Reconfigure ({reason}) ignored: capture {self.state.value}")
                return False
            if self._reconfiguring:
                logger.debug(f"Reconfigure ({reason}) ignored: already reconfiguring")
                return False
            self._reconfiguring = True
            try:
                self._reconfigure_locked(reason)
            finally:
                self._reconfiguring = False
            self._arm_watchdog(self.cfg.reconfigure_watchdog_timeout)
        return True

    def _reconfigure_locked(self, reason: str):
        self.state = CaptureState.RECONFIGURING
        logger.warning(f"Reconfiguring capture: {reason}")
        self._teardown()
        self._install()
        self.reconfigure_count += 1
        if self.state is CaptureState.RECONFIGURING:
            self.state = CaptureState.CAPTURING
        self.bus.publish(Event.device_reconfigured(reason, str(self.format) if self.format else None))

    def _install(self):
        self.install_generation += 1
        self._frames_since_install = 0
        self.has_received_audio = False
        try:
            self.format = self.device.native_format()
            generation = self.install_generation
            self.handle = self.device.open(
                lambda samples, ts: self._on_audio(samples, ts, generation),
                self.format,
                self.cfg.capture_blocksize,
            )
        except DeviceConfigurationError as e:
            # Watchdog retries the install
            self.handle = None
            logger.error(f"Capture install failed: {e}")

    def _teardown(self):
        handle, self.handle = self.handle, None
        if handle is None:
            return
        try:
            handle.close()
        except Exception as e:
            logger.warning(f"Capture teardown error: {e}")

    # --- Watchdog ---

    def _arm_watchdog(self, timeout: float):
        self._cancel_watchdog()
        generation = self._watchdog_generation
        timer = self.timer_factory(timeout, self._on_watchdog, args=(generation,))
        timer.daemon = True
        self.watchdog = timer
        timer.start()
        logger.debug(f"Watchdog armed: {timeout:.1f}s")

    def _cancel_watchdog(self):
        self._watchdog_generation += 1
        if self.watchdog is not None:
            self.watchdog.cancel()
            self.watchdog = None

    def retry_timeout(self, attempts: int) -> float:
        return min(self.cfg.watchdog_retry_max,
                   self.cfg.watchdog_retry_base + self.cfg.watchdog_retry_step * attempts)

    def _on_watchdog(self, generation: int):
        silence = False
        with self.lock:
            if generation != self._watchdog_generation or self.state is CaptureState.STOPPED:
                return
            self.watchdog = None
            if self._frames_since_install > 0:
                return

            self.no_audio_attempts += 1
            logger.warning(f"No audio detected (attempt {self.no_audio_attempts}/{self.cfg.watchdog_max_attempts})")
            if self.no_audio_attempts >= self.cfg.watchdog_max_attempts:
                silence = True
            else:
                self._reconfiguring = True
                try:
                    self._reconfigure_locked("no-audio")
                finally:
                    self._reconfiguring = False
                self._arm_watchdog(self.retry_timeout(self.no_audio_attempts))

        if silence:
            logger.error("No audio after all reinstall attempts; stopping capture.")
            self.stop(StopCause.SILENCE_TIMEOUT)
            self.bus.publish(Event.silence_timeout(self.no_audio_attempts))
            if self.on_self_stop is not None:
                self.on_self_stop(StopCause.SILENCE_TIMEOUT)

    # --- Data path ---

    def _on_audio(self, samples: np.ndarray, timestamp: float, generation: int):
        """
        Device callback context: NON-BLOCKING.
        """
        if generation != self.install_generation or self.state is CaptureState.STOPPED:
            return
        self._frames_since_install += 1
        self.packet_queue.put_nowait((samples, self.format, timestamp, generation))

    def _worker_loop(self):
        while True:
            item = self.packet_queue.get()
            if item is None:
                break
            samples, fmt, timestamp, generation = item
            try:
                self._handle_frame(samples, fmt, timestamp, generation)
            except Exception as e:
                logger.error(f"Capture worker error: {e}")

    def _handle_frame(self, samples: np.ndarray, fmt: AudioFormat, timestamp: float, generation: int):
        if samples.ndim == 2 and samples.shape[1] == 1:
            samples = samples[:, 0]
        frame = AudioFrame(samples=samples, format=fmt, timestamp=timestamp)

        if not self.has_received_audio and generation == self.install_generation:
            self.has_received_audio = True
            self.no_audio_attempts = 0
            if not self.ever_received_audio:
                self.ever_received_audio = True
                logger.info(f"First audio buffer received ({fmt})")
                self.bus.publish(Event.first_audio(str(fmt)))

        self.frames_captured += 1
        self.sink(frame)
