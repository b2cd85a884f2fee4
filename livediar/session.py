import logging
import threading
import time
from collections import deque
from enum import Enum
from typing import Callable, Optional

import numpy as np

from livediar.backends.base import InferenceBackend
from livediar.components.aligned_buffer import AlignedBufferAllocator
from livediar.components.backpressure import BackpressureController, BackpressureDecision, Transition
from livediar.components.conversion_metrics import ConversionMetrics
from livediar.components.format_converter import FormatConverter
from livediar.components.result_aggregator import ResultAggregator
from livediar.components.speaker_registry import SpeakerRegistry
from livediar.components.window_buffer import StreamingWindowBuffer
from livediar.components.window_scheduler import AdaptiveWindowScheduler
from livediar.config import DiarizerConfig
from livediar.dtos import AudioFrame, DiarizationResult, PipelineTimings, Window
from livediar.errors import ConversionFailure, InferenceFailure, NotInitializedError, StopCause
from livediar.infrastructure.event_bus import EventBus
from livediar.infrastructure.events import Event
from livediar.infrastructure.serial_worker import SerialWorker
from livediar.services.audio_capture import AudioCaptureEngine
from livediar.services.audio_device import InputDevice
from livediar.services.device_monitor import DeviceMonitor
from livediar.services.enrollment import SpeakerEnrollment
from livediar.services.inference_executor import InferenceExecutor, InferenceOutcome
from livediar.services.session_recorder import SessionRecorder

logger = logging.getLogger("DiarizationSession")


class SessionState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class DiarizationSession:
    """
    Live diarization pipeline for one capture session.

    device -> FormatConverter -> StreamingWindowBuffer -> [Backpressure gate]
           -> InferenceExecutor -> control worker -> SpeakerRegistry/ResultAggregator -> EventBus

    Threads:
    - capture worker: process_buffer() (convert, append, backpressure, dispatch)
    - InferenceWorker: one backend call at a time, capture order
    - DiarizationControl: applies results in the same order, emits events
    At most one live window is in flight; while it runs the live buffer keeps
    growing and backpressure bounds it.
    """

    TIMING_HISTORY = 20

    def __init__(self, backend: InferenceBackend, cfg: Optional[DiarizerConfig] = None,
                 registry: Optional[SpeakerRegistry] = None, bus: Optional[EventBus] = None,
                 device: Optional[InputDevice] = None,
                 clock: Callable[[], float] = time.monotonic,
                 timer: Callable[[], float] = time.perf_counter,
                 session_id: Optional[str] = None):
        self.cfg = cfg or DiarizerConfig()
        self.session_id = session_id or f"session_{int(time.time())}"
        self.bus = bus or EventBus()
        self.registry = registry or SpeakerRegistry.from_config(self.cfg)

        self.metrics = ConversionMetrics(self.cfg.metrics_log_interval, self.cfg.slow_conversion_ms)
        self.converter = FormatConverter(
            target_rate=self.cfg.sample_rate,
            metrics=self.metrics,
            failure_threshold=self.cfg.converter_failure_threshold,
            failure_window=self.cfg.converter_failure_window,
            clock=clock,
        )
        self.buffer = StreamingWindowBuffer(self.cfg.sample_rate, self.cfg.max_live_buffer_seconds)
        self.scheduler = AdaptiveWindowScheduler.from_config(self.cfg)
        self.backpressure = BackpressureController.from_config(self.cfg, clock=clock)
        self.aggregator = ResultAggregator(self.registry, self.cfg.min_silence_gap)
        self.allocator = AlignedBufferAllocator(self.cfg.buffer_alignment, self.cfg.aligned_buffers, self.metrics)
        self.executor = InferenceExecutor(backend, self.cfg.sample_rate, self.allocator, timer=timer)
        self.control = SerialWorker("DiarizationControl")
        self._enrollment = SpeakerEnrollment(self.executor, self.registry, self.cfg.sample_rate)

        self.device = device
        self.capture: Optional[AudioCaptureEngine] = None
        self.monitor: Optional[DeviceMonitor] = None
        if device is not None:
            self.capture = AudioCaptureEngine(device, self.process_buffer, self.bus, self.cfg,
                                              on_self_stop=self._on_capture_stopped)
            self.monitor = DeviceMonitor(device, self._on_route_change, self.cfg.route_poll_interval)

        self.recorder: Optional[SessionRecorder] = None
        if self.cfg.recording_dir:
            self.recorder = SessionRecorder(self.session_id, self.cfg.sample_rate, self.cfg.recording_dir)

        self.lock = threading.RLock()
        self.state = SessionState.IDLE
        self.stop_cause: Optional[StopCause] = None
        self._in_flight = False
        self._stopped = threading.Event()
        self.timings = deque(maxlen=self.TIMING_HISTORY)

        self.stats = {
            "frames_received": 0,
            "frames_dropped": 0,
            "windows_submitted": 0,
            "windows_completed": 0,
            "windows_failed": 0,
            "live_segments": 0,
            "final_passes": 0,
        }

    # --- Lifecycle ---

    def _ensure_workers(self):
        self.executor.start()
        self.control.start()

    def start(self):
        with self.lock:
            if self.state is not SessionState.IDLE:
                raise RuntimeError(f"Session {self.session_id} cannot start from {self.state.value}")
            self.metrics.reset()
            self.converter.reset()
            self.buffer.reset()
            self.scheduler.reset()
            self.backpressure.reset()
            self.aggregator.reset()
            self._ensure_workers()
            if self.recorder:
                self.recorder.start()
            self.state = SessionState.RUNNING

        if self.capture:
            self.capture.start()
        if self.monitor:
            self.monitor.start()
        logger.info(
            f"Session {self.session_id} started (window {self.scheduler.window_seconds:.1f}s, "
            f"real-time {'on' if self.cfg.real_time_processing else 'off'})"
        )

    def stop(self, cause: StopCause = StopCause.USER):
        """
        Idempotent. Stops capture, flushes pending audio and waits for any
        in-flight inference before declaring the session stopped.
        """
        with self.lock:
            if self.state in (SessionState.STOPPING, SessionState.STOPPED):
                already = True
            else:
                already = False
                previous = self.state
                self.state = SessionState.STOPPING
                self.stop_cause = cause
        if already:
            # A concurrent stop is in progress; wait for it unless we're on a worker
            if not (self.control.on_worker_thread or self.executor.worker.on_worker_thread):
                self._stopped.wait(timeout=30.0)
            return

        logger.info(f"Stopping session {self.session_id} ({cause.value})")
        if self.monitor:
            self.monitor.stop()
        if self.capture:
            self.capture.stop(cause)

        if previous is SessionState.RUNNING:
            tail = self.converter.flush()
            if len(tail):
                self._ingest(tail)

        self.wait_idle(timeout=30.0)

        with self.lock:
            self.state = SessionState.STOPPED
        if self.recorder:
            self.recorder.finalize()
        logger.info(f"Session stopped. {self.metrics.summary()}")
        self.bus.publish(Event.session_stopped(cause.value))
        self._stopped.set()

    def close(self):
        """
        Release worker threads. The session cannot be used afterwards.
        """
        self.stop(self.stop_cause or StopCause.USER)
        self.executor.stop(timeout=5.0)
        self.control.stop(timeout=5.0)
        self.bus.shutdown()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @property
    def is_running(self) -> bool:
        return self.state is SessionState.RUNNING

    # --- Audio path ---

    def process_buffer(self, frame: AudioFrame):
        """
        Feed one raw device frame. Called from the capture worker, or directly
        by callers that own capture themselves.
        """
        if self.state not in (SessionState.RUNNING, SessionState.STOPPING):
            logger.debug(f"Frame ignored: session {self.state.value}")
            return
        self.stats["frames_received"] += 1
        try:
            samples = self.converter.convert(frame)
        except ConversionFailure as e:
            self.stats["frames_dropped"] += 1
            logger.warning(f"Dropped frame: {e}")
            if self.converter.device_fault and self.capture is not None:
                logger.error("Repeated conversion failures; reconfiguring capture.")
                self.converter.reset()
                self.capture.schedule_reconfigure("converter-error")
            return
        self._ingest(samples)

    def _ingest(self, samples: np.ndarray):
        if len(samples) == 0:
            return
        if self.recorder:
            self.recorder.write(samples)
        # A cooldown that just ended hands off the full live buffer before this
        # append can count as a fresh drop
        if self.backpressure.poll() is Transition.RESUMED:
            self._on_resumed()
            self._maybe_dispatch()
        with self.lock:
            self.buffer.append(samples)
            decision = self.backpressure.on_append(self.buffer)
        self._handle_backpressure(decision)
        self._maybe_dispatch()

    def _handle_backpressure(self, decision: BackpressureDecision):
        if decision.transition is Transition.RESUMED:
            self._on_resumed()
        if decision.notify:
            self.bus.publish(Event.backpressure(decision.live_seconds, decision.consecutive_drops))
        if decision.transition is Transition.TERMINAL:
            self.bus.publish(Event.terminal_backpressure(decision.consecutive_drops, decision.pause_cycles))
            self._request_stop(StopCause.PIPELINE_BACKPRESSURE)

    def _on_resumed(self):
        window = self.scheduler.nudge(self.cfg.resume_window_nudge)
        self.bus.publish(Event.backpressure_resumed(window))

    def _request_stop(self, cause: StopCause):
        # Stopping joins the capture worker, which may be the current thread
        threading.Thread(target=self.stop, args=(cause,), daemon=True, name="SessionStop").start()

    def _maybe_dispatch(self):
        with self.lock:
            if (
                not self.cfg.real_time_processing
                or self._in_flight
                or self.state is not SessionState.RUNNING
                or not self.backpressure.accepting_windows
                or not self.buffer.has_window(self.scheduler.window_samples)
            ):
                return
            window = self.buffer.take_window()
            if window is None:
                return
            self._in_flight = True
            self.backpressure.on_window_submitted()
            self.stats["windows_submitted"] += 1

        future = self.executor.submit(
            window.samples,
            then=lambda outcome: self.control.submit(self._apply_live, window, outcome),
        )
        future.add_done_callback(lambda f: self._on_window_done(window, f))

    def _on_window_done(self, window: Window, future):
        error = future.exception()
        if error is not None:
            self.control.submit(self._on_window_failed, window, error)

    # --- Control context ---

    def _apply_live(self, window: Window, outcome: InferenceOutcome):
        try:
            timings = PipelineTimings(window.sequence, window.duration, outcome.processing_time)
            self.timings.append(timings)
            self.scheduler.observe(timings)
            self.backpressure.on_window_completed()

            result = self.aggregator.apply_live(window, outcome.tuples, outcome.processing_time)
            self.stats["windows_completed"] += 1
            self.stats["live_segments"] += len(result)
            self.bus.publish(Event.live_result(result))
        except Exception as e:
            self._record_window_failure(window, e)
        finally:
            self._window_finished()

    def _on_window_failed(self, window: Window, error: BaseException):
        try:
            self._record_window_failure(window, error)
        finally:
            self._window_finished()

    def _record_window_failure(self, window: Window, error: BaseException):
        self.stats["windows_failed"] += 1
        logger.error(f"Window #{window.sequence} dropped: {error}")
        self.bus.publish(Event.inference_failed(window.sequence, str(error)))

    def _window_finished(self):
        with self.lock:
            self._in_flight = False
        if self.backpressure.poll() is Transition.RESUMED:
            self._on_resumed()
        self._maybe_dispatch()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Block until no window is in flight and no result is pending.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if not self.executor.wait_idle(remaining):
                return False
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if not self.control.wait_idle(remaining):
                return False
            with self.lock:
                if not self._in_flight or not self.executor.running:
                    return True
            if deadline is not None and time.monotonic() >= deadline:
                return False
            # The result is queued between the two workers
            time.sleep(0.005)

    # --- Results ---

    @property
    def live_result(self) -> DiarizationResult:
        return self.aggregator.live_result

    def finish_session(self) -> DiarizationResult:
        """
        One full pass over the whole session audio; supersedes every live result.
        Blocks until the pass completes. A second call with no new audio returns
        an empty result.
        """
        if self.buffer.full_session_seconds == 0:
            logger.info("finish_session: no session audio, returning empty result.")
            return DiarizationResult.empty(is_final=True)
        if self.state is SessionState.IDLE:
            raise NotInitializedError("finish_session() called before start()")
        if not self.executor.running:
            raise NotInitializedError("finish_session() called after close()")

        self.wait_idle()
        with self.lock:
            pending = self.buffer.clear_live()
            audio = self.buffer.drain_full_session()
        if pending:
            logger.info(f"Discarded {pending / self.cfg.sample_rate:.2f}s pending live audio; final pass covers it.")
        if len(audio) == 0:
            return DiarizationResult.empty(is_final=True)

        logger.info(f"Final pass over {len(audio) / self.cfg.sample_rate:.1f}s of audio...")
        try:
            outcome = self.executor.infer(audio)
        except (InferenceFailure, RuntimeError) as e:
            with self.lock:
                self.buffer.restore_full_session(audio)
            logger.error(f"Final pass failed, session audio kept for retry: {e}")
            self.bus.publish(Event.inference_failed(0, str(e)))
            return DiarizationResult.empty(is_final=True)

        self.stats["final_passes"] += 1
        if self.control.on_worker_thread:
            return self.aggregator.apply_final(outcome.tuples, outcome.processing_time)
        return self.control.submit(self.aggregator.apply_final, outcome.tuples, outcome.processing_time).result()

    # --- Speakers ---

    @property
    def enrollment(self) -> SpeakerEnrollment:
        self._ensure_workers()
        return self._enrollment

    # --- Capture callbacks ---

    def _on_route_change(self, reason: str):
        if self.capture is not None:
            self.capture.schedule_reconfigure(reason)

    def _on_capture_stopped(self, cause: StopCause):
        self.stop(cause)

    def snapshot(self) -> dict:
        last = self.timings[-1] if self.timings else None
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "stop_cause": self.stop_cause.value if self.stop_cause else None,
            "capture": self.capture.state.value if self.capture else None,
            "window_seconds": self.scheduler.window_seconds,
            "live_buffer_seconds": self.buffer.live_seconds,
            "full_session_seconds": self.buffer.full_session_seconds,
            "in_flight": self._in_flight,
            "speakers": len(self.registry),
            "backpressure": self.backpressure.snapshot(),
            "conversion": self.metrics.snapshot(),
            "last_timing": {
                "window": last.window_duration,
                "processing": last.processing_time,
                "ratio": last.ratio,
            } if last else None,
            **self.stats,
        }
