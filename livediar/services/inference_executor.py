import logging
import time
import traceback
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, List, Optional

import numpy as np

from livediar import config
from livediar.backends.base import InferenceBackend
from livediar.components.aligned_buffer import AlignedBufferAllocator
from livediar.dtos import InferenceTuple, as_inference_tuple
from livediar.errors import InferenceFailure
from livediar.infrastructure.serial_worker import SerialWorker

logger = logging.getLogger("InferenceExecutor")


@dataclass(frozen=True)
class InferenceOutcome:
    tuples: List[InferenceTuple]
    processing_time: float
    num_samples: int


class InferenceExecutor:
    """
    The single serialized path to the InferenceBackend.

    Responsibility:
    - Never more than one backend call at a time (one worker thread).
    - Calls run in submission order.
    - Optional aligned scratch copy before each call.
    - Backend exceptions and malformed output become InferenceFailure on the returned future.
    """

    def __init__(self, backend: InferenceBackend, sample_rate: int = config.SAMPLE_RATE,
                 allocator: Optional[AlignedBufferAllocator] = None,
                 timer: Callable[[], float] = time.perf_counter):
        self.backend = backend
        self.sample_rate = sample_rate
        self.allocator = allocator or AlignedBufferAllocator()
        self.timer = timer
        self.worker = SerialWorker("InferenceWorker")
        self.calls = 0
        self.failures = 0
        self.total_processing_time = 0.0

    def start(self):
        self.worker.start()

    def stop(self, timeout: Optional[float] = None):
        self.worker.stop(timeout=timeout)
        self.allocator.release()

    @property
    def running(self) -> bool:
        return self.worker.running

    @property
    def busy(self) -> bool:
        return self.worker.pending > 0

    def submit(self, samples: np.ndarray, then: Optional[Callable[[InferenceOutcome], None]] = None) -> Future:
        """
        Queue one inference. `then` runs on the worker right after a successful
        call, before the next queued call starts.
        """
        return self.worker.submit(self._run, samples, then)

    def infer(self, samples: np.ndarray, timeout: Optional[float] = None) -> InferenceOutcome:
        """
        Blocking inference through the serialized path.
        """
        if self.worker.on_worker_thread:
            return self._run(samples, None)
        return self.submit(samples).result(timeout=timeout)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        return self.worker.wait_idle(timeout=timeout)

    def _run(self, samples: np.ndarray, then) -> InferenceOutcome:
        prepared = self.allocator.prepare(samples)
        started = self.timer()
        try:
            tuples = [as_inference_tuple(item) for item in self.backend.infer(prepared, self.sample_rate) or []]
        except Exception as e:
            self.failures += 1
            logger.error(f"Inference failed on {len(samples) / self.sample_rate:.2f}s of audio: {e}")
            logger.debug(traceback.format_exc())
            raise InferenceFailure(str(e)) from e
        elapsed = self.timer() - started

        self.calls += 1
        self.total_processing_time += elapsed
        outcome = InferenceOutcome(tuples=tuples, processing_time=elapsed, num_samples=len(samples))
        if then is not None:
            then(outcome)
        return outcome
