import logging
import time
from typing import Optional

import numpy as np

from livediar import config
from livediar.components.conversion_metrics import ConversionMetrics
from livediar.errors import AlignedAllocationFailure

logger = logging.getLogger("AlignedBuffer")


def is_aligned(array: np.ndarray, alignment: int) -> bool:
    return array.ctypes.data % alignment == 0


def aligned_empty(num_samples: int, alignment: int, dtype=np.float32) -> np.ndarray:
    """
    Allocate a 1D array whose data pointer is a multiple of `alignment` bytes.
    Over-allocates a raw byte block and slices at the first aligned offset.
    """
    itemsize = np.dtype(dtype).itemsize
    nbytes = num_samples * itemsize
    try:
        raw = np.empty(nbytes + alignment, dtype=np.uint8)
    except MemoryError as e:
        raise AlignedAllocationFailure(f"cannot allocate {nbytes + alignment} bytes") from e
    offset = (-raw.ctypes.data) % alignment
    out = raw[offset:offset + nbytes].view(dtype)
    if not is_aligned(out, alignment):
        raise AlignedAllocationFailure(f"alignment validation failed ({alignment} bytes)")
    return out


class AlignedBufferAllocator:
    """
    Optional scratch-buffer layer in front of the inference backend.

    Copies a window into a 64-byte aligned buffer with a vectorized copy so the
    backend can consume it without its own realignment copy. Never raises:
    any failure falls back to a plain contiguous array and is only counted.
    """

    def __init__(
        self,
        alignment: int = config.BUFFER_ALIGNMENT,
        enabled: bool = config.ALIGNED_BUFFERS,
        metrics: Optional[ConversionMetrics] = None,
    ):
        self.alignment = alignment
        self.enabled = enabled
        self.metrics = metrics or ConversionMetrics()
        self._scratch: Optional[np.ndarray] = None

    def prepare(self, samples: np.ndarray) -> np.ndarray:
        """
        Returns float32 samples ready for the backend. The result is only valid
        until the next prepare() call when the scratch buffer is reused.
        """
        if not self.enabled:
            return np.ascontiguousarray(samples, dtype=np.float32)

        started = time.perf_counter()
        try:
            out = self._scratch_for(len(samples))
            np.copyto(out, samples, casting="same_kind")
            success = True
        except (AlignedAllocationFailure, ValueError, TypeError) as e:
            logger.debug(f"Aligned copy unavailable, using standard buffer: {e}")
            out = np.ascontiguousarray(samples, dtype=np.float32)
            success = False
        self.metrics.record_aligned((time.perf_counter() - started) * 1000.0, success)
        return out

    def _scratch_for(self, num_samples: int) -> np.ndarray:
        # Reuse while large enough; windows grow and shrink by small steps
        if self._scratch is None or len(self._scratch) < num_samples:
            self._scratch = aligned_empty(num_samples, self.alignment)
        view = self._scratch[:num_samples]
        if not is_aligned(view, self.alignment):
            self._scratch = None
            raise AlignedAllocationFailure("scratch buffer lost alignment")
        return view

    def release(self):
        self._scratch = None
