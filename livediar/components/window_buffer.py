import logging
import threading
from typing import List, Optional

import numpy as np

from livediar import config
from livediar.dtos import Window

logger = logging.getLogger("StreamingWindowBuffer")


class StreamingWindowBuffer:
    """
    Live window buffer + full-session buffer.

    Responsibility:
    - Live buffer: ring indexed by absolute sample clock. `tail` is the oldest
      live sample, `head` the next sample to be written. Backpressure drops
      advance `tail`; handing off a window advances it to `head`.
    - Full-session buffer: every appended sample, untouched by drops, until
      drain_full_session() at session end.
    - Thread-safe. Windows are copies; no caller holds a reference into the ring.
    """

    def __init__(self, sample_rate: int = config.SAMPLE_RATE,
                 initial_capacity_seconds: float = config.MAX_LIVE_BUFFER_SECONDS):
        self.sample_rate = sample_rate
        self.capacity = max(1, int(initial_capacity_seconds * sample_rate))
        self.ring = np.zeros(self.capacity, dtype=np.float32)

        self.head = 0
        self.tail = 0
        self.total_dropped = 0
        self.windows_emitted = 0

        self.full_chunks: List[np.ndarray] = []
        self.full_samples = 0

        self._lock = threading.Lock()

    # --- Live buffer ---

    @property
    def live_samples(self) -> int:
        with self._lock:
            return self.head - self.tail

    @property
    def live_seconds(self) -> float:
        return self.live_samples / self.sample_rate

    def append(self, samples: np.ndarray):
        """
        Append canonical samples to the live and full-session buffers.
        """
        count = len(samples)
        if count == 0:
            return
        chunk = np.array(samples, dtype=np.float32, copy=True)
        with self._lock:
            self._ensure_capacity(self.head - self.tail + count)
            self._write_chunk(chunk)
            self.full_chunks.append(chunk)
            self.full_samples += count

    def drop_oldest(self, count: int) -> int:
        """
        FIFO drop from the live buffer only. Returns samples actually dropped.
        """
        if count <= 0:
            return 0
        with self._lock:
            dropped = min(count, self.head - self.tail)
            self.tail += dropped
            self.total_dropped += dropped
            return dropped

    def has_window(self, window_samples: int) -> bool:
        with self._lock:
            return window_samples > 0 and self.head - self.tail >= window_samples

    def take_window(self) -> Optional[Window]:
        """
        Hand off everything in the live buffer as one Window and clear it.
        """
        with self._lock:
            count = self.head - self.tail
            if count == 0:
                return None
            start = self.tail
            samples = self._read(start, count)
            self.tail = self.head
            self.windows_emitted += 1
            sequence = self.windows_emitted
        return Window(samples=samples, start_sample=start, sample_rate=self.sample_rate, sequence=sequence)

    def clear_live(self) -> int:
        with self._lock:
            discarded = self.head - self.tail
            self.tail = self.head
            return discarded

    # --- Full-session buffer ---

    @property
    def full_session_seconds(self) -> float:
        with self._lock:
            return self.full_samples / self.sample_rate

    def snapshot_full_session(self) -> np.ndarray:
        with self._lock:
            return self._concat_full()

    def drain_full_session(self) -> np.ndarray:
        """
        Return the entire session audio and clear it.
        """
        with self._lock:
            audio = self._concat_full()
            self.full_chunks = []
            self.full_samples = 0
            return audio

    def restore_full_session(self, audio: np.ndarray):
        """
        Put drained audio back in front of anything appended since the drain.
        """
        if len(audio) == 0:
            return
        with self._lock:
            self.full_chunks.insert(0, np.asarray(audio, dtype=np.float32))
            self.full_samples += len(audio)

    def reset(self):
        with self._lock:
            self.head = 0
            self.tail = 0
            self.total_dropped = 0
            self.windows_emitted = 0
            self.full_chunks = []
            self.full_samples = 0

    # --- Internal (lock held) ---

    def _concat_full(self) -> np.ndarray:
        if not self.full_chunks:
            return np.zeros(0, dtype=np.float32)
        if len(self.full_chunks) > 1:
            # Compact so repeated snapshots stay cheap
            self.full_chunks = [np.concatenate(self.full_chunks)]
        return self.full_chunks[0].copy()

    def _ensure_capacity(self, required: int):
        if required <= self.capacity:
            return
        new_capacity = self.capacity
        while new_capacity < required:
            new_capacity *= 2
        live = self.head - self.tail
        preserved = self._read(self.tail, live)
        self.capacity = new_capacity
        self.ring = np.zeros(new_capacity, dtype=np.float32)
        # Re-lay the live samples at their absolute positions in the new ring
        self._place(self.tail, preserved)
        logger.info(f"Live ring grown to {new_capacity / self.sample_rate:.1f}s")

    def _write_chunk(self, samples: np.ndarray):
        self._place(self.head, samples)
        self.head += len(samples)

    def _place(self, position: int, samples: np.ndarray):
        count = len(samples)
        if count == 0:
            return
        start_idx = position % self.capacity
        space_end = self.capacity - start_idx
        if count <= space_end:
            self.ring[start_idx:start_idx + count] = samples
        else:
            self.ring[start_idx:] = samples[:space_end]
            self.ring[:count - space_end] = samples[space_end:]

    def _read(self, position: int, count: int) -> np.ndarray:
        output = np.empty(count, dtype=np.float32)
        if count == 0:
            return output
        start_idx = position % self.capacity
        space_end = self.capacity - start_idx
        if count <= space_end:
            output[:] = self.ring[start_idx:start_idx + count]
        else:
            output[:space_end] = self.ring[start_idx:]
            output[space_end:] = self.ring[:count - space_end]
        return output
