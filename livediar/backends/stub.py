import logging
import threading
from typing import Callable, Dict, List, Optional, Sequence, Union

import numpy as np

from livediar.backends.base import InferenceBackend
from livediar.dtos import InferenceTuple

logger = logging.getLogger("StubBackend")


def unit_embedding(seed: int, dim: int) -> np.ndarray:
    rng = np.random.default_rng(seed)
    vec = rng.standard_normal(dim).astype(np.float32)
    return vec / np.linalg.norm(vec)


class ToneSignatureBackend(InferenceBackend):
    """
    Deterministic stand-in for a real model.

    Splits the window into fixed frames, keys every non-silent frame by its
    dominant frequency (quantized to key_hz), and returns one tuple per run of
    equally keyed frames. Each key maps to a fixed random unit embedding, so a
    pure tone behaves like one speaker and distinct tones like distinct speakers.
    """

    name = "tone-signature"

    def __init__(self, dim: int = 256, frame_seconds: float = 0.5, silence_rms: float = 0.01,
                 key_hz: float = 10.0, confidence: float = 0.9, seed: int = 1234):
        self.dim = dim
        self.frame_seconds = frame_seconds
        self.silence_rms = silence_rms
        self.key_hz = key_hz
        self.confidence = confidence
        self.seed = seed
        self._embeddings: Dict[int, np.ndarray] = {}
        self.calls = 0

    @property
    def embedding_dim(self) -> int:
        return self.dim

    def embedding_for_frequency(self, frequency: float) -> np.ndarray:
        return self._embedding(int(round(frequency / self.key_hz)))

    def _embedding(self, key: int) -> np.ndarray:
        if key not in self._embeddings:
            self._embeddings[key] = unit_embedding(self.seed + key, self.dim)
        return self._embeddings[key]

    def _frame_key(self, frame: np.ndarray, sample_rate: int) -> Optional[int]:
        rms = float(np.sqrt(np.mean(frame.astype(np.float64) ** 2)))
        if rms < self.silence_rms:
            return None
        spectrum = np.abs(np.fft.rfft(frame * np.hanning(len(frame))))
        spectrum[0] = 0.0
        peak_hz = int(np.argmax(spectrum)) * sample_rate / len(frame)
        return int(round(peak_hz / self.key_hz))

    def infer(self, samples: np.ndarray, sample_rate: int) -> List[InferenceTuple]:
        self.calls += 1
        frame_len = max(1, int(self.frame_seconds * sample_rate))
        keys = []
        for start in range(0, len(samples), frame_len):
            frame = samples[start:start + frame_len]
            # Trailing fragments shorter than half a frame are too short to key
            if len(frame) < frame_len // 2 or len(frame) == 0:
                break
            keys.append((start, start + len(frame), self._frame_key(frame, sample_rate)))

        tuples = []
        run_start = run_end = None
        run_key = None
        for start, end, key in keys + [(None, None, None)]:
            if key is not None and key == run_key and start == run_end:
                run_end = end
                continue
            if run_key is not None:
                tuples.append(InferenceTuple(
                    embedding=self._embedding(run_key).copy(),
                    start=run_start / sample_rate,
                    end=run_end / sample_rate,
                    confidence=self.confidence,
                ))
            run_start, run_end, run_key = start, end, key
        return tuples


Response = Union[Sequence[InferenceTuple], Exception]


class ScriptedBackend(InferenceBackend):
    """
    Returns pre-programmed responses in call order and records every call.

    responses: list of tuple-lists or exceptions (raised); once exhausted the
    `default` callable (samples, sample_rate) -> tuples is used.
    before_infer: hook run at the start of each call (block, advance a clock...).
    """

    name = "scripted"

    def __init__(self, responses: Optional[List[Response]] = None,
                 default: Optional[Callable[[np.ndarray, int], List[InferenceTuple]]] = None,
                 before_infer: Optional[Callable[[np.ndarray, int], None]] = None,
                 dim: int = 256):
        self.responses = list(responses or [])
        self.default = default
        self.before_infer = before_infer
        self.dim = dim
        self.calls: List[int] = []
        self.lock = threading.Lock()
        self.active_calls = 0
        self.max_concurrent_calls = 0

    @property
    def embedding_dim(self) -> int:
        return self.dim

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def infer(self, samples: np.ndarray, sample_rate: int) -> List[InferenceTuple]:
        with self.lock:
            self.active_calls += 1
            self.max_concurrent_calls = max(self.max_concurrent_calls, self.active_calls)
            self.calls.append(len(samples))
            response = self.responses.pop(0) if self.responses else None
        try:
            if self.before_infer is not None:
                self.before_infer(samples, sample_rate)
            if isinstance(response, Exception):
                raise response
            if response is not None:
                return list(response)
            if self.default is not None:
                return list(self.default(samples, sample_rate))
            return []
        finally:
            with self.lock:
                self.active_calls -= 1
