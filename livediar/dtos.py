from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple

import numpy as np

from livediar import config


class SampleType(str, Enum):
    FLOAT32 = "float32"
    FLOAT64 = "float64"
    INT16 = "int16"
    INT32 = "int32"

    @property
    def dtype(self) -> np.dtype:
        return np.dtype(self.value)


@dataclass(frozen=True)
class AudioFormat:
    """
    Native format descriptor of a device stream.
    """
    sample_rate: int
    channels: int
    sample_type: SampleType = SampleType.FLOAT32

    def __post_init__(self):
        if self.sample_rate <= 0:
            raise ValueError(f"sample_rate must be positive, got {self.sample_rate}")
        if self.channels <= 0:
            raise ValueError(f"channels must be positive, got {self.channels}")

    @classmethod
    def canonical(cls, sample_rate: int = config.SAMPLE_RATE) -> "AudioFormat":
        return cls(sample_rate=sample_rate, channels=1, sample_type=SampleType.FLOAT32)

    @property
    def is_canonical(self) -> bool:
        return self.channels == 1 and self.sample_type is SampleType.FLOAT32

    def __str__(self):
        return f"{self.sample_rate}Hz/{self.channels}ch/{self.sample_type.value}"


@dataclass(frozen=True)
class AudioFrame:
    """
    Transient payload from the device callback.
    samples: 1D (mono) or 2D interleaved [frames, channels] in the native representation.
    """
    samples: np.ndarray
    format: AudioFormat
    timestamp: float = 0.0

    def __post_init__(self):
        if self.samples.ndim not in (1, 2):
            raise ValueError(f"AudioFrame samples must be 1D or 2D, got {self.samples.shape}")
        channels = 1 if self.samples.ndim == 1 else self.samples.shape[1]
        if channels != self.format.channels:
            raise ValueError(f"channel mismatch: data has {channels}, format declares {self.format.channels}")

    @property
    def num_frames(self) -> int:
        return int(self.samples.shape[0])

    @property
    def duration(self) -> float:
        return self.num_frames / self.format.sample_rate

    @classmethod
    def from_bytes(cls, data: bytes, fmt: AudioFormat, timestamp: float = 0.0) -> "AudioFrame":
        raw = np.frombuffer(data, dtype=fmt.sample_type.dtype)
        if fmt.channels > 1:
            raw = raw.reshape(-1, fmt.channels)
        return cls(samples=raw, format=fmt, timestamp=timestamp)


@dataclass(frozen=True)
class Window:
    """
    Contiguous canonical samples handed to the inference backend.
    start_sample is the position of samples[0] on the session timeline.
    """
    samples: np.ndarray
    start_sample: int
    sample_rate: int
    sequence: int = 0

    @property
    def num_samples(self) -> int:
        return int(len(self.samples))

    @property
    def start_time(self) -> float:
        return self.start_sample / self.sample_rate

    @property
    def duration(self) -> float:
        return self.num_samples / self.sample_rate


@dataclass(frozen=True)
class InferenceTuple:
    """
    One backend output: an embedding for a speech span, times relative to the window start.
    """
    embedding: np.ndarray
    start: float
    end: float
    confidence: float = 1.0

    @property
    def duration(self) -> float:
        return max(0.0, self.end - self.start)


def as_inference_tuple(item) -> InferenceTuple:
    """
    Accepts an InferenceTuple or a plain (embedding, start, end[, confidence]) sequence.
    Raises ValueError for anything else.
    """
    if isinstance(item, InferenceTuple):
        return item
    try:
        embedding, start, end, *rest = item
    except (TypeError, ValueError):
        raise ValueError(f"Malformed inference tuple: {item!r}")
    if len(rest) > 1:
        raise ValueError(f"Malformed inference tuple: {len(rest) + 3} fields")
    confidence = float(rest[0]) if rest else 1.0
    return InferenceTuple(np.asarray(embedding, dtype=np.float32), float(start), float(end), confidence)


@dataclass(frozen=True)
class Segment:
    speaker_id: str
    start_time: float
    end_time: float
    confidence: float
    embedding_snapshot: Optional[np.ndarray] = field(default=None, compare=False, repr=False)

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    def to_dict(self) -> dict:
        return {
            "speaker_id": self.speaker_id,
            "start": round(self.start_time, 3),
            "end": round(self.end_time, 3),
            "confidence": round(float(self.confidence), 4),
        }


@dataclass(frozen=True)
class DiarizationResult:
    segments: Tuple[Segment, ...] = ()
    is_final: bool = False
    processing_time: float = 0.0

    @classmethod
    def empty(cls, is_final: bool = False) -> "DiarizationResult":
        return cls(segments=(), is_final=is_final)

    @property
    def speaker_ids(self) -> List[str]:
        seen = []
        for seg in self.segments:
            if seg.speaker_id not in seen:
                seen.append(seg.speaker_id)
        return seen

    def __len__(self):
        return len(self.segments)

    def __iter__(self):
        return iter(self.segments)

    def to_dict(self) -> dict:
        return {
            "final": self.is_final,
            "processing_time": round(self.processing_time, 4),
            "speakers": self.speaker_ids,
            "segments": [s.to_dict() for s in self.segments],
        }


@dataclass
class Speaker:
    """
    Registry-owned speaker identity. Callers only ever see copies.
    """
    id: str
    embedding: np.ndarray
    duration: float = 0.0
    name: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    update_count: int = 0
    raw_embeddings: List[np.ndarray] = field(default_factory=list, repr=False)

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass(frozen=True)
class AudioValidationResult:
    is_valid: bool
    duration_seconds: float
    issues: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PipelineTimings:
    """
    Timing of one inference pass.
    """
    window_sequence: int
    window_duration: float
    processing_time: float

    @property
    def ratio(self) -> float:
        if self.window_duration <= 0:
            return 0.0
        return self.processing_time / self.window_duration
