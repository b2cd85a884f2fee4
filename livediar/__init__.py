from livediar.config import DiarizerConfig
from livediar.dtos import AudioFormat, AudioFrame, DiarizationResult, SampleType, Segment
from livediar.errors import StopCause
from livediar.infrastructure.events import Event, EventType
from livediar.session import DiarizationSession

__version__ = "0.1.0"

__all__ = [
    "AudioFormat",
    "AudioFrame",
    "DiarizationResult",
    "DiarizationSession",
    "DiarizerConfig",
    "Event",
    "EventType",
    "SampleType",
    "Segment",
    "StopCause",
]
