import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class EventType(str, Enum):
    FIRST_AUDIO_DETECTED = "first_audio_detected"
    BACKPRESSURE = "backpressure"
    BACKPRESSURE_RESUMED = "backpressure_resumed"
    TERMINAL_BACKPRESSURE = "terminal_backpressure"
    SILENCE_TIMEOUT = "silence_timeout"
    DEVICE_RECONFIGURED = "device_reconfigured"
    LIVE_RESULT = "live_result"
    INFERENCE_FAILED = "inference_failed"
    SESSION_STOPPED = "session_stopped"


@dataclass(frozen=True)
class Event:
    """
    Typed notification delivered over the EventBus.
    """
    type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def get(self, key: str, default: Any = None) -> Any:
        return self.payload.get(key, default)

    @classmethod
    def first_audio(cls, audio_format: str) -> "Event":
        return cls(EventType.FIRST_AUDIO_DETECTED, {"format": audio_format})

    @classmethod
    def backpressure(cls, live_seconds: float, consecutive_drops: int) -> "Event":
        return cls(EventType.BACKPRESSURE, {
            "live_seconds": live_seconds,
            "consecutive_drops": consecutive_drops,
        })

    @classmethod
    def backpressure_resumed(cls, window_seconds: float) -> "Event":
        return cls(EventType.BACKPRESSURE_RESUMED, {"window_seconds": window_seconds})

    @classmethod
    def terminal_backpressure(cls, consecutive_drops: int, pause_cycles: int) -> "Event":
        return cls(EventType.TERMINAL_BACKPRESSURE, {
            "consecutive_drops": consecutive_drops,
            "pause_cycles": pause_cycles,
        })

    @classmethod
    def silence_timeout(cls, attempts: int) -> "Event":
        return cls(EventType.SILENCE_TIMEOUT, {"attempts": attempts})

    @classmethod
    def device_reconfigured(cls, reason: str, audio_format: Optional[str]) -> "Event":
        return cls(EventType.DEVICE_RECONFIGURED, {"reason": reason, "format": audio_format})

    @classmethod
    def live_result(cls, result) -> "Event":
        return cls(EventType.LIVE_RESULT, {"result": result})

    @classmethod
    def inference_failed(cls, window_sequence: int, error: str) -> "Event":
        return cls(EventType.INFERENCE_FAILED, {"window": window_sequence, "error": error})

    @classmethod
    def session_stopped(cls, cause: str) -> "Event":
        return cls(EventType.SESSION_STOPPED, {"cause": cause})
