from enum import Enum


class LiveDiarError(Exception):
    """Base class for every error raised by the diarization core."""


class ConfigurationError(LiveDiarError):
    pass


class NotInitializedError(LiveDiarError):
    pass


class DeviceConfigurationError(LiveDiarError):
    """Capture path could not be installed. Recoverable: triggers reconfiguration."""


class NoAudioDetected(LiveDiarError):
    """Watchdog fired with no frame received. Fatal only once every reinstall attempt is used up."""


class ConversionFailure(LiveDiarError):
    """A single frame could not be converted. The frame is dropped."""


class InferenceFailure(LiveDiarError):
    """The backend failed on a window. The window's results are dropped."""


class AlignedAllocationFailure(LiveDiarError):
    """Aligned scratch allocation failed. Never surfaced to the caller."""


class TerminalBackpressureError(LiveDiarError):
    """Inference cannot keep up at all. The session must stop."""


# --- Enrollment ---

class SpeakerEnrollmentError(LiveDiarError):
    pass


class InvalidAudioError(SpeakerEnrollmentError):
    pass


class NoSpeechDetectedError(SpeakerEnrollmentError):
    pass


class InvalidEmbeddingError(SpeakerEnrollmentError):
    pass


class SpeakerNotFoundError(SpeakerEnrollmentError):
    pass


class StopCause(str, Enum):
    USER = "user"
    SILENCE_TIMEOUT = "silence_timeout"
    PIPELINE_BACKPRESSURE = "pipeline_backpressure"
    ERROR = "error"
