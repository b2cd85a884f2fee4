import logging
import os
from dataclasses import dataclass, fields, replace as dc_replace
from typing import Optional

from dotenv import load_dotenv

from livediar.errors import ConfigurationError

logger = logging.getLogger("Config")

# --- Canonical Audio ---
SAMPLE_RATE = 16000  # Canonical mono float32 rate
CAPTURE_BLOCKSIZE = 2048  # Frames per device callback (0 lets PortAudio pick)

# --- Speaker Clustering ---
# Tuned for 256-dim embeddings; retune for other backends.
SPEAKER_THRESHOLD = 0.65  # Cosine distance to accept an existing speaker
EMBEDDING_THRESHOLD = 0.45  # Tighter bound to also update the speaker's embedding
MIN_SPEECH_DURATION = 1.0  # Seconds of speech required to seed a new speaker
EMBEDDING_UPDATE_ALPHA = 0.9  # EMA weight of the existing embedding
MIN_SILENCE_GAP = 0.5  # Same-speaker segments closer than this are merged

# --- Adaptive Window ---
MIN_WINDOW_SECONDS = 1.0
DEFAULT_WINDOW_SECONDS = 5.0
MAX_WINDOW_SECONDS = 10.0
WINDOW_STEP_SECONDS = 0.5
GROW_RATIO = 0.8  # processing/window above this -> grow
SHRINK_RATIO = 0.3  # processing/window below this -> shrink

# --- Backpressure ---
MAX_LIVE_BUFFER_SECONDS = 15.0
BACKPRESSURE_DROP_THRESHOLD = 3  # Consecutive drops before pausing
COOLDOWN_SECONDS = 15.0
RESUME_WINDOW_NUDGE = 0.5  # Window growth applied when a cooldown ends
TERMINAL_DROP_CEILING = 50  # Consecutive drops that end the session
MAX_PAUSE_CYCLES = 3  # Pauses without a clean window in between
BACKPRESSURE_NOTICE_INTERVAL = 10.0

# --- Watchdog ---
WATCHDOG_INITIAL_TIMEOUT = 10.0
WATCHDOG_RETRY_BASE = 6.0  # Retry delay = min(max, base + step * attempts)
WATCHDOG_RETRY_STEP = 2.0
WATCHDOG_RETRY_MAX = 12.0
WATCHDOG_MAX_ATTEMPTS = 4
RECONFIGURE_WATCHDOG_TIMEOUT = 8.0
ROUTE_POLL_INTERVAL = 2.0

# --- Conversion ---
CONVERTER_FAILURE_THRESHOLD = 3
CONVERTER_FAILURE_WINDOW = 1.0  # Seconds between failures to count as consecutive
SLOW_CONVERSION_MS = 50.0
METRICS_LOG_INTERVAL = 100

# --- Aligned Buffers ---
ALIGNED_BUFFERS = True
BUFFER_ALIGNMENT = 64  # Bytes

# --- Models (NeMo backend) ---
DIARIZATION_MODEL = "nvidia/diar_sortformer_4spk-v1"
EMBEDDING_MODEL = "nvidia/speakerverification_en_titanet_large"
FRAME_SECONDS = 0.08  # Sortformer output frame
ACTIVITY_THRESHOLD = 0.5
MIN_AUDIO_FOR_EMBEDDING = 0.5

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class DiarizerConfig:
    """
    Immutable configuration consumed by a DiarizationSession.

    Defaults mirror the module constants above; override per field with
    LIVEDIAR_<FIELD_NAME> environment variables via from_env().
    """
    sample_rate: int = SAMPLE_RATE

    speaker_threshold: float = SPEAKER_THRESHOLD
    embedding_threshold: float = EMBEDDING_THRESHOLD
    min_speech_duration: float = MIN_SPEECH_DURATION
    embedding_update_alpha: float = EMBEDDING_UPDATE_ALPHA
    min_silence_gap: float = MIN_SILENCE_GAP

    min_window_seconds: float = MIN_WINDOW_SECONDS
    default_window_seconds: float = DEFAULT_WINDOW_SECONDS
    max_window_seconds: float = MAX_WINDOW_SECONDS
    window_step_seconds: float = WINDOW_STEP_SECONDS
    grow_ratio: float = GROW_RATIO
    shrink_ratio: float = SHRINK_RATIO

    max_live_buffer_seconds: float = MAX_LIVE_BUFFER_SECONDS
    backpressure_drop_threshold: int = BACKPRESSURE_DROP_THRESHOLD
    cooldown_seconds: float = COOLDOWN_SECONDS
    resume_window_nudge: float = RESUME_WINDOW_NUDGE
    terminal_drop_ceiling: int = TERMINAL_DROP_CEILING
    max_pause_cycles: int = MAX_PAUSE_CYCLES
    backpressure_notice_interval: float = BACKPRESSURE_NOTICE_INTERVAL

    watchdog_initial_timeout: float = WATCHDOG_INITIAL_TIMEOUT
    watchdog_retry_base: float = WATCHDOG_RETRY_BASE
    watchdog_retry_step: float = WATCHDOG_RETRY_STEP
    watchdog_retry_max: float = WATCHDOG_RETRY_MAX
    watchdog_max_attempts: int = WATCHDOG_MAX_ATTEMPTS
    reconfigure_watchdog_timeout: float = RECONFIGURE_WATCHDOG_TIMEOUT
    route_poll_interval: float = ROUTE_POLL_INTERVAL
    capture_blocksize: int = CAPTURE_BLOCKSIZE

    converter_failure_threshold: int = CONVERTER_FAILURE_THRESHOLD
    converter_failure_window: float = CONVERTER_FAILURE_WINDOW
    slow_conversion_ms: float = SLOW_CONVERSION_MS
    metrics_log_interval: int = METRICS_LOG_INTERVAL

    aligned_buffers: bool = ALIGNED_BUFFERS
    buffer_alignment: int = BUFFER_ALIGNMENT

    real_time_processing: bool = True
    recording_dir: Optional[str] = None

    def __post_init__(self):
        self.validate()

    def validate(self):
        if self.sample_rate <= 0:
            raise ConfigurationError(f"sample_rate must be positive, got {self.sample_rate}")
        for name in ("speaker_threshold", "embedding_threshold"):
            value = getattr(self, name)
            if not 0.0 < value <= 2.0:
                raise ConfigurationError(f"{name} must be a cosine distance in (0, 2], got {value}")
        if self.embedding_threshold > self.speaker_threshold:
            raise ConfigurationError(
                f"embedding_threshold ({self.embedding_threshold}) must not exceed "
                f"speaker_threshold ({self.speaker_threshold})"
            )
        if not 0.0 <= self.embedding_update_alpha <= 1.0:
            raise ConfigurationError(f"embedding_update_alpha must be in [0, 1], got {self.embedding_update_alpha}")
        if self.min_speech_duration < 0:
            raise ConfigurationError("min_speech_duration must be >= 0")
        if not (0 < self.min_window_seconds <= self.default_window_seconds <= self.max_window_seconds):
            raise ConfigurationError(
                "window bounds must satisfy 0 < min <= default <= max, got "
                f"{self.min_window_seconds}/{self.default_window_seconds}/{self.max_window_seconds}"
            )
        if self.window_step_seconds <= 0:
            raise ConfigurationError("window_step_seconds must be positive")
        if not 0 <= self.shrink_ratio < self.grow_ratio:
            raise ConfigurationError("shrink_ratio must be below grow_ratio")
        if self.max_live_buffer_seconds < self.max_window_seconds:
            raise ConfigurationError(
                f"max_live_buffer_seconds ({self.max_live_buffer_seconds}) must hold at least "
                f"one max window ({self.max_window_seconds})"
            )
        if self.backpressure_drop_threshold < 1 or self.terminal_drop_ceiling < self.backpressure_drop_threshold:
            raise ConfigurationError("terminal_drop_ceiling must be >= backpressure_drop_threshold >= 1")
        if self.cooldown_seconds <= 0:
            raise ConfigurationError("cooldown_seconds must be positive")
        if self.watchdog_max_attempts < 1:
            raise ConfigurationError("watchdog_max_attempts must be >= 1")
        if self.buffer_alignment <= 0 or self.buffer_alignment & (self.buffer_alignment - 1):
            raise ConfigurationError(f"buffer_alignment must be a power of two, got {self.buffer_alignment}")

    def replace(self, **changes) -> "DiarizerConfig":
        return dc_replace(self, **changes)

    @property
    def max_live_samples(self) -> int:
        return int(self.max_live_buffer_seconds * self.sample_rate)

    @classmethod
    def from_env(cls, prefix: str = "LIVEDIAR_", env_file: Optional[str] = None) -> "DiarizerConfig":
        """
        Build a config from defaults overridden by environment variables.
        A .env file (or env_file) is loaded first without clobbering the real environment.
        """
        load_dotenv(env_file)
        overrides = {}
        for f in fields(cls):
            raw = os.environ.get(prefix + f.name.upper())
            if raw is None:
                continue
            overrides[f.name] = _coerce(f.name, raw, f.default)
        if overrides:
            logger.info(f"Config overrides from environment: {sorted(overrides)}")
        return cls(**overrides)


def _coerce(name: str, raw: str, default):
    raw = raw.strip()
    try:
        if isinstance(default, bool):
            lowered = raw.lower()
            if lowered in _TRUE:
                return True
            if lowered in _FALSE:
                return False
            raise ValueError(raw)
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
    except ValueError:
        raise ConfigurationError(f"Invalid value for {name}: {raw!r}") from None
    # Optional[str] fields
    return raw or None
