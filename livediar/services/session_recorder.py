import logging
import os
import threading
import wave
from typing import Optional

import numpy as np

from livediar import config

logger = logging.getLogger("SessionRecorder")


class SessionRecorder:
    """
    Side-channel WAV of the canonical session audio (16-bit mono).

    - Incremental writes, one continuous file per session.
    - No dependency on diarization decisions.
    - Write failures are logged and never reach the audio path.
    """

    def __init__(self, session_id: str, sample_rate: int = config.SAMPLE_RATE, output_dir: str = "."):
        self.session_id = session_id
        self.sample_rate = sample_rate
        self.output_dir = output_dir
        self.path = os.path.join(self.output_dir, f"session_{self.session_id}.wav")
        self.wav_file: Optional[wave.Wave_write] = None
        self.is_recording = False
        self.total_samples_written = 0
        self.lock = threading.Lock()

    def start(self):
        try:
            os.makedirs(self.output_dir, exist_ok=True)
            self.wav_file = wave.open(self.path, "wb")
            self.wav_file.setnchannels(1)
            self.wav_file.setsampwidth(2)  # 16-bit
            self.wav_file.setframerate(self.sample_rate)
            self.is_recording = True
            logger.info(f"Recording started: {self.path}")
        except OSError as e:
            logger.error(f"Failed to start recording: {e}")
            self.is_recording = False

    def write(self, audio_chunk: np.ndarray):
        """
        audio_chunk: float32 in [-1.0, 1.0]
        """
        with self.lock:
            if not self.is_recording or self.wav_file is None:
                return
            try:
                audio_int16 = (np.clip(audio_chunk, -1.0, 1.0) * 32767).astype(np.int16)
                self.wav_file.writeframes(audio_int16.tobytes())
                self.total_samples_written += len(audio_chunk)
            except (OSError, wave.Error) as e:
                logger.error(f"Write failed: {e}")

    def finalize(self) -> Optional[str]:
        with self.lock:
            if self.wav_file is None:
                return None
            try:
                self.wav_file.close()
                logger.info(
                    f"Recording finalized: {self.total_samples_written / self.sample_rate:.1f}s -> {self.path}"
                )
            except (OSError, wave.Error) as e:
                logger.error(f"Error closing WAV: {e}")
            self.wav_file = None
            self.is_recording = False
            return self.path
