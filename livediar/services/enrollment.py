import logging
import uuid
from typing import List, Optional, Sequence

import numpy as np

from livediar import config
from livediar.components.embedding_index import l2_normalize
from livediar.components.speaker_registry import SpeakerRegistry, cosine_distance, validate_embedding
from livediar.dtos import AudioValidationResult, InferenceTuple, Speaker
from livediar.errors import (
    InferenceFailure,
    InvalidAudioError,
    InvalidEmbeddingError,
    NoSpeechDetectedError,
    SpeakerNotFoundError,
)
from livediar.services.inference_executor import InferenceExecutor

logger = logging.getLogger("SpeakerEnrollment")

MIN_ENROLLMENT_SECONDS = 1.0
MIN_RMS = 1e-4


def best_segment(tuples: Sequence[InferenceTuple]) -> Optional[InferenceTuple]:
    """
    Longest segment, ties broken by confidence.
    """
    if not tuples:
        return None
    return max(tuples, key=lambda t: (round(t.duration, 3), t.confidence))


class SpeakerEnrollment:
    """
    Known-speaker enrollment on top of the session registry.

    Every backend call goes through the session's InferenceExecutor so
    enrollment never runs the model concurrently with live windows.
    """

    def __init__(self, executor: InferenceExecutor, registry: SpeakerRegistry,
                 sample_rate: int = config.SAMPLE_RATE,
                 min_duration: float = MIN_ENROLLMENT_SECONDS):
        self.executor = executor
        self.registry = registry
        self.sample_rate = sample_rate
        self.min_duration = min_duration

    def validate_audio(self, samples: np.ndarray) -> AudioValidationResult:
        audio = np.asarray(samples)
        duration = len(audio) / self.sample_rate if audio.ndim == 1 else 0.0
        issues = []
        if audio.ndim != 1:
            issues.append(f"expected mono samples, got shape {audio.shape}")
        elif len(audio) == 0:
            issues.append("audio is empty")
        else:
            if duration < self.min_duration:
                issues.append(f"audio too short ({duration:.2f}s < {self.min_duration:.2f}s)")
            if not np.all(np.isfinite(audio)):
                issues.append("audio contains non-finite samples")
            elif float(np.sqrt(np.mean(audio.astype(np.float64) ** 2))) < MIN_RMS:
                issues.append("audio is silent")
            elif float(np.max(np.abs(audio))) > 1.0:
                issues.append("audio exceeds [-1, 1]")
        return AudioValidationResult(is_valid=not issues, duration_seconds=duration, issues=tuple(issues))

    def extract_best_embedding(self, samples: np.ndarray) -> np.ndarray:
        validation = self.validate_audio(samples)
        if not validation.is_valid:
            raise InvalidAudioError("; ".join(validation.issues))
        try:
            outcome = self.executor.infer(np.asarray(samples, dtype=np.float32))
        except InferenceFailure as e:
            raise NoSpeechDetectedError(f"inference failed: {e}") from e
        segment = best_segment(outcome.tuples)
        if segment is None:
            raise NoSpeechDetectedError("no speech segment found")
        if not validate_embedding(np.asarray(segment.embedding).reshape(-1)):
            raise InvalidEmbeddingError("backend returned an invalid embedding")
        return np.asarray(segment.embedding, dtype=np.float32).reshape(-1)

    def enroll(self, samples: np.ndarray, name: str, speaker_id: Optional[str] = None) -> Speaker:
        return self.enroll_from_clips([samples], name, speaker_id)

    def enroll_from_clips(self, clips: Sequence[np.ndarray], name: str,
                          speaker_id: Optional[str] = None) -> Speaker:
        """
        Mean of the best-segment embedding of every usable clip.
        """
        embeddings: List[np.ndarray] = []
        duration = 0.0
        for clip in clips:
            try:
                embeddings.append(self.extract_best_embedding(clip))
                duration += len(clip) / self.sample_rate
            except (InvalidAudioError, NoSpeechDetectedError) as e:
                logger.warning(f"Skipping enrollment clip for {name}: {e}")
        if not embeddings:
            raise NoSpeechDetectedError(f"no usable clip to enroll {name}")

        centroid = l2_normalize(np.mean(np.stack(embeddings), axis=0))
        speaker_id = speaker_id or f"known_{uuid.uuid4().hex[:8]}"
        speaker = self.registry.upsert(speaker_id, centroid, duration=duration, name=name)
        logger.info(f"Enrolled {name} as {speaker_id} from {len(embeddings)}/{len(clips)} clips")
        return speaker

    def enhance(self, speaker_id: str, clips: Sequence[np.ndarray]) -> Speaker:
        """
        Average the existing embedding with new evidence.
        """
        existing = self.registry.get(speaker_id)
        if existing is None:
            raise SpeakerNotFoundError(speaker_id)
        embeddings = [l2_normalize(existing.embedding)]
        added = 0.0
        for clip in clips:
            try:
                embeddings.append(self.extract_best_embedding(clip))
                added += len(clip) / self.sample_rate
            except (InvalidAudioError, NoSpeechDetectedError) as e:
                logger.warning(f"Skipping clip for {speaker_id}: {e}")
        if len(embeddings) == 1:
            raise NoSpeechDetectedError(f"no usable clip to enhance {speaker_id}")
        centroid = l2_normalize(np.mean(np.stack(embeddings), axis=0))
        return self.registry.upsert(speaker_id, centroid, duration=existing.duration + added, name=existing.name)

    def similarity(self, samples: np.ndarray, speaker_id: str) -> float:
        """
        1 - cosine distance to a known speaker, clamped to [0, 1].
        """
        speaker = self.registry.get(speaker_id)
        if speaker is None:
            raise SpeakerNotFoundError(speaker_id)
        embedding = self.extract_best_embedding(samples)
        return float(np.clip(1.0 - cosine_distance(embedding, speaker.embedding), 0.0, 1.0))

    def rename(self, speaker_id: str, name: str) -> Speaker:
        return self.registry.rename(speaker_id, name)
