import copy
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import numpy as np

from livediar import config
from livediar.components.embedding_index import EmbeddingIndex
from livediar.dtos import Speaker
from livediar.errors import InvalidEmbeddingError, SpeakerNotFoundError
from livediar.infrastructure.rw_lock import ReadWriteLock

logger = logging.getLogger("SpeakerRegistry")

MIN_EMBEDDING_NORM = 0.1
MAX_RAW_EMBEDDINGS = 50


def validate_embedding(embedding: np.ndarray) -> bool:
    vec = np.asarray(embedding)
    if vec.ndim != 1 or vec.size == 0:
        return False
    if not np.all(np.isfinite(vec)):
        return False
    return float(np.linalg.norm(vec)) > MIN_EMBEDDING_NORM


def cosine_distance(a: np.ndarray, b: np.ndarray) -> float:
    na = float(np.linalg.norm(a))
    nb = float(np.linalg.norm(b))
    if na < 1e-9 or nb < 1e-9:
        return float("inf")
    return 1.0 - float(np.dot(a, b)) / (na * nb)


class SpeakerRegistry:
    """
    Session speaker identities via cosine-distance clustering.

    assign(embedding, duration, confidence):
    1. d, speaker* = nearest known speaker (cosine distance).
    2. d < speaker_threshold -> speaker*. If also d < embedding_threshold,
       EMA update: e = alpha * e + (1 - alpha) * new, and accumulate duration.
    3. else duration >= min_speech_duration -> new speaker.
    4. else None (too short to seed an identity).

    Reads run concurrently under the read lock; embedding updates and
    speaker creation take the write lock. The faiss index is rebuilt after
    every mutation while the write lock is held.
    """

    def __init__(
        self,
        speaker_threshold: float = config.SPEAKER_THRESHOLD,
        embedding_threshold: float = config.EMBEDDING_THRESHOLD,
        min_speech_duration: float = config.MIN_SPEECH_DURATION,
        alpha: float = config.EMBEDDING_UPDATE_ALPHA,
        id_prefix: str = "spk_",
    ):
        self.speaker_threshold = speaker_threshold
        self.embedding_threshold = embedding_threshold
        self.min_speech_duration = min_speech_duration
        self.alpha = alpha
        self.id_prefix = id_prefix

        self.lock = ReadWriteLock()
        self._speakers: Dict[str, Speaker] = {}
        self._index: Optional[EmbeddingIndex] = None
        self._dim: Optional[int] = None
        self._next_id = 1

    @classmethod
    def from_config(cls, cfg) -> "SpeakerRegistry":
        return cls(
            speaker_threshold=cfg.speaker_threshold,
            embedding_threshold=cfg.embedding_threshold,
            min_speech_duration=cfg.min_speech_duration,
            alpha=cfg.embedding_update_alpha,
        )

    # --- Reads ---

    @property
    def dim(self) -> Optional[int]:
        return self._dim

    def __len__(self):
        with self.lock.read():
            return len(self._speakers)

    def __contains__(self, speaker_id: str) -> bool:
        with self.lock.read():
            return speaker_id in self._speakers

    def get(self, speaker_id: str) -> Optional[Speaker]:
        with self.lock.read():
            speaker = self._speakers.get(speaker_id)
            return copy.deepcopy(speaker) if speaker else None

    def speakers(self) -> List[Speaker]:
        with self.lock.read():
            return [copy.deepcopy(s) for s in self._speakers.values()]

    def distances(self, embedding: np.ndarray) -> Dict[str, float]:
        """
        Cosine distance from embedding to every known speaker.
        """
        vec = np.asarray(embedding, dtype=np.float32).reshape(-1)
        with self.lock.read():
            if self._index is None or not self._accepts(vec):
                return {}
            hits = self._index.search(vec, self._index.size)
        return {label: 1.0 - sim for label, sim in hits}

    def nearest(self, embedding: np.ndarray) -> Tuple[Optional[str], float]:
        vec = np.asarray(embedding, dtype=np.float32).reshape(-1)
        with self.lock.read():
            return self._nearest_locked(vec)

    # --- Assignment ---

    def assign(self, embedding: np.ndarray, duration: float, confidence: float = 1.0) -> Optional[str]:
        vec = np.asarray(embedding, dtype=np.float32).reshape(-1)
        if not validate_embedding(vec):
            logger.warning("Rejected invalid embedding (non-finite or near-zero norm).")
            return None

        # Fast path: a loose match needs no mutation
        with self.lock.read():
            if not self._accepts(vec):
                logger.warning(f"Rejected embedding of dim {vec.shape[0]} (registry dim {self._dim}).")
                return None
            label, distance = self._nearest_locked(vec)
            if label is not None and self.embedding_threshold <= distance < self.speaker_threshold:
                logger.debug(f"Matched {label} (d={distance:.3f}, no update)")
                return label

        # Mutating path: decide again under the write lock, state may have moved
        with self.lock.write():
            if not self._accepts(vec):
                return None
            label, distance = self._nearest_locked(vec)

            if label is not None and distance < self.speaker_threshold:
                if distance < self.embedding_threshold:
                    self._update_locked(self._speakers[label], vec, duration)
                return label

            if duration >= self.min_speech_duration:
                speaker = self._create_locked(vec, duration)
                logger.info(
                    f"New speaker {speaker.id} "
                    f"(nearest d={distance:.3f}, duration {duration:.2f}s, conf {confidence:.2f})"
                )
                return speaker.id

        logger.debug(f"Discarded segment: {duration:.2f}s below {self.min_speech_duration}s, d={distance:.3f}")
        return None

    # --- Caller bootstrapping ---

    def upsert(self, speaker_id: str, embedding: np.ndarray, duration: float = 0.0,
               name: Optional[str] = None, created_at: Optional[datetime] = None) -> Speaker:
        """
        Insert or replace a known speaker (e.g. profiles from an earlier session).
        """
        vec = np.asarray(embedding, dtype=np.float32).reshape(-1)
        if not validate_embedding(vec):
            raise InvalidEmbeddingError(f"Invalid embedding for speaker {speaker_id}")

        with self.lock.write():
            if self._dim is not None and vec.shape[0] != self._dim:
                raise InvalidEmbeddingError(f"Embedding dim {vec.shape[0]} != registry dim {self._dim}")
            now = datetime.now(timezone.utc)
            existing = self._speakers.get(speaker_id)
            if existing is not None:
                existing.embedding = vec.copy()
                existing.duration = max(existing.duration, duration)
                existing.name = name or existing.name
                existing.updated_at = now
                existing.update_count += 1
                speaker = existing
                logger.info(f"Updated known speaker {speaker_id}")
            else:
                speaker = Speaker(
                    id=speaker_id,
                    embedding=vec.copy(),
                    duration=duration,
                    name=name,
                    created_at=created_at or now,
                    updated_at=now,
                )
                self._speakers[speaker_id] = speaker
                self._bump_next_id(speaker_id)
                logger.info(f"Loaded known speaker {speaker_id}")
            self._dim = vec.shape[0]
            self._rebuild_index()
            return copy.deepcopy(speaker)

    def rename(self, speaker_id: str, name: str) -> Speaker:
        with self.lock.write():
            speaker = self._speakers.get(speaker_id)
            if speaker is None:
                raise SpeakerNotFoundError(speaker_id)
            speaker.name = name
            speaker.updated_at = datetime.now(timezone.utc)
            return copy.deepcopy(speaker)

    def merge(self, source_id: str, target_id: str) -> Speaker:
        """
        Fold source into target (duration-weighted embedding) and drop source.
        """
        if source_id == target_id:
            raise ValueError("cannot merge a speaker into itself")
        with self.lock.write():
            source = self._speakers.get(source_id)
            target = self._speakers.get(target_id)
            if source is None or target is None:
                raise SpeakerNotFoundError(source_id if source is None else target_id)
            total = source.duration + target.duration
            if total > 0:
                target.embedding = (
                    target.embedding * target.duration + source.embedding * source.duration
                ) / total
            else:
                target.embedding = (target.embedding + source.embedding) / 2.0
            target.embedding = target.embedding.astype(np.float32)
            target.duration = total
            target.raw_embeddings = (target.raw_embeddings + source.raw_embeddings)[-MAX_RAW_EMBEDDINGS:]
            target.update_count += source.update_count + 1
            target.updated_at = datetime.now(timezone.utc)
            del self._speakers[source_id]
            self._rebuild_index()
            logger.info(f"Merged {source_id} into {target_id}")
            return copy.deepcopy(target)

    def reset(self):
        with self.lock.write():
            self._speakers.clear()
            self._index = None
            self._dim = None
            self._next_id = 1

    # --- Internal (lock held) ---

    def _accepts(self, vec: np.ndarray) -> bool:
        return self._dim is None or vec.shape[0] == self._dim

    def _nearest_locked(self, vec: np.ndarray) -> Tuple[Optional[str], float]:
        if self._index is None or self._index.size == 0:
            return None, float("inf")
        return self._index.nearest(vec)

    def _update_locked(self, speaker: Speaker, vec: np.ndarray, duration: float):
        speaker.embedding = (self.alpha * speaker.embedding + (1.0 - self.alpha) * vec).astype(np.float32)
        speaker.duration += duration
        speaker.update_count += 1
        speaker.updated_at = datetime.now(timezone.utc)
        speaker.raw_embeddings.append(vec.copy())
        if len(speaker.raw_embeddings) > MAX_RAW_EMBEDDINGS:
            speaker.raw_embeddings.pop(0)
        self._rebuild_index()

    def _create_locked(self, vec: np.ndarray, duration: float) -> Speaker:
        speaker_id = f"{self.id_prefix}{self._next_id}"
        while speaker_id in self._speakers:
            self._next_id += 1
            speaker_id = f"{self.id_prefix}{self._next_id}"
        self._next_id += 1
        speaker = Speaker(id=speaker_id, embedding=vec.copy(), duration=duration, raw_embeddings=[vec.copy()])
        self._speakers[speaker_id] = speaker
        self._dim = vec.shape[0]
        self._rebuild_index()
        return speaker

    def _bump_next_id(self, speaker_id: str):
        if speaker_id.startswith(self.id_prefix):
            suffix = speaker_id[len(self.id_prefix):]
            if suffix.isdigit():
                self._next_id = max(self._next_id, int(suffix) + 1)

    def _rebuild_index(self):
        if self._dim is None:
            self._index = None
            return
        index = EmbeddingIndex(self._dim)
        index.rebuild([(sid, s.embedding) for sid, s in sorted(self._speakers.items())])
        self._index = index
