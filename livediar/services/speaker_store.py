import json
import logging
import os
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import numpy as np

from livediar.components.embedding_index import EmbeddingIndex
from livediar.components.speaker_registry import SpeakerRegistry, validate_embedding
from livediar.errors import InvalidEmbeddingError

logger = logging.getLogger("SpeakerStore")

FORMAT_VERSION = 1


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_iso(value: Optional[str]) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class SpeakerStore:
    """
    Cross-session speaker profiles on disk.

    - JSON is the source of truth: {id: {name, embedding, duration, created_at, updated_at}}.
    - Atomic save: write .tmp, then os.replace.
    - identify() searches a faiss index derived from the profiles.
    The session registry never reads this file itself; callers load profiles
    into it explicitly with load_into().
    """

    def __init__(self, path: str = "storage/speakers.json"):
        self.path = path
        self.lock = threading.Lock()
        self.profiles: Dict[str, dict] = {}
        self.index: Optional[EmbeddingIndex] = None
        if os.path.exists(self.path):
            self.load()
        else:
            logger.info(f"Initialized new speaker store at {self.path}")

    def load(self):
        with self.lock:
            self.profiles = self._read(self.path)
            self._rebuild_index()
            logger.info(f"Loaded {len(self.profiles)} speaker profiles from {self.path}")

    def save(self):
        with self.lock:
            self._write(self.path, self.profiles)

    # --- Profiles ---

    def get_known_speakers(self) -> List[str]:
        with self.lock:
            return sorted(self.profiles)

    def add_profile(self, speaker_id: str, embedding: np.ndarray, name: Optional[str] = None,
                    duration: float = 0.0, created_at: Optional[datetime] = None):
        vec = np.asarray(embedding, dtype=np.float32).reshape(-1)
        if not validate_embedding(vec):
            raise InvalidEmbeddingError(f"Invalid embedding for {speaker_id}")
        now = datetime.now(timezone.utc)
        with self.lock:
            existing = self.profiles.get(speaker_id, {})
            self.profiles[speaker_id] = {
                "id": speaker_id,
                "name": name or existing.get("name"),
                "embedding": vec.tolist(),
                "duration": float(duration),
                "created_at": existing.get("created_at") or _iso(created_at or now),
                "updated_at": _iso(now),
            }
            self._rebuild_index()

    def remove_profile(self, speaker_id: str) -> bool:
        with self.lock:
            removed = self.profiles.pop(speaker_id, None) is not None
            if removed:
                self._rebuild_index()
            return removed

    def identify(self, embedding: np.ndarray, threshold: float = 0.60) -> Tuple[Optional[str], float]:
        """
        Returns (speaker_id, similarity) or (None, best_similarity).
        """
        with self.lock:
            if self.index is None or self.index.size == 0:
                return None, 0.0
            hits = self.index.search(embedding, 1)
        if not hits:
            return None, 0.0
        label, score = hits[0]
        if score > threshold:
            return label, score
        return None, score

    # --- Registry bridge ---

    def load_into(self, registry: SpeakerRegistry) -> int:
        """
        Upsert every stored profile into a session registry.
        """
        with self.lock:
            profiles = list(self.profiles.values())
        loaded = 0
        for profile in profiles:
            try:
                registry.upsert(
                    profile["id"],
                    np.asarray(profile["embedding"], dtype=np.float32),
                    duration=float(profile.get("duration", 0.0)),
                    name=profile.get("name"),
                    created_at=_parse_iso(profile.get("created_at")),
                )
                loaded += 1
            except InvalidEmbeddingError as e:
                logger.warning(f"Skipped profile {profile.get('id')}: {e}")
        logger.info(f"Loaded {loaded} known speakers into registry")
        return loaded

    def save_from(self, registry: SpeakerRegistry, min_duration: float = 0.0) -> int:
        saved = 0
        for speaker in registry.speakers():
            if speaker.duration < min_duration:
                continue
            self.add_profile(speaker.id, speaker.embedding, name=speaker.name,
                             duration=speaker.duration, created_at=speaker.created_at)
            saved += 1
        self.save()
        return saved

    # --- Import / Export ---

    def export_profiles(self, path: str) -> int:
        with self.lock:
            self._write(path, self.profiles)
            count = len(self.profiles)
        logger.info(f"Exported {count} profiles to {path}")
        return count

    def import_profiles(self, path: str, registry: Optional[SpeakerRegistry] = None) -> int:
        """
        Merge profiles from another file (same ids are replaced) and optionally
        upsert them into a live registry.
        """
        imported = self._read(path)
        with self.lock:
            self.profiles.update(imported)
            self._rebuild_index()
            self._write(self.path, self.profiles)
        if registry is not None:
            for profile in imported.values():
                registry.upsert(
                    profile["id"],
                    np.asarray(profile["embedding"], dtype=np.float32),
                    duration=float(profile.get("duration", 0.0)),
                    name=profile.get("name"),
                    created_at=_parse_iso(profile.get("created_at")),
                )
        logger.info(f"Imported {len(imported)} profiles from {path}")
        return len(imported)

    # --- Internal ---

    @staticmethod
    def _read(path: str) -> Dict[str, dict]:
        with open(path, "r") as f:
            data = json.load(f)
        profiles = {}
        for entry in data.get("speakers", []):
            if "id" not in entry or "embedding" not in entry:
                logger.warning(f"Skipping malformed profile entry in {path}")
                continue
            profiles[entry["id"]] = entry
        return profiles

    @staticmethod
    def _write(path: str, profiles: Dict[str, dict]):
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        temp = path + ".tmp"
        with open(temp, "w") as f:
            json.dump({
                "version": FORMAT_VERSION,
                "exported_at": _iso(datetime.now(timezone.utc)),
                "speakers": [profiles[k] for k in sorted(profiles)],
            }, f, indent=2)
        os.replace(temp, path)

    def _rebuild_index(self):
        """
        Assumes lock is held.
        """
        items = [(sid, np.asarray(p["embedding"], dtype=np.float32)) for sid, p in sorted(self.profiles.items())]
        if not items:
            self.index = None
            return
        self.index = EmbeddingIndex(len(items[0][1]))
        self.index.rebuild(items)
