import logging
from typing import List, Sequence, Tuple

import faiss
import numpy as np

logger = logging.getLogger("EmbeddingIndex")


def l2_normalize(vector: np.ndarray) -> np.ndarray:
    vec = np.asarray(vector, dtype=np.float32).reshape(-1)
    norm = float(np.linalg.norm(vec))
    if norm > 1e-9:
        vec = vec / norm
    return vec


class EmbeddingIndex:
    """
    Exact cosine search over a small set of centroids.

    Wraps faiss.IndexFlatIP over L2-normalized copies, so inner product is
    cosine similarity. Rebuilt wholesale on every mutation (centroid counts
    stay in the tens), never updated in place. Not thread-safe on its own:
    owners serialize rebuild() against search().
    """

    def __init__(self, dim: int):
        self.dim = dim
        self.index = faiss.IndexFlatIP(dim)
        self.id_map: List[str] = []

    @property
    def size(self) -> int:
        return self.index.ntotal

    def rebuild(self, items: Sequence[Tuple[str, np.ndarray]]):
        self.index = faiss.IndexFlatIP(self.dim)
        self.id_map = []
        vectors = []
        for label, vec in items:
            vec = np.asarray(vec, dtype=np.float32).reshape(-1)
            if vec.shape[0] != self.dim:
                logger.warning(f"Skipping {label}: dim {vec.shape[0]} != {self.dim}")
                continue
            vectors.append(vec)
            self.id_map.append(label)

        if vectors:
            matrix = np.ascontiguousarray(np.stack(vectors), dtype=np.float32)
            faiss.normalize_L2(matrix)
            self.index.add(matrix)

    def search(self, embedding: np.ndarray, k: int = 1) -> List[Tuple[str, float]]:
        """
        Returns up to k (label, cosine_similarity) pairs, best first.
        """
        if self.index.ntotal == 0:
            return []
        query = np.ascontiguousarray(l2_normalize(embedding).reshape(1, -1))
        k = min(k, self.index.ntotal)
        D, I = self.index.search(query, k)
        results = []
        for score, idx in zip(D[0], I[0]):
            if 0 <= idx < len(self.id_map):
                results.append((self.id_map[idx], float(score)))
        return results

    def nearest(self, embedding: np.ndarray) -> Tuple[str, float]:
        """
        Returns (label, cosine_distance) of the closest centroid, or (None, inf).
        """
        hits = self.search(embedding, 1)
        if not hits:
            return None, float("inf")
        label, similarity = hits[0]
        return label, 1.0 - similarity
