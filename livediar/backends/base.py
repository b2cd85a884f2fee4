from abc import ABC, abstractmethod
from typing import List

import numpy as np

from livediar.dtos import InferenceTuple


class InferenceBackend(ABC):
    """
    Black-box segmentation + embedding model.

    infer() is synchronous and may be slow. It is only ever called from the
    single inference executor thread, never concurrently. Returned times are
    seconds relative to the first sample of `samples`; per-speaker spans must
    not overlap.
    """

    name = "backend"

    @abstractmethod
    def infer(self, samples: np.ndarray, sample_rate: int) -> List[InferenceTuple]:
        raise NotImplementedError

    @property
    def embedding_dim(self) -> int:
        raise NotImplementedError

    def close(self):
        pass
