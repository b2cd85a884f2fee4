import logging
from typing import List, Optional

import numpy as np
import torch
from nemo.collections.asr.models import EncDecSpeakerLabelModel, SortformerEncLabelModel

from livediar import config
from livediar.backends.base import InferenceBackend
from livediar.dtos import InferenceTuple

logger = logging.getLogger("NemoBackend")


class NemoInferenceBackend(InferenceBackend):
    """
    Sortformer segmentation + TitaNet embeddings.

    - Sortformer yields per-frame activity for up to 4 speaker slots.
    - Each slot's activity is thresholded into contiguous turns.
    - Every turn long enough is embedded by TitaNet (L2 normalized).
    Slots are window-local; identity across windows is the registry's job.
    """

    name = "nemo"

    def __init__(self, diarization_model: str = config.DIARIZATION_MODEL,
                 embedding_model: str = config.EMBEDDING_MODEL,
                 device: Optional[str] = None,
                 activity_threshold: float = config.ACTIVITY_THRESHOLD,
                 min_turn_seconds: float = config.MIN_AUDIO_FOR_EMBEDDING):
        self.device = device if device else ("cuda" if torch.cuda.is_available() else "cpu")
        self.activity_threshold = activity_threshold
        self.min_turn_seconds = min_turn_seconds

        # Suppress NeMo logging
        logging.getLogger("nemo_logger").setLevel(logging.ERROR)

        logger.info(f"Loading {diarization_model} on {self.device}...")
        self.diar_model = SortformerEncLabelModel.from_pretrained(diarization_model).to(self.device).eval()

        logger.info(f"Loading TitaNet model: {embedding_model} on {self.device}")
        self.embed_model = EncDecSpeakerLabelModel.from_pretrained(model_name=embedding_model)
        self.embed_model.to(self.device)
        self.embed_model.eval()
        self.embed_model.freeze()
        self._dim: Optional[int] = None
        logger.info("NeMo backend ready.")

    @property
    def embedding_dim(self) -> int:
        if self._dim is None:
            silence_embedding = self._embed(np.zeros(int(config.SAMPLE_RATE * 1.0), dtype=np.float32))
            self._dim = int(silence_embedding.shape[0])
        return self._dim

    def infer(self, samples: np.ndarray, sample_rate: int) -> List[InferenceTuple]:
        if len(samples) < int(self.min_turn_seconds * sample_rate):
            return []

        probs = self._activity(samples)  # [T, S]
        if probs.size == 0:
            return []
        frame_seconds = len(samples) / sample_rate / probs.shape[0]

        tuples = []
        for slot in range(probs.shape[1]):
            active = probs[:, slot] > self.activity_threshold
            for start_f, end_f in _runs(active):
                start = start_f * frame_seconds
                end = end_f * frame_seconds
                if end - start < self.min_turn_seconds:
                    continue
                chunk = samples[int(start * sample_rate):int(end * sample_rate)]
                embedding = self._embed(chunk)
                if embedding is None:
                    continue
                tuples.append(InferenceTuple(
                    embedding=embedding,
                    start=start,
                    end=end,
                    confidence=float(probs[start_f:end_f, slot].mean()),
                ))
        tuples.sort(key=lambda t: t.start)
        return tuples

    def _activity(self, samples: np.ndarray) -> np.ndarray:
        input_tensor = torch.from_numpy(np.ascontiguousarray(samples, dtype=np.float32)).unsqueeze(0).to(self.device)
        input_length = torch.tensor([input_tensor.shape[1]]).to(self.device)
        with torch.no_grad():
            preds = self.diar_model(input_tensor, input_length)
            if isinstance(preds, (tuple, list)):
                preds = preds[0]
        # [Batch, Time, Speakers]
        return preds[0].detach().cpu().numpy()

    def _embed(self, audio_chunk: np.ndarray) -> Optional[np.ndarray]:
        wav_tensor = torch.from_numpy(np.ascontiguousarray(audio_chunk, dtype=np.float32)).to(self.device)
        input_signal = wav_tensor.unsqueeze(0)  # [1, T]
        input_length = torch.tensor([wav_tensor.shape[0]]).to(self.device)
        with torch.no_grad():
            # TitaNet forward returns (logits, embeddings)
            _, embs = self.embed_model.forward(input_signal=input_signal, input_signal_length=input_length)
        emb_np = embs.squeeze(0).cpu().numpy().astype(np.float32)
        norm = np.linalg.norm(emb_np)
        if norm <= 1e-9:
            return None
        return emb_np / norm

    def close(self):
        self.diar_model = None
        self.embed_model = None
        if torch.cuda.is_available():
            torch.cuda.empty_cache()


def _runs(mask: np.ndarray):
    """Yield (start, end) index pairs of True runs."""
    padded = np.concatenate([[False], mask, [False]])
    edges = np.flatnonzero(padded[1:] != padded[:-1])
    return list(zip(edges[0::2], edges[1::2]))
