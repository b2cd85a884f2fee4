import logging
import threading
from typing import Dict, List, Optional, Sequence

from livediar import config
from livediar.components.speaker_registry import SpeakerRegistry
from livediar.dtos import DiarizationResult, InferenceTuple, Segment, Window

logger = logging.getLogger("ResultAggregator")


def merge_adjacent(segments: Sequence[Segment], min_gap: float) -> List[Segment]:
    """
    Merge same-speaker segments separated by less than min_gap (or overlapping).
    Input must be sorted by start_time; output stays sorted.
    """
    merged: List[Segment] = []
    last_for_speaker: Dict[str, int] = {}
    for seg in segments:
        idx = last_for_speaker.get(seg.speaker_id)
        if idx is not None and seg.start_time - merged[idx].end_time < min_gap:
            prev = merged[idx]
            total = prev.duration + seg.duration
            if total > 0:
                confidence = (prev.confidence * prev.duration + seg.confidence * seg.duration) / total
            else:
                confidence = max(prev.confidence, seg.confidence)
            merged[idx] = Segment(
                speaker_id=prev.speaker_id,
                start_time=prev.start_time,
                end_time=max(prev.end_time, seg.end_time),
                confidence=confidence,
                embedding_snapshot=prev.embedding_snapshot,
            )
            continue
        last_for_speaker[seg.speaker_id] = len(merged)
        merged.append(seg)
    return merged


class ResultAggregator:
    """
    Turns backend tuples into Segments through the SpeakerRegistry.

    - Live: each window REPLACES the previous live result.
    - Final: one full-session pass; supersedes every live result.
    Tuples are assigned in start order, since registry updates are order-sensitive.
    """

    def __init__(self, registry: SpeakerRegistry, min_silence_gap: float = config.MIN_SILENCE_GAP):
        self.registry = registry
        self.min_silence_gap = min_silence_gap
        self.lock = threading.Lock()
        self.live_result = DiarizationResult.empty()
        self.final_result: Optional[DiarizationResult] = None
        self.live_updates = 0
        self.discarded_tuples = 0

    def build(self, tuples: Sequence[InferenceTuple], offset: float = 0.0,
              is_final: bool = False, processing_time: float = 0.0) -> DiarizationResult:
        segments = []
        for tup in sorted(tuples, key=lambda t: (t.start, t.end)):
            if tup.end <= tup.start:
                self.discarded_tuples += 1
                continue
            speaker_id = self.registry.assign(tup.embedding, tup.duration, tup.confidence)
            if speaker_id is None:
                self.discarded_tuples += 1
                continue
            segments.append(Segment(
                speaker_id=speaker_id,
                start_time=offset + tup.start,
                end_time=offset + tup.end,
                confidence=float(tup.confidence),
                embedding_snapshot=tup.embedding.copy(),
            ))

        segments.sort(key=lambda s: s.start_time)
        segments = merge_adjacent(segments, self.min_silence_gap)
        return DiarizationResult(segments=tuple(segments), is_final=is_final, processing_time=processing_time)

    def apply_live(self, window: Window, tuples: Sequence[InferenceTuple],
                   processing_time: float = 0.0) -> DiarizationResult:
        result = self.build(tuples, offset=window.start_time, processing_time=processing_time)
        with self.lock:
            self.live_result = result
            self.live_updates += 1
        logger.info(
            f"Live window #{window.sequence} ({window.duration:.1f}s @ {window.start_time:.1f}s): "
            f"{len(result)} segments, speakers {result.speaker_ids}"
        )
        return result

    def apply_final(self, tuples: Sequence[InferenceTuple], processing_time: float = 0.0) -> DiarizationResult:
        result = self.build(tuples, offset=0.0, is_final=True, processing_time=processing_time)
        with self.lock:
            self.final_result = result
        logger.info(f"Final pass: {len(result)} segments, {len(result.speaker_ids)} speakers")
        return result

    def current(self) -> DiarizationResult:
        with self.lock:
            return self.final_result if self.final_result is not None else self.live_result

    def reset(self):
        with self.lock:
            self.live_result = DiarizationResult.empty()
            self.final_result = None
            self.live_updates = 0
            self.discarded_tuples = 0
