import logging
from concurrent.futures import ThreadPoolExecutor
from threading import Event
from typing import List, Optional

from .models import Transcript, LeadContext, SentimentPoint, SentimentTimeline
from .segmenter import segment_transcript, validate_window
from .sentiment import SegmentSentimentScorer
from .timeline import build_timeline
from .errors import InputError, AnalysisCancelled
from .config import (SEGMENT_DURATION_SECONDS, OVERLAP_SECONDS, MIN_SEGMENT_LENGTH,
                     SCORER_CONCURRENCY, CHANGE_THRESHOLD, CRITICAL_DROP_THRESHOLD)

logger = logging.getLogger(__name__)


class TimelineAnalyzer:
    """Segments a transcript, scores the segments and aggregates a timeline.

    Segments are scored by at most ``concurrency`` workers. The returned
    progression keeps segment order whatever order the scores finish in.

    Once ``cancel_event`` is set, queued segments are dropped and segments
    already being scored finish; ``AnalysisCancelled`` is raised instead of a
    partial timeline.
    """

    def __init__(self, scorer: SegmentSentimentScorer,
                 segment_duration: float = SEGMENT_DURATION_SECONDS,
                 overlap: float = OVERLAP_SECONDS,
                 min_length: float = MIN_SEGMENT_LENGTH,
                 concurrency: int = SCORER_CONCURRENCY,
                 change_threshold: float = CHANGE_THRESHOLD,
                 drop_threshold: float = CRITICAL_DROP_THRESHOLD):
        validate_window(segment_duration, overlap)
        self.scorer = scorer
        self.segment_duration = segment_duration
        self.overlap = overlap
        self.min_length = min_length
        self.concurrency = max(1, concurrency)
        self.change_threshold = change_threshold
        self.drop_threshold = drop_threshold

    def analyze(self, transcript: Transcript, context: Optional[LeadContext] = None,
                cancel_event: Optional[Event] = None) -> SentimentTimeline:
        def cancelled() -> bool:
            return cancel_event is not None and cancel_event.is_set()

        segments = segment_transcript(transcript, self.segment_duration, self.overlap, self.min_length)
        if not segments:
            raise InputError("transcript has no messages or zero duration")
        logger.info("Analysing %.0fs call: %d messages in %d segments",
                    transcript.duration, len(transcript.messages), len(segments))

        points: List[SentimentPoint] = []
        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="segments") as pool:
            futures = [pool.submit(self.scorer.score, seg, context) for seg in segments]
            for fut in futures:
                if cancelled():
                    for f in futures:
                        f.cancel()
                    break
                points.append(fut.result())

        if cancelled():
            logger.info("Analysis cancelled after %d/%d segments; discarding results",
                        len(points), len(segments))
            raise AnalysisCancelled("sentiment analysis was cancelled")

        timeline = build_timeline(points, self.change_threshold, self.drop_threshold)
        overall = timeline.overall_sentiment
        logger.info("Overall %s (%.2f), %d changes, %d critical moments",
                    overall.label, overall.score, len(timeline.sentiment_changes),
                    len(timeline.critical_moments))
        return timeline

    def close(self) -> None:
        self.scorer.close()
