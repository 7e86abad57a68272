import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Dict, List, Mapping, Optional, Protocol

from vaderSentiment.vaderSentiment import SentimentIntensityAnalyzer

from .models import Segment, SentimentPoint, LeadContext
from .errors import ScorerError
from .tags import find_cues
from .config import (SCORER_TIMEOUT_SECONDS, SCORER_RETRY_BACKOFF_SECONDS,
                     SCORER_THROTTLE_SECONDS, SCORER_CONCURRENCY, SCORER_BACKEND)

logger = logging.getLogger(__name__)

NO_DATA_CONFIDENCE = 0.1
FALLBACK_CONFIDENCE = 0.3

_analyzer = SentimentIntensityAnalyzer()


def compound_score(text: str) -> float:
    return float(_analyzer.polarity_scores(text)['compound'])


class SentimentScorer(Protocol):
    def score(self, segment_text: str, context: Optional[LeadContext]) -> Mapping[str, Any]:
        """Returns sentiment, confidence, dominant_emotion and key_phrases."""


def emotion_for(compound: float) -> str:
    if compound >= 0.6:
        return "excited"
    if compound >= 0.2:
        return "interested"
    if compound > -0.2:
        return "neutral"
    if compound > -0.5:
        return "skeptical"
    return "frustrated"


def _lead_lines(segment_text: str) -> List[str]:
    lines = []
    for line in segment_text.splitlines():
        role, sep, content = line.partition(":")
        if sep and role.strip().upper() == "LEAD":
            lines.append(content.strip())
    # free text without role prefixes is taken as a whole
    return lines or [segment_text.strip()]


class VaderScorer:
    """Local scorer backed by VADER; only the lead's lines are scored."""

    def score(self, segment_text: str, context: Optional[LeadContext] = None) -> Dict[str, Any]:
        lines = [l for l in _lead_lines(segment_text) if l]
        text = " ".join(lines)
        scores = _analyzer.polarity_scores(text)
        compound = float(scores['compound'])
        phrases = find_cues(text)
        if lines:
            polar = max(lines, key=lambda l: abs(compound_score(l)))
            if abs(compound_score(polar)) >= 0.3 and polar not in phrases:
                phrases.append(polar[:80])
        return {
            "sentiment": compound,
            "confidence": round(0.4 + 0.6 * (1.0 - float(scores['neu'])), 3),
            "dominant_emotion": emotion_for(compound),
            "key_phrases": phrases[:5],
        }


def build_scorer(backend: str = SCORER_BACKEND) -> SentimentScorer:
    if backend == "openai":
        from .llm import OpenAIScorer
        return OpenAIScorer()
    return VaderScorer()


def no_data_point(segment: Segment) -> SentimentPoint:
    return SentimentPoint(time_start=segment.start, time_end=segment.end, sentiment=0.0,
                          confidence=NO_DATA_CONFIDENCE, dominant_emotion="neutral",
                          key_phrases=("no lead participation",))


def fallback_point(segment: Segment) -> SentimentPoint:
    return SentimentPoint(time_start=segment.start, time_end=segment.end, sentiment=0.0,
                          confidence=FALLBACK_CONFIDENCE, dominant_emotion="uncertain",
                          key_phrases=("error in analysis",))


def _clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


def point_from_output(segment: Segment, out: Mapping[str, Any]) -> SentimentPoint:
    if not isinstance(out, Mapping):
        raise ScorerError(f"scorer returned {type(out).__name__}, expected a mapping")
    try:
        sentiment = float(out["sentiment"])
        confidence = float(out.get("confidence", 0.5))
    except (KeyError, TypeError, ValueError) as e:
        raise ScorerError(f"unusable scorer output: {e}") from e
    emotion = out.get("dominant_emotion") or out.get("dominantEmotion") or "neutral"
    phrases = out.get("key_phrases") or out.get("keyPhrases") or ()
    return SentimentPoint(time_start=segment.start, time_end=segment.end,
                          sentiment=_clamp(sentiment, -1.0, 1.0),
                          confidence=_clamp(confidence, 0.0, 1.0),
                          dominant_emotion=str(emotion),
                          key_phrases=tuple(str(p) for p in phrases))


class SegmentSentimentScorer:
    """Scores one segment at a time through a pluggable capability.

    Each capability call runs under ``timeout``; a failed or timed out call is
    retried once after ``backoff`` seconds and then replaced by a fallback
    point. At most ``max_calls`` calls are in flight; an attempt made while all
    of them are busy fails at once instead of queueing. Calls that time out keep
    their worker until they return and their result is ignored.
    """

    def __init__(self, scorer: SentimentScorer,
                 timeout: float = SCORER_TIMEOUT_SECONDS,
                 retries: int = 1,
                 backoff: float = SCORER_RETRY_BACKOFF_SECONDS,
                 throttle: float = SCORER_THROTTLE_SECONDS,
                 max_calls: int = SCORER_CONCURRENCY * 2):
        self.scorer = scorer
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff
        self.throttle = throttle
        self.max_calls = max(1, max_calls)
        self._calls = ThreadPoolExecutor(max_workers=self.max_calls, thread_name_prefix="scorer")
        self._in_flight = 0
        self._lock = threading.Lock()

    def _done(self, _future) -> None:
        with self._lock:
            self._in_flight -= 1

    def _call(self, segment: Segment, context: Optional[LeadContext]) -> SentimentPoint:
        # only submit when a worker is free, so the timeout runs against the call itself
        with self._lock:
            if self._in_flight >= self.max_calls:
                raise ScorerError(f"all {self.max_calls} scorer workers are busy")
            self._in_flight += 1
        future = self._calls.submit(self.scorer.score, segment.text, context)
        future.add_done_callback(self._done)
        try:
            out = future.result(timeout=self.timeout)
        except FutureTimeout as e:
            future.cancel()
            raise ScorerError(f"timed out after {self.timeout}s") from e
        except ScorerError:
            raise
        except Exception as e:
            raise ScorerError(f"{type(e).__name__}: {e}") from e
        return point_from_output(segment, out)

    def score(self, segment: Segment, context: Optional[LeadContext] = None) -> SentimentPoint:
        if not segment.lead_messages:
            return no_data_point(segment)

        for attempt in range(self.retries + 1):
            try:
                return self._call(segment, context)
            except ScorerError as e:
                logger.warning("Segment %d (%.0fs-%.0fs) scoring failed, attempt %d: %s",
                               segment.index, segment.start, segment.end, attempt + 1, e)
            finally:
                if self.throttle:
                    time.sleep(self.throttle)
            if attempt < self.retries and self.backoff:
                time.sleep(self.backoff * (attempt + 1))

        logger.warning("Segment %d degraded to fallback point", segment.index)
        return fallback_point(segment)

    def close(self, wait: bool = False) -> None:
        self._calls.shutdown(wait=wait)
