"""Turns an ordered list of segment sentiment points into a timeline.

Everything here is a pure function of its input: the same points always give
the same timeline.
"""
from typing import List, Sequence
from .models import (SentimentPoint, SentimentChange, CriticalMoment,
                     OverallSentiment, SentimentTimeline)
from .tags import tag_text, OBJECTION, BUYING_SIGNAL
from .config import CHANGE_THRESHOLD, CRITICAL_DROP_THRESHOLD, MIN_POINT_CONFIDENCE

NEGATIVE_SWING = "negative_swing"
FRUSTRATION = "frustration"
INTEREST_PEAK = "interest_peak"
CRITICAL_MOMENT_TYPES = (NEGATIVE_SWING, OBJECTION, BUYING_SIGNAL, FRUSTRATION, INTEREST_PEAK)

POSITIVE_LABEL_ABOVE = 0.2
NEGATIVE_LABEL_BELOW = -0.2
FRUSTRATION_BELOW = -0.6
INTEREST_PEAK_ABOVE = 0.7


def label_for(score: float) -> str:
    if score > POSITIVE_LABEL_ABOVE:
        return "positive"
    if score < NEGATIVE_LABEL_BELOW:
        return "negative"
    return "neutral"


def overall_sentiment(points: Sequence[SentimentPoint]) -> OverallSentiment:
    if not points:
        return OverallSentiment(score=0.0, label="neutral", confidence=0.5)
    total_weight = sum(p.confidence for p in points)
    score = sum(p.sentiment * p.confidence for p in points) / total_weight if total_weight > 0 else 0.0
    score = max(-1.0, min(1.0, score))
    confidence = total_weight / len(points)
    return OverallSentiment(score=score, label=label_for(score), confidence=confidence)


def detect_changes(points: Sequence[SentimentPoint],
                   threshold: float = CHANGE_THRESHOLD,
                   min_confidence: float = MIN_POINT_CONFIDENCE) -> List[SentimentChange]:
    changes: List[SentimentChange] = []
    for prev, cur in zip(points, points[1:]):
        if prev.confidence < min_confidence or cur.confidence < min_confidence:
            continue
        delta = cur.sentiment - prev.sentiment
        if abs(delta) >= threshold:
            changes.append(SentimentChange(
                from_point=prev, to_point=cur, delta=delta,
                time_range=(prev.time_start, cur.time_end),
                trigger_phrase=cur.key_phrases[0] if cur.key_phrases else "",
            ))
    return changes


def _impact(magnitude: float) -> str:
    if magnitude > 0.7:
        return "high"
    if magnitude >= 0.3:
        return "medium"
    return "low"


def detect_critical_moments(points: Sequence[SentimentPoint],
                            changes: Sequence[SentimentChange],
                            drop_threshold: float = CRITICAL_DROP_THRESHOLD,
                            min_confidence: float = MIN_POINT_CONFIDENCE) -> List[CriticalMoment]:
    moments = {}

    def add(m: CriticalMoment):
        moments.setdefault((m.time_point, m.type), m)

    for ch in changes:
        if ch.delta <= -drop_threshold:
            add(CriticalMoment(
                type=NEGATIVE_SWING, time_point=ch.to_point.time_start,
                description=f"Sentiment fell from {ch.from_point.sentiment:+.2f} to {ch.to_point.sentiment:+.2f}",
                confidence=min(ch.from_point.confidence, ch.to_point.confidence),
                impact=_impact(abs(ch.delta)),
            ))

    for p in points:
        if p.confidence < min_confidence:
            continue
        for phrase in p.key_phrases:
            for cue in tag_text(phrase):
                what = "objection" if cue == OBJECTION else "buying signal"
                add(CriticalMoment(type=cue, time_point=p.time_start,
                                   description=f'{what.capitalize()}: "{phrase}"',
                                   confidence=p.confidence, impact=_impact(abs(p.sentiment))))
        if p.sentiment <= FRUSTRATION_BELOW or p.dominant_emotion in ("frustrated", "angry"):
            add(CriticalMoment(type=FRUSTRATION, time_point=p.time_start,
                               description=f"Lead {p.dominant_emotion} ({p.sentiment:+.2f})",
                               confidence=p.confidence, impact=_impact(abs(p.sentiment))))
        if p.sentiment >= INTEREST_PEAK_ABOVE or p.dominant_emotion == "excited":
            add(CriticalMoment(type=INTEREST_PEAK, time_point=p.time_start,
                               description=f"Lead {p.dominant_emotion} ({p.sentiment:+.2f})",
                               confidence=p.confidence, impact=_impact(abs(p.sentiment))))

    return [moments[k] for k in sorted(moments)]


def build_timeline(points: Sequence[SentimentPoint],
                   change_threshold: float = CHANGE_THRESHOLD,
                   drop_threshold: float = CRITICAL_DROP_THRESHOLD,
                   min_confidence: float = MIN_POINT_CONFIDENCE) -> SentimentTimeline:
    points = tuple(points)
    changes = detect_changes(points, change_threshold, min_confidence)
    moments = detect_critical_moments(points, changes, drop_threshold, min_confidence)
    return SentimentTimeline(overall_sentiment=overall_sentiment(points),
                             sentiment_progression=points,
                             sentiment_changes=tuple(changes),
                             critical_moments=tuple(moments))
