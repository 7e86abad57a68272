import logging
from dataclasses import replace
from datetime import datetime
from typing import Dict, Optional, Tuple
from .models import (SignalState, SentimentTimeline, utcnow,
                     NEW, CONTACTED, INTERESTED, QUALIFIED, PROPOSAL_SENT,
                     NEGOTIATING, CONVERTED, NOT_INTERESTED, COLD)
from .errors import InvalidTransition, ConcurrencyConflict

logger = logging.getLogger(__name__)

# current status -> statuses it may move to
TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    NEW: (CONTACTED, INTERESTED, NOT_INTERESTED, COLD),
    CONTACTED: (INTERESTED, QUALIFIED, NOT_INTERESTED, COLD),
    INTERESTED: (QUALIFIED, PROPOSAL_SENT, NOT_INTERESTED, COLD),
    QUALIFIED: (PROPOSAL_SENT, NEGOTIATING, NOT_INTERESTED, COLD),
    PROPOSAL_SENT: (NEGOTIATING, CONVERTED, NOT_INTERESTED, COLD),
    NEGOTIATING: (PROPOSAL_SENT, CONVERTED, NOT_INTERESTED, COLD),
    CONVERTED: (),
    NOT_INTERESTED: (),
    COLD: (CONTACTED, INTERESTED, NOT_INTERESTED),
}


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, ())


def check_transition(current: str, target: str) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(current, target)


def days_since(moment: Optional[datetime], now: datetime) -> Optional[float]:
    if moment is None:
        return None
    return (now - moment).total_seconds() / 86400.0


def apply_timeline(state: SignalState, timeline: SentimentTimeline,
                   contacted_at: Optional[datetime] = None,
                   engagement_score: Optional[float] = None) -> SignalState:
    """New state with the timeline's summary folded in. Status is untouched."""
    changes = dict(
        sentiment_score=timeline.overall_sentiment.score,
        critical_moments=tuple(sorted({m.type for m in timeline.critical_moments})),
        last_contact_date=contacted_at or utcnow(),
    )
    if engagement_score is not None:
        changes["previous_engagement_score"] = state.engagement_score
        changes["engagement_score"] = float(engagement_score)
    return replace(state, **changes)


def ingest_timeline(store, lead_id: str, timeline: SentimentTimeline,
                    contacted_at: Optional[datetime] = None,
                    engagement_score: Optional[float] = None,
                    attempts: int = 2) -> SignalState:
    """Write a timeline summary into the lead's state with compare-and-swap."""
    for attempt in range(attempts):
        current = store.get(lead_id)
        updated = apply_timeline(current, timeline, contacted_at, engagement_score)
        stored = store.compare_and_swap(updated, current.version)
        if stored is not None:
            logger.info("Lead %s sentiment now %.2f (%s)", lead_id, stored.sentiment_score,
                        timeline.overall_sentiment.label)
            return stored
        logger.warning("Lead %s changed while ingesting timeline (attempt %d)", lead_id, attempt + 1)
    raise ConcurrencyConflict(lead_id, attempts)
