import logging
from dataclasses import dataclass
from datetime import datetime
from threading import Event
from typing import List, Optional

from .models import Transcript, LeadContext, SentimentTimeline, SignalState, RuleEvaluationResult
from .analyzer import TimelineAnalyzer
from .engine import RuleEngine
from .signals import ingest_timeline

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CallOutcome:
    timeline: SentimentTimeline
    state: SignalState
    evaluations: List[RuleEvaluationResult]


class LeadPipeline:
    """Call finished -> timeline -> lead state -> rules, for one lead."""

    def __init__(self, analyzer: TimelineAnalyzer, engine: RuleEngine):
        self.analyzer = analyzer
        self.engine = engine

    def process_call(self, lead_id: str, transcript: Transcript,
                     context: Optional[LeadContext] = None,
                     engagement_score: Optional[float] = None,
                     contacted_at: Optional[datetime] = None,
                     cancel_event: Optional[Event] = None) -> CallOutcome:
        store = self.engine.store
        if context is None:
            context = LeadContext(name=lead_id, current_status=store.get(lead_id).status)
        timeline = self.analyzer.analyze(transcript, context, cancel_event)
        ingest_timeline(store, lead_id, timeline, contacted_at, engagement_score)
        evaluations = self.engine.evaluate_lead(lead_id)
        logger.info("Lead %s: %d rules evaluated, %d fired", lead_id, len(evaluations),
                    sum(e.fired for e in evaluations))
        # re-read: fired rules may have moved the status
        return CallOutcome(timeline=timeline, state=store.get(lead_id), evaluations=evaluations)
