"""One pure evaluator per trigger kind.

Every evaluator maps (SignalState, now) to (satisfied, confidence) where
confidence is the observed value over the trigger's threshold, capped to
[0, 1].
"""
from datetime import datetime
from typing import Callable, Dict, Tuple, Type
from .models import (SignalState, Trigger, TriggerResult, SentimentThreshold,
                     EngagementIncrease, QualificationThreshold, TimeSinceContact,
                     CriticalMomentType)
from .signals import days_since
from .errors import RuleDefinitionError

Evaluation = Tuple[bool, float]


def _ratio(value: float, threshold: float, satisfied: bool) -> float:
    if threshold <= 0:
        return 1.0 if satisfied else 0.0
    return max(0.0, min(value / threshold, 1.0))


def eval_sentiment(state: SignalState, t: SentimentThreshold, now: datetime) -> Evaluation:
    ok = state.sentiment_score >= t.threshold
    return ok, _ratio(state.sentiment_score, t.threshold, ok)


def eval_engagement(state: SignalState, t: EngagementIncrease, now: datetime) -> Evaluation:
    increase = state.engagement_score - state.previous_engagement_score
    ok = increase >= t.min_increase
    return ok, _ratio(increase, t.min_increase, ok)


def eval_qualification(state: SignalState, t: QualificationThreshold, now: datetime) -> Evaluation:
    ok = state.qualification_score >= t.min_score
    return ok, _ratio(state.qualification_score, t.min_score, ok)


def eval_time_since_contact(state: SignalState, t: TimeSinceContact, now: datetime) -> Evaluation:
    days = days_since(state.last_contact_date or state.status_updated_at, now)
    if days is None:
        return False, 0.0
    ok = days >= t.min_days
    return ok, _ratio(days, t.min_days, ok)


def eval_critical_moment(state: SignalState, t: CriticalMomentType, now: datetime) -> Evaluation:
    ok = t.moment_type in state.critical_moments
    return ok, 1.0 if ok else 0.0


EVALUATORS: Dict[Type, Callable[[SignalState, Trigger, datetime], Evaluation]] = {
    SentimentThreshold: eval_sentiment,
    EngagementIncrease: eval_engagement,
    QualificationThreshold: eval_qualification,
    TimeSinceContact: eval_time_since_contact,
    CriticalMomentType: eval_critical_moment,
}


def evaluate_trigger(state: SignalState, trigger: Trigger, now: datetime) -> TriggerResult:
    fn = EVALUATORS.get(type(trigger))
    if fn is None:
        raise RuleDefinitionError(f"no evaluator for trigger {trigger!r}")
    satisfied, confidence = fn(state, trigger, now)
    return TriggerResult(kind=trigger.kind, weight=trigger.weight,
                         satisfied=satisfied, confidence=confidence)


def firing_ratio(results) -> float:
    total = sum(r.weight for r in results)
    if total <= 0:
        return 0.0
    return sum(r.weight for r in results if r.satisfied) / total
