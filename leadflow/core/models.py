from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import ClassVar, Dict, List, Optional, Tuple, Union

AGENT, LEAD, SYSTEM = "agent", "lead", "system"
ROLES = (AGENT, LEAD, SYSTEM)

# Lead lifecycle states
NEW = "new"
CONTACTED = "contacted"
INTERESTED = "interested"
QUALIFIED = "qualified"
PROPOSAL_SENT = "proposal_sent"
NEGOTIATING = "negotiating"
CONVERTED = "converted"
NOT_INTERESTED = "not_interested"
COLD = "cold"
STATUSES = (NEW, CONTACTED, INTERESTED, QUALIFIED, PROPOSAL_SENT,
            NEGOTIATING, CONVERTED, NOT_INTERESTED, COLD)
TERMINAL_STATUSES = (CONVERTED, NOT_INTERESTED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Message:
    role: str
    content: str
    timestamp: float  # seconds from call start


@dataclass
class Transcript:
    messages: List[Message]
    duration: float
    total_words: int = 0


@dataclass(frozen=True)
class Segment:
    index: int
    start: float
    end: float
    messages: Tuple[Message, ...] = ()

    @property
    def lead_messages(self) -> List[Message]:
        return [m for m in self.messages if m.role == LEAD]

    @property
    def text(self) -> str:
        return "\n".join(f"{m.role.upper()}: {m.content}" for m in self.messages)


@dataclass(frozen=True)
class LeadContext:
    name: str
    company: Optional[str] = None
    current_status: str = NEW


@dataclass(frozen=True)
class SentimentPoint:
    time_start: float
    time_end: float
    sentiment: float
    confidence: float
    dominant_emotion: str
    key_phrases: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SentimentChange:
    from_point: SentimentPoint
    to_point: SentimentPoint
    delta: float
    time_range: Tuple[float, float]
    trigger_phrase: str = ""


@dataclass(frozen=True)
class CriticalMoment:
    type: str
    time_point: float
    description: str
    confidence: float
    impact: str = "medium"


@dataclass(frozen=True)
class OverallSentiment:
    score: float
    label: str
    confidence: float


@dataclass(frozen=True)
class SentimentTimeline:
    overall_sentiment: OverallSentiment
    sentiment_progression: Tuple[SentimentPoint, ...]
    sentiment_changes: Tuple[SentimentChange, ...]
    critical_moments: Tuple[CriticalMoment, ...]

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass(frozen=True)
class SignalState:
    lead_id: str
    status: str = NEW
    qualification_score: float = 0.0
    sentiment_score: float = 0.0
    engagement_score: float = 0.0
    previous_engagement_score: float = 0.0
    last_contact_date: Optional[datetime] = None
    status_updated_at: Optional[datetime] = None
    critical_moments: Tuple[str, ...] = ()
    version: int = 0

    def to_dict(self) -> Dict:
        d = asdict(self)
        for k in ("last_contact_date", "status_updated_at"):
            if d[k] is not None:
                d[k] = d[k].isoformat()
        d["critical_moments"] = list(self.critical_moments)
        return d


# --- Triggers (closed union) ---

@dataclass(frozen=True)
class SentimentThreshold:
    threshold: float
    weight: float = 1.0
    kind: ClassVar[str] = "sentiment_threshold"


@dataclass(frozen=True)
class EngagementIncrease:
    min_increase: float
    weight: float = 1.0
    kind: ClassVar[str] = "engagement_increase"


@dataclass(frozen=True)
class QualificationThreshold:
    min_score: float
    weight: float = 1.0
    kind: ClassVar[str] = "qualification_threshold"


@dataclass(frozen=True)
class TimeSinceContact:
    min_days: float
    weight: float = 1.0
    kind: ClassVar[str] = "time_since_contact"


@dataclass(frozen=True)
class CriticalMomentType:
    moment_type: str
    weight: float = 1.0
    kind: ClassVar[str] = "critical_moment_type"


Trigger = Union[SentimentThreshold, EngagementIncrease, QualificationThreshold,
                TimeSinceContact, CriticalMomentType]
TRIGGER_TYPES = (SentimentThreshold, EngagementIncrease, QualificationThreshold,
                 TimeSinceContact, CriticalMomentType)


# --- Actions (closed union) ---

@dataclass(frozen=True)
class StatusChange:
    new_status: str
    kind: ClassVar[str] = "status_change"


@dataclass(frozen=True)
class ScheduleMeeting:
    follow_up_type: str
    priority: str = "medium"
    kind: ClassVar[str] = "schedule_meeting"


@dataclass(frozen=True)
class SendNotification:
    channel: str
    template: str
    kind: ClassVar[str] = "send_notification"


Action = Union[StatusChange, ScheduleMeeting, SendNotification]
ACTION_TYPES = (StatusChange, ScheduleMeeting, SendNotification)


def describe(item: Union[Trigger, Action]) -> Dict:
    """Flat dict form of a trigger or action: {"type": kind, **params}."""
    return {"type": item.kind, **asdict(item)}


@dataclass(frozen=True)
class Constraints:
    min_score: Optional[float] = None
    required_statuses: Tuple[str, ...] = ()
    excluded_statuses: Tuple[str, ...] = ()
    max_days_since_contact: Optional[float] = None


@dataclass
class Rule:
    id: str
    name: str
    triggers: List[Trigger]
    actions: List[Action]
    constraints: Constraints = field(default_factory=Constraints)
    description: str = ""
    is_active: bool = True
    firing_threshold: Optional[float] = None  # None: engine default
    cooldown_hours: Optional[float] = None
    times_triggered: int = 0
    successes: int = 0
    success_rate: float = 0.0
    average_impact: float = 0.0


# Evaluation outcomes
SKIPPED_CONSTRAINT = "skipped_constraint"
NOT_TRIGGERED = "not_triggered"
COOLDOWN = "cooldown"
FIRED = "fired"
ACTIONS_FAILED = "actions_failed"


@dataclass(frozen=True)
class TriggerResult:
    kind: str
    weight: float
    satisfied: bool
    confidence: float


@dataclass(frozen=True)
class ActionResult:
    action: Action
    success: bool
    detail: Dict = field(default_factory=dict)
    error: Optional[str] = None
    error_type: Optional[str] = None
    retryable: bool = False


@dataclass(frozen=True)
class RuleEvaluationResult:
    lead_id: str
    rule_id: str
    constraints_passed: bool
    trigger_results: Tuple[TriggerResult, ...]
    fired: bool
    action_results: Tuple[ActionResult, ...]
    timestamp: datetime
    outcome: str
    ratio: float = 0.0
    notes: str = ""

    def to_dict(self) -> Dict:
        return {
            "lead_id": self.lead_id,
            "rule_id": self.rule_id,
            "constraints_passed": self.constraints_passed,
            "trigger_results": [asdict(t) for t in self.trigger_results],
            "fired": self.fired,
            "action_results": [
                {"action": describe(a.action), "success": a.success,
                 "detail": a.detail, "error": a.error, "error_type": a.error_type}
                for a in self.action_results
            ],
            "timestamp": self.timestamp.isoformat(),
            "outcome": self.outcome,
            "ratio": self.ratio,
            "notes": self.notes,
        }


@dataclass(frozen=True)
class AuditRecord:
    lead_id: str
    rule_id: str
    action: Dict
    previous_state: Dict
    new_state: Dict
    timestamp: datetime
    trigger_confidences: Tuple[Tuple[str, float], ...]
    success: bool
    error: Optional[str] = None
