import json
import logging
import threading
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional
from .models import (Rule, Constraints, Trigger, Action, describe, STATUSES, TERMINAL_STATUSES,
                     SentimentThreshold, EngagementIncrease, QualificationThreshold,
                     TimeSinceContact, CriticalMomentType, StatusChange, ScheduleMeeting,
                     SendNotification, CONTACTED, INTERESTED, QUALIFIED, COLD)
from .errors import RuleDefinitionError, InputError

logger = logging.getLogger(__name__)

# kind -> (class, {accepted parameter name: field})
TRIGGER_SCHEMA = {
    "sentiment_threshold": (SentimentThreshold, {"threshold": "threshold"}),
    "engagement_increase": (EngagementIncrease, {"min_increase": "min_increase", "minIncrease": "min_increase"}),
    "qualification_threshold": (QualificationThreshold, {"min_score": "min_score", "minScore": "min_score"}),
    "time_since_contact": (TimeSinceContact, {"min_days": "min_days", "minDays": "min_days",
                                              "daysInStatus": "min_days"}),
    "critical_moment_type": (CriticalMomentType, {"moment_type": "moment_type", "momentType": "moment_type",
                                                  "type": "moment_type"}),
}
TRIGGER_ALIASES = {"time_based": "time_since_contact"}

ACTION_SCHEMA = {
    "status_change": (StatusChange, {"new_status": "new_status", "newStatus": "new_status"}),
    "schedule_meeting": (ScheduleMeeting, {"follow_up_type": "follow_up_type", "followUpType": "follow_up_type",
                                           "priority": "priority"}),
    "send_notification": (SendNotification, {"channel": "channel", "template": "template"}),
}
ACTION_ALIASES = {"schedule_call": "schedule_meeting", "send_email": "send_notification"}
NUMERIC_FIELDS = {"threshold", "min_increase", "min_score", "min_days"}


def _pick(d: Dict[str, Any], *names, default=None):
    for n in names:
        if n in d and d[n] is not None:
            return d[n]
    return default


def _build(kind: str, schema, item: Dict[str, Any], extra=()):
    cls, names = schema
    # {"type", "parameters": {...}} and the flat form are both accepted
    params = dict(item.get("parameters") or {})
    for k, v in item.items():
        if k not in ("type", "kind", "parameters", "condition", *extra):
            params[k] = v
    kwargs = {}
    for name, field_name in names.items():
        if name in params:
            kwargs[field_name] = params[name]
    try:
        for f in NUMERIC_FIELDS.intersection(kwargs):
            kwargs[f] = float(kwargs[f])
        return cls(**kwargs)
    except (TypeError, ValueError) as e:
        raise RuleDefinitionError(f"{kind}: {e}") from e


def trigger_from_dict(item: Dict[str, Any]) -> Trigger:
    kind = item.get("kind") or item.get("type")
    kind = TRIGGER_ALIASES.get(kind, kind)
    if kind not in TRIGGER_SCHEMA:
        raise RuleDefinitionError(f"unknown trigger type: {kind!r}")
    trigger = _build(kind, TRIGGER_SCHEMA[kind], item, extra=("weight",))
    return replace(trigger, weight=float(item.get("weight", 1.0)))


def action_from_dict(item: Dict[str, Any]) -> Action:
    kind = item.get("kind") or item.get("type")
    kind = ACTION_ALIASES.get(kind, kind)
    if kind not in ACTION_SCHEMA:
        raise RuleDefinitionError(f"unknown action type: {kind!r}")
    if kind == "send_notification" and "channel" not in item and "channel" not in (item.get("parameters") or {}):
        item = {**item, "channel": "email"}
    return _build(kind, ACTION_SCHEMA[kind], item)


def constraints_from_dict(d: Dict[str, Any]) -> Constraints:
    c = d.get("constraints") or d
    min_score = _pick(c, "min_score", "minScore")
    max_days = _pick(c, "max_days_since_contact", "maxDaysSinceLastTouch")
    return Constraints(
        min_score=float(min_score) if min_score is not None else None,
        required_statuses=tuple(_pick(c, "required_statuses", "requiredStatuses", default=())),
        excluded_statuses=tuple(_pick(c, "excluded_statuses", "excludedStatuses", default=())),
        max_days_since_contact=float(max_days) if max_days is not None else None,
    )


def validate_rule(rule: Rule) -> Rule:
    if not rule.id:
        raise RuleDefinitionError("rule id is required")
    if not rule.triggers:
        raise RuleDefinitionError(f"rule {rule.id} has no triggers")
    if not rule.actions:
        raise RuleDefinitionError(f"rule {rule.id} has no actions")
    for t in rule.triggers:
        if not 0 < t.weight <= 1:
            raise RuleDefinitionError(f"rule {rule.id}: trigger {t.kind} weight {t.weight} is not in (0, 1]")
    for a in rule.actions:
        if isinstance(a, StatusChange) and a.new_status not in STATUSES:
            raise RuleDefinitionError(f"rule {rule.id}: unknown status {a.new_status!r}")
    c = rule.constraints
    for s in c.required_statuses + c.excluded_statuses:
        if s not in STATUSES:
            raise RuleDefinitionError(f"rule {rule.id}: unknown status {s!r}")
    if rule.firing_threshold is not None and not 0 < rule.firing_threshold <= 1:
        raise RuleDefinitionError(f"rule {rule.id}: firing threshold must be in (0, 1]")
    if rule.cooldown_hours is not None and rule.cooldown_hours < 0:
        raise RuleDefinitionError(f"rule {rule.id}: cooldown must not be negative")
    return rule


def rule_from_dict(d: Dict[str, Any]) -> Rule:
    try:
        triggers = [trigger_from_dict(t) for t in d.get("triggers") or []]
        actions = [action_from_dict(a) for a in d.get("actions") or []]
        firing = _pick(d, "firing_threshold", "firingThreshold")
        cooldown = _pick(d, "cooldown_hours", "cooldownHours")
        rule = Rule(
            id=str(d.get("id") or ""),
            name=d.get("name") or str(d.get("id") or ""),
            description=d.get("description", ""),
            triggers=triggers,
            actions=actions,
            constraints=constraints_from_dict(d),
            is_active=bool(_pick(d, "is_active", "isActive", default=True)),
            firing_threshold=float(firing) if firing is not None else None,
            cooldown_hours=float(cooldown) if cooldown is not None else None,
        )
    except (TypeError, ValueError) as e:
        raise RuleDefinitionError(f"rule {d.get('id')!r}: {e}") from e
    return validate_rule(rule)


def rule_to_dict(rule: Rule) -> Dict[str, Any]:
    c = rule.constraints
    return {
        "id": rule.id,
        "name": rule.name,
        "description": rule.description,
        "is_active": rule.is_active,
        "triggers": [describe(t) for t in rule.triggers],
        "actions": [describe(a) for a in rule.actions],
        "constraints": {
            "min_score": c.min_score,
            "required_statuses": list(c.required_statuses),
            "excluded_statuses": list(c.excluded_statuses),
            "max_days_since_contact": c.max_days_since_contact,
        },
        "firing_threshold": rule.firing_threshold,
        "cooldown_hours": rule.cooldown_hours,
        "times_triggered": rule.times_triggered,
        "successes": rule.successes,
        "success_rate": rule.success_rate,
        "average_impact": rule.average_impact,
    }


def default_rules() -> List[Rule]:
    return [
        Rule(
            id="rule_high_sentiment",
            name="High Sentiment Progression",
            description="Move leads with high sentiment score to qualified status",
            triggers=[SentimentThreshold(threshold=0.8, weight=0.8),
                      EngagementIncrease(min_increase=15, weight=0.4)],
            actions=[StatusChange(new_status=QUALIFIED)],
            constraints=Constraints(min_score=60, required_statuses=(CONTACTED,),
                                    excluded_statuses=TERMINAL_STATUSES),
        ),
        Rule(
            id="rule_stale_leads",
            name="Stale Lead Nurturing",
            description="Re-engage leads that have been contacted but no recent activity",
            triggers=[TimeSinceContact(min_days=7, weight=1.0)],
            actions=[ScheduleMeeting(follow_up_type="follow_up_call"),
                     SendNotification(channel="email", template="relationship_check_in")],
            constraints=Constraints(required_statuses=(CONTACTED, INTERESTED),
                                    excluded_statuses=TERMINAL_STATUSES + (COLD,),
                                    max_days_since_contact=14),
        ),
    ]


class MemoryRuleRepository:
    """Holds rule definitions and their running statistics."""

    def __init__(self, rules: Iterable[Rule] = ()):
        self._lock = threading.Lock()
        self._rules: Dict[str, Rule] = {}
        for r in rules:
            self.add(r)

    def add(self, rule: Rule) -> None:
        validate_rule(rule)
        with self._lock:
            self._rules[rule.id] = rule

    def get(self, rule_id: str) -> Optional[Rule]:
        with self._lock:
            r = self._rules.get(rule_id)
            return replace(r) if r else None

    def all(self) -> List[Rule]:
        with self._lock:
            return [replace(r) for r in self._rules.values()]

    def load_active(self) -> List[Rule]:
        return [r for r in self.all() if r.is_active]

    def record_attempt(self, rule_id: str, success: bool, impact: float) -> Optional[Rule]:
        with self._lock:
            r = self._rules.get(rule_id)
            if r is None:
                return None
            n = r.times_triggered + 1
            successes = r.successes + (1 if success else 0)
            updated = replace(r, times_triggered=n, successes=successes,
                              success_rate=successes / n,
                              average_impact=r.average_impact + (impact - r.average_impact) / n)
            self._rules[rule_id] = updated
            return replace(updated)


class JsonRuleRepository(MemoryRuleRepository):
    """Rule definitions from a JSON file, re-read on every ``load_active``.

    The file holds a list of rules (or {"rules": [...]}). Statistics are kept
    in memory across reloads and written back by ``save``.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        super().__init__()
        self.reload()

    def reload(self) -> None:
        if not self.path.exists():
            raise InputError(f"Rules file not found: {self.path}")
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise RuleDefinitionError(f"{self.path.name} is not valid JSON: {e}") from e
        items = data.get("rules", []) if isinstance(data, dict) else data
        loaded = []
        for item in items:
            rule = rule_from_dict(item)
            stats = {k: item[k] for k in ("times_triggered", "successes", "success_rate", "average_impact")
                     if k in item}
            loaded.append(replace(rule, **stats))
        with self._lock:
            previous = self._rules
            self._rules = {}
            for r in loaded:
                old = previous.get(r.id)
                if old is not None:
                    r = replace(r, times_triggered=old.times_triggered, successes=old.successes,
                                success_rate=old.success_rate, average_impact=old.average_impact)
                self._rules[r.id] = r
        logger.debug("Loaded %d rules from %s", len(loaded), self.path)

    def load_active(self) -> List[Rule]:
        self.reload()
        return super().load_active()

    def save(self) -> None:
        payload = {"rules": [rule_to_dict(r) for r in self.all()]}
        self.path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def _with_stats(rule: Rule, times_triggered: int, successes: int, total_impact: float) -> Rule:
    return replace(rule, times_triggered=times_triggered, successes=successes,
                   success_rate=successes / times_triggered if times_triggered else 0.0,
                   average_impact=total_impact / times_triggered if times_triggered else 0.0)


class SqliteRuleRepository(MemoryRuleRepository):
    """Fixed rule definitions whose statistics are kept in ``storage.SqliteRuleStats``.

    Statistics are re-read on every ``load_active`` so runs sharing the
    database see each other's fire attempts.
    """

    def __init__(self, rules: Iterable[Rule], stats):
        self.stats = stats
        super().__init__(rules)
        self.refresh()

    def refresh(self) -> None:
        rows = self.stats.all()
        with self._lock:
            for rule_id, counters in rows.items():
                if rule_id in self._rules:
                    self._rules[rule_id] = _with_stats(self._rules[rule_id], *counters)

    def load_active(self) -> List[Rule]:
        self.refresh()
        return super().load_active()

    def record_attempt(self, rule_id: str, success: bool, impact: float) -> Optional[Rule]:
        with self._lock:
            if rule_id not in self._rules:
                return None
        counters = self.stats.record(rule_id, success, impact)
        with self._lock:
            updated = _with_stats(self._rules[rule_id], *counters)
            self._rules[rule_id] = updated
            return replace(updated)
