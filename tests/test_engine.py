import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import ClassVar
from leadflow.core.models import (SignalState, Rule, Constraints, SentimentThreshold, EngagementIncrease,
                                  QualificationThreshold, StatusChange, ScheduleMeeting, SendNotification,
                                  CONTACTED, QUALIFIED, CONVERTED, NEW, TERMINAL_STATUSES,
                                  SKIPPED_CONSTRAINT, NOT_TRIGGERED, COOLDOWN, FIRED, ACTIONS_FAILED)
from leadflow.core.storage import MemorySignalStore, MemoryAuditLog, SqliteSignalStore, SqliteAuditLog
from leadflow.core.rules import MemoryRuleRepository, default_rules
from leadflow.core.actions import ActionExecutor
from leadflow.core.engine import RuleEngine

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now


class CountingScheduler:
    def __init__(self, failures=0):
        self.failures = failures
        self.calls = []

    def schedule(self, lead_id, follow_up_type, priority):
        self.calls.append((lead_id, follow_up_type, priority))
        if self.failures:
            self.failures -= 1
            raise ConnectionError("calendar unavailable")
        return {"event_id": f"evt-{len(self.calls)}"}


def _lead(**kw):
    base = dict(lead_id="lead-1", status=CONTACTED, qualification_score=70, sentiment_score=0.8,
                engagement_score=68, previous_engagement_score=45)
    base.update(kw)
    return SignalState(**base)


def _progression_rule(**kw):
    base = dict(id="progress", name="Progress engaged leads",
                triggers=[SentimentThreshold(0.8, weight=0.8), EngagementIncrease(15, weight=0.4)],
                actions=[StatusChange(QUALIFIED)],
                constraints=Constraints(required_statuses=(CONTACTED,), excluded_statuses=TERMINAL_STATUSES))
    base.update(kw)
    return Rule(**base)


def _engine(states, rules, clock=None, scheduler=None, **kw):
    clock = clock or Clock()
    store = MemorySignalStore(states)
    audit = MemoryAuditLog()
    executor = ActionExecutor(store, audit, scheduler=scheduler or CountingScheduler(), clock=clock)
    engine = RuleEngine(MemoryRuleRepository(rules), store, executor, clock=clock, **kw)
    return engine, store, audit


def test_engaged_contacted_lead_is_qualified():
    rule = _progression_rule()
    engine, store, audit = _engine([_lead()], [rule])
    result = engine.evaluate("lead-1", rule)

    assert result.constraints_passed
    assert all(t.satisfied for t in result.trigger_results)
    assert result.ratio == 1.0
    assert result.fired and result.outcome == FIRED
    assert store.get("lead-1").status == QUALIFIED

    [record] = audit.actions("lead-1")
    assert record.success
    assert record.action == {"type": "status_change", "new_status": QUALIFIED}
    assert record.previous_state["status"] == CONTACTED
    assert record.new_state["status"] == QUALIFIED
    assert record.trigger_confidences == (("sentiment_threshold", 1.0), ("engagement_increase", 1.0))
    assert record.timestamp == T0


def test_excluded_status_is_skipped():
    rule = _progression_rule()
    engine, store, audit = _engine([_lead(status=CONVERTED)], [rule])
    result = engine.evaluate("lead-1", rule)

    assert not result.constraints_passed
    assert result.outcome == SKIPPED_CONSTRAINT
    assert result.trigger_results == ()
    assert not result.fired
    assert store.get("lead-1").status == CONVERTED
    assert audit.actions("lead-1") == []
    [evaluation] = audit.evaluations("lead-1")
    assert evaluation["constraints_passed"] is False


def test_min_score_constraint_dominates_triggers():
    rule = _progression_rule(constraints=Constraints(min_score=60))
    engine, store, _ = _engine([_lead(qualification_score=50)], [rule])
    result = engine.evaluate("lead-1", rule)
    assert result.outcome == SKIPPED_CONSTRAINT
    assert store.get("lead-1").status == CONTACTED


def test_weighted_firing():
    rule = _progression_rule()
    # only the 0.8 weight trigger: 0.8 / 1.2
    engine, store, _ = _engine([_lead(previous_engagement_score=60)], [rule])
    result = engine.evaluate("lead-1", rule)
    assert abs(result.ratio - 0.8 / 1.2) < 1e-9
    assert result.fired

    # only the 0.4 weight trigger: 0.4 / 1.2
    engine, store, _ = _engine([_lead(sentiment_score=0.2)], [rule])
    result = engine.evaluate("lead-1", rule)
    assert abs(result.ratio - 0.4 / 1.2) < 1e-9
    assert result.outcome == NOT_TRIGGERED
    assert not result.fired
    assert store.get("lead-1").status == CONTACTED


def test_rule_firing_threshold_override():
    rule = _progression_rule(firing_threshold=0.9)
    engine, _, _ = _engine([_lead(previous_engagement_score=60)], [rule])
    assert engine.evaluate("lead-1", rule).outcome == NOT_TRIGGERED


def test_cooldown_blocks_refire():
    rule = Rule(id="follow_up", name="Follow up", triggers=[QualificationThreshold(60)],
                actions=[ScheduleMeeting("follow_up_call")])
    clock = Clock()
    scheduler = CountingScheduler()
    engine, _, _ = _engine([_lead()], [rule], clock=clock, scheduler=scheduler)

    assert engine.evaluate("lead-1", rule).fired
    assert engine.last_fired("lead-1", rule.id) == T0

    clock.now = T0 + timedelta(hours=1)
    again = engine.evaluate("lead-1", rule)
    assert again.outcome == COOLDOWN and not again.fired
    assert len(scheduler.calls) == 1

    clock.now = T0 + timedelta(hours=25)
    assert engine.evaluate("lead-1", rule).fired
    assert len(scheduler.calls) == 2


def test_rule_cooldown_override():
    rule = Rule(id="follow_up", name="Follow up", triggers=[QualificationThreshold(60)],
                actions=[ScheduleMeeting("follow_up_call")], cooldown_hours=0.5)
    clock = Clock()
    engine, _, _ = _engine([_lead()], [rule], clock=clock)
    engine.evaluate("lead-1", rule)
    clock.now = T0 + timedelta(hours=1)
    assert engine.evaluate("lead-1", rule).fired


def test_invalid_transition_does_not_stop_sibling_actions():
    rule = Rule(id="close", name="Close it", triggers=[QualificationThreshold(10)],
                actions=[StatusChange(CONVERTED), SendNotification("email", "won")])
    engine, store, audit = _engine([_lead(status=NEW)], [rule])
    result = engine.evaluate("lead-1", rule)

    failed, sent = result.action_results
    assert not failed.success and failed.error_type == "InvalidTransition"
    assert sent.success
    # any successful action marks the rule as fired
    assert result.fired and result.outcome == FIRED
    assert store.get("lead-1").status == NEW
    assert [r.success for r in audit.actions("lead-1")] == [False, True]


def test_all_actions_failing_is_reported_and_can_retry():
    rule = Rule(id="close", name="Close it", triggers=[QualificationThreshold(10)],
                actions=[StatusChange(CONVERTED)])
    engine, _, _ = _engine([_lead(status=NEW)], [rule])
    result = engine.evaluate("lead-1", rule)
    assert result.constraints_passed and not result.fired
    assert result.outcome == ACTIONS_FAILED
    assert engine.last_fired("lead-1", rule.id) is None
    assert engine.evaluate("lead-1", rule).outcome == ACTIONS_FAILED


def test_external_failure_is_retried():
    rule = Rule(id="follow_up", name="Follow up", triggers=[QualificationThreshold(60)],
                actions=[ScheduleMeeting("follow_up_call", "high")])
    scheduler = CountingScheduler(failures=1)
    engine, _, audit = _engine([_lead()], [rule], scheduler=scheduler)
    result = engine.evaluate("lead-1", rule)
    assert result.fired
    assert result.action_results[0].detail == {"event_id": "evt-2"}
    assert [r.success for r in audit.actions("lead-1")] == [False, True]


def test_statistics():
    rule = _progression_rule()
    engine, _, _ = _engine([_lead(), _lead(lead_id="lead-2", status=CONVERTED)], [rule])
    engine.evaluate_lead("lead-1")
    engine.evaluate_lead("lead-2")
    stats = engine.stats()
    assert stats["rules_evaluated"] == 2
    assert stats["rules_skipped"] == 1
    assert stats["rules_fired"] == 1
    assert stats["success_rate"] == 1.0
    stored = engine.rules.get(rule.id)
    assert stored.times_triggered == 1 and stored.success_rate == 1.0


def test_sweep_isolates_failing_leads():
    engine, store, _ = _engine(
        [_lead(), _lead(lead_id="lead-2", sentiment_score=0.1), _lead(lead_id="lead-3", status=CONVERTED)],
        [_progression_rule()], batch_concurrency=2)
    seen = []
    report = engine.sweep(["lead-1", "ghost", "lead-2", "lead-3"], progress=seen.append)

    assert list(report.failed_leads) == ["ghost"]
    assert "UnknownLead" in report.failed_leads["ghost"]
    assert [r.lead_id for r in report.fired] == ["lead-1"]
    assert {r.lead_id: r.outcome for r in report.results} == {
        "lead-1": FIRED, "lead-2": NOT_TRIGGERED, "lead-3": SKIPPED_CONSTRAINT}
    assert sorted(seen) == ["ghost", "lead-1", "lead-2", "lead-3"]
    assert store.get("lead-1").status == QUALIFIED


def test_sweep_defaults_to_every_stored_lead():
    engine, _, _ = _engine([_lead(), _lead(lead_id="lead-2")], [_progression_rule()])
    report = engine.sweep()
    assert sorted(r.lead_id for r in report.fired) == ["lead-1", "lead-2"]


def test_default_stale_rule_respects_contact_window():
    quiet = dict(sentiment_score=0.1, previous_engagement_score=68)
    stale = _lead(last_contact_date=T0 - timedelta(days=10), **quiet)
    gone = _lead(lead_id="lead-2", last_contact_date=T0 - timedelta(days=20), **quiet)
    engine, _, _ = _engine([stale, gone], default_rules())
    report = engine.sweep()
    outcome = {(r.lead_id, r.rule_id): r.outcome for r in report.results}
    assert outcome[("lead-1", "rule_stale_leads")] == FIRED
    assert outcome[("lead-2", "rule_stale_leads")] == SKIPPED_CONSTRAINT


def test_cooldown_survives_restart(tmp_path):
    db = str(tmp_path / "leads.db")
    SqliteSignalStore(db).put(_lead(sentiment_score=0.1, previous_engagement_score=68,
                                    last_contact_date=T0 - timedelta(days=8)))
    scheduler = CountingScheduler()

    def engine_at(now):
        store, audit, clock = SqliteSignalStore(db), SqliteAuditLog(db), Clock(now)
        executor = ActionExecutor(store, audit, scheduler=scheduler, clock=clock)
        return RuleEngine(MemoryRuleRepository(default_rules()), store, executor, clock=clock)

    first = engine_at(T0).sweep()
    assert {r.rule_id: r.outcome for r in first.results}["rule_stale_leads"] == FIRED

    restarted = engine_at(T0 + timedelta(hours=1))
    assert restarted.last_fired("lead-1", "rule_stale_leads") == T0
    second = restarted.sweep()
    assert {r.rule_id: r.outcome for r in second.results}["rule_stale_leads"] == COOLDOWN
    assert len(scheduler.calls) == 1


class SlowScheduler:
    """Records how many schedule calls overlap."""

    def __init__(self, delay=0.05):
        self.delay = delay
        self.lock = threading.Lock()
        self.running = 0
        self.peak = 0

    def schedule(self, lead_id, follow_up_type, priority):
        with self.lock:
            self.running += 1
            self.peak = max(self.peak, self.running)
        time.sleep(self.delay)
        with self.lock:
            self.running -= 1
        return {"event_id": lead_id}


def test_sweep_runs_at_most_batch_concurrency_leads():
    rule = Rule(id="follow_up", name="Follow up", triggers=[QualificationThreshold(60)],
                actions=[ScheduleMeeting("follow_up_call")])
    scheduler = SlowScheduler()
    leads = [_lead(lead_id=f"lead-{i}") for i in range(6)]
    engine, _, _ = _engine(leads, [rule], scheduler=scheduler, batch_concurrency=2)
    report = engine.sweep()
    assert len(report.fired) == 6
    assert scheduler.peak == 2


@dataclass(frozen=True)
class Unregistered:
    weight: float = 1.0
    kind: ClassVar[str] = "unregistered"


def test_sweep_keeps_results_before_a_failing_rule():
    good = Rule(id="follow_up", name="Follow up", triggers=[QualificationThreshold(60)],
                actions=[ScheduleMeeting("follow_up_call")])
    broken = Rule(id="broken", name="Broken", triggers=[Unregistered()],
                  actions=[SendNotification("email", "oops")])
    engine, _, audit = _engine([_lead()], [good, broken])
    report = engine.sweep()

    assert [(r.rule_id, r.outcome) for r in report.results] == [("follow_up", FIRED)]
    assert "RuleDefinitionError" in report.failed_leads["lead-1"]
    assert [e["rule_id"] for e in audit.evaluations("lead-1")] == ["follow_up"]
