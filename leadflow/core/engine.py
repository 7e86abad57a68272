import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .models import (Rule, SignalState, RuleEvaluationResult, ActionResult, utcnow,
                     SKIPPED_CONSTRAINT, NOT_TRIGGERED, COOLDOWN, FIRED, ACTIONS_FAILED)
from .triggers import evaluate_trigger, firing_ratio
from .signals import days_since
from .actions import ActionExecutor
from .config import FIRING_THRESHOLD, COOLDOWN_HOURS, BATCH_CONCURRENCY

logger = logging.getLogger(__name__)


def check_constraints(state: SignalState, rule: Rule, now: datetime) -> List[str]:
    """Reasons the rule does not apply to the lead; empty when it does."""
    c = rule.constraints
    reasons = []
    if c.min_score is not None and state.qualification_score < c.min_score:
        reasons.append(f"qualification score {state.qualification_score:g} < {c.min_score:g}")
    if c.required_statuses and state.status not in c.required_statuses:
        reasons.append(f"status {state.status} not in {list(c.required_statuses)}")
    if state.status in c.excluded_statuses:
        reasons.append(f"status {state.status} is excluded")
    if c.max_days_since_contact is not None:
        days = days_since(state.last_contact_date, now)
        if days is not None and days > c.max_days_since_contact:
            reasons.append(f"last contact {days:.1f} days ago > {c.max_days_since_contact:g}")
    return reasons


def _latest(a: Optional[datetime], b: Optional[datetime]) -> Optional[datetime]:
    if a is None or b is None:
        return a or b
    return max(a, b)


@dataclass
class SweepReport:
    results: List[RuleEvaluationResult] = field(default_factory=list)
    failed_leads: Dict[str, str] = field(default_factory=dict)

    @property
    def fired(self) -> List[RuleEvaluationResult]:
        return [r for r in self.results if r.fired]


class RuleEngine:
    """Evaluates rules against leads and fires their actions.

    For one (lead, rule) pair: constraints are checked first and a failing
    constraint skips the rule without evaluating triggers. Otherwise the
    weighted share of satisfied triggers is compared with the firing threshold
    (rule override or engine default). A rule that fired for a lead does not
    fire again for that lead inside the cooldown window. When it fires, its
    actions run in order and the rule counts as fired if any action
    succeeded.
    """

    def __init__(self, rules, store, executor: ActionExecutor, audit=None,
                 firing_threshold: float = FIRING_THRESHOLD,
                 cooldown_hours: float = COOLDOWN_HOURS,
                 batch_concurrency: int = BATCH_CONCURRENCY,
                 external_retries: int = 1,
                 clock: Callable[[], datetime] = utcnow):
        self.rules = rules
        self.store = store
        self.executor = executor
        self.audit = audit if audit is not None else executor.audit
        self.firing_threshold = firing_threshold
        self.cooldown_hours = cooldown_hours
        self.batch_concurrency = max(1, batch_concurrency)
        self.external_retries = external_retries
        self.clock = clock
        self._lock = threading.Lock()
        self._last_fired: Dict[Tuple[str, str], datetime] = {}
        self._counters = {"evaluated": 0, "skipped": 0, "attempts": 0, "successes": 0, "impact": 0.0}

    # cooldown bookkeeping; claimed before actions run so concurrent evaluations
    # of the same lead cannot both fire. Fires recorded by earlier processes come
    # from the audit log.
    def _claim(self, key: Tuple[str, str], now: datetime, hours: float) -> Tuple[bool, Optional[datetime]]:
        persisted = self.audit.last_fired(*key)
        with self._lock:
            last = _latest(self._last_fired.get(key), persisted)
            if last is not None and now - last < timedelta(hours=hours):
                return False, last
            self._last_fired[key] = now
            return True, last

    def _release(self, key: Tuple[str, str], stamp: datetime, previous: Optional[datetime]) -> None:
        with self._lock:
            if self._last_fired.get(key) != stamp:
                return
            if previous is None:
                del self._last_fired[key]
            else:
                self._last_fired[key] = previous

    def last_fired(self, lead_id: str, rule_id: str) -> Optional[datetime]:
        persisted = self.audit.last_fired(lead_id, rule_id)
        with self._lock:
            return _latest(self._last_fired.get((lead_id, rule_id)), persisted)

    def _run_actions(self, lead_id: str, rule: Rule, confidences) -> List[ActionResult]:
        results = []
        for action in rule.actions:
            result = self.executor.execute(lead_id, rule.id, action, confidences)
            retries = 0
            while not result.success and result.retryable and retries < self.external_retries:
                retries += 1
                logger.info("Retrying %s for lead %s (rule %s)", action.kind, lead_id, rule.id)
                result = self.executor.execute(lead_id, rule.id, action, confidences)
            results.append(result)
        return results

    def _finish(self, result: RuleEvaluationResult) -> RuleEvaluationResult:
        with self._lock:
            self._counters["evaluated"] += 1
            if result.outcome == SKIPPED_CONSTRAINT:
                self._counters["skipped"] += 1
        self.audit.append_evaluation(result)
        return result

    def evaluate(self, lead_id: str, rule: Rule) -> RuleEvaluationResult:
        now = self.clock()
        state = self.store.get(lead_id)

        def result(outcome, **kw):
            base = dict(lead_id=lead_id, rule_id=rule.id, constraints_passed=True,
                        trigger_results=(), fired=False, action_results=(),
                        timestamp=now, outcome=outcome)
            base.update(kw)
            return self._finish(RuleEvaluationResult(**base))

        reasons = check_constraints(state, rule, now)
        if reasons:
            logger.info("Rule %s skipped for lead %s: %s", rule.id, lead_id, "; ".join(reasons))
            return result(SKIPPED_CONSTRAINT, constraints_passed=False, notes="; ".join(reasons))

        triggers = tuple(evaluate_trigger(state, t, now) for t in rule.triggers)
        ratio = firing_ratio(triggers)
        threshold = rule.firing_threshold if rule.firing_threshold is not None else self.firing_threshold
        for t in triggers:
            logger.debug("  %s satisfied=%s confidence=%.2f weight=%.2f",
                         t.kind, t.satisfied, t.confidence, t.weight)
        if ratio < threshold:
            return result(NOT_TRIGGERED, trigger_results=triggers, ratio=ratio,
                          notes=f"ratio {ratio:.2f} < {threshold:.2f}")

        key = (lead_id, rule.id)
        hours = rule.cooldown_hours if rule.cooldown_hours is not None else self.cooldown_hours
        claimed, previous = self._claim(key, now, hours)
        if not claimed:
            logger.info("Rule %s for lead %s still cooling down (last fired %s)",
                        rule.id, lead_id, previous.isoformat())
            return result(COOLDOWN, trigger_results=triggers, ratio=ratio,
                          notes=f"last fired {previous.isoformat()}")

        confidences = tuple((t.kind, t.confidence) for t in triggers)
        action_results = self._run_actions(lead_id, rule, confidences)
        success = any(a.success for a in action_results)
        if not success:
            # nothing happened, so the next sweep may try again
            self._release(key, now, previous)

        after = self.store.get(lead_id)
        impact = after.qualification_score - state.qualification_score
        self.rules.record_attempt(rule.id, success, impact)
        with self._lock:
            self._counters["attempts"] += 1
            self._counters["successes"] += int(success)
            self._counters["impact"] += impact

        if success:
            logger.info("Rule %s fired for lead %s (ratio %.2f)", rule.id, lead_id, ratio)
        else:
            logger.warning("Rule %s fired for lead %s but every action failed", rule.id, lead_id)
        return result(FIRED if success else ACTIONS_FAILED, trigger_results=triggers, ratio=ratio,
                      fired=success, action_results=tuple(action_results),
                      notes=f"{sum(a.success for a in action_results)}/{len(action_results)} actions succeeded")

    def evaluate_lead(self, lead_id: str, rules: Optional[Iterable[Rule]] = None) -> List[RuleEvaluationResult]:
        """Real-time entry point: every active rule against one lead."""
        if rules is None:
            rules = self.rules.load_active()
        return [self.evaluate(lead_id, rule) for rule in rules]

    def sweep(self, lead_ids: Optional[Iterable[str]] = None,
              progress: Optional[Callable[[str], None]] = None) -> SweepReport:
        """Batch entry point. Rules are loaded once; leads run in a bounded pool.

        ``progress`` is called with each lead id as its evaluation finishes.
        """
        rules = self.rules.load_active()
        leads = list(lead_ids) if lead_ids is not None else self.store.lead_ids()
        report = SweepReport()
        if not rules:
            logger.info("No active rules; nothing to sweep")
            return report
        logger.info("Sweeping %d leads against %d rules", len(leads), len(rules))

        def run(lead_id):
            results = []
            try:
                for rule in rules:
                    results.append(self.evaluate(lead_id, rule))
            except Exception as e:
                logger.exception("Evaluation failed for lead %s", lead_id)
                return lead_id, results, f"{type(e).__name__}: {e}"
            return lead_id, results, None

        with ThreadPoolExecutor(max_workers=self.batch_concurrency, thread_name_prefix="sweep") as pool:
            for lead_id, results, error in pool.map(run, leads):
                report.results.extend(results)
                if error is not None:
                    report.failed_leads[lead_id] = error
                if progress is not None:
                    progress(lead_id)

        logger.info("Sweep complete: %d/%d evaluations fired, %d leads failed",
                    len(report.fired), len(report.results), len(report.failed_leads))
        return report

    def stats(self) -> Dict[str, float]:
        with self._lock:
            c = dict(self._counters)
        attempts = c["attempts"]
        return {
            "rules_evaluated": c["evaluated"],
            "rules_skipped": c["skipped"],
            "rules_fired": attempts,
            "successful_fires": c["successes"],
            "success_rate": c["successes"] / attempts if attempts else 0.0,
            "average_impact": c["impact"] / attempts if attempts else 0.0,
        }
