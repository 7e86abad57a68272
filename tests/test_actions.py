from dataclasses import replace
import pytest
from leadflow.core.models import SignalState, StatusChange, ScheduleMeeting, CONTACTED, QUALIFIED
from leadflow.core.storage import MemorySignalStore, MemoryAuditLog
from leadflow.core.actions import ActionExecutor
from leadflow.core.errors import UnknownLead


class RacingStore(MemorySignalStore):
    """Another writer updates the lead right before each of our first ``races`` writes."""

    def __init__(self, states, races):
        super().__init__(states)
        self.races = races
        self.cas_calls = 0

    def compare_and_swap(self, state, expected_version):
        self.cas_calls += 1
        if self.races:
            self.races -= 1
            current = self.get(state.lead_id)
            self.put(replace(current, engagement_score=current.engagement_score + 10))
        return super().compare_and_swap(state, expected_version)


class BrokenScheduler:
    def schedule(self, lead_id, follow_up_type, priority):
        raise TimeoutError("calendar timed out")


def test_status_change_survives_one_conflict():
    store = RacingStore([SignalState("lead-1", status=CONTACTED, engagement_score=50)], races=1)
    audit = MemoryAuditLog()
    result = ActionExecutor(store, audit).execute("lead-1", "r1", StatusChange(QUALIFIED))
    assert result.success
    assert store.cas_calls == 2
    final = store.get("lead-1")
    assert final.status == QUALIFIED
    # the concurrent write is not lost
    assert final.engagement_score == 60


def test_status_change_conflict_twice_is_reported():
    store = RacingStore([SignalState("lead-1", status=CONTACTED)], races=2)
    audit = MemoryAuditLog()
    result = ActionExecutor(store, audit).execute("lead-1", "r1", StatusChange(QUALIFIED),
                                                  [("sentiment_threshold", 0.9)])
    assert not result.success
    assert result.error_type == "ConcurrencyConflict"
    assert not result.retryable
    assert store.get("lead-1").status == CONTACTED
    [record] = audit.actions()
    assert not record.success and "changed concurrently" in record.error
    assert record.trigger_confidences == (("sentiment_threshold", 0.9),)


def test_external_failure_is_retryable_and_audited():
    store = MemorySignalStore([SignalState("lead-1", status=CONTACTED)])
    audit = MemoryAuditLog()
    executor = ActionExecutor(store, audit, scheduler=BrokenScheduler())
    result = executor.execute("lead-1", "r1", ScheduleMeeting("demo"))
    assert not result.success and result.retryable
    assert result.error_type == "TimeoutError"
    [record] = audit.actions("lead-1")
    assert record.previous_state == record.new_state
    assert record.action["type"] == "schedule_meeting"


def test_default_collaborators_succeed():
    store = MemorySignalStore([SignalState("lead-1", status=CONTACTED)])
    result = ActionExecutor(store, MemoryAuditLog()).execute("lead-1", "r1", ScheduleMeeting("demo"))
    assert result.success and result.detail["event_id"]


def test_unknown_lead_propagates():
    executor = ActionExecutor(MemorySignalStore(), MemoryAuditLog())
    with pytest.raises(UnknownLead):
        executor.execute("nobody", "r1", StatusChange(QUALIFIED))
