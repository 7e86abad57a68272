import logging
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Sequence, Tuple

from .models import (Action, ActionResult, AuditRecord, SignalState, StatusChange,
                     ScheduleMeeting, SendNotification, describe, utcnow)
from .signals import check_transition
from .errors import InvalidTransition, ConcurrencyConflict, UnknownLead

logger = logging.getLogger(__name__)


class Scheduler(Protocol):
    def schedule(self, lead_id: str, follow_up_type: str, priority: str) -> Mapping[str, Any]:
        """Returns at least {"event_id": ...}."""


class Notifier(Protocol):
    def notify(self, lead_id: str, channel: str, template: str) -> Mapping[str, Any]:
        ...


class LoggingScheduler:
    """Stand-in calendar: logs the request and hands back a fresh event id."""

    def schedule(self, lead_id: str, follow_up_type: str, priority: str) -> Dict[str, Any]:
        event_id = uuid.uuid4().hex
        logger.info("Scheduled %s (%s priority) for lead %s: event %s",
                    follow_up_type, priority, lead_id, event_id)
        return {"event_id": event_id}


class LoggingNotifier:
    def notify(self, lead_id: str, channel: str, template: str) -> Dict[str, Any]:
        logger.info("Notification %s via %s for lead %s", template, channel, lead_id)
        return {"channel": channel, "template": template, "sent": True}


class ActionExecutor:
    """Applies rule actions to one lead and appends an audit record per action.

    Status changes are written with compare-and-swap on the state version and
    retried once on conflict. Scheduling and notification go to the injected
    collaborators; their failures come back as unsuccessful, retryable
    results.
    """

    def __init__(self, store, audit, scheduler: Optional[Scheduler] = None,
                 notifier: Optional[Notifier] = None, cas_attempts: int = 2,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.audit = audit
        self.scheduler = scheduler or LoggingScheduler()
        self.notifier = notifier or LoggingNotifier()
        self.cas_attempts = cas_attempts
        self.clock = clock
        self._handlers = {
            StatusChange: self._status_change,
            ScheduleMeeting: self._schedule_meeting,
            SendNotification: self._send_notification,
        }

    def _status_change(self, lead_id: str, action: StatusChange) -> Tuple[SignalState, SignalState, Dict]:
        for attempt in range(self.cas_attempts):
            current = self.store.get(lead_id)
            check_transition(current.status, action.new_status)
            updated = replace(current, status=action.new_status, status_updated_at=self.clock())
            stored = self.store.compare_and_swap(updated, current.version)
            if stored is not None:
                logger.info("Lead %s status changed: %s -> %s", lead_id, current.status, stored.status)
                return current, stored, {"previous_status": current.status, "new_status": stored.status}
            logger.warning("Lead %s version %d is stale (attempt %d)", lead_id, current.version, attempt + 1)
        raise ConcurrencyConflict(lead_id, self.cas_attempts)

    def _schedule_meeting(self, lead_id: str, action: ScheduleMeeting) -> Tuple[SignalState, SignalState, Dict]:
        state = self.store.get(lead_id)
        out = self.scheduler.schedule(lead_id, action.follow_up_type, action.priority)
        return state, state, dict(out or {})

    def _send_notification(self, lead_id: str, action: SendNotification) -> Tuple[SignalState, SignalState, Dict]:
        state = self.store.get(lead_id)
        out = self.notifier.notify(lead_id, action.channel, action.template)
        return state, state, dict(out or {})

    def execute(self, lead_id: str, rule_id: str, action: Action,
                trigger_confidences: Sequence[Tuple[str, float]] = ()) -> ActionResult:
        handler = self._handlers[type(action)]
        previous = new = None
        try:
            previous, new, detail = handler(lead_id, action)
            result = ActionResult(action=action, success=True, detail=detail)
        except (InvalidTransition, ConcurrencyConflict) as e:
            logger.warning("Rule %s action %s failed for lead %s: %s", rule_id, action.kind, lead_id, e)
            result = ActionResult(action=action, success=False, error=str(e), error_type=type(e).__name__)
        except UnknownLead:
            raise
        except Exception as e:
            # scheduling / notification collaborators
            logger.warning("Rule %s action %s failed for lead %s: %s", rule_id, action.kind, lead_id, e)
            result = ActionResult(action=action, success=False, error=str(e),
                                  error_type=type(e).__name__, retryable=True)

        if previous is None:
            try:
                previous = new = self.store.get(lead_id)
            except UnknownLead:
                previous = new = None
        self.audit.append_action(AuditRecord(
            lead_id=lead_id, rule_id=rule_id, action=describe(action),
            previous_state=previous.to_dict() if previous else {},
            new_state=new.to_dict() if new else {},
            timestamp=self.clock(),
            trigger_confidences=tuple(trigger_confidences),
            success=result.success, error=result.error,
        ))
        return result
