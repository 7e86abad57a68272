class LeadflowError(Exception):
    """Base class for everything the engine raises on purpose."""


class InputError(LeadflowError):
    """Malformed transcript or configuration; nothing is produced."""


class RuleDefinitionError(InputError):
    pass


class ScorerError(LeadflowError):
    """A sentiment capability failed or returned something unusable."""


class AnalysisCancelled(LeadflowError):
    pass


class UnknownLead(LeadflowError):
    pass


class InvalidTransition(LeadflowError):
    def __init__(self, current: str, target: str):
        super().__init__(f"transition {current} -> {target} is not allowed")
        self.current = current
        self.target = target


class ConcurrencyConflict(LeadflowError):
    def __init__(self, lead_id: str, attempts: int):
        super().__init__(f"lead {lead_id} changed concurrently ({attempts} attempts)")
        self.lead_id = lead_id
        self.attempts = attempts
