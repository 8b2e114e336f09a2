"""Error taxonomy for the automation engine."""

from __future__ import annotations

from typing import Sequence


class AutomationError(Exception):
    """Base exception for automation engine errors."""


class ValidationError(AutomationError):
    """Malformed rule or preference input. Never persisted."""

    def __init__(self, message: str, errors: Sequence[str] = ()):
        super().__init__(message)
        self.errors = list(errors) or [message]


class RuleNotFound(AutomationError):
    def __init__(self, kind: str, rule_id: str):
        super().__init__(f"{kind} rule {rule_id} not found")
        self.kind = kind
        self.rule_id = rule_id


class RuleNotActive(AutomationError):
    """Rule is paused, disabled or retired and cannot be executed."""


class LockContention(AutomationError):
    """Another worker or a manual request holds the rule's execution lock."""

    def __init__(self, rule_id: str):
        super().__init__(f"Rule {rule_id} is already executing")
        self.rule_id = rule_id


class ExecutorFailure(AutomationError):
    """Downstream order placement failed."""

    error_kind = "ExecutorFailure"


class ExecutorTimeout(ExecutorFailure):
    """Action executor did not answer within the configured timeout."""

    error_kind = "Timeout"


class InvalidTransition(AutomationError):
    """Requested status change would move a record backwards or out of a terminal state."""


class DuplicateRecord(AutomationError):
    """A uniqueness constraint rejected the write."""


class StoreUnavailable(AutomationError):
    """Persistence is unreachable. Fatal to a scheduler cycle."""


class TransportError(AutomationError):
    """Notification channel transport failed to deliver."""


# ---- Claim / release


class ClaimError(AutomationError):
    def __init__(self, message: str, record_id: str):
        super().__init__(message)
        self.record_id = record_id


class AlreadyClaimed(ClaimError):
    def __init__(self, record_id: str, claimed_by: str | None):
        super().__init__(f"Record {record_id} is already claimed by {claimed_by}", record_id)
        self.claimed_by = claimed_by


class NotAuthorized(ClaimError):
    def __init__(self, record_id: str, operator_id: str):
        super().__init__(f"Operator {operator_id} does not hold the claim on {record_id}", record_id)
        self.operator_id = operator_id
