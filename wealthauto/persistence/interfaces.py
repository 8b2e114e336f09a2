from __future__ import annotations

from datetime import date, datetime
from typing import Optional, Protocol, Sequence

from wealthauto.types import (
    AuthorizationRecord,
    AutomationExecutionLog,
    AutomationRule,
    ExecutionStatus,
    ExecutionUpdate,
    NotificationChannel,
    NotificationEvent,
    NotificationLog,
    NotificationPreference,
    NotificationStatus,
    RebalancingExecution,
    RuleKind,
)


class RuleStore(Protocol):
    def insert_rule(self, *, rule: AutomationRule) -> None:
        """Persist a new rule. Raises DuplicateRecord if the id exists."""

    def get_rule(self, *, kind: RuleKind, rule_id: str) -> Optional[AutomationRule]:
        """Fetch one rule by kind and id."""

    def find_rule(self, *, rule_id: str) -> Optional[AutomationRule]:
        """Fetch a rule by id across all kinds."""

    def list_rules(self, *, client_id: int, kind: RuleKind | None = None) -> Sequence[AutomationRule]:
        """List a client's rules, newest first."""

    def save_rule(self, *, rule: AutomationRule) -> None:
        """Overwrite an existing rule. Raises RuleNotFound if missing."""

    def list_due_rules(self, *, now: datetime) -> Sequence[AutomationRule]:
        """Enabled, active rules whose due predicate holds at `now`."""

    def list_lapsed_rules(self, *, now: datetime) -> Sequence[AutomationRule]:
        """Rules whose end date or validity window closed before `now`."""

    def try_lock(self, *, rule_id: str, owner: str, lease_until: datetime, now: datetime) -> bool:
        """Acquire the rule's execution lock unless an unexpired lease exists."""

    def unlock(self, *, rule_id: str, owner: str) -> None:
        """Release the lock if `owner` still holds it."""

    def update_rule_after_execution(self, *, update: ExecutionUpdate) -> None:
        """Atomically apply scheduler-owned fields after one attempt."""


class ExecutionLogStore(Protocol):
    def append_execution_log(self, *, entry: AutomationExecutionLog) -> None:
        """Append a row. Raises DuplicateRecord for a second Success on one rule+date."""

    def get_execution_logs(
        self,
        *,
        client_id: int | None = None,
        automation_type: RuleKind | None = None,
        automation_id: str | None = None,
        execution_date: date | None = None,
        status: ExecutionStatus | None = None,
        limit: int = 100,
    ) -> Sequence[AutomationExecutionLog]:
        """Newest first."""


class RebalancingExecutionStore(Protocol):
    def insert_rebalancing_execution(self, *, execution: RebalancingExecution) -> None:
        """Persist a new rebalancing execution."""

    def get_rebalancing_execution(self, *, execution_id: str) -> Optional[RebalancingExecution]:
        """Fetch one rebalancing execution."""

    def save_rebalancing_execution(self, *, execution: RebalancingExecution) -> None:
        """Overwrite an existing rebalancing execution."""

    def list_rebalancing_executions(self, *, rule_id: str) -> Sequence[RebalancingExecution]:
        """Newest first."""


class NotificationStore(Protocol):
    def insert_preference(self, *, preference: NotificationPreference) -> None:
        """Persist a notification preference."""

    def get_preference(self, *, preference_id: str) -> Optional[NotificationPreference]:
        """Fetch one preference."""

    def save_preference(self, *, preference: NotificationPreference) -> None:
        """Overwrite an existing preference."""

    def delete_preference(self, *, preference_id: str) -> bool:
        """Remove a preference; False if it did not exist."""

    def list_preferences(
        self,
        *,
        client_id: int,
        event: NotificationEvent | None = None,
        enabled_only: bool = False,
    ) -> Sequence[NotificationPreference]:
        """Preferences for a client, optionally narrowed to one event."""

    def insert_notification_log(self, *, log: NotificationLog) -> None:
        """Append a delivery attempt. Raises DuplicateRecord on a repeated dedup key."""

    def mark_notification(
        self,
        *,
        log_id: str,
        status: NotificationStatus,
        sent_at: datetime | None = None,
        error: str | None = None,
    ) -> None:
        """Move a Pending row to Sent or Failed. Rows already settled are left untouched."""

    def list_deferred_notifications(self, *, due_before: datetime) -> Sequence[NotificationLog]:
        """Pending rows whose quiet-hours deferral has ended."""

    def get_notification_logs(
        self,
        *,
        client_id: int,
        event: NotificationEvent | None = None,
        channel: NotificationChannel | None = None,
        limit: int = 100,
    ) -> Sequence[NotificationLog]:
        """Newest first."""


class AuthorizationStore(Protocol):
    def insert_authorization(self, *, record: AuthorizationRecord) -> None:
        """Persist a record awaiting approval."""

    def get_authorization(self, *, record_id: str) -> Optional[AuthorizationRecord]:
        """Fetch one authorization record."""

    def compare_and_set_authorization(self, *, record: AuthorizationRecord, expected_version: int) -> bool:
        """Replace the record only if its stored version equals `expected_version`."""


class AutomationStore(RuleStore, ExecutionLogStore, RebalancingExecutionStore, Protocol):
    """Everything the scheduler and rule service need."""
