"""In-memory stores for tests and dry runs.

Every method runs under one re-entrant lock, so each conditional update is
atomic with respect to concurrent workers.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import date, datetime
from typing import Optional, Sequence

from wealthauto.automation.leases import LeaseMap
from wealthauto.automation.schedule import is_candidate, is_retired, lapsed_status
from wealthauto.errors import DuplicateRecord, RuleNotFound
from wealthauto.types import (
    AuthorizationRecord,
    AutoInvestRule,
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
    RebalancingRule,
    RuleKind,
    TriggerOrder,
)


class InMemoryStores:
    """Dict-backed implementation of every store protocol."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._rules: dict[RuleKind, dict[str, AutomationRule]] = {
            "AutoInvest": {},
            "Rebalancing": {},
            "TriggerOrder": {},
        }
        self._leases = LeaseMap()
        self._execution_logs: list[AutomationExecutionLog] = []
        self._success_keys: set[tuple[str, str, date]] = set()
        self._rebalancing_executions: dict[str, RebalancingExecution] = {}
        self._preferences: dict[str, NotificationPreference] = {}
        self._notification_logs: dict[str, NotificationLog] = {}
        self._dedup_keys: set[str] = set()
        self._authorizations: dict[str, AuthorizationRecord] = {}

    @property
    def leases(self) -> LeaseMap:
        return self._leases

    # ---- RuleStore

    def insert_rule(self, *, rule: AutomationRule) -> None:
        with self._lock:
            if self.find_rule(rule_id=rule.id) is not None:
                raise DuplicateRecord(f"Rule id {rule.id} already exists")
            self._rules[rule.kind][rule.id] = rule

    def get_rule(self, *, kind: RuleKind, rule_id: str) -> Optional[AutomationRule]:
        with self._lock:
            return self._rules[kind].get(rule_id)

    def find_rule(self, *, rule_id: str) -> Optional[AutomationRule]:
        with self._lock:
            for rules in self._rules.values():
                if rule_id in rules:
                    return rules[rule_id]
            return None

    def list_rules(self, *, client_id: int, kind: RuleKind | None = None) -> Sequence[AutomationRule]:
        with self._lock:
            kinds = [kind] if kind is not None else list(self._rules)
            found = [r for k in kinds for r in self._rules[k].values() if r.client_id == client_id]
        return sorted(found, key=lambda r: (r.created_at is not None, r.created_at), reverse=True)

    def save_rule(self, *, rule: AutomationRule) -> None:
        with self._lock:
            if rule.id not in self._rules[rule.kind]:
                raise RuleNotFound(rule.kind, rule.id)
            self._rules[rule.kind][rule.id] = rule

    def list_due_rules(self, *, now: datetime) -> Sequence[AutomationRule]:
        with self._lock:
            return [
                rule
                for rules in self._rules.values()
                for rule in rules.values()
                if not is_retired(rule) and is_candidate(rule, now)
            ]

    def list_lapsed_rules(self, *, now: datetime) -> Sequence[AutomationRule]:
        with self._lock:
            return [
                rule for rules in self._rules.values() for rule in rules.values() if lapsed_status(rule, now)
            ]

    def try_lock(self, *, rule_id: str, owner: str, lease_until: datetime, now: datetime) -> bool:
        return self._leases.acquire(rule_id, owner, expires_at=lease_until, now=now)

    def unlock(self, *, rule_id: str, owner: str) -> None:
        self._leases.release(rule_id, owner)

    def update_rule_after_execution(self, *, update: ExecutionUpdate) -> None:
        with self._lock:
            rule = self._rules[update.kind].get(update.rule_id)
            if rule is None:
                raise RuleNotFound(update.kind, update.rule_id)
            changes: dict[str, object] = {
                "execution_count": rule.execution_count + update.execution_count_delta,
                "last_execution_date": update.execution_date,
                "last_execution_status": update.execution_status,
                "last_execution_error": update.error,
            }
            if update.status is not None:
                changes["status"] = update.status
            if isinstance(rule, AutoInvestRule):
                if update.next_due is not None:
                    changes["next_execution_date"] = update.next_due
                changes["total_invested"] = rule.total_invested + update.invested_delta
            elif isinstance(rule, RebalancingRule):
                if update.next_due is not None:
                    changes["next_rebalancing_date"] = update.next_due
                if update.execution_status == "Success":
                    changes["last_rebalanced_date"] = update.execution_date
            elif isinstance(rule, TriggerOrder):
                if update.order_id is not None:
                    changes["executed_order_id"] = update.order_id
                if update.executed_at is not None:
                    changes["executed_at"] = update.executed_at
            self._rules[update.kind][update.rule_id] = replace(rule, **changes)

    # ---- ExecutionLogStore

    def append_execution_log(self, *, entry: AutomationExecutionLog) -> None:
        with self._lock:
            if entry.status == "Success":
                key = (entry.automation_type, entry.automation_id, entry.execution_date)
                if key in self._success_keys:
                    raise DuplicateRecord(
                        f"Success already recorded for {entry.automation_id} on {entry.execution_date}"
                    )
                self._success_keys.add(key)
            self._execution_logs.append(entry)

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
        with self._lock:
            rows = [
                e
                for e in reversed(self._execution_logs)
                if (client_id is None or e.client_id == client_id)
                and (automation_type is None or e.automation_type == automation_type)
                and (automation_id is None or e.automation_id == automation_id)
                and (execution_date is None or e.execution_date == execution_date)
                and (status is None or e.status == status)
            ]
        return rows[:limit]

    # ---- RebalancingExecutionStore

    def insert_rebalancing_execution(self, *, execution: RebalancingExecution) -> None:
        with self._lock:
            if execution.id in self._rebalancing_executions:
                raise DuplicateRecord(f"Rebalancing execution {execution.id} already exists")
            self._rebalancing_executions[execution.id] = execution

    def get_rebalancing_execution(self, *, execution_id: str) -> Optional[RebalancingExecution]:
        with self._lock:
            return self._rebalancing_executions.get(execution_id)

    def save_rebalancing_execution(self, *, execution: RebalancingExecution) -> None:
        with self._lock:
            if execution.id not in self._rebalancing_executions:
                raise RuleNotFound("RebalancingExecution", execution.id)
            self._rebalancing_executions[execution.id] = execution

    def list_rebalancing_executions(self, *, rule_id: str) -> Sequence[RebalancingExecution]:
        with self._lock:
            rows = [e for e in self._rebalancing_executions.values() if e.rule_id == rule_id]
        return list(reversed(rows))

    # ---- NotificationStore

    def insert_preference(self, *, preference: NotificationPreference) -> None:
        with self._lock:
            if preference.id in self._preferences:
                raise DuplicateRecord(f"Preference {preference.id} already exists")
            self._preferences[preference.id] = preference

    def get_preference(self, *, preference_id: str) -> Optional[NotificationPreference]:
        with self._lock:
            return self._preferences.get(preference_id)

    def save_preference(self, *, preference: NotificationPreference) -> None:
        with self._lock:
            if preference.id not in self._preferences:
                raise RuleNotFound("NotificationPreference", preference.id)
            self._preferences[preference.id] = preference

    def delete_preference(self, *, preference_id: str) -> bool:
        with self._lock:
            return self._preferences.pop(preference_id, None) is not None

    def list_preferences(
        self,
        *,
        client_id: int,
        event: NotificationEvent | None = None,
        enabled_only: bool = False,
    ) -> Sequence[NotificationPreference]:
        with self._lock:
            return [
                p
                for p in self._preferences.values()
                if p.client_id == client_id
                and (event is None or p.event == event)
                and (not enabled_only or p.enabled)
            ]

    def insert_notification_log(self, *, log: NotificationLog) -> None:
        with self._lock:
            if log.dedup_key is not None:
                if log.dedup_key in self._dedup_keys:
                    raise DuplicateRecord(f"Notification {log.dedup_key} already logged")
                self._dedup_keys.add(log.dedup_key)
            self._notification_logs[log.id] = log

    def mark_notification(
        self,
        *,
        log_id: str,
        status: NotificationStatus,
        sent_at: datetime | None = None,
        error: str | None = None,
    ) -> None:
        with self._lock:
            log = self._notification_logs.get(log_id)
            if log is None or log.status != "Pending":
                return
            self._notification_logs[log_id] = replace(log, status=status, sent_at=sent_at, error=error)

    def list_deferred_notifications(self, *, due_before: datetime) -> Sequence[NotificationLog]:
        with self._lock:
            return [
                log
                for log in self._notification_logs.values()
                if log.status == "Pending" and log.deliver_after is not None and log.deliver_after <= due_before
            ]

    def get_notification_logs(
        self,
        *,
        client_id: int,
        event: NotificationEvent | None = None,
        channel: NotificationChannel | None = None,
        limit: int = 100,
    ) -> Sequence[NotificationLog]:
        with self._lock:
            rows = [
                log
                for log in reversed(list(self._notification_logs.values()))
                if log.client_id == client_id
                and (event is None or log.event == event)
                and (channel is None or log.channel == channel)
            ]
        return rows[:limit]

    # ---- AuthorizationStore

    def insert_authorization(self, *, record: AuthorizationRecord) -> None:
        with self._lock:
            if record.id in self._authorizations:
                raise DuplicateRecord(f"Authorization {record.id} already exists")
            self._authorizations[record.id] = record

    def get_authorization(self, *, record_id: str) -> Optional[AuthorizationRecord]:
        with self._lock:
            return self._authorizations.get(record_id)

    def compare_and_set_authorization(self, *, record: AuthorizationRecord, expected_version: int) -> bool:
        with self._lock:
            current = self._authorizations.get(record.id)
            if current is None or current.version != expected_version:
                return False
            self._authorizations[record.id] = replace(record, version=expected_version + 1)
            return True
