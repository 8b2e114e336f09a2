"""Client-facing rule lifecycle: create, update, pause, resume and cancel.

Every mutation of an existing rule takes the same per-rule lease the scheduler
uses, so an edit never interleaves with an in-flight execution.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator, Mapping, Optional, Sequence

from wealthauto.automation.rules import (
    ID_PREFIXES,
    SPEC_MODELS,
    UPDATE_MODELS,
    apply_auto_invest_update,
    apply_rebalancing_update,
    apply_trigger_order_update,
    build_auto_invest_rule,
    build_rebalancing_rule,
    build_trigger_order,
    generate_id,
    parse_spec,
)
from wealthauto.automation.schedule import is_retired
from wealthauto.errors import InvalidTransition, LockContention, RuleNotFound
from wealthauto.persistence.interfaces import AutomationStore
from wealthauto.types import (
    AutoInvestRule,
    AutomationExecutionLog,
    AutomationRule,
    ExecutionStatus,
    RebalancingExecution,
    RebalancingRule,
    RuleKind,
    TriggerOrder,
    utc_now,
)

logger = logging.getLogger(__name__)

# Short lease for operator edits
EDIT_LEASE_SECONDS = 30


class AutomationService:
    """Rule CRUD for the API layer. Inputs accept snake_case or camelCase keys."""

    def __init__(self, store: AutomationStore, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.store = store
        self._clock = clock

    @contextmanager
    def _locked(self, rule_id: str, now: datetime) -> Iterator[None]:
        owner = f"edit:{uuid.uuid4().hex[:8]}"
        lease_until = now + timedelta(seconds=EDIT_LEASE_SECONDS)
        if not self.store.try_lock(rule_id=rule_id, owner=owner, lease_until=lease_until, now=now):
            raise LockContention(rule_id)
        try:
            yield
        finally:
            self.store.unlock(rule_id=rule_id, owner=owner)

    def _require(self, kind: RuleKind, rule_id: str) -> AutomationRule:
        rule = self.store.get_rule(kind=kind, rule_id=rule_id)
        if rule is None:
            raise RuleNotFound(kind, rule_id)
        return rule

    # ---- Create / read

    def create_rule(self, kind: RuleKind, spec: Mapping[str, Any], *, created_by: Optional[str] = None) -> str:
        """Validate and persist a new rule. Returns its id.

        Raises:
            ValidationError: The payload violates a rule invariant. Nothing is stored.
        """
        if kind not in SPEC_MODELS:
            raise ValueError(f"Unknown rule kind: {kind}")
        parsed = parse_spec(SPEC_MODELS[kind], spec)
        now = self._clock()
        rule_id = generate_id(ID_PREFIXES[kind], now)

        rule: AutomationRule
        if kind == "AutoInvest":
            rule = build_auto_invest_rule(parsed, rule_id=rule_id, today=now.date(), now=now, created_by=created_by)
        elif kind == "Rebalancing":
            rule = build_rebalancing_rule(parsed, rule_id=rule_id, today=now.date(), now=now, created_by=created_by)
        else:
            rule = build_trigger_order(parsed, rule_id=rule_id, now=now, created_by=created_by)

        self.store.insert_rule(rule=rule)
        logger.info(f"Created {kind} rule {rule_id} for client {rule.client_id}")
        return rule_id

    def get_rule(self, kind: RuleKind, rule_id: str) -> AutomationRule:
        return self._require(kind, rule_id)

    def list_rules(self, client_id: int, kind: Optional[RuleKind] = None) -> Sequence[AutomationRule]:
        return self.store.list_rules(client_id=client_id, kind=kind)

    def get_execution_logs(
        self,
        *,
        client_id: Optional[int] = None,
        kind: Optional[RuleKind] = None,
        rule_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 100,
    ) -> Sequence[AutomationExecutionLog]:
        return self.store.get_execution_logs(
            client_id=client_id, automation_type=kind, automation_id=rule_id, status=status, limit=limit
        )

    def list_rebalancing_executions(self, rule_id: str) -> Sequence[RebalancingExecution]:
        return self.store.list_rebalancing_executions(rule_id=rule_id)

    # ---- Mutations

    def update_rule(self, kind: RuleKind, rule_id: str, changes: Mapping[str, Any]) -> AutomationRule:
        """Apply client edits to a live rule.

        Raises:
            RuleNotFound, ValidationError, LockContention, or InvalidTransition
            when the rule is already retired.
        """
        update = parse_spec(UPDATE_MODELS[kind], changes)
        now = self._clock()
        with self._locked(rule_id, now):
            rule = self._require(kind, rule_id)
            if is_retired(rule):
                raise InvalidTransition(f"{kind} {rule_id} is {rule.status} and can no longer be edited")
            if isinstance(rule, AutoInvestRule):
                updated: AutomationRule = apply_auto_invest_update(rule, update, today=now.date(), now=now)
            elif isinstance(rule, RebalancingRule):
                updated = apply_rebalancing_update(rule, update, today=now.date(), now=now)
            else:
                updated = apply_trigger_order_update(rule, update, now=now)
            self.store.save_rule(rule=updated)
        logger.info(f"Updated {kind} rule {rule_id}: {sorted(update.model_dump(exclude_unset=True))}")
        return updated

    def cancel_rule(self, kind: RuleKind, rule_id: str) -> AutomationRule:
        """Soft-retire a rule. History stays attached; the rule is never due again."""
        now = self._clock()
        with self._locked(rule_id, now):
            rule = self._require(kind, rule_id)
            if is_retired(rule):
                raise InvalidTransition(f"{kind} {rule_id} is already {rule.status}")
            cancelled = replace(rule, status="Cancelled", updated_at=now)
            self.store.save_rule(rule=cancelled)
        logger.info(f"Cancelled {kind} rule {rule_id}")
        return cancelled

    def pause_rule(self, kind: RuleKind, rule_id: str) -> AutomationRule:
        now = self._clock()
        with self._locked(rule_id, now):
            rule = self._require(kind, rule_id)
            if is_retired(rule):
                raise InvalidTransition(f"{kind} {rule_id} is {rule.status} and cannot be paused")
            if isinstance(rule, TriggerOrder):
                # Trigger orders have no Paused status; disabling keeps the forward-only status intact.
                paused: AutomationRule = replace(rule, is_enabled=False, updated_at=now)
            else:
                if rule.status != "Active":
                    raise InvalidTransition(f"{kind} {rule_id} is {rule.status}, not Active")
                paused = replace(rule, status="Paused", updated_at=now)
            self.store.save_rule(rule=paused)
        logger.info(f"Paused {kind} rule {rule_id}")
        return paused

    def resume_rule(self, kind: RuleKind, rule_id: str) -> AutomationRule:
        now = self._clock()
        with self._locked(rule_id, now):
            rule = self._require(kind, rule_id)
            if is_retired(rule):
                raise InvalidTransition(f"{kind} {rule_id} is {rule.status} and cannot be resumed")
            if isinstance(rule, TriggerOrder):
                resumed: AutomationRule = replace(rule, is_enabled=True, updated_at=now)
            else:
                resumed = replace(rule, status="Active", is_enabled=True, updated_at=now)
            self.store.save_rule(rule=resumed)
        logger.info(f"Resumed {kind} rule {rule_id}")
        return resumed
