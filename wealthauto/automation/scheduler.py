"""Automation Scheduler - periodic rule execution daemon.

Each cycle:
1. Retires rules whose end date or validity window has passed
2. Pulls due rules of every kind from the rule store
3. Locks, re-checks and evaluates each rule in a bounded worker pool
4. Executes the resulting orders via the action executor
5. Records one audit row per attempt and notifies the client

Default behavior is paper execution (dry_run=True).
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Mapping, Optional

from wealthauto.automation.audit import ExecutionAuditLog
from wealthauto.automation.conditions import (
    auto_invest_value_kind,
    check_auto_invest_trigger,
    evaluate,
)
from wealthauto.automation.rebalancing import compute_drift, is_drift_due, plan_actions
from wealthauto.automation.rules import generate_id
from wealthauto.automation.safety import (
    MaxTotalAmountCheck,
    MinBalanceCheck,
    SafetyCheck,
    effective_amount,
    run_safety_checks,
)
from wealthauto.automation.schedule import (
    advance_schedule,
    anchor_day_of_month,
    is_candidate,
    is_manually_executable,
    is_rebalancing_schedule_due,
    lapsed_status,
)
from wealthauto.config import AppConfig, SchedulerConfig
from wealthauto.errors import (
    ExecutorFailure,
    ExecutorTimeout,
    InvalidTransition,
    LockContention,
    RuleNotActive,
    RuleNotFound,
    StoreUnavailable,
)
from wealthauto.execution.interfaces import ActionExecutor
from wealthauto.execution.paper import PaperActionExecutor
from wealthauto.market_data.interfaces import AVAILABLE_BALANCE, PORTFOLIO_VALUE, ValueSource
from wealthauto.notifications.dispatcher import EventPayload, NotificationDispatcher
from wealthauto.persistence.interfaces import AutomationStore
from wealthauto.types import (
    AutoInvestRule,
    AutomationExecutionLog,
    AutomationRule,
    ExecutionAction,
    ExecutionResult,
    ExecutionUpdate,
    NotificationEvent,
    RebalancingExecution,
    RebalancingRule,
    SchedulerStatus,
    TriggerOrder,
    utc_now,
)

logger = logging.getLogger(__name__)


@dataclass
class CycleReport:
    """Outcome counts for one scheduler cycle."""

    started_at: datetime
    due: int = 0
    retired: int = 0
    executed: int = 0
    failed: int = 0
    skipped: int = 0
    contended: int = 0
    errors: int = 0
    entries: list[AutomationExecutionLog] = field(default_factory=list)


def _trigger_ref(order: TriggerOrder) -> Optional[str]:
    """Value-source ref narrowing a trigger order's reading."""
    if order.trigger_type in ("Price", "NAV"):
        return str(order.scheme_id)
    if order.trigger_type == "Goal Progress":
        return str(order.goal_id) if order.goal_id is not None else None
    if order.trigger_type == "Custom":
        return order.trigger_field
    return None


class AutomationScheduler:
    """Runs due automation rules and records every attempt.

    Coordinates between:
    - Rule store (due list, per-rule lease locks, scheduler-owned fields)
    - Value source (prices, NAVs, balances and allocations)
    - Executor (paper or live order placement)
    - Audit log and notification dispatcher
    """

    def __init__(
        self,
        *,
        config: SchedulerConfig,
        store: AutomationStore,
        value_source: ValueSource,
        executor: Optional[ActionExecutor] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        audit: Optional[ExecutionAuditLog] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.store = store
        self.value_source = value_source
        self.executor = executor or self._build_executor()
        self.dispatcher = dispatcher
        self.audit = audit or ExecutionAuditLog(store, clock=clock)
        self._clock = clock

        # State
        self._instance = uuid.uuid4().hex[:8]
        self._status = SchedulerStatus()
        self._running = False
        self._iteration = 0

    def _build_executor(self) -> ActionExecutor:
        if self.config.dry_run:
            return PaperActionExecutor()
        raise ValueError("A live ActionExecutor must be supplied when dry_run is disabled")

    def _owner_token(self) -> str:
        return f"{self._instance}:{uuid.uuid4().hex[:8]}"

    def _lease_until(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.config.lock_lease_seconds)

    # ---- Cycle

    async def run_cycle(self, now: Optional[datetime] = None) -> CycleReport:
        """Run one scheduler cycle.

        Per-rule errors are logged and never abort the cycle. StoreUnavailable
        aborts it and is re-raised after the status is updated.
        """
        now = now or self._clock()
        self._iteration += 1
        report = CycleReport(started_at=now)
        logger.info(f"=== Automation cycle {self._iteration} at {now.isoformat()} ===")

        try:
            report.retired = self._retire_lapsed(now)
            due = self.store.list_due_rules(now=now)
            report.due = len(due)

            semaphore = asyncio.Semaphore(max(1, self.config.max_workers))
            results = await asyncio.gather(
                *(self._run_bounded(semaphore, rule, now, report) for rule in due),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, BaseException):
                    raise result
                if result is None:
                    continue
                report.entries.append(result)
                if result.status == "Success":
                    report.executed += 1
                elif result.status == "Failed":
                    report.failed += 1
                else:
                    report.skipped += 1

            if self.dispatcher is not None:
                await self.dispatcher.redeliver_deferred(now=now)

        except StoreUnavailable as exc:
            logger.error(f"Cycle {self._iteration} aborted, store unavailable: {exc}")
            self._status = replace(
                self._status,
                last_cycle_at=now,
                cycle_count=self._iteration,
                last_cycle_error=str(exc),
            )
            raise

        self._status = SchedulerStatus(
            last_cycle_at=now,
            rules_due_count=report.due,
            rules_failed_last_cycle=report.failed,
            rules_executed_last_cycle=report.executed,
            rules_skipped_last_cycle=report.skipped,
            cycle_count=self._iteration,
            running=self._running,
        )
        logger.info(
            f"Cycle {self._iteration}: due={report.due} executed={report.executed} "
            f"failed={report.failed} skipped={report.skipped} contended={report.contended} "
            f"errors={report.errors} retired={report.retired}"
        )
        return report

    async def _run_bounded(
        self,
        semaphore: asyncio.Semaphore,
        rule: AutomationRule,
        now: datetime,
        report: CycleReport,
    ) -> Optional[AutomationExecutionLog]:
        async with semaphore:
            try:
                return await self._attempt(rule, now, manual=False)
            except LockContention:
                logger.info(f"{rule.kind} {rule.id} is locked by another worker, skipping")
                report.contended += 1
                return None
            except StoreUnavailable:
                raise
            except Exception as e:
                logger.exception(f"Error processing {rule.kind} {rule.id}: {e}")
                report.errors += 1
                return None

    def _retire_lapsed(self, now: datetime) -> int:
        retired = 0
        for rule in self.store.list_lapsed_rules(now=now):
            owner = self._owner_token()
            if not self.store.try_lock(rule_id=rule.id, owner=owner, lease_until=self._lease_until(now), now=now):
                continue
            try:
                fresh = self.store.get_rule(kind=rule.kind, rule_id=rule.id)
                status = lapsed_status(fresh, now) if fresh is not None else None
                if status is None:
                    continue
                self.store.save_rule(rule=replace(fresh, status=status, updated_at=now))
                logger.info(f"{rule.kind} {rule.id} retired as {status}")
                retired += 1
            finally:
                self.store.unlock(rule_id=rule.id, owner=owner)
        return retired

    async def _attempt(
        self,
        rule: AutomationRule,
        now: datetime,
        *,
        manual: bool,
        operator: Optional[str] = None,
    ) -> Optional[AutomationExecutionLog]:
        """Lock `rule`, re-check it and run it. Raises LockContention if held."""
        owner = self._owner_token()
        if not self.store.try_lock(rule_id=rule.id, owner=owner, lease_until=self._lease_until(now), now=now):
            raise LockContention(rule.id)
        try:
            fresh = self.store.get_rule(kind=rule.kind, rule_id=rule.id)
            if fresh is None:
                raise RuleNotFound(rule.kind, rule.id)
            if manual:
                if not is_manually_executable(fresh, now):
                    raise RuleNotActive(f"{fresh.kind} {fresh.id} is {fresh.status} and cannot be executed")
            elif not is_candidate(fresh, now):
                logger.debug(f"{fresh.kind} {fresh.id} no longer due")
                return None

            entry = await self._evaluate(fresh, now, manual=manual, operator=operator)
            if entry is None and manual:
                entry = self._skip(fresh, now.date(), "Nothing to execute")
            return entry
        finally:
            self.store.unlock(rule_id=rule.id, owner=owner)

    async def _evaluate(
        self,
        rule: AutomationRule,
        now: datetime,
        *,
        manual: bool,
        operator: Optional[str],
    ) -> Optional[AutomationExecutionLog]:
        if isinstance(rule, AutoInvestRule):
            return await self._run_auto_invest(rule, now, manual=manual)
        if isinstance(rule, RebalancingRule):
            return await self._run_rebalancing(rule, now, manual=manual, operator=operator)
        if isinstance(rule, TriggerOrder):
            return await self._run_trigger_order(rule, now, manual=manual)
        raise TypeError(f"Unsupported rule type: {type(rule).__name__}")

    # ---- Shared steps

    async def _execute_action(self, action: ExecutionAction) -> ExecutionResult:
        """Place one order. Rejections, errors and timeouts raise ExecutorFailure."""
        if self.config.dry_run:
            logger.info(
                f"DRY RUN: Would place {action.order_type} {action.amount or action.units} "
                f"for {action.automation_id} ({action.idempotency_key})"
            )
        try:
            result = await asyncio.wait_for(self.executor.execute(action), timeout=self.config.executor_timeout)
        except asyncio.TimeoutError as exc:
            raise ExecutorTimeout(f"Executor timed out after {self.config.executor_timeout}s") from exc
        except ExecutorFailure:
            raise
        except Exception as exc:
            raise ExecutorFailure(f"{exc.__class__.__name__}: {exc}") from exc

        if not result.accepted:
            raise ExecutorFailure(result.reason or "Order rejected by executor")
        return result

    def _skip(
        self,
        rule: AutomationRule,
        execution_date: date,
        reason: str,
        *,
        next_due: Optional[date] = None,
        status: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> AutomationExecutionLog:
        entry = self.audit.record_skip(rule=rule, execution_date=execution_date, reason=reason, details=details)
        self.store.update_rule_after_execution(
            update=ExecutionUpdate(
                kind=rule.kind,
                rule_id=rule.id,
                execution_date=execution_date,
                execution_status="Skipped",
                next_due=next_due,
                status=status,
                error=reason,
            )
        )
        return entry

    def _fail(
        self,
        rule: AutomationRule,
        execution_date: date,
        exc: ExecutorFailure,
        *,
        details: Optional[Mapping[str, Any]] = None,
    ) -> AutomationExecutionLog:
        entry = self.audit.record_failure(
            rule=rule,
            execution_date=execution_date,
            error=str(exc),
            error_kind=exc.error_kind,
            details=details,
        )
        self.store.update_rule_after_execution(
            update=ExecutionUpdate(
                kind=rule.kind,
                rule_id=rule.id,
                execution_date=execution_date,
                execution_status="Failed",
                execution_count_delta=1,
                error=str(exc),
            )
        )
        self._maybe_auto_pause(rule)
        return entry

    def _maybe_auto_pause(self, rule: AutomationRule) -> None:
        threshold = self.config.max_consecutive_failures
        if threshold <= 0:
            return
        failures = self.audit.consecutive_failures(kind=rule.kind, rule_id=rule.id)
        if failures < threshold:
            return
        current = self.store.get_rule(kind=rule.kind, rule_id=rule.id)
        if current is None:
            return
        if isinstance(current, TriggerOrder):
            paused = replace(current, is_enabled=False, updated_at=self._clock())
        else:
            paused = replace(current, status="Paused", updated_at=self._clock())
        self.store.save_rule(rule=paused)
        logger.warning(f"{rule.kind} {rule.id} paused after {failures} consecutive failures")

    async def _notify(
        self,
        event: NotificationEvent,
        rule: AutomationRule,
        payload: EventPayload,
        now: datetime,
    ) -> None:
        if self.dispatcher is None:
            return
        try:
            await self.dispatcher.dispatch(event, rule.client_id, payload, now=now)
        except StoreUnavailable:
            raise
        except Exception as e:
            logger.exception(f"Notification {event} for {rule.id} failed: {e}")

    # ---- Auto-invest

    async def _run_auto_invest(self, rule: AutoInvestRule, now: datetime, *, manual: bool) -> AutomationExecutionLog:
        today = now.date()
        on_schedule = rule.next_execution_date <= today
        execution_date = rule.next_execution_date if on_schedule else today

        next_due = None
        if on_schedule:
            next_due = advance_schedule(
                rule.next_execution_date, rule.frequency, today, day_of_month=anchor_day_of_month(rule)
            )
        ends = next_due is not None and rule.end_date is not None and next_due > rule.end_date
        lapse_status = "Completed" if ends else None

        if self.audit.has_success(kind=rule.kind, rule_id=rule.id, execution_date=execution_date):
            return self._skip(
                rule, execution_date, "Already executed for this date", next_due=next_due, status=lapse_status
            )

        value_kind = auto_invest_value_kind(rule)
        observed: Optional[Decimal] = None
        if value_kind is not None:
            ref = None
            if value_kind == "Goal Progress" and rule.goal_id is not None:
                ref = str(rule.goal_id)
            elif value_kind == "NAV Change":
                ref = str(rule.scheme_id)
            observed = await self.value_source.current_value(value_kind, rule.client_id, ref)
        trigger = check_auto_invest_trigger(rule, observed)
        if not trigger.met:
            return self._skip(rule, execution_date, trigger.reason, next_due=next_due, status=lapse_status)

        amount = effective_amount(rule)
        balance = None
        if rule.min_balance_required is not None:
            balance = await self.value_source.current_value(AVAILABLE_BALANCE, rule.client_id)
        checks: list[SafetyCheck] = [MaxTotalAmountCheck(), MinBalanceCheck(available_balance=balance)]
        safety = run_safety_checks(checks=checks, rule=rule, amount=amount)
        if not safety.ok:
            logger.warning(f"Safety check failed for {rule.id}: {safety.reason}")
            return self._skip(
                rule,
                execution_date,
                safety.reason,
                next_due=next_due,
                status="Completed" if safety.completes_rule else lapse_status,
            )

        action = ExecutionAction(
            automation_type=rule.kind,
            automation_id=rule.id,
            client_id=rule.client_id,
            execution_date=execution_date,
            order_type="Purchase",
            scheme_id=rule.scheme_id,
            amount=amount,
            metadata={"rule_name": rule.name},
        )
        try:
            result = await self._execute_action(action)
        except ExecutorFailure as exc:
            entry = self._fail(rule, execution_date, exc, details={"amount": amount})
            await self._notify(
                "Auto-Invest Failed",
                rule,
                EventPayload(
                    message=f"Auto-invest '{rule.name}' of {amount} could not be placed: {exc}",
                    amount=amount,
                    scheme_id=rule.scheme_id,
                    automation_id=rule.id,
                    execution_date=execution_date,
                ),
                now,
            )
            return entry

        entry = self.audit.record_success(
            rule=rule,
            execution_date=execution_date,
            order_id=result.order_id,
            details={"amount": amount, "trigger": trigger.reason, "dry_run": result.dry_run},
        )
        status = lapse_status
        if rule.max_total_amount is not None and rule.total_invested + amount >= rule.max_total_amount:
            status = "Completed"
        self.store.update_rule_after_execution(
            update=ExecutionUpdate(
                kind=rule.kind,
                rule_id=rule.id,
                execution_date=execution_date,
                execution_status="Success",
                execution_count_delta=1,
                next_due=next_due,
                status=status,
                invested_delta=amount,
                order_id=result.order_id,
                executed_at=now,
            )
        )
        logger.info(f"Auto-invest {rule.id} placed {amount} into scheme {rule.scheme_id}: {result.order_id}")
        await self._notify(
            "Auto-Invest Executed",
            rule,
            EventPayload(
                message=f"Auto-invest '{rule.name}' placed {amount} into scheme {rule.scheme_id}",
                amount=amount,
                scheme_id=rule.scheme_id,
                automation_id=rule.id,
                execution_date=execution_date,
                order_id=result.order_id,
            ),
            now,
        )
        return entry

    # ---- Rebalancing

    async def _run_rebalancing(
        self,
        rule: RebalancingRule,
        now: datetime,
        *,
        manual: bool,
        operator: Optional[str],
    ) -> Optional[AutomationExecutionLog]:
        today = now.date()
        schedule_due = is_rebalancing_schedule_due(rule, today)
        execution_date = rule.next_rebalancing_date if schedule_due and rule.next_rebalancing_date else today
        next_due = None
        if schedule_due and rule.frequency is not None and rule.next_rebalancing_date is not None:
            next_due = advance_schedule(rule.next_rebalancing_date, rule.frequency, today, day_of_month=rule.day_of_month)

        if self.audit.has_success(kind=rule.kind, rule_id=rule.id, execution_date=execution_date):
            if schedule_due or manual:
                return self._skip(rule, execution_date, "Already rebalanced for this date", next_due=next_due)
            return None

        pending = [e for e in self.store.list_rebalancing_executions(rule_id=rule.id) if e.status == "Pending"]
        if pending:
            if schedule_due or manual:
                return self._skip(
                    rule,
                    execution_date,
                    "Rebalancing awaiting confirmation",
                    next_due=next_due,
                    details={"execution_id": pending[0].id},
                )
            return None

        allocation = await self.value_source.current_allocation(rule.client_id)
        if not allocation:
            if schedule_due or manual:
                return self._skip(rule, execution_date, "Current allocation unavailable", next_due=next_due)
            logger.warning(f"No allocation for client {rule.client_id}; drift check for {rule.id} skipped")
            return None

        report = compute_drift(rule.target_allocation, allocation)
        if not (schedule_due or manual or is_drift_due(rule, report)):
            logger.debug(f"Rebalancing {rule.id}: drift {report.max_drift} below {rule.threshold_percent}")
            return None

        if not manual and rule.min_drift_percent is not None and report.max_drift < rule.min_drift_percent:
            return self._skip(
                rule,
                execution_date,
                f"Drift {report.max_drift}% below minimum {rule.min_drift_percent}%",
                next_due=next_due,
            )

        portfolio_value = await self.value_source.current_value(PORTFOLIO_VALUE, rule.client_id)
        actions = plan_actions(report, portfolio_value, rebalance_amount=rule.rebalance_amount)
        if not actions:
            return self._skip(rule, execution_date, "No rebalancing actions required", next_due=next_due)

        execution = RebalancingExecution(
            id=generate_id("REBAL-EXEC", now),
            rule_id=rule.id,
            client_id=rule.client_id,
            execution_date=execution_date,
            status="Pending",
            current_allocation=dict(allocation),
            target_allocation=dict(rule.target_allocation),
            drift_percent=report.max_drift,
            actions=actions,
            created_at=now,
        )
        self.store.insert_rebalancing_execution(execution=execution)

        if not manual and (rule.require_confirmation or not rule.execute_automatically):
            entry = self._skip(
                rule,
                execution_date,
                "Rebalancing awaiting confirmation",
                next_due=next_due,
                details={"execution_id": execution.id, "drift": report.max_drift},
            )
            await self._notify(
                "Rebalancing Triggered",
                rule,
                EventPayload(
                    message=(
                        f"Portfolio drift of {report.max_drift}% on '{rule.name}' needs your confirmation "
                        f"({len(actions)} orders)"
                    ),
                    automation_id=rule.id,
                    execution_date=execution_date,
                    metadata={"execution_id": execution.id},
                ),
                now,
            )
            return entry

        return await self._execute_rebalancing(rule, execution, now, next_due=next_due, operator=operator)

    async def _execute_rebalancing(
        self,
        rule: RebalancingRule,
        execution: RebalancingExecution,
        now: datetime,
        *,
        next_due: Optional[date],
        operator: Optional[str],
    ) -> AutomationExecutionLog:
        order_ids: list[str] = []
        for leg, planned in enumerate(execution.actions, start=1):
            action = ExecutionAction(
                automation_type=rule.kind,
                automation_id=rule.id,
                client_id=rule.client_id,
                execution_date=execution.execution_date,
                order_type=planned.type,
                scheme_id=planned.scheme_id,
                amount=planned.amount,
                units=planned.units,
                leg=leg,
                execution_id=execution.id,
                metadata={"asset_class": planned.asset_class, "execution_id": execution.id},
            )
            try:
                result = await self._execute_action(action)
            except ExecutorFailure as exc:
                self.store.save_rebalancing_execution(
                    execution=replace(
                        execution,
                        status="Failed",
                        order_ids=tuple(order_ids),
                        executed_by=operator,
                        error=str(exc),
                    )
                )
                entry = self._fail(
                    rule,
                    execution.execution_date,
                    exc,
                    details={"execution_id": execution.id, "completed_legs": len(order_ids)},
                )
                await self._notify(
                    "Portfolio Alert",
                    rule,
                    EventPayload(
                        message=f"Rebalancing '{rule.name}' stopped after {len(order_ids)} orders: {exc}",
                        automation_id=rule.id,
                        execution_date=execution.execution_date,
                        metadata={"execution_id": execution.id},
                    ),
                    now,
                )
                return entry
            if result.order_id:
                order_ids.append(result.order_id)

        self.store.save_rebalancing_execution(
            execution=replace(
                execution,
                status="Executed",
                order_ids=tuple(order_ids),
                executed_at=now,
                executed_by=operator,
            )
        )
        entry = self.audit.record_success(
            rule=rule,
            execution_date=execution.execution_date,
            order_id=order_ids[0] if order_ids else None,
            details={"execution_id": execution.id, "order_ids": order_ids, "drift": execution.drift_percent},
        )
        self.store.update_rule_after_execution(
            update=ExecutionUpdate(
                kind=rule.kind,
                rule_id=rule.id,
                execution_date=execution.execution_date,
                execution_status="Success",
                execution_count_delta=1,
                next_due=next_due,
            )
        )
        await self._notify(
            "Rebalancing Executed",
            rule,
            EventPayload(
                message=f"Rebalancing '{rule.name}' placed {len(order_ids)} orders",
                automation_id=rule.id,
                execution_date=execution.execution_date,
                order_id=order_ids[0] if order_ids else None,
                metadata={"execution_id": execution.id},
            ),
            now,
        )
        return entry

    async def confirm_rebalancing(
        self,
        execution_id: str,
        *,
        operator: str,
        now: Optional[datetime] = None,
    ) -> AutomationExecutionLog:
        """Execute a Pending rebalancing that was held for confirmation."""
        now = now or self._clock()
        execution = self.store.get_rebalancing_execution(execution_id=execution_id)
        if execution is None:
            raise RuleNotFound("RebalancingExecution", execution_id)

        owner = self._owner_token()
        if not self.store.try_lock(
            rule_id=execution.rule_id, owner=owner, lease_until=self._lease_until(now), now=now
        ):
            raise LockContention(execution.rule_id)
        try:
            execution = self.store.get_rebalancing_execution(execution_id=execution_id)
            if execution is None or execution.status != "Pending":
                raise InvalidTransition(f"Rebalancing execution {execution_id} is not Pending")
            rule = self.store.get_rule(kind="Rebalancing", rule_id=execution.rule_id)
            if rule is None:
                raise RuleNotFound("Rebalancing", execution.rule_id)
            if not is_manually_executable(rule, now):
                raise RuleNotActive(f"Rebalancing {rule.id} is {rule.status} and cannot be executed")
            if not isinstance(rule, RebalancingRule):
                raise TypeError(f"Rule {rule.id} is not a rebalancing rule")

            if self.audit.has_success(kind=rule.kind, rule_id=rule.id, execution_date=execution.execution_date):
                self.store.save_rebalancing_execution(execution=replace(execution, status="Cancelled"))
                return self._skip(rule, execution.execution_date, "Already rebalanced for this date")

            logger.info(f"Rebalancing {execution_id} confirmed by {operator}")
            return await self._execute_rebalancing(rule, execution, now, next_due=None, operator=operator)
        finally:
            self.store.unlock(rule_id=execution.rule_id, owner=owner)

    def cancel_rebalancing(
        self,
        execution_id: str,
        *,
        operator: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RebalancingExecution:
        """Discard a Pending rebalancing without placing orders."""
        now = now or self._clock()
        execution = self.store.get_rebalancing_execution(execution_id=execution_id)
        if execution is None:
            raise RuleNotFound("RebalancingExecution", execution_id)

        owner = self._owner_token()
        if not self.store.try_lock(
            rule_id=execution.rule_id, owner=owner, lease_until=self._lease_until(now), now=now
        ):
            raise LockContention(execution.rule_id)
        try:
            execution = self.store.get_rebalancing_execution(execution_id=execution_id)
            if execution is None or execution.status != "Pending":
                raise InvalidTransition(f"Rebalancing execution {execution_id} is not Pending")
            cancelled = replace(execution, status="Cancelled", executed_by=operator)
            self.store.save_rebalancing_execution(execution=cancelled)
            logger.info(f"Rebalancing {execution_id} cancelled by {operator}")
            return cancelled
        finally:
            self.store.unlock(rule_id=execution.rule_id, owner=owner)

    # ---- Trigger orders

    async def _run_trigger_order(
        self, order: TriggerOrder, now: datetime, *, manual: bool
    ) -> Optional[AutomationExecutionLog]:
        today = now.date()

        if order.status == "Active":
            if order.trigger_type == "Date":
                value: Optional[Decimal] = Decimal(int(now.timestamp()))
            else:
                value = await self.value_source.current_value(order.trigger_type, order.client_id, _trigger_ref(order))
            if value is None:
                if manual:
                    return self._skip(order, today, f"No {order.trigger_type} reading available")
                logger.warning(f"No {order.trigger_type} reading for trigger order {order.id}")
                return None

            fired = evaluate(
                order.trigger_condition,
                order.trigger_value,
                value,
                order.last_observed_value,
                tolerance=self.config.equals_tolerance,
            )
            observed = replace(order, last_observed_value=value, updated_at=now)
            if not fired:
                self.store.save_rule(rule=observed)
                if manual:
                    return self._skip(
                        observed,
                        today,
                        "Trigger condition not met",
                        details={"observed": value, "condition": order.trigger_condition},
                    )
                logger.debug(f"Trigger order {order.id}: {value} not {order.trigger_condition} {order.trigger_value}")
                return None

            order = replace(observed, status="Triggered", triggered_at=now)
            self.store.save_rule(rule=order)
            logger.info(f"Trigger order {order.id} fired: {value} {order.trigger_condition} {order.trigger_value}")
            await self._notify(
                "Trigger Order Activated",
                order,
                EventPayload(
                    message=(
                        f"Trigger order '{order.name}' activated: {order.trigger_type} {value} "
                        f"{order.trigger_condition} {order.trigger_value}"
                    ),
                    amount=order.amount,
                    scheme_id=order.scheme_id,
                    automation_id=order.id,
                    execution_date=today,
                ),
                now,
            )

        action = ExecutionAction(
            automation_type=order.kind,
            automation_id=order.id,
            client_id=order.client_id,
            execution_date=today,
            order_type=order.order_type,
            scheme_id=order.scheme_id,
            amount=order.amount,
            units=order.units,
            target_scheme_id=order.target_scheme_id,
            metadata={"rule_name": order.name},
        )
        try:
            result = await self._execute_action(action)
        except ExecutorFailure as exc:
            entry = self._fail(order, today, exc, details={"observed": order.last_observed_value})
            await self._notify(
                "Order Failed",
                order,
                EventPayload(
                    message=f"Trigger order '{order.name}' could not be placed: {exc}",
                    amount=order.amount,
                    scheme_id=order.scheme_id,
                    automation_id=order.id,
                    execution_date=today,
                ),
                now,
            )
            return entry

        entry = self.audit.record_success(
            rule=order,
            execution_date=today,
            order_id=result.order_id,
            details={"observed": order.last_observed_value, "dry_run": result.dry_run},
        )
        self.store.update_rule_after_execution(
            update=ExecutionUpdate(
                kind=order.kind,
                rule_id=order.id,
                execution_date=today,
                execution_status="Success",
                execution_count_delta=1,
                status="Executed",
                order_id=result.order_id,
                executed_at=now,
            )
        )
        await self._notify(
            "Order Executed",
            order,
            EventPayload(
                message=f"Trigger order '{order.name}' placed: {result.order_id}",
                amount=order.amount,
                scheme_id=order.scheme_id,
                automation_id=order.id,
                execution_date=today,
                order_id=result.order_id,
            ),
            now,
        )
        return entry

    # ---- Operator surface

    async def manual_execute(
        self,
        automation_id: str,
        *,
        operator: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AutomationExecutionLog:
        """Run one rule now, bypassing its schedule but not its guards.

        Raises:
            RuleNotFound: No rule has this id.
            RuleNotActive: The rule is paused, disabled or retired.
            LockContention: The rule is executing elsewhere.
        """
        now = now or self._clock()
        rule = self.store.find_rule(rule_id=automation_id)
        if rule is None:
            raise RuleNotFound("Automation", automation_id)
        entry = await self._attempt(rule, now, manual=True, operator=operator)
        if entry is None:
            raise RuleNotActive(f"{rule.kind} {rule.id} produced no execution")
        logger.info(f"Manual execution of {rule.kind} {rule.id} by {operator or 'system'}: {entry.status}")
        return entry

    def get_status(self) -> SchedulerStatus:
        return replace(self._status, running=self._running)

    async def run(self) -> None:
        """Run the scheduler loop until stopped."""
        logger.info("Starting Automation Scheduler")
        logger.info(
            f"Config: interval={self.config.poll_interval}s, workers={self.config.max_workers}, "
            f"executor_timeout={self.config.executor_timeout}s"
        )
        logger.info(f"Mode: {'PAPER' if self.config.dry_run else 'LIVE'}")

        self._running = True

        try:
            while self._running:
                try:
                    await self.run_cycle()
                except StoreUnavailable:
                    logger.warning("Retrying on next cycle")

                if self.config.max_iterations and self._iteration >= self.config.max_iterations:
                    logger.info(f"Reached max iterations ({self.config.max_iterations})")
                    break

                logger.debug(f"Sleeping {self.config.poll_interval}s until next cycle")
                await asyncio.sleep(self.config.poll_interval)

        except asyncio.CancelledError:
            logger.info("Scheduler cancelled")
        finally:
            self._running = False
            logger.info("Scheduler stopped")

    def stop(self) -> None:
        """Signal the scheduler to stop after the current cycle."""
        self._running = False


# ========== CLI Entry Point ==========


async def main(argv: Optional[list[str]] = None) -> None:
    """Run the scheduler from command line."""
    import argparse

    from wealthauto.market_data import HttpValueSource, StaticValueSource
    from wealthauto.notifications.webhook import WebhookTransport
    from wealthauto.storage.postgres import PostgresConfig, PostgresStores

    parser = argparse.ArgumentParser(description="Run the automation scheduler")
    parser.add_argument("--interval", type=int, help="Seconds between cycles (default: AUTOMATION_CHECK_INTERVAL)")
    parser.add_argument("--workers", type=int, help="Concurrent rule executions per cycle")
    parser.add_argument("--iterations", type=int, help="Max cycles (default: infinite)")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    args = parser.parse_args(argv)

    # Setup logging
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    app = AppConfig.from_env()
    if not app.database_url:
        parser.error("DATABASE_URL must be set")
    if not app.scheduler.dry_run:
        parser.error("Live execution needs an order service executor; unset AUTOMATION_DRY_RUN")

    config = replace(
        app.scheduler,
        poll_interval=args.interval or app.scheduler.poll_interval,
        max_workers=args.workers or app.scheduler.max_workers,
        max_iterations=1 if args.once else args.iterations,
    )

    stores = PostgresStores(config=PostgresConfig(database_url=app.database_url))
    if app.value_source_url:
        value_source: ValueSource = HttpValueSource(app.value_source_url)
    else:
        logger.warning("VALUE_SOURCE_URL not set; trigger evaluation has no market data")
        value_source = StaticValueSource()
    transport = WebhookTransport(app.notifications)
    dispatcher = NotificationDispatcher(store=stores, transport=transport, settings=app.notifications)

    scheduler = AutomationScheduler(
        config=config,
        store=stores,
        value_source=value_source,
        dispatcher=dispatcher,
    )

    try:
        await scheduler.run()
    finally:
        await transport.aclose()
        if isinstance(value_source, HttpValueSource):
            await value_source.aclose()


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
