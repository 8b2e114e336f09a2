"""Tests for the automation scheduler."""

import asyncio
from datetime import date, timedelta
from decimal import Decimal
from typing import Callable, Optional
from unittest.mock import AsyncMock

import pytest

from wealthauto.automation.scheduler import AutomationScheduler
from wealthauto.config import SchedulerConfig
from wealthauto.errors import InvalidTransition, LockContention, RuleNotActive, RuleNotFound, StoreUnavailable
from wealthauto.execution.interfaces import ActionExecutor
from wealthauto.execution.paper import PaperActionExecutor
from wealthauto.market_data.interfaces import AVAILABLE_BALANCE, PORTFOLIO_VALUE
from wealthauto.market_data.static import StaticValueSource
from wealthauto.notifications.dispatcher import NotificationDispatcher
from wealthauto.notifications.preferences import PreferenceManager
from wealthauto.storage.memory import InMemoryStores
from wealthauto.types import AutoInvestRule, ExecutionAction, ExecutionResult, RebalancingRule, TriggerOrder

CLIENT_ID = 101


def subscribe(stores: InMemoryStores, *events: str) -> None:
    manager = PreferenceManager(stores)
    for event in events:
        manager.create({"clientId": CLIENT_ID, "event": event, "channels": ["Email"]})


def sent_events(transport: AsyncMock) -> list[str]:
    return [call.args[2]["event"] for call in transport.send.await_args_list]


def count_attempts(stores: InMemoryStores, rule_id: str) -> tuple[int, int, int]:
    logs = stores.get_execution_logs(automation_id=rule_id)
    return (
        sum(1 for e in logs if e.status == "Success"),
        sum(1 for e in logs if e.status == "Failed"),
        sum(1 for e in logs if e.status == "Skipped"),
    )


class RejectLegOnce:
    """Paper executor that rejects the first action for one rebalancing leg."""

    def __init__(self, leg: int) -> None:
        self.leg = leg
        self.rejected = False
        self.inner = PaperActionExecutor()

    async def execute(self, action: ExecutionAction) -> ExecutionResult:
        if action.leg == self.leg and not self.rejected:
            self.rejected = True
            return ExecutionResult(dry_run=True, accepted=False, reason="Exit load window")
        return await self.inner.execute(action)


def build_scheduler(
    stores: InMemoryStores,
    value_source: StaticValueSource,
    clock: Callable,
    *,
    executor: Optional[ActionExecutor] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
    **config: object,
) -> AutomationScheduler:
    base = {"poll_interval": 0, "max_workers": 4, "executor_timeout": 0.5}
    base.update(config)
    return AutomationScheduler(
        config=SchedulerConfig(**base),  # type: ignore[arg-type]
        store=stores,
        value_source=value_source,
        executor=executor or PaperActionExecutor(),
        dispatcher=dispatcher,
        clock=clock,
    )


# ========== Auto-invest ==========


class TestAutoInvestCycle:
    """Tests for scheduled auto-invest execution."""

    @pytest.mark.asyncio
    async def test_due_rule_executes_once(
        self,
        scheduler: AutomationScheduler,
        stores: InMemoryStores,
        executor: PaperActionExecutor,
        transport: AsyncMock,
        make_auto_invest: Callable[..., AutoInvestRule],
    ) -> None:
        """A due rule places one order, advances its schedule and notifies."""
        subscribe(stores, "Auto-Invest Executed")
        rule = make_auto_invest()
        stores.insert_rule(rule=rule)

        report = await scheduler.run_cycle()

        assert report.due == 1
        assert report.executed == 1
        stored = stores.get_rule(kind="AutoInvest", rule_id=rule.id)
        assert stored.execution_count == 1
        assert stored.total_invested == Decimal("5000")
        assert stored.next_execution_date == date(2024, 4, 15)
        assert stored.last_execution_status == "Success"

        [entry] = stores.get_execution_logs(automation_id=rule.id)
        assert entry.status == "Success"
        assert entry.order_id == "PAPER-000001"
        assert entry.execution_date == date(2024, 3, 15)
        assert len(executor.executed) == 1
        assert sent_events(transport) == ["Auto-Invest Executed"]

        # Same day again: nothing is due any more
        again = await scheduler.run_cycle()
        assert again.due == 0
        assert count_attempts(stores, rule.id) == (1, 0, 0)

    @pytest.mark.asyncio
    async def test_missed_occurrences_run_once(
        self,
        scheduler: AutomationScheduler,
        stores: InMemoryStores,
        make_auto_invest: Callable[..., AutoInvestRule],
    ) -> None:
        """Two missed months produce a single run, then the next future date."""
        rule = make_auto_invest(next_execution_date=date(2024, 1, 15))
        stores.insert_rule(rule=rule)

        await scheduler.run_cycle()
        await scheduler.run_cycle()

        assert count_attempts(stores, rule.id) == (1, 0, 0)
        assert stores.get_rule(kind="AutoInvest", rule_id=rule.id).next_execution_date == date(2024, 4, 15)

    @pytest.mark.asyncio
    async def test_retired_rules_never_run(
        self,
        scheduler: AutomationScheduler,
        stores: InMemoryStores,
        make_auto_invest: Callable[..., AutoInvestRule],
    ) -> None:
        stores.insert_rule(rule=make_auto_invest(id="AUTO-C", status="Cancelled"))
        stores.insert_rule(rule=make_auto_invest(id="AUTO-D", status="Completed"))
        stores.insert_rule(rule=make_auto_invest(id="AUTO-P", status="Paused"))

        report = await scheduler.run_cycle()

        assert report.due == 0
        assert stores.get_execution_logs() == []

    @pytest.mark.asyncio
    async def test_min_balance_guard_skips_and_advances(
        self,
        scheduler: AutomationScheduler,
        stores: InMemoryStores,
        value_source: StaticValueSource,
        make_auto_invest: Callable[..., AutoInvestRule],
    ) -> None:
        rule = make_auto_invest(min_balance_required=Decimal("1000"))
        stores.insert_rule(rule=rule)
        value_source.set_value(AVAILABLE_BALANCE, CLIENT_ID, "5500")

        report = await scheduler.run_cycle()

        assert report.skipped == 1
        stored = stores.get_rule(kind="AutoInvest", rule_id=rule.id)
        assert stored.execution_count == 0
        assert stored.next_execution_date == date(2024, 4, 15)
        assert stored.last_execution_status == "Skipped"
        [entry] = stores.get_execution_logs(automation_id=rule.id)
        assert "Insufficient balance" in entry.details["reason"]

    @pytest.mark.asyncio
    async def test_total_cap_trims_last_contribution_and_completes(
        self,
        scheduler: AutomationScheduler,
        stores: InMemoryStores,
        executor: PaperActionExecutor,
        make_auto_invest: Callable[..., AutoInvestRule],
    ) -> None:
        rule = make_auto_invest(max_total_amount=Decimal("10000"), total_invested=Decimal("8000"))
        stores.insert_rule(rule=rule)

        await scheduler.run_cycle()

        stored = stores.get_rule(kind="AutoInvest", rule_id=rule.id)
        assert stored.total_invested == Decimal("10000")
        assert stored.status == "Completed"
        [result] = executor.executed.values()
        assert result.raw["amount"] == "2000"

    @pytest.mark.asyncio
    async def test_unmet_trigger_skips_occurrence(
        self,
        scheduler: AutomationScheduler,
        stores: InMemoryStores,
        value_source: StaticValueSource,
        make_auto_invest: Callable[..., AutoInvestRule],
    ) -> None:
        rule = make_auto_invest(
            trigger_type="Market Condition",
            trigger_config={"dayOfMonth": 15, "navChangeThreshold": "3", "marketCondition": "Bear"},
        )
        stores.insert_rule(rule=rule)
        value_source.set_value("NAV Change", CLIENT_ID, "-1.2", ref="501")

        await scheduler.run_cycle()

        assert count_attempts(stores, rule.id) == (0, 0, 1)
        assert stores.get_rule(kind="AutoInvest", rule_id=rule.id).next_execution_date == date(2024, 4, 15)


# ========== Failures ==========


class TestFailureHandling:
    """Tests for executor failures, timeouts and auto-pause."""

    @pytest.mark.asyncio
    async def test_rejection_records_failure_and_keeps_schedule(
        self,
        stores: InMemoryStores,
        value_source: StaticValueSource,
        clock: Callable,
        dispatcher: NotificationDispatcher,
        transport: AsyncMock,
        make_auto_invest: Callable[..., AutoInvestRule],
    ) -> None:
        subscribe(stores, "Auto-Invest Failed")
        scheduler = build_scheduler(
            stores,
            value_source,
            clock,
            executor=PaperActionExecutor(reject_reason="Mandate not registered"),
            dispatcher=dispatcher,
        )
        rule = make_auto_invest()
        stores.insert_rule(rule=rule)

        report = await scheduler.run_cycle()

        assert report.failed == 1
        [entry] = stores.get_execution_logs(automation_id=rule.id)
        assert entry.status == "Failed"
        assert entry.error == "Mandate not registered"
        assert entry.error_kind == "ExecutorFailure"
        stored = stores.get_rule(kind="AutoInvest", rule_id=rule.id)
        assert stored.execution_count == 1
        assert stored.total_invested == Decimal("0")
        assert stored.next_execution_date == date(2024, 3, 15)
        assert sent_events(transport) == ["Auto-Invest Failed"]

    @pytest.mark.asyncio
    async def test_timeout_is_recorded_and_lock_released(
        self,
        stores: InMemoryStores,
        value_source: StaticValueSource,
        clock: Callable,
        make_auto_invest: Callable[..., AutoInvestRule],
    ) -> None:
        scheduler = build_scheduler(
            stores,
            value_source,
            clock,
            executor=PaperActionExecutor(latency=1.0),
            executor_timeout=0.05,
        )
        rule = make_auto_invest()
        stores.insert_rule(rule=rule)

        await scheduler.run_cycle()

        [entry] = stores.get_execution_logs(automation_id=rule.id)
        assert entry.status == "Failed"
        assert entry.error_kind == "Timeout"
        assert stores.leases.holder(rule.id, now=clock()) is None

    @pytest.mark.asyncio
    async def test_consecutive_failures_pause_rule(
        self,
        stores: InMemoryStores,
        value_source: StaticValueSource,
        clock: Callable,
        make_auto_invest: Callable[..., AutoInvestRule],
    ) -> None:
        scheduler = build_scheduler(
            stores,
            value_source,
            clock,
            executor=PaperActionExecutor(reject_reason="RTA down"),
            max_consecutive_failures=3,
        )
        rule = make_auto_invest()
        stores.insert_rule(rule=rule)

        for _ in range(4):
            await scheduler.run_cycle()

        stored = stores.get_rule(kind="AutoInvest", rule_id=rule.id)
        assert stored.status == "Paused"
        successes, failures, _ = count_attempts(stores, rule.id)
        assert failures == 3
        assert stored.execution_count == successes + failures

    @pytest.mark.asyncio
    async def test_rule_error_does_not_abort_cycle(
        self,
        scheduler: AutomationScheduler,
        stores: InMemoryStores,
        value_source: StaticValueSource,
        make_auto_invest: Callable[..., AutoInvestRule],
        make_trigger_order: Callable[..., TriggerOrder],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        async def broken(kind: str, client_id: int, ref: Optional[str] = None) -> Optional[Decimal]:
            raise RuntimeError("valuation service exploded")

        monkeypatch.setattr(value_source, "current_value", broken)
        stores.insert_rule(rule=make_auto_invest())
        stores.insert_rule(rule=make_trigger_order())

        report = await scheduler.run_cycle()

        assert report.due == 2
        assert report.executed == 1
        assert report.errors == 1

    @pytest.mark.asyncio
    async def test_store_outage_aborts_cycle(
        self,
        scheduler: AutomationScheduler,
        stores: InMemoryStores,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        def unavailable(*, now: object) -> list:
            raise StoreUnavailable("connection refused")

        monkeypatch.setattr(stores, "list_due_rules", unavailable)

        with pytest.raises(StoreUnavailable):
            await scheduler.run_cycle()

        status = scheduler.get_status()
        assert status.cycle_count == 1
        assert status.last_cycle_error == "connection refused"

    def test_live_mode_requires_executor(self, stores: InMemoryStores, value_source: StaticValueSource) -> None:
        with pytest.raises(ValueError, match="live ActionExecutor"):
            AutomationScheduler(config=SchedulerConfig(dry_run=False), store=stores, value_source=value_source)

    @pytest.mark.asyncio
    async def test_stale_lease_of_crashed_worker_is_taken_over(
        self,
        scheduler: AutomationScheduler,
        stores: InMemoryStores,
        executor: PaperActionExecutor,
        clock: Callable,
        make_auto_invest: Callable[..., AutoInvestRule],
    ) -> None:
        """A worker died holding the lock; the cycle after expiry runs the rule."""
        rule = make_auto_invest()
        stores.insert_rule(rule=rule)
        stores.try_lock(
            rule_id=rule.id, owner="crashed-worker", lease_until=clock() + timedelta(seconds=60), now=clock()
        )

        report = await scheduler.run_cycle()
        assert report.contended == 1
        assert report.executed == 0
        assert executor.executed == {}

        clock.advance(seconds=61)
        report = await scheduler.run_cycle()

        assert report.executed == 1
        assert len(executor.executed) == 1
        assert count_attempts(stores, rule.id) == (1, 0, 0)
        assert stores.leases.holder(rule.id, now=clock()) is None
        assert len(stores.leases) == 0


# ========== Manual execution ==========


class TestManualExecution:
    """Tests for operator-triggered runs."""

    @pytest.mark.asyncio
    async def test_concurrent_requests_execute_once(
        self,
        stores: InMemoryStores,
        value_source: StaticValueSource,
        clock: Callable,
        make_auto_invest: Callable[..., AutoInvestRule],
    ) -> None:
        """Two simultaneous requests: one order, one LockContention."""
        executor = PaperActionExecutor(latency=0.05)
        scheduler = build_scheduler(stores, value_source, clock, executor=executor)
        rule = make_auto_invest(next_execution_date=date(2024, 4, 15))
        stores.insert_rule(rule=rule)

        results = await asyncio.gather(
            scheduler.manual_execute(rule.id, operator="rm-1"),
            scheduler.manual_execute(rule.id, operator="rm-2"),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, BaseException)]
        entries = [r for r in results if not isinstance(r, BaseException)]
        assert len(entries) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], LockContention)
        assert len(executor.executed) == 1
        assert len(stores.get_execution_logs(automation_id=rule.id)) == 1

    @pytest.mark.asyncio
    async def test_run_without_execution_entry_raises(
        self,
        scheduler: AutomationScheduler,
        stores: InMemoryStores,
        monkeypatch: pytest.MonkeyPatch,
        make_auto_invest: Callable[..., AutoInvestRule],
    ) -> None:
        rule = make_auto_invest()
        stores.insert_rule(rule=rule)
        monkeypatch.setattr(scheduler, "_attempt", AsyncMock(return_value=None))

        with pytest.raises(RuleNotActive, match="produced no execution"):
            await scheduler.manual_execute(rule.id, operator="rm-1")

    @pytest.mark.asyncio
    async def test_second_run_same_day_is_skipped(
        self,
        scheduler: AutomationScheduler,
        stores: InMemoryStores,
        make_auto_invest: Callable[..., AutoInvestRule],
    ) -> None:
        rule = make_auto_invest(next_execution_date=date(2024, 4, 15))
        stores.insert_rule(rule=rule)

        first = await scheduler.manual_execute(rule.id)
        second = await scheduler.manual_execute(rule.id)

        assert first.status == "Success"
        assert second.status == "Skipped"
        assert second.details["reason"] == "Already executed for this date"
        # Manual runs do not move the schedule
        assert stores.get_rule(kind="AutoInvest", rule_id=rule.id).next_execution_date == date(2024, 4, 15)

    @pytest.mark.asyncio
    async def test_paused_rule_cannot_be_run(
        self,
        scheduler: AutomationScheduler,
        stores: InMemoryStores,
        make_auto_invest: Callable[..., AutoInvestRule],
    ) -> None:
        stores.insert_rule(rule=make_auto_invest(status="Paused"))

        with pytest.raises(RuleNotActive):
            await scheduler.manual_execute("AUTO-20240115-00000000A1")
        with pytest.raises(RuleNotFound):
            await scheduler.manual_execute("AUTO-MISSING")

    @pytest.mark.asyncio
    async def test_trigger_order_condition_not_met(
        self,
        scheduler: AutomationScheduler,
        stores: InMemoryStores,
        value_source: StaticValueSource,
        make_trigger_order: Callable[..., TriggerOrder],
    ) -> None:
        order = make_trigger_order(trigger_condition="Less Than", trigger_value=Decimal("40"))
        stores.insert_rule(rule=order)
        value_source.set_value("NAV", CLIENT_ID, "42", ref="501")

        entry = await scheduler.manual_execute(order.id)

        assert entry.status == "Skipped"
        assert entry.details["reason"] == "Trigger condition not met"
        assert stores.get_rule(kind="TriggerOrder", rule_id=order.id).status == "Active"


# ========== Trigger orders ==========


class TestTriggerOrders:
    """Tests for conditional orders."""

    @pytest.mark.asyncio
    async def test_crossing_fires_once(
        self,
        scheduler: AutomationScheduler,
        stores: InMemoryStores,
        value_source: StaticValueSource,
        transport: AsyncMock,
        make_trigger_order: Callable[..., TriggerOrder],
    ) -> None:
        subscribe(stores, "Trigger Order Activated", "Order Executed")
        order = make_trigger_order()
        stores.insert_rule(rule=order)

        value_source.set_value("NAV", CLIENT_ID, "9", ref="501")
        await scheduler.run_cycle()
        observed = stores.get_rule(kind="TriggerOrder", rule_id=order.id)
        assert observed.status == "Active"
        assert observed.last_observed_value == Decimal("9")
        assert stores.get_execution_logs(automation_id=order.id) == []

        value_source.set_value("NAV", CLIENT_ID, "11", ref="501")
        report = await scheduler.run_cycle()
        assert report.executed == 1

        executed = stores.get_rule(kind="TriggerOrder", rule_id=order.id)
        assert executed.status == "Executed"
        assert executed.executed_order_id == "PAPER-000001"
        assert executed.triggered_at is not None
        assert executed.execution_count == 1
        assert sent_events(transport) == ["Trigger Order Activated", "Order Executed"]

        value_source.set_value("NAV", CLIENT_ID, "8", ref="501")
        await scheduler.run_cycle()
        value_source.set_value("NAV", CLIENT_ID, "12", ref="501")
        assert (await scheduler.run_cycle()).due == 0

    @pytest.mark.asyncio
    async def test_staying_above_does_not_fire(
        self,
        scheduler: AutomationScheduler,
        stores: InMemoryStores,
        value_source: StaticValueSource,
        make_trigger_order: Callable[..., TriggerOrder],
    ) -> None:
        order = make_trigger_order(last_observed_value=Decimal("11"))
        stores.insert_rule(rule=order)
        value_source.set_value("NAV", CLIENT_ID, "12", ref="501")

        await scheduler.run_cycle()

        assert stores.get_rule(kind="TriggerOrder", rule_id=order.id).status == "Active"

    @pytest.mark.asyncio
    async def test_triggered_order_retries_without_reevaluating(
        self,
        stores: InMemoryStores,
        value_source: StaticValueSource,
        clock: Callable,
        make_trigger_order: Callable[..., TriggerOrder],
    ) -> None:
        executor = PaperActionExecutor(reject_reason="Cut-off time passed")
        scheduler = build_scheduler(stores, value_source, clock, executor=executor)
        order = make_trigger_order(trigger_condition="Greater Than")
        stores.insert_rule(rule=order)
        value_source.set_value("NAV", CLIENT_ID, "11", ref="501")

        await scheduler.run_cycle()
        failed = stores.get_rule(kind="TriggerOrder", rule_id=order.id)
        assert failed.status == "Triggered"
        assert failed.last_execution_status == "Failed"

        # The market moves back below, but the order already fired
        value_source.set_value("NAV", CLIENT_ID, "9", ref="501")
        executor.reject_reason = None
        await scheduler.run_cycle()

        assert stores.get_rule(kind="TriggerOrder", rule_id=order.id).status == "Executed"
        assert count_attempts(stores, order.id) == (1, 1, 0)

    @pytest.mark.asyncio
    async def test_lapsed_order_expires(
        self,
        scheduler: AutomationScheduler,
        stores: InMemoryStores,
        clock: Callable,
        make_trigger_order: Callable[..., TriggerOrder],
    ) -> None:
        order = make_trigger_order(valid_until=clock() - timedelta(minutes=5))
        stores.insert_rule(rule=order)

        report = await scheduler.run_cycle()

        assert report.retired == 1
        assert stores.get_rule(kind="TriggerOrder", rule_id=order.id).status == "Expired"


# ========== Rebalancing ==========


class TestRebalancing:
    """Tests for drift-triggered and confirmed rebalancing."""

    @pytest.fixture(autouse=True)
    def drifted_portfolio(self, value_source: StaticValueSource) -> None:
        value_source.set_allocation(CLIENT_ID, {"Equity": "66", "Debt": "28", "Gold": "6"})
        value_source.set_value(PORTFOLIO_VALUE, CLIENT_ID, "100000")

    @pytest.mark.asyncio
    async def test_drift_executes_all_legs(
        self,
        scheduler: AutomationScheduler,
        stores: InMemoryStores,
        make_rebalancing: Callable[..., RebalancingRule],
    ) -> None:
        rule = make_rebalancing()
        stores.insert_rule(rule=rule)

        report = await scheduler.run_cycle()
        assert report.executed == 1

        [execution] = stores.list_rebalancing_executions(rule_id=rule.id)
        assert execution.status == "Executed"
        assert execution.drift_percent == Decimal("6")
        assert len(execution.order_ids) == 3
        assert [a.type for a in execution.actions] == ["Redemption", "Purchase", "Purchase"]
        assert stores.get_rule(kind="Rebalancing", rule_id=rule.id).last_rebalanced_date == date(2024, 3, 15)

        # Still drifted later the same day: at most one rebalance per day
        await scheduler.run_cycle()
        assert count_attempts(stores, rule.id) == (1, 0, 0)

    @pytest.mark.asyncio
    async def test_drift_below_threshold_is_silent(
        self,
        scheduler: AutomationScheduler,
        stores: InMemoryStores,
        make_rebalancing: Callable[..., RebalancingRule],
    ) -> None:
        rule = make_rebalancing(threshold_percent=Decimal("10"))
        stores.insert_rule(rule=rule)

        report = await scheduler.run_cycle()

        assert report.due == 1
        assert stores.get_execution_logs(automation_id=rule.id) == []
        assert stores.list_rebalancing_executions(rule_id=rule.id) == []

    @pytest.mark.asyncio
    async def test_confirmation_flow(
        self,
        scheduler: AutomationScheduler,
        stores: InMemoryStores,
        transport: AsyncMock,
        make_rebalancing: Callable[..., RebalancingRule],
    ) -> None:
        subscribe(stores, "Rebalancing Triggered", "Rebalancing Executed")
        rule = make_rebalancing(require_confirmation=True)
        stores.insert_rule(rule=rule)

        await scheduler.run_cycle()
        [pending] = stores.list_rebalancing_executions(rule_id=rule.id)
        assert pending.status == "Pending"
        assert count_attempts(stores, rule.id) == (0, 0, 1)

        # No duplicate proposal while one is waiting
        await scheduler.run_cycle()
        assert len(stores.list_rebalancing_executions(rule_id=rule.id)) == 1

        entry = await scheduler.confirm_rebalancing(pending.id, operator="rm-1")
        assert entry.status == "Success"
        confirmed = stores.get_rebalancing_execution(execution_id=pending.id)
        assert confirmed.status == "Executed"
        assert confirmed.executed_by == "rm-1"
        assert sent_events(transport) == ["Rebalancing Triggered", "Rebalancing Executed"]

        with pytest.raises(InvalidTransition):
            await scheduler.confirm_rebalancing(pending.id, operator="rm-1")

    @pytest.mark.asyncio
    async def test_confirm_rejects_non_rebalancing_rule(
        self,
        scheduler: AutomationScheduler,
        stores: InMemoryStores,
        monkeypatch: pytest.MonkeyPatch,
        make_rebalancing: Callable[..., RebalancingRule],
        make_auto_invest: Callable[..., AutoInvestRule],
    ) -> None:
        rule = make_rebalancing(require_confirmation=True)
        stores.insert_rule(rule=rule)
        await scheduler.run_cycle()
        [pending] = stores.list_rebalancing_executions(rule_id=rule.id)
        monkeypatch.setattr(stores, "get_rule", lambda *, kind, rule_id: make_auto_invest())

        with pytest.raises(TypeError, match="is not a rebalancing rule"):
            await scheduler.confirm_rebalancing(pending.id, operator="rm-1")

        assert stores.get_rebalancing_execution(execution_id=pending.id).status == "Pending"

    @pytest.mark.asyncio
    async def test_cancelled_proposal_cannot_be_confirmed(
        self,
        scheduler: AutomationScheduler,
        stores: InMemoryStores,
        make_rebalancing: Callable[..., RebalancingRule],
    ) -> None:
        rule = make_rebalancing(execute_automatically=False)
        stores.insert_rule(rule=rule)
        await scheduler.run_cycle()
        [pending] = stores.list_rebalancing_executions(rule_id=rule.id)

        cancelled = scheduler.cancel_rebalancing(pending.id, operator="rm-1")

        assert cancelled.status == "Cancelled"
        with pytest.raises(InvalidTransition):
            await scheduler.confirm_rebalancing(pending.id, operator="rm-1")

    @pytest.mark.asyncio
    async def test_failed_leg_marks_execution_failed(
        self,
        stores: InMemoryStores,
        value_source: StaticValueSource,
        clock: Callable,
        dispatcher: NotificationDispatcher,
        transport: AsyncMock,
        make_rebalancing: Callable[..., RebalancingRule],
    ) -> None:
        subscribe(stores, "Portfolio Alert")
        scheduler = build_scheduler(
            stores,
            value_source,
            clock,
            executor=PaperActionExecutor(reject_reason="Exit load window"),
            dispatcher=dispatcher,
        )
        rule = make_rebalancing()
        stores.insert_rule(rule=rule)

        report = await scheduler.run_cycle()

        assert report.failed == 1
        [execution] = stores.list_rebalancing_executions(rule_id=rule.id)
        assert execution.status == "Failed"
        assert execution.error == "Exit load window"
        assert sent_events(transport) == ["Portfolio Alert"]

    @pytest.mark.asyncio
    async def test_retry_after_partial_failure_places_new_orders(
        self,
        stores: InMemoryStores,
        value_source: StaticValueSource,
        clock: Callable,
        make_rebalancing: Callable[..., RebalancingRule],
    ) -> None:
        """A fresh plan after a failed leg must not reuse the failed run's orders."""
        executor = RejectLegOnce(leg=2)
        scheduler = build_scheduler(stores, value_source, clock, executor=executor)
        rule = make_rebalancing()
        stores.insert_rule(rule=rule)

        await scheduler.run_cycle()
        [failed] = stores.list_rebalancing_executions(rule_id=rule.id)
        assert failed.status == "Failed"
        assert failed.order_ids == ("PAPER-000001",)

        value_source.set_allocation(CLIENT_ID, {"Equity": "60", "Debt": "24", "Gold": "16"})
        clock.advance(minutes=1)
        report = await scheduler.run_cycle()

        assert report.executed == 1
        retried = next(e for e in stores.list_rebalancing_executions(rule_id=rule.id) if e.id != failed.id)
        assert retried.status == "Executed"
        assert [(a.type, a.asset_class) for a in retried.actions] == [("Redemption", "Gold"), ("Purchase", "Debt")]
        assert retried.order_ids == ("PAPER-000002", "PAPER-000003")
        assert len(executor.inner.executed) == 3
        assert count_attempts(stores, rule.id) == (1, 1, 0)


# ========== Loop ==========


class TestSchedulerLoop:
    @pytest.mark.asyncio
    async def test_run_stops_after_max_iterations(
        self,
        stores: InMemoryStores,
        value_source: StaticValueSource,
        clock: Callable,
        make_auto_invest: Callable[..., AutoInvestRule],
    ) -> None:
        scheduler = build_scheduler(stores, value_source, clock, max_iterations=2)
        stores.insert_rule(rule=make_auto_invest())

        await scheduler.run()

        status = scheduler.get_status()
        assert status.cycle_count == 2
        assert status.running is False
        assert status.rules_executed_last_cycle == 0
        assert count_attempts(stores, "AUTO-20240115-00000000A1") == (1, 0, 0)
