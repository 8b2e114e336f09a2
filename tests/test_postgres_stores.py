"""Tests for the SQL-backed stores.

Runs against in-memory SQLite; the schema avoids PostgreSQL-only types outside
dialect variants, so the same models serve both.
"""

from dataclasses import replace
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Callable

import pytest
from sqlalchemy.engine import Engine

from wealthauto.automation.audit import ExecutionAuditLog
from wealthauto.automation.scheduler import AutomationScheduler
from wealthauto.config import SchedulerConfig
from wealthauto.errors import DuplicateRecord, RuleNotFound
from wealthauto.execution.paper import PaperActionExecutor
from wealthauto.market_data.static import StaticValueSource
from wealthauto.storage.postgres import PostgresConfig, PostgresStores
from wealthauto.types import (
    AuthorizationRecord,
    AutoInvestRule,
    ExecutionUpdate,
    NotificationLog,
    NotificationPreference,
    QuietHours,
    RebalancingAction,
    RebalancingExecution,
    RebalancingRule,
    TriggerOrder,
)

NOW = datetime(2024, 3, 15, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def sql_stores(sqlite_engine: Engine) -> PostgresStores:
    stores = PostgresStores(config=PostgresConfig(database_url="sqlite://"), engine=sqlite_engine)
    stores.create_schema()
    return stores


class TestRuleStore:
    """Tests for rule persistence."""

    def test_auto_invest_round_trip(
        self, sql_stores: PostgresStores, make_auto_invest: Callable[..., AutoInvestRule]
    ) -> None:
        rule = make_auto_invest(max_total_amount=Decimal("60000"))
        sql_stores.insert_rule(rule=rule)

        loaded = sql_stores.get_rule(kind="AutoInvest", rule_id=rule.id)

        assert isinstance(loaded, AutoInvestRule)
        assert loaded.amount == Decimal("5000")
        assert loaded.max_total_amount == Decimal("60000")
        assert loaded.next_execution_date == date(2024, 3, 15)
        assert loaded.trigger_config == {"dayOfMonth": 15}
        assert loaded.created_at == rule.created_at
        assert loaded.created_at.tzinfo is not None
        assert sql_stores.find_rule(rule_id=rule.id) == loaded

    def test_rebalancing_and_trigger_round_trip(
        self,
        sql_stores: PostgresStores,
        make_rebalancing: Callable[..., RebalancingRule],
        make_trigger_order: Callable[..., TriggerOrder],
    ) -> None:
        sql_stores.insert_rule(rule=make_rebalancing())
        sql_stores.insert_rule(rule=make_trigger_order())

        rebalancing = sql_stores.get_rule(kind="Rebalancing", rule_id="REBAL-20240101-00000000B1")
        order = sql_stores.find_rule(rule_id="TRIGGER-20240301-00000000C1")

        assert rebalancing.target_allocation == {
            "Equity": Decimal("60"),
            "Debt": Decimal("30"),
            "Gold": Decimal("10"),
        }
        assert isinstance(order, TriggerOrder)
        assert order.valid_from == NOW - timedelta(days=1)
        assert [r.kind for r in sql_stores.list_rules(client_id=101)] == ["TriggerOrder", "Rebalancing"]

    def test_duplicate_id_rejected_across_kinds(
        self,
        sql_stores: PostgresStores,
        make_auto_invest: Callable[..., AutoInvestRule],
        make_trigger_order: Callable[..., TriggerOrder],
    ) -> None:
        sql_stores.insert_rule(rule=make_auto_invest(id="RULE-1"))
        with pytest.raises(DuplicateRecord):
            sql_stores.insert_rule(rule=make_trigger_order(id="RULE-1"))

    def test_save_unknown_rule(self, sql_stores: PostgresStores, make_auto_invest: Callable[..., AutoInvestRule]) -> None:
        with pytest.raises(RuleNotFound):
            sql_stores.save_rule(rule=make_auto_invest())

    def test_due_and_lapsed_lists(
        self,
        sql_stores: PostgresStores,
        make_auto_invest: Callable[..., AutoInvestRule],
        make_trigger_order: Callable[..., TriggerOrder],
    ) -> None:
        sql_stores.insert_rule(rule=make_auto_invest(id="AUTO-DUE"))
        sql_stores.insert_rule(rule=make_auto_invest(id="AUTO-LATER", next_execution_date=date(2024, 4, 15)))
        sql_stores.insert_rule(rule=make_auto_invest(id="AUTO-PAUSED", status="Paused"))
        sql_stores.insert_rule(rule=make_auto_invest(id="AUTO-ENDED", end_date=date(2024, 3, 1)))
        sql_stores.insert_rule(rule=make_trigger_order(id="TRIGGER-LIVE"))
        sql_stores.insert_rule(rule=make_trigger_order(id="TRIGGER-OFF", is_enabled=False))
        sql_stores.insert_rule(rule=make_trigger_order(id="TRIGGER-GONE", valid_until=NOW - timedelta(hours=1)))

        due = {r.id for r in sql_stores.list_due_rules(now=NOW)}
        lapsed = {r.id for r in sql_stores.list_lapsed_rules(now=NOW)}

        assert due == {"AUTO-DUE", "TRIGGER-LIVE"}
        assert lapsed == {"AUTO-ENDED", "TRIGGER-GONE"}

    def test_update_after_execution_increments(
        self, sql_stores: PostgresStores, make_auto_invest: Callable[..., AutoInvestRule]
    ) -> None:
        rule = make_auto_invest(total_invested=Decimal("10000"), execution_count=2)
        sql_stores.insert_rule(rule=rule)

        sql_stores.update_rule_after_execution(
            update=ExecutionUpdate(
                kind="AutoInvest",
                rule_id=rule.id,
                execution_date=date(2024, 3, 15),
                execution_status="Success",
                execution_count_delta=1,
                next_due=date(2024, 4, 15),
                invested_delta=Decimal("5000"),
            )
        )

        loaded = sql_stores.get_rule(kind="AutoInvest", rule_id=rule.id)
        assert loaded.execution_count == 3
        assert loaded.total_invested == Decimal("15000")
        assert loaded.next_execution_date == date(2024, 4, 15)
        assert loaded.last_execution_status == "Success"

        with pytest.raises(RuleNotFound):
            sql_stores.update_rule_after_execution(
                update=ExecutionUpdate(
                    kind="AutoInvest", rule_id="AUTO-MISSING", execution_date=date(2024, 3, 15), execution_status="Failed"
                )
            )


class TestLocks:
    def test_lease_exclusion_and_expiry(self, sql_stores: PostgresStores) -> None:
        lease = NOW + timedelta(minutes=5)

        assert sql_stores.try_lock(rule_id="AUTO-1", owner="a", lease_until=lease, now=NOW) is True
        assert sql_stores.try_lock(rule_id="AUTO-1", owner="b", lease_until=lease, now=NOW) is False

        # Unlock by a non-owner is a no-op
        sql_stores.unlock(rule_id="AUTO-1", owner="b")
        assert sql_stores.try_lock(rule_id="AUTO-1", owner="b", lease_until=lease, now=NOW) is False

        later = NOW + timedelta(minutes=6)
        assert sql_stores.try_lock(rule_id="AUTO-1", owner="b", lease_until=later + timedelta(minutes=5), now=later)

    def test_unlock_releases(self, sql_stores: PostgresStores) -> None:
        lease = NOW + timedelta(minutes=5)
        sql_stores.try_lock(rule_id="AUTO-1", owner="a", lease_until=lease, now=NOW)
        sql_stores.unlock(rule_id="AUTO-1", owner="a")
        assert sql_stores.try_lock(rule_id="AUTO-1", owner="b", lease_until=lease, now=NOW) is True


class TestExecutionRecords:
    def test_one_success_per_date(
        self, sql_stores: PostgresStores, make_auto_invest: Callable[..., AutoInvestRule]
    ) -> None:
        audit = ExecutionAuditLog(sql_stores, clock=lambda: NOW)
        rule = make_auto_invest()
        audit.record_failure(rule=rule, execution_date=date(2024, 3, 15), error="timeout", error_kind="Timeout")
        audit.record_success(rule=rule, execution_date=date(2024, 3, 15), order_id="PAPER-000001")

        with pytest.raises(DuplicateRecord):
            audit.record_success(rule=rule, execution_date=date(2024, 3, 15), order_id="PAPER-000002")

        logs = sql_stores.get_execution_logs(automation_id=rule.id)
        assert [e.status for e in logs] == ["Success", "Failed"]
        assert logs[1].error_kind == "Timeout"
        assert audit.has_success(kind="AutoInvest", rule_id=rule.id, execution_date=date(2024, 3, 15))

    def test_rebalancing_execution_round_trip(self, sql_stores: PostgresStores) -> None:
        execution = RebalancingExecution(
            id="REBAL-EXEC-1",
            rule_id="REBAL-1",
            client_id=101,
            execution_date=date(2024, 3, 15),
            status="Pending",
            current_allocation={"Equity": Decimal("66"), "Debt": Decimal("34")},
            target_allocation={"Equity": Decimal("60"), "Debt": Decimal("40")},
            drift_percent=Decimal("6"),
            actions=(
                RebalancingAction(type="Redemption", asset_class="Equity", amount=Decimal("6000"), reason="over"),
                RebalancingAction(type="Purchase", asset_class="Debt", amount=Decimal("6000"), reason="under"),
            ),
            created_at=NOW,
        )
        sql_stores.insert_rebalancing_execution(execution=execution)
        sql_stores.save_rebalancing_execution(
            execution=replace(execution, status="Executed", order_ids=("PAPER-000001", "PAPER-000002"))
        )

        [loaded] = sql_stores.list_rebalancing_executions(rule_id="REBAL-1")
        assert loaded.status == "Executed"
        assert loaded.order_ids == ("PAPER-000001", "PAPER-000002")
        assert loaded.actions[0] == execution.actions[0]
        assert loaded.current_allocation["Equity"] == Decimal("66")


class TestNotificationStore:
    def test_preference_round_trip(self, sql_stores: PostgresStores) -> None:
        preference = NotificationPreference(
            id="NOTIF-PREF-1",
            client_id=101,
            event="Order Executed",
            channels=("Email", "SMS"),
            quiet_hours=QuietHours(start=time(22, 0), end=time(7, 0)),
            min_amount=Decimal("1000"),
            schemes=(501,),
            created_at=NOW,
        )
        sql_stores.insert_preference(preference=preference)
        sql_stores.save_preference(preference=replace(preference, enabled=False))

        [loaded] = sql_stores.list_preferences(client_id=101, event="Order Executed")
        assert loaded.channels == ("Email", "SMS")
        assert loaded.quiet_hours == preference.quiet_hours
        assert loaded.schemes == (501,)
        assert loaded.enabled is False
        assert sql_stores.list_preferences(client_id=101, enabled_only=True) == []
        assert sql_stores.delete_preference(preference_id="NOTIF-PREF-1") is True
        assert sql_stores.delete_preference(preference_id="NOTIF-PREF-1") is False

    def test_notification_log_dedup_and_marking(self, sql_stores: PostgresStores) -> None:
        log = NotificationLog(
            id="NOTIF-LOG-1",
            client_id=101,
            event="Order Executed",
            channel="SMS",
            status="Pending",
            dedup_key="AUTO-1:2024-03-15:Order Executed:SMS",
            deliver_after=NOW + timedelta(hours=1),
            metadata={"order_id": "PAPER-000001"},
            created_at=NOW,
        )
        sql_stores.insert_notification_log(log=log)
        with pytest.raises(DuplicateRecord):
            sql_stores.insert_notification_log(log=replace(log, id="NOTIF-LOG-2"))

        assert sql_stores.list_deferred_notifications(due_before=NOW) == []
        [deferred] = sql_stores.list_deferred_notifications(due_before=NOW + timedelta(hours=1))
        assert deferred.metadata == {"order_id": "PAPER-000001"}

        sent_at = NOW + timedelta(hours=1)
        sql_stores.mark_notification(log_id=log.id, status="Sent", sent_at=sent_at)
        # Only Pending rows move
        sql_stores.mark_notification(log_id=log.id, status="Failed", error="late")

        [stored] = sql_stores.get_notification_logs(client_id=101)
        assert stored.status == "Sent"
        assert stored.sent_at == sent_at
        assert stored.error is None


class TestAuthorizationStore:
    def test_compare_and_set(self, sql_stores: PostgresStores) -> None:
        record = AuthorizationRecord(id="AUTH-1", order_ref="ORD-1", created_at=NOW)
        sql_stores.insert_authorization(record=record)

        claimed = replace(record, state="Claimed", claimed_by="alice", claim_expires_at=NOW + timedelta(minutes=15))
        assert sql_stores.compare_and_set_authorization(record=claimed, expected_version=0) is True
        assert sql_stores.compare_and_set_authorization(record=claimed, expected_version=0) is False

        loaded = sql_stores.get_authorization(record_id="AUTH-1")
        assert loaded.version == 1
        assert loaded.claimed_by == "alice"
        assert loaded.claim_expires_at == NOW + timedelta(minutes=15)


class TestSchedulerOnSql:
    @pytest.mark.asyncio
    async def test_cycle_against_sql_store(
        self, sql_stores: PostgresStores, make_auto_invest: Callable[..., AutoInvestRule]
    ) -> None:
        rule = make_auto_invest()
        sql_stores.insert_rule(rule=rule)
        scheduler = AutomationScheduler(
            config=SchedulerConfig(executor_timeout=1.0),
            store=sql_stores,
            value_source=StaticValueSource(),
            executor=PaperActionExecutor(),
            clock=lambda: NOW,
        )

        first = await scheduler.run_cycle()
        second = await scheduler.run_cycle()

        assert first.executed == 1
        assert second.due == 0
        loaded = sql_stores.get_rule(kind="AutoInvest", rule_id=rule.id)
        assert loaded.execution_count == 1
        assert loaded.next_execution_date == date(2024, 4, 15)
        assert len(sql_stores.get_execution_logs(automation_id=rule.id)) == 1
