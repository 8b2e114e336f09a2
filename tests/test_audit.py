"""Tests for the execution audit log."""

import json
from datetime import date
from decimal import Decimal
from typing import Callable

import pytest

from wealthauto.automation.audit import ExecutionAuditLog, to_jsonable
from wealthauto.errors import DuplicateRecord
from wealthauto.storage.memory import InMemoryStores
from wealthauto.types import AutoInvestRule

DAY = date(2024, 3, 15)


class TestExecutionAuditLog:
    """Tests for ExecutionAuditLog."""

    def test_record_success(
        self,
        stores: InMemoryStores,
        clock: Callable,
        make_auto_invest: Callable[..., AutoInvestRule],
    ) -> None:
        audit = ExecutionAuditLog(stores, clock=clock)
        rule = make_auto_invest()

        entry = audit.record_success(rule=rule, execution_date=DAY, order_id="PAPER-000001", details={"amount": Decimal("5000")})

        assert entry.automation_type == "AutoInvest"
        assert entry.automation_id == rule.id
        assert entry.client_id == rule.client_id
        assert entry.status == "Success"
        assert entry.details == {"amount": "5000"}
        assert entry.id.startswith("LOG-20240315-")
        assert audit.has_success(kind="AutoInvest", rule_id=rule.id, execution_date=DAY) is True

    def test_second_success_same_date_rejected(
        self,
        stores: InMemoryStores,
        make_auto_invest: Callable[..., AutoInvestRule],
    ) -> None:
        audit = ExecutionAuditLog(stores)
        rule = make_auto_invest()
        audit.record_success(rule=rule, execution_date=DAY, order_id="A")

        with pytest.raises(DuplicateRecord):
            audit.record_success(rule=rule, execution_date=DAY, order_id="B")

        # A different date is a different occurrence
        audit.record_success(rule=rule, execution_date=date(2024, 4, 15), order_id="C")

    def test_skip_stores_reason(self, stores: InMemoryStores, make_auto_invest: Callable[..., AutoInvestRule]) -> None:
        audit = ExecutionAuditLog(stores)
        entry = audit.record_skip(rule=make_auto_invest(), execution_date=DAY, reason="Insufficient balance")
        assert entry.status == "Skipped"
        assert entry.details["reason"] == "Insufficient balance"

    def test_failure_carries_error_kind(
        self, stores: InMemoryStores, make_auto_invest: Callable[..., AutoInvestRule]
    ) -> None:
        audit = ExecutionAuditLog(stores)
        entry = audit.record_failure(
            rule=make_auto_invest(), execution_date=DAY, error="timed out", error_kind="Timeout"
        )
        assert entry.status == "Failed"
        assert entry.error_kind == "Timeout"

    def test_consecutive_failures_ignores_skips(
        self, stores: InMemoryStores, make_auto_invest: Callable[..., AutoInvestRule]
    ) -> None:
        audit = ExecutionAuditLog(stores)
        rule = make_auto_invest()
        audit.record_success(rule=rule, execution_date=date(2024, 1, 15), order_id="A")
        audit.record_failure(rule=rule, execution_date=date(2024, 2, 15), error="x")
        audit.record_skip(rule=rule, execution_date=date(2024, 2, 16), reason="guard")
        audit.record_failure(rule=rule, execution_date=date(2024, 3, 15), error="y")

        assert audit.consecutive_failures(kind="AutoInvest", rule_id=rule.id) == 2

    def test_history_newest_first_and_json_export(
        self, stores: InMemoryStores, make_auto_invest: Callable[..., AutoInvestRule]
    ) -> None:
        audit = ExecutionAuditLog(stores)
        rule = make_auto_invest()
        audit.record_skip(rule=rule, execution_date=date(2024, 2, 15), reason="first")
        audit.record_skip(rule=rule, execution_date=date(2024, 3, 15), reason="second")

        history = audit.history(rule_id=rule.id)
        assert [e.details["reason"] for e in history] == ["second", "first"]

        exported = audit.to_json_list(history)
        assert exported[0]["execution_date"] == "2024-03-15"
        json.dumps(exported)

    def test_to_jsonable(self) -> None:
        value = {"a": Decimal("1.50"), "b": [date(2024, 1, 2)], "c": None}
        assert to_jsonable(value) == {"a": "1.50", "b": ["2024-01-02"], "c": None}
