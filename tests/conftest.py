"""Shared test fixtures for pytest.

Provides a fixed clock, in-memory stores, rule factories and a scheduler wired
to the paper executor. All rules belong to client 101 unless overridden.
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Iterator
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from wealthauto.automation.scheduler import AutomationScheduler
from wealthauto.config import NotificationSettings, SchedulerConfig
from wealthauto.execution.paper import PaperActionExecutor
from wealthauto.market_data.static import StaticValueSource
from wealthauto.notifications.dispatcher import NotificationDispatcher
from wealthauto.storage.memory import InMemoryStores
from wealthauto.types import AutoInvestRule, RebalancingRule, TriggerOrder

# Friday, mid-month, mid-morning UTC
FIXED_NOW = datetime(2024, 3, 15, 9, 30, tzinfo=timezone.utc)

CLIENT_ID = 101


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(FIXED_NOW)


@pytest.fixture
def stores() -> InMemoryStores:
    return InMemoryStores()


@pytest.fixture
def value_source() -> StaticValueSource:
    return StaticValueSource()


@pytest.fixture
def executor() -> PaperActionExecutor:
    return PaperActionExecutor()


@pytest.fixture
def scheduler_config() -> SchedulerConfig:
    return SchedulerConfig(poll_interval=1, max_workers=4, executor_timeout=0.5, lock_lease_seconds=60)


@pytest.fixture
def transport() -> AsyncMock:
    """Notification transport that records every send."""
    mock = AsyncMock()
    mock.send = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def dispatcher(stores: InMemoryStores, transport: AsyncMock, clock: FixedClock) -> NotificationDispatcher:
    return NotificationDispatcher(
        store=stores,
        transport=transport,
        settings=NotificationSettings(timezone="UTC"),
        clock=clock,
    )


@pytest.fixture
def scheduler(
    scheduler_config: SchedulerConfig,
    stores: InMemoryStores,
    value_source: StaticValueSource,
    executor: PaperActionExecutor,
    dispatcher: NotificationDispatcher,
    clock: FixedClock,
) -> AutomationScheduler:
    return AutomationScheduler(
        config=scheduler_config,
        store=stores,
        value_source=value_source,
        executor=executor,
        dispatcher=dispatcher,
        clock=clock,
    )


# ========== Rule factories ==========


def _auto_invest_rule(**overrides: Any) -> AutoInvestRule:
    fields: dict[str, Any] = {
        "id": "AUTO-20240115-00000000A1",
        "client_id": CLIENT_ID,
        "name": "Monthly SIP",
        "scheme_id": 501,
        "amount": Decimal("5000"),
        "frequency": "Monthly",
        "start_date": date(2024, 1, 15),
        "next_execution_date": date(2024, 3, 15),
        "trigger_config": {"dayOfMonth": 15},
        "created_at": FIXED_NOW - timedelta(days=60),
    }
    fields.update(overrides)
    return AutoInvestRule(**fields)


def _rebalancing_rule(**overrides: Any) -> RebalancingRule:
    fields: dict[str, Any] = {
        "id": "REBAL-20240101-00000000B1",
        "client_id": CLIENT_ID,
        "name": "Balanced 60/30/10",
        "strategy": "Threshold-Based",
        "target_allocation": {"Equity": Decimal("60"), "Debt": Decimal("30"), "Gold": Decimal("10")},
        "threshold_percent": Decimal("5"),
        "created_at": FIXED_NOW - timedelta(days=30),
    }
    fields.update(overrides)
    return RebalancingRule(**fields)


def _trigger_order(**overrides: Any) -> TriggerOrder:
    fields: dict[str, Any] = {
        "id": "TRIGGER-20240301-00000000C1",
        "client_id": CLIENT_ID,
        "name": "Buy the dip",
        "trigger_type": "NAV",
        "trigger_condition": "Crosses Above",
        "trigger_value": Decimal("10"),
        "order_type": "Purchase",
        "scheme_id": 501,
        "amount": Decimal("2500"),
        "valid_from": FIXED_NOW - timedelta(days=1),
        "created_at": FIXED_NOW - timedelta(days=1),
    }
    fields.update(overrides)
    return TriggerOrder(**fields)


@pytest.fixture
def make_auto_invest() -> Callable[..., AutoInvestRule]:
    return _auto_invest_rule


@pytest.fixture
def make_rebalancing() -> Callable[..., RebalancingRule]:
    return _rebalancing_rule


@pytest.fixture
def make_trigger_order() -> Callable[..., TriggerOrder]:
    return _trigger_order


# ========== SQL ==========


@pytest.fixture
def sqlite_engine() -> Iterator[Engine]:
    """In-memory SQLite engine shared across connections."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield engine
    engine.dispose()
