from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import ClassVar, Literal, Mapping, Optional, Union

RuleKind = Literal["AutoInvest", "Rebalancing", "TriggerOrder"]
Frequency = Literal["Daily", "Weekly", "Monthly", "Quarterly"]

AutoInvestTriggerType = Literal["Date", "Goal Progress", "Portfolio Drift", "Market Condition"]
RuleStatus = Literal["Active", "Paused", "Cancelled", "Completed"]

RebalancingStrategy = Literal["Threshold-Based", "Time-Based", "Drift-Based", "Hybrid"]
RebalancingExecutionStatus = Literal["Pending", "Executed", "Failed", "Cancelled"]

TriggerType = Literal["Price", "NAV", "Portfolio Value", "Goal Progress", "Date", "Custom"]
TriggerCondition = Literal["Greater Than", "Less Than", "Equals", "Crosses Above", "Crosses Below"]
TriggerOrderStatus = Literal["Active", "Triggered", "Executed", "Cancelled", "Expired"]
OrderType = Literal["Purchase", "Redemption", "Switch"]

NotificationChannel = Literal["Email", "SMS", "Push", "In-App"]
NotificationEvent = Literal[
    "Order Submitted",
    "Order Executed",
    "Order Failed",
    "Order Settled",
    "Auto-Invest Executed",
    "Auto-Invest Failed",
    "Rebalancing Triggered",
    "Rebalancing Executed",
    "Trigger Order Activated",
    "Goal Milestone Reached",
    "Portfolio Alert",
    "Market Update",
]
NotificationStatus = Literal["Sent", "Failed", "Pending"]

ExecutionStatus = Literal["Success", "Failed", "Skipped"]
ErrorKind = Literal["ExecutorFailure", "Timeout"]

AuthorizationState = Literal["PendingApproval", "Claimed", "InProgress", "Authorized", "Rejected"]


def utc_now() -> datetime:
    """Return a timezone-aware timestamp in UTC."""
    return datetime.now(timezone.utc)


RULE_KINDS: tuple[RuleKind, ...] = ("AutoInvest", "Rebalancing", "TriggerOrder")
NOTIFICATION_CHANNELS: tuple[NotificationChannel, ...] = ("Email", "SMS", "Push", "In-App")


# ---- Rule families


@dataclass(frozen=True)
class AutoInvestRule:
    """Recurring contribution into one scheme.

    `trigger_config` keys: dayOfMonth, dayOfWeek (0=Sunday), time,
    goalProgressThreshold, goalProgressDirection, driftThreshold,
    navChangeThreshold.
    """

    kind: ClassVar[RuleKind] = "AutoInvest"

    id: str
    client_id: int
    name: str
    scheme_id: int
    amount: Decimal
    frequency: Frequency
    start_date: date
    next_execution_date: date
    trigger_type: AutoInvestTriggerType = "Date"
    trigger_config: Mapping[str, object] = field(default_factory=dict)
    description: Optional[str] = None
    goal_id: Optional[int] = None
    end_date: Optional[date] = None
    status: RuleStatus = "Active"
    is_enabled: bool = True
    max_total_amount: Optional[Decimal] = None
    max_per_execution: Optional[Decimal] = None
    min_balance_required: Optional[Decimal] = None
    execution_count: int = 0
    total_invested: Decimal = Decimal("0")
    last_execution_date: Optional[date] = None
    last_execution_status: Optional[ExecutionStatus] = None
    last_execution_error: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class RebalancingRule:
    kind: ClassVar[RuleKind] = "Rebalancing"

    id: str
    client_id: int
    name: str
    strategy: RebalancingStrategy
    target_allocation: Mapping[str, Decimal]
    threshold_percent: Decimal
    trigger_on_drift: bool = True
    trigger_on_schedule: bool = False
    execute_automatically: bool = True
    require_confirmation: bool = False
    description: Optional[str] = None
    rebalance_amount: Optional[Decimal] = None
    min_drift_percent: Optional[Decimal] = None
    frequency: Optional[Frequency] = None
    day_of_month: Optional[int] = None
    day_of_week: Optional[int] = None
    next_rebalancing_date: Optional[date] = None
    last_rebalanced_date: Optional[date] = None
    status: RuleStatus = "Active"
    is_enabled: bool = True
    execution_count: int = 0
    last_execution_date: Optional[date] = None
    last_execution_status: Optional[ExecutionStatus] = None
    last_execution_error: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class RebalancingAction:
    type: OrderType
    asset_class: str
    amount: Decimal
    reason: str
    scheme_id: Optional[int] = None
    units: Optional[Decimal] = None


@dataclass(frozen=True)
class RebalancingExecution:
    id: str
    rule_id: str
    client_id: int
    execution_date: date
    status: RebalancingExecutionStatus
    current_allocation: Mapping[str, Decimal]
    target_allocation: Mapping[str, Decimal]
    drift_percent: Decimal
    actions: tuple[RebalancingAction, ...] = ()
    order_ids: tuple[str, ...] = ()
    executed_at: Optional[datetime] = None
    executed_by: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class TriggerOrder:
    """Conditional order. Status only ever moves forward."""

    kind: ClassVar[RuleKind] = "TriggerOrder"

    id: str
    client_id: int
    name: str
    trigger_type: TriggerType
    trigger_condition: TriggerCondition
    trigger_value: Decimal
    order_type: OrderType
    scheme_id: int
    valid_from: datetime
    amount: Optional[Decimal] = None
    units: Optional[Decimal] = None
    target_scheme_id: Optional[int] = None
    trigger_field: Optional[str] = None
    goal_id: Optional[int] = None
    description: Optional[str] = None
    valid_until: Optional[datetime] = None
    status: TriggerOrderStatus = "Active"
    is_enabled: bool = True
    last_observed_value: Optional[Decimal] = None
    triggered_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    executed_order_id: Optional[str] = None
    execution_count: int = 0
    last_execution_date: Optional[date] = None
    last_execution_status: Optional[ExecutionStatus] = None
    last_execution_error: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


AutomationRule = Union[AutoInvestRule, RebalancingRule, TriggerOrder]


# ---- Notifications


@dataclass(frozen=True)
class QuietHours:
    """Local-time window `[start, end)`; wraps past midnight when start > end."""

    start: time
    end: time

    def contains(self, moment: time) -> bool:
        if self.start == self.end:
            return False
        if self.start < self.end:
            return self.start <= moment < self.end
        return moment >= self.start or moment < self.end


@dataclass(frozen=True)
class NotificationPreference:
    id: str
    client_id: int
    event: NotificationEvent
    channels: tuple[NotificationChannel, ...]
    enabled: bool = True
    quiet_hours: Optional[QuietHours] = None
    min_amount: Optional[Decimal] = None
    schemes: tuple[int, ...] = ()
    user_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class NotificationLog:
    id: str
    client_id: int
    event: NotificationEvent
    channel: NotificationChannel
    status: NotificationStatus
    subject: str = ""
    message: str = ""
    dedup_key: Optional[str] = None
    deliver_after: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    error: Optional[str] = None
    metadata: Mapping[str, object] = field(default_factory=dict)
    user_id: Optional[int] = None
    created_at: Optional[datetime] = None


# ---- Execution


@dataclass(frozen=True)
class AutomationExecutionLog:
    id: str
    automation_type: RuleKind
    automation_id: str
    client_id: int
    execution_date: date
    status: ExecutionStatus
    order_id: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    details: Mapping[str, object] = field(default_factory=dict)
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class ExecutionAction:
    """Order handed to the action executor.

    Rebalancing runs produce one action per leg. Their keys hang off the
    rebalancing execution, so a fresh plan after a failed run never
    collides with the legs of the failed one.
    """

    automation_type: RuleKind
    automation_id: str
    client_id: int
    execution_date: date
    order_type: OrderType
    scheme_id: Optional[int]
    amount: Optional[Decimal] = None
    units: Optional[Decimal] = None
    target_scheme_id: Optional[int] = None
    leg: int = 0
    execution_id: Optional[str] = None
    metadata: Mapping[str, str] = field(default_factory=dict)

    @property
    def idempotency_key(self) -> str:
        if self.execution_id is not None:
            return f"{self.execution_id}:{self.leg}"
        key = f"{self.automation_id}:{self.execution_date.isoformat()}"
        return key if self.leg == 0 else f"{key}:{self.leg}"


@dataclass(frozen=True)
class ExecutionResult:
    dry_run: bool
    accepted: bool
    reason: str
    order_id: Optional[str] = None
    raw: Optional[Mapping[str, object]] = None


@dataclass(frozen=True)
class ExecutionUpdate:
    """Scheduler-owned fields written back after one attempt."""

    kind: RuleKind
    rule_id: str
    execution_date: date
    execution_status: ExecutionStatus
    execution_count_delta: int = 0
    next_due: Optional[date] = None
    status: Optional[str] = None
    error: Optional[str] = None
    invested_delta: Decimal = Decimal("0")
    order_id: Optional[str] = None
    executed_at: Optional[datetime] = None


@dataclass(frozen=True)
class SchedulerStatus:
    last_cycle_at: Optional[datetime] = None
    rules_due_count: int = 0
    rules_failed_last_cycle: int = 0
    rules_executed_last_cycle: int = 0
    rules_skipped_last_cycle: int = 0
    cycle_count: int = 0
    last_cycle_error: Optional[str] = None
    running: bool = False


# ---- Manual authorization


@dataclass(frozen=True)
class AuthorizationRecord:
    """Order awaiting dual-control approval."""

    id: str
    order_ref: Optional[str] = None
    state: AuthorizationState = "PendingApproval"
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    claim_expires_at: Optional[datetime] = None
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    version: int = 0
    created_at: Optional[datetime] = None
