"""SQLAlchemy models for automation tables.

Tables:
- auto_invest_rules, rebalancing_rules, rebalancing_executions, trigger_orders
- automation_execution_logs, automation_locks
- notification_preferences, notification_logs
- order_authorizations

Column names match the dataclass fields in wealthauto.types so rows convert
field-for-field. JSON columns are JSONB on PostgreSQL and generic JSON
elsewhere, which keeps the schema usable on SQLite for tests.
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

JsonType = JSON().with_variant(JSONB(), "postgresql")

# SQLite only auto-increments INTEGER PRIMARY KEY
SeqType = BigInteger().with_variant(Integer(), "sqlite")

Money = Numeric(20, 6)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class AutoInvestRuleRow(Base):
    """Table: auto_invest_rules"""

    __tablename__ = "auto_invest_rules"

    id = Column(Text, primary_key=True)  # AUTO-YYYYMMDD-XXXXXXXXXX
    client_id = Column(Integer, nullable=False)
    name = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    scheme_id = Column(Integer, nullable=False)
    amount = Column(Money, nullable=False)
    frequency = Column(Text, nullable=False)  # Daily|Weekly|Monthly|Quarterly
    trigger_type = Column(Text, nullable=False, default="Date")
    trigger_config = Column(JsonType, nullable=False, default=dict)
    goal_id = Column(Integer, nullable=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    next_execution_date = Column(Date, nullable=False)
    status = Column(Text, nullable=False, default="Active")
    is_enabled = Column(Boolean, nullable=False, default=True)
    max_total_amount = Column(Money, nullable=True)
    max_per_execution = Column(Money, nullable=True)
    min_balance_required = Column(Money, nullable=True)
    execution_count = Column(Integer, nullable=False, default=0)
    total_invested = Column(Money, nullable=False, default=0)
    last_execution_date = Column(Date, nullable=True)
    last_execution_status = Column(Text, nullable=True)
    last_execution_error = Column(Text, nullable=True)
    created_by = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_auto_invest_rules_client", "client_id"),
        Index("idx_auto_invest_rules_due", "status", "is_enabled", "next_execution_date"),
    )

    def __repr__(self) -> str:
        return f"<AutoInvestRuleRow(id={self.id}, status={self.status}, next={self.next_execution_date})>"


class RebalancingRuleRow(Base):
    """Table: rebalancing_rules"""

    __tablename__ = "rebalancing_rules"

    id = Column(Text, primary_key=True)
    client_id = Column(Integer, nullable=False)
    name = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    strategy = Column(Text, nullable=False)
    target_allocation = Column(JsonType, nullable=False)  # asset class -> percent (as string)
    threshold_percent = Column(Money, nullable=False)
    rebalance_amount = Column(Money, nullable=True)
    min_drift_percent = Column(Money, nullable=True)
    frequency = Column(Text, nullable=True)
    day_of_month = Column(Integer, nullable=True)
    day_of_week = Column(Integer, nullable=True)  # 0=Sunday
    trigger_on_drift = Column(Boolean, nullable=False, default=True)
    trigger_on_schedule = Column(Boolean, nullable=False, default=False)
    execute_automatically = Column(Boolean, nullable=False, default=True)
    require_confirmation = Column(Boolean, nullable=False, default=False)
    next_rebalancing_date = Column(Date, nullable=True)
    last_rebalanced_date = Column(Date, nullable=True)
    status = Column(Text, nullable=False, default="Active")
    is_enabled = Column(Boolean, nullable=False, default=True)
    execution_count = Column(Integer, nullable=False, default=0)
    last_execution_date = Column(Date, nullable=True)
    last_execution_status = Column(Text, nullable=True)
    last_execution_error = Column(Text, nullable=True)
    created_by = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_rebalancing_rules_client", "client_id"),
        Index("idx_rebalancing_rules_due", "status", "is_enabled", "next_rebalancing_date"),
    )

    def __repr__(self) -> str:
        return f"<RebalancingRuleRow(id={self.id}, strategy={self.strategy}, status={self.status})>"


class RebalancingExecutionRow(Base):
    """Table: rebalancing_executions"""

    __tablename__ = "rebalancing_executions"

    seq = Column(SeqType, primary_key=True, autoincrement=True)
    id = Column(Text, nullable=False, unique=True)
    rule_id = Column(Text, ForeignKey("rebalancing_rules.id"), nullable=False)
    client_id = Column(Integer, nullable=False)
    execution_date = Column(Date, nullable=False)
    status = Column(Text, nullable=False)  # Pending|Executed|Failed|Cancelled
    current_allocation = Column(JsonType, nullable=False)
    target_allocation = Column(JsonType, nullable=False)
    drift_percent = Column(Money, nullable=False)
    actions = Column(JsonType, nullable=False, default=list)
    order_ids = Column(JsonType, nullable=False, default=list)
    executed_at = Column(DateTime(timezone=True), nullable=True)
    executed_by = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("idx_rebalancing_executions_rule", "rule_id", "status"),)

    def __repr__(self) -> str:
        return f"<RebalancingExecutionRow(id={self.id}, rule={self.rule_id}, status={self.status})>"


class TriggerOrderRow(Base):
    """Table: trigger_orders"""

    __tablename__ = "trigger_orders"

    id = Column(Text, primary_key=True)
    client_id = Column(Integer, nullable=False)
    name = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    trigger_type = Column(Text, nullable=False)
    trigger_condition = Column(Text, nullable=False)
    trigger_value = Column(Money, nullable=False)
    trigger_field = Column(Text, nullable=True)
    order_type = Column(Text, nullable=False)  # Purchase|Redemption|Switch
    scheme_id = Column(Integer, nullable=False)
    amount = Column(Money, nullable=True)
    units = Column(Money, nullable=True)
    target_scheme_id = Column(Integer, nullable=True)
    goal_id = Column(Integer, nullable=True)
    valid_from = Column(DateTime(timezone=True), nullable=False)
    valid_until = Column(DateTime(timezone=True), nullable=True)
    status = Column(Text, nullable=False, default="Active")
    is_enabled = Column(Boolean, nullable=False, default=True)
    last_observed_value = Column(Money, nullable=True)
    triggered_at = Column(DateTime(timezone=True), nullable=True)
    executed_at = Column(DateTime(timezone=True), nullable=True)
    executed_order_id = Column(Text, nullable=True)
    execution_count = Column(Integer, nullable=False, default=0)
    last_execution_date = Column(Date, nullable=True)
    last_execution_status = Column(Text, nullable=True)
    last_execution_error = Column(Text, nullable=True)
    created_by = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_trigger_orders_client", "client_id"),
        Index("idx_trigger_orders_due", "status", "is_enabled", "valid_from"),
    )

    def __repr__(self) -> str:
        return f"<TriggerOrderRow(id={self.id}, {self.trigger_condition} {self.trigger_value}, status={self.status})>"


class ExecutionLogRow(Base):
    """Append-only attempt history.

    Table: automation_execution_logs
    """

    __tablename__ = "automation_execution_logs"

    seq = Column(SeqType, primary_key=True, autoincrement=True)
    id = Column(Text, nullable=False, unique=True)
    automation_type = Column(Text, nullable=False)
    automation_id = Column(Text, nullable=False)
    client_id = Column(Integer, nullable=False)
    execution_date = Column(Date, nullable=False)
    status = Column(Text, nullable=False)  # Success|Failed|Skipped
    order_id = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    error_kind = Column(Text, nullable=True)  # ExecutorFailure|Timeout
    details = Column(JsonType, nullable=False, default=dict)
    # type:id:date on Success rows only; NULLs never collide
    success_key = Column(Text, nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_execution_logs_automation", "automation_type", "automation_id", "execution_date"),
        Index("idx_execution_logs_client", "client_id"),
    )

    def __repr__(self) -> str:
        return f"<ExecutionLogRow(id={self.id}, {self.automation_id} {self.execution_date} {self.status})>"


class AutomationLockRow(Base):
    """Per-rule execution lease.

    Table: automation_locks
    """

    __tablename__ = "automation_locks"

    rule_id = Column(Text, primary_key=True)
    owner = Column(Text, nullable=False)
    locked_until = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<AutomationLockRow(rule_id={self.rule_id}, owner={self.owner}, until={self.locked_until})>"


class NotificationPreferenceRow(Base):
    """Table: notification_preferences"""

    __tablename__ = "notification_preferences"

    id = Column(Text, primary_key=True)
    client_id = Column(Integer, nullable=False)
    user_id = Column(Integer, nullable=True)
    event = Column(Text, nullable=False)
    channels = Column(JsonType, nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    quiet_start = Column(Text, nullable=True)  # HH:MM
    quiet_end = Column(Text, nullable=True)
    min_amount = Column(Money, nullable=True)
    schemes = Column(JsonType, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("idx_notification_preferences_client_event", "client_id", "event"),)

    def __repr__(self) -> str:
        return f"<NotificationPreferenceRow(id={self.id}, client={self.client_id}, event={self.event})>"


class NotificationLogRow(Base):
    """One delivery attempt per (event, channel).

    Table: notification_logs
    """

    __tablename__ = "notification_logs"

    seq = Column(SeqType, primary_key=True, autoincrement=True)
    id = Column(Text, nullable=False, unique=True)
    client_id = Column(Integer, nullable=False)
    user_id = Column(Integer, nullable=True)
    event = Column(Text, nullable=False)
    channel = Column(Text, nullable=False)
    status = Column(Text, nullable=False)  # Pending|Sent|Failed
    subject = Column(Text, nullable=False, default="")
    message = Column(Text, nullable=False, default="")
    dedup_key = Column(Text, nullable=True, unique=True)
    deliver_after = Column(DateTime(timezone=True), nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    error = Column(Text, nullable=True)
    # `metadata` is reserved on declarative classes
    log_metadata = Column(JsonType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_notification_logs_client", "client_id", "event"),
        Index("idx_notification_logs_pending", "status", "deliver_after"),
    )

    def __repr__(self) -> str:
        return f"<NotificationLogRow(id={self.id}, {self.event} via {self.channel}, status={self.status})>"


class OrderAuthorizationRow(Base):
    """Versioned for compare-and-set.

    Table: order_authorizations
    """

    __tablename__ = "order_authorizations"

    id = Column(Text, primary_key=True)
    order_ref = Column(Text, nullable=True)
    state = Column(Text, nullable=False, default="PendingApproval")
    claimed_by = Column(Text, nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    claim_expires_at = Column(DateTime(timezone=True), nullable=True)
    decided_by = Column(Text, nullable=True)
    decided_at = Column(DateTime(timezone=True), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<OrderAuthorizationRow(id={self.id}, state={self.state}, v{self.version})>"
