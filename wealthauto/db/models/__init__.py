"""SQLAlchemy models for the automation database."""

from wealthauto.db.models.automation import (
    AutoInvestRuleRow,
    AutomationLockRow,
    Base,
    ExecutionLogRow,
    NotificationLogRow,
    NotificationPreferenceRow,
    OrderAuthorizationRow,
    RebalancingExecutionRow,
    RebalancingRuleRow,
    TriggerOrderRow,
)

__all__ = [
    "AutoInvestRuleRow",
    "AutomationLockRow",
    "Base",
    "ExecutionLogRow",
    "NotificationLogRow",
    "NotificationPreferenceRow",
    "OrderAuthorizationRow",
    "RebalancingExecutionRow",
    "RebalancingRuleRow",
    "TriggerOrderRow",
]
