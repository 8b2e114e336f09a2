"""Automation engine.

Rule validation, schedule arithmetic, trigger evaluation, safety guards and the
execution audit trail. The scheduler itself lives in `.scheduler` and is
imported directly by its entry point.

Default must remain paper execution / dry-run.
"""

from .audit import ExecutionAuditLog
from .claims import ClaimController
from .conditions import TriggerCheck, check_auto_invest_trigger, evaluate
from .rebalancing import DriftReport, compute_drift, is_drift_due, plan_actions
from .rules import (
    AutoInvestRuleSpec,
    AutoInvestRuleUpdate,
    RebalancingRuleSpec,
    RebalancingRuleUpdate,
    TriggerOrderSpec,
    TriggerOrderUpdate,
)
from .safety import (
    MaxTotalAmountCheck,
    MinBalanceCheck,
    SafetyCheck,
    SafetyResult,
    run_safety_checks,
)
from .schedule import advance_schedule, is_candidate, next_occurrence
from .service import AutomationService

__all__ = [
    # Rules
    "AutoInvestRuleSpec",
    "AutoInvestRuleUpdate",
    "RebalancingRuleSpec",
    "RebalancingRuleUpdate",
    "TriggerOrderSpec",
    "TriggerOrderUpdate",
    "AutomationService",
    # Schedule
    "advance_schedule",
    "next_occurrence",
    "is_candidate",
    # Conditions
    "TriggerCheck",
    "evaluate",
    "check_auto_invest_trigger",
    # Rebalancing
    "DriftReport",
    "compute_drift",
    "is_drift_due",
    "plan_actions",
    # Safety
    "SafetyCheck",
    "SafetyResult",
    "run_safety_checks",
    "MaxTotalAmountCheck",
    "MinBalanceCheck",
    # Audit
    "ExecutionAuditLog",
    # Manual authorization
    "ClaimController",
]
