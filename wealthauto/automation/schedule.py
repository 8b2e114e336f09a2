"""Due predicates and schedule arithmetic.

Next dates are derived from the schedule itself, never from wall-clock time of
the last run, so a missed cycle does not produce a burst of catch-up runs.
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta
from typing import Optional

from wealthauto.types import (
    AutoInvestRule,
    AutomationRule,
    Frequency,
    RebalancingRule,
    TriggerOrder,
)

TERMINAL_RULE_STATUSES = frozenset({"Cancelled", "Completed"})
TERMINAL_ORDER_STATUSES = frozenset({"Executed", "Cancelled", "Expired"})


def add_months(value: date, months: int, day: Optional[int] = None) -> date:
    """Shift `value` by whole months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day or value.day, last_day))


def _js_weekday(value: date) -> int:
    # 0=Sunday ... 6=Saturday
    return (value.weekday() + 1) % 7


def first_occurrence(
    start: date,
    frequency: Frequency,
    *,
    day_of_month: Optional[int] = None,
    day_of_week: Optional[int] = None,
) -> date:
    """First scheduled date on or after `start` honouring the anchors."""
    if frequency == "Daily":
        return start
    if frequency == "Weekly":
        if day_of_week is None:
            return start
        return start + timedelta(days=(day_of_week - _js_weekday(start)) % 7)
    if frequency in ("Monthly", "Quarterly"):
        candidate = add_months(start, 0, day_of_month)
        if candidate < start:
            candidate = add_months(start, 1, day_of_month)
        return candidate
    raise ValueError(f"Unknown frequency: {frequency}")


def next_occurrence(current: date, frequency: Frequency, *, day_of_month: Optional[int] = None) -> date:
    if frequency == "Daily":
        return current + timedelta(days=1)
    if frequency == "Weekly":
        return current + timedelta(weeks=1)
    if frequency == "Monthly":
        return add_months(current, 1, day_of_month)
    if frequency == "Quarterly":
        return add_months(current, 3, day_of_month)
    raise ValueError(f"Unknown frequency: {frequency}")


def advance_schedule(
    scheduled: date,
    frequency: Frequency,
    today: date,
    *,
    day_of_month: Optional[int] = None,
) -> date:
    """Return the first scheduled occurrence strictly after `today`.

    Occurrences missed while the scheduler was down are skipped.
    """
    nxt = next_occurrence(scheduled, frequency, day_of_month=day_of_month)
    while nxt <= today:
        nxt = next_occurrence(nxt, frequency, day_of_month=day_of_month)
    return nxt


def anchor_day_of_month(rule: AutoInvestRule) -> Optional[int]:
    raw = rule.trigger_config.get("dayOfMonth")
    return int(raw) if raw is not None else rule.start_date.day  # type: ignore[call-overload]


# ---- Due predicates


def is_auto_invest_due(rule: AutoInvestRule, today: date) -> bool:
    if not rule.is_enabled or rule.status != "Active":
        return False
    if rule.next_execution_date > today or rule.start_date > today:
        return False
    return rule.end_date is None or today <= rule.end_date


def is_rebalancing_schedule_due(rule: RebalancingRule, today: date) -> bool:
    return (
        rule.trigger_on_schedule
        and rule.next_rebalancing_date is not None
        and rule.next_rebalancing_date <= today
    )


def is_rebalancing_candidate(rule: RebalancingRule, today: date) -> bool:
    """Schedule-due rules plus every drift-watching rule.

    Whether a drift-watching rule is actually due depends on the current
    allocation, which is checked under the rule lock.
    """
    if not rule.is_enabled or rule.status != "Active":
        return False
    return rule.trigger_on_drift or is_rebalancing_schedule_due(rule, today)


def is_trigger_order_candidate(order: TriggerOrder, now: datetime) -> bool:
    # Triggered orders whose execution failed stay in the queue for retry.
    if not order.is_enabled or order.status not in ("Active", "Triggered"):
        return False
    if now < order.valid_from:
        return False
    return order.valid_until is None or now <= order.valid_until


def is_candidate(rule: AutomationRule, now: datetime) -> bool:
    """Whether `rule` belongs in this cycle's due list."""
    if isinstance(rule, AutoInvestRule):
        return is_auto_invest_due(rule, now.date())
    if isinstance(rule, RebalancingRule):
        return is_rebalancing_candidate(rule, now.date())
    if isinstance(rule, TriggerOrder):
        return is_trigger_order_candidate(rule, now)
    raise TypeError(f"Unsupported rule type: {type(rule).__name__}")


def lapsed_status(rule: AutomationRule, now: datetime) -> Optional[str]:
    """Terminal status for a rule whose window has closed, else None."""
    if isinstance(rule, AutoInvestRule):
        if rule.status in ("Active", "Paused") and rule.end_date is not None and rule.end_date < now.date():
            return "Completed"
        return None
    if isinstance(rule, TriggerOrder):
        if rule.status in ("Active", "Triggered") and rule.valid_until is not None and rule.valid_until < now:
            return "Expired"
        return None
    if isinstance(rule, RebalancingRule):
        return None
    raise TypeError(f"Unsupported rule type: {type(rule).__name__}")


def is_retired(rule: AutomationRule) -> bool:
    if isinstance(rule, TriggerOrder):
        return rule.status in TERMINAL_ORDER_STATUSES
    return rule.status in TERMINAL_RULE_STATUSES


def is_manually_executable(rule: AutomationRule, now: datetime) -> bool:
    """Whether an operator may run `rule` right now, ignoring its schedule."""
    if isinstance(rule, AutoInvestRule):
        today = now.date()
        return (
            rule.is_enabled
            and rule.status == "Active"
            and rule.start_date <= today
            and (rule.end_date is None or today <= rule.end_date)
        )
    if isinstance(rule, RebalancingRule):
        return rule.is_enabled and rule.status == "Active"
    if isinstance(rule, TriggerOrder):
        return is_trigger_order_candidate(rule, now)
    raise TypeError(f"Unsupported rule type: {type(rule).__name__}")
