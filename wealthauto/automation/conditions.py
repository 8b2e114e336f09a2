"""Trigger condition evaluation.

Pure functions only. Crossing conditions need the previous observation, which
the caller keeps on the rule record between cycles.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union

from wealthauto.types import AutoInvestRule, TriggerCondition

Number = Union[Decimal, int, float, str]

DEFAULT_TOLERANCE = Decimal("0.0001")


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def evaluate(
    condition: TriggerCondition,
    trigger_value: Number,
    current: Number,
    previous: Optional[Number] = None,
    *,
    tolerance: Decimal = DEFAULT_TOLERANCE,
) -> bool:
    """Return whether `condition` holds for the current observation.

    Crossings fire only on the transition: ``previous < trigger <= current``
    for "Crosses Above" and ``previous > trigger >= current`` for
    "Crosses Below". Without a previous observation nothing crosses.
    """
    trigger = to_decimal(trigger_value)
    curr = to_decimal(current)

    if condition == "Greater Than":
        return curr > trigger
    if condition == "Less Than":
        return curr < trigger
    if condition == "Equals":
        return abs(curr - trigger) <= tolerance
    if condition == "Crosses Above":
        if previous is None:
            return False
        return to_decimal(previous) < trigger <= curr
    if condition == "Crosses Below":
        if previous is None:
            return False
        return to_decimal(previous) > trigger >= curr
    raise ValueError(f"Unknown trigger condition: {condition}")


# ---- Auto-invest triggers


@dataclass(frozen=True)
class TriggerCheck:
    met: bool
    reason: str


def auto_invest_value_kind(rule: AutoInvestRule) -> Optional[str]:
    """Value source kind an auto-invest trigger reads, or None for date triggers."""
    if rule.trigger_type == "Date":
        return None
    if rule.trigger_type == "Goal Progress":
        return "Goal Progress"
    if rule.trigger_type == "Portfolio Drift":
        return "Portfolio Drift"
    if rule.trigger_type == "Market Condition":
        return "NAV Change"
    raise ValueError(f"Unknown auto-invest trigger type: {rule.trigger_type}")


def _config_decimal(rule: AutoInvestRule, key: str) -> Optional[Decimal]:
    raw = rule.trigger_config.get(key)
    if raw is None or raw == "":
        return None
    return to_decimal(raw)  # type: ignore[arg-type]


def check_auto_invest_trigger(rule: AutoInvestRule, observed: Optional[Decimal]) -> TriggerCheck:
    """Decide whether a due auto-invest rule's trigger allows execution.

    Date triggers are unconditional once due. The others compare the observed
    value against thresholds from `trigger_config`.
    """
    if rule.trigger_type == "Date":
        return TriggerCheck(met=True, reason="Scheduled date reached")

    if observed is None:
        return TriggerCheck(met=False, reason=f"No {rule.trigger_type} reading available")

    if rule.trigger_type == "Goal Progress":
        if rule.goal_id is None:
            return TriggerCheck(met=False, reason="Goal Progress trigger without goal")
        threshold = _config_decimal(rule, "goalProgressThreshold") or Decimal("0")
        direction = rule.trigger_config.get("goalProgressDirection") or "above"
        if direction == "above":
            met = observed >= threshold
        else:
            met = observed <= threshold
        return TriggerCheck(met=met, reason=f"Goal progress {observed} {direction} {threshold}: {met}")

    if rule.trigger_type == "Portfolio Drift":
        threshold = _config_decimal(rule, "driftThreshold")
        if threshold is None:
            return TriggerCheck(met=False, reason="driftThreshold not configured")
        met = abs(observed) >= threshold
        return TriggerCheck(met=met, reason=f"Portfolio drift {observed} vs {threshold}: {met}")

    if rule.trigger_type == "Market Condition":
        threshold = _config_decimal(rule, "navChangeThreshold")
        if threshold is None:
            return TriggerCheck(met=False, reason="navChangeThreshold not configured")
        market = rule.trigger_config.get("marketCondition")
        if market == "Bull":
            met = observed >= threshold
        elif market == "Bear":
            met = observed <= -threshold
        elif market == "Neutral":
            met = abs(observed) < threshold
        else:
            met = abs(observed) >= threshold
        return TriggerCheck(met=met, reason=f"NAV change {observed}% vs {threshold}% ({market or 'any'}): {met}")

    raise ValueError(f"Unknown auto-invest trigger type: {rule.trigger_type}")
