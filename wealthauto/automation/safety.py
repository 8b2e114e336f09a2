"""Pre-execution guards for auto-invest rules.

Implements the caps a client can put on a recurring contribution: per-execution
ceiling, lifetime total and minimum available balance.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol, Sequence

from wealthauto.types import AutoInvestRule


@dataclass(frozen=True)
class SafetyResult:
    ok: bool
    reason: str
    # Guard failed because the rule has nothing left to do
    completes_rule: bool = False


class SafetyCheck(Protocol):
    def check(self, *, rule: AutoInvestRule, amount: Decimal) -> SafetyResult:
        """Return whether investing `amount` for `rule` is allowed."""


def run_safety_checks(*, checks: Sequence[SafetyCheck], rule: AutoInvestRule, amount: Decimal) -> SafetyResult:
    for check in checks:
        res = check.check(rule=rule, amount=amount)
        if not res.ok:
            return res
    return SafetyResult(ok=True, reason="ok")


def effective_amount(rule: AutoInvestRule) -> Decimal:
    """Contribution for the next execution after applying both caps."""
    amount = rule.amount
    if rule.max_per_execution is not None:
        amount = min(amount, rule.max_per_execution)
    if rule.max_total_amount is not None:
        amount = min(amount, max(rule.max_total_amount - rule.total_invested, Decimal("0")))
    return amount


# ========== Concrete Safety Check Implementations ==========


@dataclass
class MaxTotalAmountCheck:
    """Stop once the lifetime cap is used up."""

    def check(self, *, rule: AutoInvestRule, amount: Decimal) -> SafetyResult:
        if rule.max_total_amount is None:
            return SafetyResult(ok=True, reason="No total cap configured")
        if rule.total_invested >= rule.max_total_amount or amount <= 0:
            return SafetyResult(
                ok=False,
                reason=f"Maximum total amount reached: {rule.total_invested} >= {rule.max_total_amount}",
                completes_rule=True,
            )
        return SafetyResult(ok=True, reason="Within total cap")


@dataclass
class MinBalanceCheck:
    """Require the available balance to cover the contribution and the floor."""

    available_balance: Optional[Decimal]

    def check(self, *, rule: AutoInvestRule, amount: Decimal) -> SafetyResult:
        if rule.min_balance_required is None:
            return SafetyResult(ok=True, reason="No minimum balance configured")
        if self.available_balance is None:
            return SafetyResult(ok=False, reason="Available balance unknown")
        if self.available_balance - amount < rule.min_balance_required:
            return SafetyResult(
                ok=False,
                reason=(
                    f"Insufficient balance: {self.available_balance} - {amount} "
                    f"< minimum {rule.min_balance_required}"
                ),
            )
        return SafetyResult(ok=True, reason="Balance sufficient")
