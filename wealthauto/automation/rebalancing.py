"""Allocation drift and rebalancing action planning."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping, Optional

from wealthauto.types import RebalancingAction, RebalancingRule

logger = logging.getLogger(__name__)

ALLOCATION_TOTAL = Decimal("100")
ALLOCATION_TOLERANCE = Decimal("0.1")
_CENTS = Decimal("0.01")


@dataclass(frozen=True)
class AssetDrift:
    asset_class: str
    target: Decimal
    current: Decimal

    @property
    def drift(self) -> Decimal:
        """Signed percentage points; positive means over-weight."""
        return self.current - self.target


@dataclass(frozen=True)
class DriftReport:
    assets: tuple[AssetDrift, ...]
    max_drift: Decimal

    def exceeds(self, threshold: Decimal) -> bool:
        return self.max_drift >= threshold


def allocation_total(allocation: Mapping[str, Decimal]) -> Decimal:
    return sum((Decimal(v) for v in allocation.values()), Decimal("0"))


def is_balanced_total(allocation: Mapping[str, Decimal]) -> bool:
    return abs(allocation_total(allocation) - ALLOCATION_TOTAL) <= ALLOCATION_TOLERANCE


def compute_drift(target: Mapping[str, Decimal], current: Mapping[str, Decimal]) -> DriftReport:
    """Per-class drift over the union of target and held asset classes.

    Classes missing on either side count as 0%.
    """
    classes = list(target) + [c for c in current if c not in target]
    assets = tuple(
        AssetDrift(
            asset_class=cls,
            target=Decimal(target.get(cls, 0)),
            current=Decimal(current.get(cls, 0)),
        )
        for cls in classes
    )
    max_drift = max((abs(a.drift) for a in assets), default=Decimal("0"))
    return DriftReport(assets=assets, max_drift=max_drift)


def is_drift_due(rule: RebalancingRule, report: DriftReport) -> bool:
    return rule.trigger_on_drift and report.exceeds(rule.threshold_percent)


def plan_actions(
    report: DriftReport,
    portfolio_value: Optional[Decimal],
    *,
    rebalance_amount: Optional[Decimal] = None,
) -> tuple[RebalancingAction, ...]:
    """Orders that bring the allocation back to target.

    Redemptions for over-weight classes come first so their proceeds fund the
    purchases. Amounts are sized against `rebalance_amount` when set, else the
    portfolio value.
    """
    base = rebalance_amount if rebalance_amount is not None else portfolio_value
    if base is None or base <= 0:
        logger.warning("Cannot size rebalancing actions without a portfolio value")
        return ()

    redemptions: list[RebalancingAction] = []
    purchases: list[RebalancingAction] = []
    for asset in report.assets:
        amount = (base * abs(asset.drift) / ALLOCATION_TOTAL).quantize(_CENTS, rounding=ROUND_HALF_UP)
        if amount <= 0:
            continue
        if asset.drift > 0:
            redemptions.append(
                RebalancingAction(
                    type="Redemption",
                    asset_class=asset.asset_class,
                    amount=amount,
                    reason=f"{asset.asset_class} at {asset.current}% vs target {asset.target}%",
                )
            )
        else:
            purchases.append(
                RebalancingAction(
                    type="Purchase",
                    asset_class=asset.asset_class,
                    amount=amount,
                    reason=f"{asset.asset_class} at {asset.current}% vs target {asset.target}%",
                )
            )
    return tuple(redemptions + purchases)
