from __future__ import annotations

from decimal import Decimal
from typing import Mapping, Optional, Protocol

# Value kinds beyond the trigger types that scheduler guards read
AVAILABLE_BALANCE = "Available Balance"
PORTFOLIO_DRIFT = "Portfolio Drift"
NAV_CHANGE = "NAV Change"
PORTFOLIO_VALUE = "Portfolio Value"


class ValueSource(Protocol):
    """Market, NAV and portfolio valuations consumed by rule evaluation."""

    async def current_value(self, kind: str, client_id: int, ref: Optional[str] = None) -> Optional[Decimal]:
        """Latest reading for `kind`, or None when unavailable.

        `ref` narrows the reading: a scheme id for Price/NAV, a goal id for
        Goal Progress, a field name for Custom triggers.
        """
        ...

    async def current_allocation(self, client_id: int) -> Mapping[str, Decimal]:
        """Asset class -> percent of portfolio value."""
        ...
