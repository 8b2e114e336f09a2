"""Valuation inputs for rule evaluation."""

from wealthauto.market_data.http import HttpValueSource
from wealthauto.market_data.interfaces import ValueSource
from wealthauto.market_data.static import StaticValueSource

__all__ = ["HttpValueSource", "StaticValueSource", "ValueSource"]
