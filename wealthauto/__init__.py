"""Automation rule engine for mutual-fund portfolios.

- automation: rule models, due predicates, scheduler and rule lifecycle
- notifications: preference filtering, quiet hours and channel delivery
- market_data: valuation inputs for trigger and drift evaluation
- execution: order placement adapters (paper by default)
- persistence: persistence boundary (interfaces)
- storage: concrete stores (in-memory and SQLAlchemy)

Default must remain dry-run.
"""
