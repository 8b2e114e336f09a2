"""Persistence interfaces.

These protocols define the persistence boundary. Implementations can be backed by
PostgreSQL (recommended) or kept in memory for tests and dry runs.
"""

from .interfaces import (
    AuthorizationStore,
    AutomationStore,
    ExecutionLogStore,
    NotificationStore,
    RebalancingExecutionStore,
    RuleStore,
)
