from __future__ import annotations

from typing import Protocol

from wealthauto.types import ExecutionAction, ExecutionResult


class ActionExecutor(Protocol):
    """Protocol for order placement (paper or live)."""

    async def execute(self, action: ExecutionAction) -> ExecutionResult:
        """Place the order described by `action`.

        Implementations must treat `action.idempotency_key` as the dedup key so
        a retried attempt never places a second order. A rejection is reported
        with ``accepted=False``; transport problems may raise.
        """
        ...
