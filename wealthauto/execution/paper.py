from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from typing import Optional

from wealthauto.types import ExecutionAction, ExecutionResult


@dataclass
class PaperActionExecutor:
    """Dry-run executor.

    This never places real orders. It returns what *would* have been executed
    and remembers every action, keyed by idempotency key, so a repeated key
    returns the original synthetic order id.
    """

    # Simulated latency in seconds
    latency: float = 0.0

    # Reject every action with this reason (None accepts)
    reject_reason: Optional[str] = None

    executed: dict[str, ExecutionResult] = field(default_factory=dict)
    _sequence: itertools.count = field(default_factory=lambda: itertools.count(1), repr=False)

    async def execute(self, action: ExecutionAction) -> ExecutionResult:
        if self.latency:
            await asyncio.sleep(self.latency)

        previous = self.executed.get(action.idempotency_key)
        if previous is not None:
            return previous

        if self.reject_reason is not None:
            return ExecutionResult(dry_run=True, accepted=False, reason=self.reject_reason)

        result = ExecutionResult(
            dry_run=True,
            accepted=True,
            reason="paper-execution",
            order_id=f"PAPER-{next(self._sequence):06d}",
            raw={
                "automation_type": action.automation_type,
                "automation_id": action.automation_id,
                "order_type": action.order_type,
                "scheme_id": action.scheme_id,
                "amount": str(action.amount) if action.amount is not None else None,
                "units": str(action.units) if action.units is not None else None,
                "target_scheme_id": action.target_scheme_id,
                "idempotency_key": action.idempotency_key,
            },
        )
        self.executed[action.idempotency_key] = result
        return result
