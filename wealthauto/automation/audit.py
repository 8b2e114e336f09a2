"""Execution audit log for automation attempts.

Every scheduler or manual attempt produces exactly one row: Success, Failed
or Skipped. Rows are append-only and keyed by automation type + id + date.

All timestamps use timezone-aware UTC datetimes for consistency.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Mapping, Optional, Sequence

from wealthauto.automation.rules import generate_id
from wealthauto.persistence.interfaces import ExecutionLogStore
from wealthauto.types import (
    AutomationExecutionLog,
    AutomationRule,
    ErrorKind,
    ExecutionStatus,
    RuleKind,
    utc_now,
)

logger = logging.getLogger(__name__)


def to_jsonable(value: Any) -> Any:
    """Convert Decimals, dates and nested containers into JSON-safe values."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


def entry_to_dict(entry: AutomationExecutionLog) -> dict[str, Any]:
    """Convert to JSON-serializable dictionary."""
    return to_jsonable(asdict(entry))


class ExecutionAuditLog:
    """Writes and queries automation execution history."""

    def __init__(
        self,
        store: ExecutionLogStore,
        *,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self.store = store
        self._clock = clock
        self._id_factory = id_factory

    def _new_id(self, now: datetime) -> str:
        if self._id_factory is not None:
            return self._id_factory()
        return generate_id("LOG", now)

    def record(
        self,
        *,
        rule: AutomationRule,
        execution_date: date,
        status: ExecutionStatus,
        order_id: Optional[str] = None,
        error: Optional[str] = None,
        error_kind: Optional[ErrorKind] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> AutomationExecutionLog:
        """Append one attempt row. Raises DuplicateRecord on a second Success."""
        now = self._clock()
        entry = AutomationExecutionLog(
            id=self._new_id(now),
            automation_type=rule.kind,
            automation_id=rule.id,
            client_id=rule.client_id,
            execution_date=execution_date,
            status=status,
            order_id=order_id,
            error=error,
            error_kind=error_kind,
            details=to_jsonable(dict(details or {})),
            created_at=now,
        )
        self.store.append_execution_log(entry=entry)
        if status == "Failed":
            logger.warning(f"{rule.kind} {rule.id} failed for {execution_date}: {error}")
        else:
            logger.info(f"{rule.kind} {rule.id} {status} for {execution_date}")
        return entry

    def record_success(
        self,
        *,
        rule: AutomationRule,
        execution_date: date,
        order_id: Optional[str],
        details: Optional[Mapping[str, Any]] = None,
    ) -> AutomationExecutionLog:
        return self.record(
            rule=rule, execution_date=execution_date, status="Success", order_id=order_id, details=details
        )

    def record_failure(
        self,
        *,
        rule: AutomationRule,
        execution_date: date,
        error: str,
        error_kind: ErrorKind = "ExecutorFailure",
        details: Optional[Mapping[str, Any]] = None,
    ) -> AutomationExecutionLog:
        return self.record(
            rule=rule,
            execution_date=execution_date,
            status="Failed",
            error=error,
            error_kind=error_kind,
            details=details,
        )

    def record_skip(
        self,
        *,
        rule: AutomationRule,
        execution_date: date,
        reason: str,
        details: Optional[Mapping[str, Any]] = None,
    ) -> AutomationExecutionLog:
        return self.record(
            rule=rule,
            execution_date=execution_date,
            status="Skipped",
            details={"reason": reason, **(details or {})},
        )

    def has_success(self, *, kind: RuleKind, rule_id: str, execution_date: date) -> bool:
        rows = self.store.get_execution_logs(
            automation_type=kind,
            automation_id=rule_id,
            execution_date=execution_date,
            status="Success",
            limit=1,
        )
        return bool(rows)

    def consecutive_failures(self, *, kind: RuleKind, rule_id: str, window: int = 50) -> int:
        """Trailing Failed attempts, ignoring Skipped rows in between."""
        count = 0
        for entry in self.store.get_execution_logs(automation_type=kind, automation_id=rule_id, limit=window):
            if entry.status == "Skipped":
                continue
            if entry.status != "Failed":
                break
            count += 1
        return count

    def history(
        self,
        *,
        client_id: Optional[int] = None,
        kind: Optional[RuleKind] = None,
        rule_id: Optional[str] = None,
        limit: int = 100,
    ) -> Sequence[AutomationExecutionLog]:
        return self.store.get_execution_logs(
            client_id=client_id, automation_type=kind, automation_id=rule_id, limit=limit
        )

    def to_json_list(self, entries: Sequence[AutomationExecutionLog]) -> list[dict[str, Any]]:
        """Export entries as JSON-serializable list."""
        return [entry_to_dict(entry) for entry in entries]
