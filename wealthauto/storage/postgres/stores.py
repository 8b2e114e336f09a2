from __future__ import annotations

from contextlib import contextmanager
from dataclasses import asdict, fields, is_dataclass
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any, Iterator, Mapping, Optional, Sequence

from sqlalchemy import Table, and_, create_engine, delete, insert, or_, select, update
from sqlalchemy.engine import Connection, Engine, RowMapping
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError

from wealthauto.automation.audit import to_jsonable
from wealthauto.automation.schedule import is_candidate, lapsed_status
from wealthauto.db.models import (
    AutoInvestRuleRow,
    AutomationLockRow,
    Base,
    ExecutionLogRow,
    NotificationLogRow,
    NotificationPreferenceRow,
    OrderAuthorizationRow,
    RebalancingExecutionRow,
    RebalancingRuleRow,
    TriggerOrderRow,
)
from wealthauto.errors import DuplicateRecord, RuleNotFound, StoreUnavailable
from wealthauto.persistence.interfaces import (
    AuthorizationStore,
    ExecutionLogStore,
    NotificationStore,
    RebalancingExecutionStore,
    RuleStore,
)
from wealthauto.storage.postgres.config import PostgresConfig
from wealthauto.types import (
    AuthorizationRecord,
    AutoInvestRule,
    AutomationExecutionLog,
    AutomationRule,
    ExecutionStatus,
    ExecutionUpdate,
    NotificationChannel,
    NotificationEvent,
    NotificationLog,
    NotificationPreference,
    NotificationStatus,
    QuietHours,
    RebalancingAction,
    RebalancingExecution,
    RebalancingRule,
    RuleKind,
    TriggerOrder,
)

_auto: Table = AutoInvestRuleRow.__table__  # type: ignore[assignment]
_rebal: Table = RebalancingRuleRow.__table__  # type: ignore[assignment]
_orders: Table = TriggerOrderRow.__table__  # type: ignore[assignment]
_executions: Table = RebalancingExecutionRow.__table__  # type: ignore[assignment]
_logs: Table = ExecutionLogRow.__table__  # type: ignore[assignment]
_locks: Table = AutomationLockRow.__table__  # type: ignore[assignment]
_prefs: Table = NotificationPreferenceRow.__table__  # type: ignore[assignment]
_notifs: Table = NotificationLogRow.__table__  # type: ignore[assignment]
_auths: Table = OrderAuthorizationRow.__table__  # type: ignore[assignment]

RULE_TABLES: Mapping[RuleKind, Table] = {
    "AutoInvest": _auto,
    "Rebalancing": _rebal,
    "TriggerOrder": _orders,
}

RULE_TYPES: Mapping[RuleKind, type] = {
    "AutoInvest": AutoInvestRule,
    "Rebalancing": RebalancingRule,
    "TriggerOrder": TriggerOrder,
}


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_db(value: Any) -> Any:
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, Mapping):
        return to_jsonable(value)
    if isinstance(value, tuple):
        return to_jsonable([asdict(v) if is_dataclass(v) else v for v in value])
    return value


def _record_values(record: Any) -> dict[str, Any]:
    """Dataclass fields as column values (class-level `kind` excluded)."""
    return {f.name: _to_db(getattr(record, f.name)) for f in fields(record)}


def _record_kwargs(cls: type, row: RowMapping) -> dict[str, Any]:
    data = {}
    for f in fields(cls):
        value = row[f.name]
        data[f.name] = _as_utc(value) if isinstance(value, datetime) else value
    return data


def _decimal_map(raw: Optional[Mapping[str, Any]]) -> dict[str, Decimal]:
    return {str(k): Decimal(str(v)) for k, v in (raw or {}).items()}


def _optional_decimal(raw: Any) -> Optional[Decimal]:
    return None if raw is None else Decimal(str(raw))


def _row_to_rule(kind: RuleKind, row: RowMapping) -> AutomationRule:
    data = _record_kwargs(RULE_TYPES[kind], row)
    if kind == "AutoInvest":
        data["trigger_config"] = dict(data["trigger_config"] or {})
    elif kind == "Rebalancing":
        data["target_allocation"] = _decimal_map(data["target_allocation"])
    return RULE_TYPES[kind](**data)


def _row_to_execution(row: RowMapping) -> RebalancingExecution:
    data = _record_kwargs(RebalancingExecution, row)
    data["current_allocation"] = _decimal_map(data["current_allocation"])
    data["target_allocation"] = _decimal_map(data["target_allocation"])
    data["actions"] = tuple(
        RebalancingAction(
            type=a["type"],
            asset_class=a["asset_class"],
            amount=Decimal(str(a["amount"])),
            reason=a.get("reason", ""),
            scheme_id=a.get("scheme_id"),
            units=_optional_decimal(a.get("units")),
        )
        for a in data["actions"] or []
    )
    data["order_ids"] = tuple(data["order_ids"] or [])
    return RebalancingExecution(**data)


def _row_to_log(row: RowMapping) -> AutomationExecutionLog:
    data = _record_kwargs(AutomationExecutionLog, row)
    data["details"] = dict(data["details"] or {})
    return AutomationExecutionLog(**data)


def _preference_values(preference: NotificationPreference) -> dict[str, Any]:
    values = _record_values(preference)
    values.pop("quiet_hours")
    quiet = preference.quiet_hours
    values["quiet_start"] = quiet.start.strftime("%H:%M") if quiet else None
    values["quiet_end"] = quiet.end.strftime("%H:%M") if quiet else None
    return values


def _row_to_preference(row: RowMapping) -> NotificationPreference:
    quiet = None
    if row["quiet_start"] and row["quiet_end"]:
        quiet = QuietHours(start=time.fromisoformat(row["quiet_start"]), end=time.fromisoformat(row["quiet_end"]))
    return NotificationPreference(
        id=row["id"],
        client_id=row["client_id"],
        user_id=row["user_id"],
        event=row["event"],
        channels=tuple(row["channels"] or ()),
        enabled=row["enabled"],
        quiet_hours=quiet,
        min_amount=row["min_amount"],
        schemes=tuple(row["schemes"] or ()),
        created_at=_as_utc(row["created_at"]) if row["created_at"] else None,
        updated_at=_as_utc(row["updated_at"]) if row["updated_at"] else None,
    )


def _notification_values(log: NotificationLog) -> dict[str, Any]:
    values = _record_values(log)
    values["log_metadata"] = values.pop("metadata")
    return values


def _row_to_notification(row: RowMapping) -> NotificationLog:
    data = {}
    for f in fields(NotificationLog):
        column = "log_metadata" if f.name == "metadata" else f.name
        value = row[column]
        data[f.name] = _as_utc(value) if isinstance(value, datetime) else value
    data["metadata"] = dict(data["metadata"] or {})
    return NotificationLog(**data)


class PostgresStores(
    RuleStore,
    ExecutionLogStore,
    RebalancingExecutionStore,
    NotificationStore,
    AuthorizationStore,
):
    """Single entrypoint for the SQL-backed persistence layer.

    Every method runs in its own transaction. Conditional updates (`try_lock`,
    `compare_and_set_authorization`, `mark_notification`) are single
    statements, so they stay atomic across processes.
    """

    def __init__(self, *, config: PostgresConfig, engine: Optional[Engine] = None) -> None:
        self._config = config
        self._engine = engine

    def _get_engine(self) -> Engine:
        if self._engine is None:
            # Do not log the URL (it may contain secrets).
            self._engine = create_engine(self._config.database_url, echo=False, pool_pre_ping=True)
        return self._engine

    @contextmanager
    def _begin(self) -> Iterator[Connection]:
        engine = self._get_engine()
        try:
            with engine.begin() as conn:
                yield conn
        except IntegrityError as exc:
            raise DuplicateRecord(f"Uniqueness constraint rejected write: {exc.orig}") from exc
        except (OperationalError, InterfaceError) as exc:
            raise StoreUnavailable(f"Database unavailable: {exc.__class__.__name__}") from exc

    def create_schema(self) -> None:
        Base.metadata.create_all(self._get_engine())

    # ---- RuleStore

    def insert_rule(self, *, rule: AutomationRule) -> None:
        if self.find_rule(rule_id=rule.id) is not None:
            raise DuplicateRecord(f"Rule id {rule.id} already exists")
        with self._begin() as conn:
            conn.execute(insert(RULE_TABLES[rule.kind]).values(**_record_values(rule)))

    def get_rule(self, *, kind: RuleKind, rule_id: str) -> Optional[AutomationRule]:
        table = RULE_TABLES[kind]
        with self._begin() as conn:
            row = conn.execute(select(table).where(table.c.id == rule_id)).mappings().first()
        return None if row is None else _row_to_rule(kind, row)

    def find_rule(self, *, rule_id: str) -> Optional[AutomationRule]:
        for kind in RULE_TABLES:
            rule = self.get_rule(kind=kind, rule_id=rule_id)
            if rule is not None:
                return rule
        return None

    def list_rules(self, *, client_id: int, kind: RuleKind | None = None) -> Sequence[AutomationRule]:
        kinds = [kind] if kind is not None else list(RULE_TABLES)
        found: list[AutomationRule] = []
        with self._begin() as conn:
            for k in kinds:
                table = RULE_TABLES[k]
                rows = conn.execute(select(table).where(table.c.client_id == client_id)).mappings().all()
                found.extend(_row_to_rule(k, row) for row in rows)
        return sorted(found, key=lambda r: (r.created_at is not None, r.created_at), reverse=True)

    def save_rule(self, *, rule: AutomationRule) -> None:
        table = RULE_TABLES[rule.kind]
        values = _record_values(rule)
        values.pop("id")
        with self._begin() as conn:
            result = conn.execute(update(table).where(table.c.id == rule.id).values(**values))
        if result.rowcount == 0:
            raise RuleNotFound(rule.kind, rule.id)

    def list_due_rules(self, *, now: datetime) -> Sequence[AutomationRule]:
        now = _as_utc(now)
        today = now.date()
        queries: list[tuple[RuleKind, Any]] = [
            (
                "AutoInvest",
                select(_auto).where(
                    _auto.c.status == "Active",
                    _auto.c.is_enabled.is_(True),
                    _auto.c.next_execution_date <= today,
                    _auto.c.start_date <= today,
                    or_(_auto.c.end_date.is_(None), _auto.c.end_date >= today),
                ),
            ),
            (
                "Rebalancing",
                select(_rebal).where(
                    _rebal.c.status == "Active",
                    _rebal.c.is_enabled.is_(True),
                    or_(
                        _rebal.c.trigger_on_drift.is_(True),
                        and_(_rebal.c.trigger_on_schedule.is_(True), _rebal.c.next_rebalancing_date <= today),
                    ),
                ),
            ),
            (
                "TriggerOrder",
                select(_orders).where(
                    _orders.c.status.in_(("Active", "Triggered")),
                    _orders.c.is_enabled.is_(True),
                    _orders.c.valid_from <= now,
                    or_(_orders.c.valid_until.is_(None), _orders.c.valid_until >= now),
                ),
            ),
        ]
        due: list[AutomationRule] = []
        with self._begin() as conn:
            for kind, stmt in queries:
                due.extend(_row_to_rule(kind, row) for row in conn.execute(stmt).mappings().all())
        return [rule for rule in due if is_candidate(rule, now)]

    def list_lapsed_rules(self, *, now: datetime) -> Sequence[AutomationRule]:
        now = _as_utc(now)
        queries: list[tuple[RuleKind, Any]] = [
            (
                "AutoInvest",
                select(_auto).where(
                    _auto.c.status.in_(("Active", "Paused")),
                    _auto.c.end_date.is_not(None),
                    _auto.c.end_date < now.date(),
                ),
            ),
            (
                "TriggerOrder",
                select(_orders).where(
                    _orders.c.status.in_(("Active", "Triggered")),
                    _orders.c.valid_until.is_not(None),
                    _orders.c.valid_until < now,
                ),
            ),
        ]
        lapsed: list[AutomationRule] = []
        with self._begin() as conn:
            for kind, stmt in queries:
                lapsed.extend(_row_to_rule(kind, row) for row in conn.execute(stmt).mappings().all())
        return [rule for rule in lapsed if lapsed_status(rule, now)]

    def try_lock(self, *, rule_id: str, owner: str, lease_until: datetime, now: datetime) -> bool:
        # Reclaim an expired lease first, then fall back to creating the lock row.
        with self._begin() as conn:
            result = conn.execute(
                update(_locks)
                .where(_locks.c.rule_id == rule_id, _locks.c.locked_until <= _as_utc(now))
                .values(owner=owner, locked_until=_as_utc(lease_until))
            )
        if result.rowcount == 1:
            return True
        try:
            with self._begin() as conn:
                conn.execute(insert(_locks).values(rule_id=rule_id, owner=owner, locked_until=_as_utc(lease_until)))
        except DuplicateRecord:
            return False
        return True

    def unlock(self, *, rule_id: str, owner: str) -> None:
        with self._begin() as conn:
            conn.execute(delete(_locks).where(_locks.c.rule_id == rule_id, _locks.c.owner == owner))

    def update_rule_after_execution(self, *, update: ExecutionUpdate) -> None:
        table = RULE_TABLES[update.kind]
        values: dict[str, Any] = {
            "execution_count": table.c.execution_count + update.execution_count_delta,
            "last_execution_date": update.execution_date,
            "last_execution_status": update.execution_status,
            "last_execution_error": update.error,
        }
        if update.status is not None:
            values["status"] = update.status
        if update.kind == "AutoInvest":
            if update.next_due is not None:
                values["next_execution_date"] = update.next_due
            if update.invested_delta:
                values["total_invested"] = table.c.total_invested + update.invested_delta
        elif update.kind == "Rebalancing":
            if update.next_due is not None:
                values["next_rebalancing_date"] = update.next_due
            if update.execution_status == "Success":
                values["last_rebalanced_date"] = update.execution_date
        elif update.kind == "TriggerOrder":
            if update.order_id is not None:
                values["executed_order_id"] = update.order_id
            if update.executed_at is not None:
                values["executed_at"] = _as_utc(update.executed_at)

        with self._begin() as conn:
            result = conn.execute(table.update().where(table.c.id == update.rule_id).values(**values))
        if result.rowcount == 0:
            raise RuleNotFound(update.kind, update.rule_id)

    # ---- ExecutionLogStore

    def append_execution_log(self, *, entry: AutomationExecutionLog) -> None:
        values = _record_values(entry)
        values["success_key"] = None
        if entry.status == "Success":
            values["success_key"] = (
                f"{entry.automation_type}:{entry.automation_id}:{entry.execution_date.isoformat()}"
            )
        with self._begin() as conn:
            conn.execute(insert(_logs).values(**values))

    def get_execution_logs(
        self,
        *,
        client_id: int | None = None,
        automation_type: RuleKind | None = None,
        automation_id: str | None = None,
        execution_date: date | None = None,
        status: ExecutionStatus | None = None,
        limit: int = 100,
    ) -> Sequence[AutomationExecutionLog]:
        stmt = select(_logs)
        if client_id is not None:
            stmt = stmt.where(_logs.c.client_id == client_id)
        if automation_type is not None:
            stmt = stmt.where(_logs.c.automation_type == automation_type)
        if automation_id is not None:
            stmt = stmt.where(_logs.c.automation_id == automation_id)
        if execution_date is not None:
            stmt = stmt.where(_logs.c.execution_date == execution_date)
        if status is not None:
            stmt = stmt.where(_logs.c.status == status)
        stmt = stmt.order_by(_logs.c.seq.desc()).limit(limit)

        with self._begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_row_to_log(row) for row in rows]

    # ---- RebalancingExecutionStore

    def insert_rebalancing_execution(self, *, execution: RebalancingExecution) -> None:
        with self._begin() as conn:
            conn.execute(insert(_executions).values(**_record_values(execution)))

    def get_rebalancing_execution(self, *, execution_id: str) -> Optional[RebalancingExecution]:
        with self._begin() as conn:
            row = conn.execute(select(_executions).where(_executions.c.id == execution_id)).mappings().first()
        return None if row is None else _row_to_execution(row)

    def save_rebalancing_execution(self, *, execution: RebalancingExecution) -> None:
        values = _record_values(execution)
        values.pop("id")
        with self._begin() as conn:
            result = conn.execute(update(_executions).where(_executions.c.id == execution.id).values(**values))
        if result.rowcount == 0:
            raise RuleNotFound("RebalancingExecution", execution.id)

    def list_rebalancing_executions(self, *, rule_id: str) -> Sequence[RebalancingExecution]:
        stmt = select(_executions).where(_executions.c.rule_id == rule_id).order_by(_executions.c.seq.desc())
        with self._begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_row_to_execution(row) for row in rows]

    # ---- NotificationStore

    def insert_preference(self, *, preference: NotificationPreference) -> None:
        with self._begin() as conn:
            conn.execute(insert(_prefs).values(**_preference_values(preference)))

    def get_preference(self, *, preference_id: str) -> Optional[NotificationPreference]:
        with self._begin() as conn:
            row = conn.execute(select(_prefs).where(_prefs.c.id == preference_id)).mappings().first()
        return None if row is None else _row_to_preference(row)

    def save_preference(self, *, preference: NotificationPreference) -> None:
        values = _preference_values(preference)
        values.pop("id")
        with self._begin() as conn:
            result = conn.execute(update(_prefs).where(_prefs.c.id == preference.id).values(**values))
        if result.rowcount == 0:
            raise RuleNotFound("NotificationPreference", preference.id)

    def delete_preference(self, *, preference_id: str) -> bool:
        with self._begin() as conn:
            result = conn.execute(delete(_prefs).where(_prefs.c.id == preference_id))
        return result.rowcount > 0

    def list_preferences(
        self,
        *,
        client_id: int,
        event: NotificationEvent | None = None,
        enabled_only: bool = False,
    ) -> Sequence[NotificationPreference]:
        stmt = select(_prefs).where(_prefs.c.client_id == client_id)
        if event is not None:
            stmt = stmt.where(_prefs.c.event == event)
        if enabled_only:
            stmt = stmt.where(_prefs.c.enabled.is_(True))
        with self._begin() as conn:
            rows = conn.execute(stmt.order_by(_prefs.c.created_at, _prefs.c.id)).mappings().all()
        return [_row_to_preference(row) for row in rows]

    def insert_notification_log(self, *, log: NotificationLog) -> None:
        with self._begin() as conn:
            conn.execute(insert(_notifs).values(**_notification_values(log)))

    def mark_notification(
        self,
        *,
        log_id: str,
        status: NotificationStatus,
        sent_at: datetime | None = None,
        error: str | None = None,
    ) -> None:
        with self._begin() as conn:
            conn.execute(
                update(_notifs)
                .where(_notifs.c.id == log_id, _notifs.c.status == "Pending")
                .values(status=status, sent_at=_as_utc(sent_at) if sent_at else None, error=error)
            )

    def list_deferred_notifications(self, *, due_before: datetime) -> Sequence[NotificationLog]:
        stmt = (
            select(_notifs)
            .where(
                _notifs.c.status == "Pending",
                _notifs.c.deliver_after.is_not(None),
                _notifs.c.deliver_after <= _as_utc(due_before),
            )
            .order_by(_notifs.c.seq)
        )
        with self._begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_row_to_notification(row) for row in rows]

    def get_notification_logs(
        self,
        *,
        client_id: int,
        event: NotificationEvent | None = None,
        channel: NotificationChannel | None = None,
        limit: int = 100,
    ) -> Sequence[NotificationLog]:
        stmt = select(_notifs).where(_notifs.c.client_id == client_id)
        if event is not None:
            stmt = stmt.where(_notifs.c.event == event)
        if channel is not None:
            stmt = stmt.where(_notifs.c.channel == channel)
        stmt = stmt.order_by(_notifs.c.seq.desc()).limit(limit)
        with self._begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_row_to_notification(row) for row in rows]

    # ---- AuthorizationStore

    def insert_authorization(self, *, record: AuthorizationRecord) -> None:
        with self._begin() as conn:
            conn.execute(insert(_auths).values(**_record_values(record)))

    def get_authorization(self, *, record_id: str) -> Optional[AuthorizationRecord]:
        with self._begin() as conn:
            row = conn.execute(select(_auths).where(_auths.c.id == record_id)).mappings().first()
        return None if row is None else AuthorizationRecord(**_record_kwargs(AuthorizationRecord, row))

    def compare_and_set_authorization(self, *, record: AuthorizationRecord, expected_version: int) -> bool:
        values = _record_values(record)
        values.pop("id")
        values["version"] = expected_version + 1
        with self._begin() as conn:
            result = conn.execute(
                update(_auths).where(_auths.c.id == record.id, _auths.c.version == expected_version).values(**values)
            )
        return result.rowcount == 1
