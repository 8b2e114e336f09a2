"""Rule input specifications and validation.

Client-facing create/update payloads are validated here before anything is
persisted. Both snake_case and camelCase keys are accepted.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import replace
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Literal, Mapping, Optional, TypeVar

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from wealthauto.automation.rebalancing import ALLOCATION_TOLERANCE, allocation_total, is_balanced_total
from wealthauto.automation.schedule import first_occurrence
from wealthauto.errors import ValidationError
from wealthauto.types import (
    AutoInvestRule,
    AutoInvestTriggerType,
    Frequency,
    OrderType,
    RebalancingRule,
    RebalancingStrategy,
    TriggerCondition,
    TriggerOrder,
    TriggerType,
)

ID_PREFIXES = {
    "AutoInvest": "AUTO",
    "Rebalancing": "REBAL",
    "TriggerOrder": "TRIGGER",
}

SpecT = TypeVar("SpecT", bound=BaseModel)


def generate_id(prefix: str, now: Optional[datetime] = None) -> str:
    """Return an id like ``AUTO-20240115-3F9A1C2B7D``."""
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%d")
    return f"{prefix}-{stamp}-{uuid.uuid4().hex[:10].upper()}"


def snake_keys(data: Mapping[str, Any]) -> dict[str, Any]:
    """Normalize camelCase keys to the snake_case field names."""
    return {re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower(): value for key, value in data.items()}


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class _Spec(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class TriggerConfigSpec(_Spec):
    day_of_month: Optional[int] = Field(None, ge=1, le=31)
    day_of_week: Optional[int] = Field(None, ge=0, le=6)
    time: Optional[str] = Field(None, pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    goal_progress_threshold: Optional[Decimal] = Field(None, ge=0, le=100)
    goal_progress_direction: Optional[Literal["above", "below"]] = None
    drift_threshold: Optional[Decimal] = Field(None, gt=0)
    rebalance_threshold: Optional[Decimal] = Field(None, gt=0)
    market_condition: Optional[Literal["Bull", "Bear", "Neutral"]] = None
    nav_change_threshold: Optional[Decimal] = Field(None, gt=0)
    custom_conditions: Optional[dict[str, Any]] = None

    def as_config(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---- Auto-invest


class AutoInvestRuleSpec(_Spec):
    client_id: int = Field(..., gt=0)
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    scheme_id: int = Field(..., gt=0)
    amount: Decimal = Field(..., gt=0)
    frequency: Frequency
    trigger_type: AutoInvestTriggerType = "Date"
    trigger_config: TriggerConfigSpec = Field(default_factory=TriggerConfigSpec)
    goal_id: Optional[int] = None
    start_date: date
    end_date: Optional[date] = None
    max_total_amount: Optional[Decimal] = Field(None, gt=0)
    max_per_execution: Optional[Decimal] = Field(None, gt=0)
    min_balance_required: Optional[Decimal] = Field(None, ge=0)

    @model_validator(mode="after")
    def _check_consistency(self) -> AutoInvestRuleSpec:
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("endDate must not be before startDate")
        if self.trigger_type == "Goal Progress" and self.goal_id is None:
            raise ValueError("Goal Progress trigger requires goalId")
        if self.trigger_type == "Portfolio Drift" and self.trigger_config.drift_threshold is None:
            raise ValueError("Portfolio Drift trigger requires triggerConfig.driftThreshold")
        if self.trigger_type == "Market Condition" and self.trigger_config.nav_change_threshold is None:
            raise ValueError("Market Condition trigger requires triggerConfig.navChangeThreshold")
        return self


class AutoInvestRuleUpdate(_Spec):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    amount: Optional[Decimal] = Field(None, gt=0)
    frequency: Optional[Frequency] = None
    trigger_type: Optional[AutoInvestTriggerType] = None
    trigger_config: Optional[TriggerConfigSpec] = None
    goal_id: Optional[int] = None
    end_date: Optional[date] = None
    is_enabled: Optional[bool] = None
    max_total_amount: Optional[Decimal] = Field(None, gt=0)
    max_per_execution: Optional[Decimal] = Field(None, gt=0)
    min_balance_required: Optional[Decimal] = Field(None, ge=0)


# ---- Rebalancing


class RebalancingRuleSpec(_Spec):
    client_id: int = Field(..., gt=0)
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    strategy: RebalancingStrategy
    target_allocation: dict[str, Decimal]
    threshold_percent: Decimal = Field(..., gt=0, le=100)
    rebalance_amount: Optional[Decimal] = Field(None, gt=0)
    frequency: Optional[Frequency] = None
    day_of_month: Optional[int] = Field(None, ge=1, le=31)
    day_of_week: Optional[int] = Field(None, ge=0, le=6)
    trigger_on_drift: bool = True
    trigger_on_schedule: bool = False
    min_drift_percent: Optional[Decimal] = Field(None, ge=0)
    execute_automatically: bool = True
    require_confirmation: bool = False
    start_date: Optional[date] = None

    @field_validator("target_allocation")
    @classmethod
    def _check_allocation(cls, value: dict[str, Decimal]) -> dict[str, Decimal]:
        if not value:
            raise ValueError("targetAllocation must not be empty")
        for asset_class, percent in value.items():
            if not asset_class.strip():
                raise ValueError("targetAllocation keys must be non-empty")
            if percent < 0 or percent > 100:
                raise ValueError(f"targetAllocation[{asset_class}] must be between 0 and 100")
        if not is_balanced_total(value):
            raise ValueError(
                f"targetAllocation must sum to 100 (+/- {ALLOCATION_TOLERANCE}), got {allocation_total(value)}"
            )
        return value

    @model_validator(mode="after")
    def _check_triggers(self) -> RebalancingRuleSpec:
        if not (self.trigger_on_drift or self.trigger_on_schedule):
            raise ValueError("At least one of triggerOnDrift / triggerOnSchedule must be set")
        if self.trigger_on_schedule and self.frequency is None:
            raise ValueError("triggerOnSchedule requires frequency")
        return self


class RebalancingRuleUpdate(_Spec):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    strategy: Optional[RebalancingStrategy] = None
    target_allocation: Optional[dict[str, Decimal]] = None
    threshold_percent: Optional[Decimal] = Field(None, gt=0, le=100)
    rebalance_amount: Optional[Decimal] = Field(None, gt=0)
    frequency: Optional[Frequency] = None
    day_of_month: Optional[int] = Field(None, ge=1, le=31)
    day_of_week: Optional[int] = Field(None, ge=0, le=6)
    trigger_on_drift: Optional[bool] = None
    trigger_on_schedule: Optional[bool] = None
    min_drift_percent: Optional[Decimal] = Field(None, ge=0)
    execute_automatically: Optional[bool] = None
    require_confirmation: Optional[bool] = None
    is_enabled: Optional[bool] = None


# ---- Trigger orders


class TriggerOrderSpec(_Spec):
    client_id: int = Field(..., gt=0)
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    trigger_type: TriggerType
    trigger_condition: TriggerCondition
    trigger_value: Decimal
    trigger_field: Optional[str] = None
    order_type: OrderType
    scheme_id: int = Field(..., gt=0)
    amount: Optional[Decimal] = Field(None, gt=0)
    units: Optional[Decimal] = Field(None, gt=0)
    target_scheme_id: Optional[int] = Field(None, gt=0)
    goal_id: Optional[int] = None
    valid_from: datetime
    valid_until: Optional[datetime] = None

    @field_validator("valid_from", "valid_until")
    @classmethod
    def _to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return None if value is None else _as_utc(value)

    @model_validator(mode="after")
    def _check_order(self) -> TriggerOrderSpec:
        if (self.amount is None) == (self.units is None):
            raise ValueError("Exactly one of amount or units is required")
        if self.order_type == "Switch":
            if self.target_scheme_id is None:
                raise ValueError("Switch orders require targetSchemeId")
            if self.target_scheme_id == self.scheme_id:
                raise ValueError("targetSchemeId must differ from schemeId")
        elif self.target_scheme_id is not None:
            raise ValueError("targetSchemeId is only valid for Switch orders")
        if self.valid_until is not None and self.valid_until <= self.valid_from:
            raise ValueError("validUntil must be after validFrom")
        if self.trigger_type == "Custom" and not self.trigger_field:
            raise ValueError("Custom triggers require triggerField")
        if self.trigger_type == "Goal Progress" and self.goal_id is None:
            raise ValueError("Goal Progress triggers require goalId")
        return self


class TriggerOrderUpdate(_Spec):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    trigger_condition: Optional[TriggerCondition] = None
    trigger_value: Optional[Decimal] = None
    amount: Optional[Decimal] = Field(None, gt=0)
    units: Optional[Decimal] = Field(None, gt=0)
    valid_until: Optional[datetime] = None
    is_enabled: Optional[bool] = None

    @field_validator("valid_until")
    @classmethod
    def _to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return None if value is None else _as_utc(value)


SPEC_MODELS: Mapping[str, type[BaseModel]] = {
    "AutoInvest": AutoInvestRuleSpec,
    "Rebalancing": RebalancingRuleSpec,
    "TriggerOrder": TriggerOrderSpec,
}

UPDATE_MODELS: Mapping[str, type[BaseModel]] = {
    "AutoInvest": AutoInvestRuleUpdate,
    "Rebalancing": RebalancingRuleUpdate,
    "TriggerOrder": TriggerOrderUpdate,
}


def parse_spec(model: type[SpecT], data: Mapping[str, Any] | SpecT) -> SpecT:
    """Validate `data` against `model`, raising the engine's ValidationError."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(dict(data))
    except pydantic.ValidationError as exc:
        errors = [
            f"{'.'.join(str(part) for part in err['loc']) or '<root>'}: {err['msg']}" for err in exc.errors()
        ]
        raise ValidationError(f"Invalid {model.__name__}: {'; '.join(errors)}", errors) from exc


# ---- Builders


def build_auto_invest_rule(
    spec: AutoInvestRuleSpec,
    *,
    rule_id: str,
    today: date,
    now: datetime,
    created_by: Optional[str] = None,
) -> AutoInvestRule:
    config = spec.trigger_config.as_config()
    anchor = max(spec.start_date, today)
    next_date = first_occurrence(
        anchor,
        spec.frequency,
        day_of_month=spec.trigger_config.day_of_month or spec.start_date.day,
        day_of_week=spec.trigger_config.day_of_week,
    )
    return AutoInvestRule(
        id=rule_id,
        client_id=spec.client_id,
        name=spec.name,
        description=spec.description,
        scheme_id=spec.scheme_id,
        amount=spec.amount,
        frequency=spec.frequency,
        trigger_type=spec.trigger_type,
        trigger_config=config,
        goal_id=spec.goal_id,
        start_date=spec.start_date,
        end_date=spec.end_date,
        next_execution_date=next_date,
        max_total_amount=spec.max_total_amount,
        max_per_execution=spec.max_per_execution,
        min_balance_required=spec.min_balance_required,
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )


def build_rebalancing_rule(
    spec: RebalancingRuleSpec,
    *,
    rule_id: str,
    today: date,
    now: datetime,
    created_by: Optional[str] = None,
) -> RebalancingRule:
    next_date = None
    if spec.trigger_on_schedule and spec.frequency is not None:
        next_date = first_occurrence(
            max(spec.start_date or today, today),
            spec.frequency,
            day_of_month=spec.day_of_month,
            day_of_week=spec.day_of_week,
        )
    return RebalancingRule(
        id=rule_id,
        client_id=spec.client_id,
        name=spec.name,
        description=spec.description,
        strategy=spec.strategy,
        target_allocation=dict(spec.target_allocation),
        threshold_percent=spec.threshold_percent,
        rebalance_amount=spec.rebalance_amount,
        frequency=spec.frequency,
        day_of_month=spec.day_of_month,
        day_of_week=spec.day_of_week,
        trigger_on_drift=spec.trigger_on_drift,
        trigger_on_schedule=spec.trigger_on_schedule,
        min_drift_percent=spec.min_drift_percent,
        execute_automatically=spec.execute_automatically,
        require_confirmation=spec.require_confirmation,
        next_rebalancing_date=next_date,
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )


def build_trigger_order(
    spec: TriggerOrderSpec,
    *,
    rule_id: str,
    now: datetime,
    created_by: Optional[str] = None,
) -> TriggerOrder:
    return TriggerOrder(
        id=rule_id,
        client_id=spec.client_id,
        name=spec.name,
        description=spec.description,
        trigger_type=spec.trigger_type,
        trigger_condition=spec.trigger_condition,
        trigger_value=spec.trigger_value,
        trigger_field=spec.trigger_field,
        order_type=spec.order_type,
        scheme_id=spec.scheme_id,
        amount=spec.amount,
        units=spec.units,
        target_scheme_id=spec.target_scheme_id,
        goal_id=spec.goal_id,
        valid_from=spec.valid_from,
        valid_until=spec.valid_until,
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )


# ---- Updates


def apply_auto_invest_update(
    rule: AutoInvestRule, update: AutoInvestRuleUpdate, *, today: date, now: datetime
) -> AutoInvestRule:
    changes = update.model_dump(exclude_unset=True)
    merged = parse_spec(
        AutoInvestRuleSpec,
        {
            "client_id": rule.client_id,
            "name": changes.get("name", rule.name),
            "description": changes.get("description", rule.description),
            "scheme_id": rule.scheme_id,
            "amount": changes.get("amount", rule.amount),
            "frequency": changes.get("frequency", rule.frequency),
            "trigger_type": changes.get("trigger_type", rule.trigger_type),
            "trigger_config": changes.get("trigger_config", dict(rule.trigger_config)),
            "goal_id": changes.get("goal_id", rule.goal_id),
            "start_date": rule.start_date,
            "end_date": changes.get("end_date", rule.end_date),
            "max_total_amount": changes.get("max_total_amount", rule.max_total_amount),
            "max_per_execution": changes.get("max_per_execution", rule.max_per_execution),
            "min_balance_required": changes.get("min_balance_required", rule.min_balance_required),
        }
    )
    updated = replace(
        rule,
        name=merged.name,
        description=merged.description,
        amount=merged.amount,
        frequency=merged.frequency,
        trigger_type=merged.trigger_type,
        trigger_config=merged.trigger_config.as_config(),
        goal_id=merged.goal_id,
        end_date=merged.end_date,
        max_total_amount=merged.max_total_amount,
        max_per_execution=merged.max_per_execution,
        min_balance_required=merged.min_balance_required,
        is_enabled=changes.get("is_enabled", rule.is_enabled),
        updated_at=now,
    )
    if "frequency" in changes or "trigger_config" in changes:
        updated = replace(
            updated,
            next_execution_date=first_occurrence(
                max(rule.start_date, today),
                merged.frequency,
                day_of_month=merged.trigger_config.day_of_month or rule.start_date.day,
                day_of_week=merged.trigger_config.day_of_week,
            ),
        )
    return updated


def apply_rebalancing_update(
    rule: RebalancingRule, update: RebalancingRuleUpdate, *, today: date, now: datetime
) -> RebalancingRule:
    changes = update.model_dump(exclude_unset=True)
    merged = parse_spec(
        RebalancingRuleSpec,
        {
            "client_id": rule.client_id,
            "name": changes.get("name", rule.name),
            "description": changes.get("description", rule.description),
            "strategy": changes.get("strategy", rule.strategy),
            "target_allocation": changes.get("target_allocation", dict(rule.target_allocation)),
            "threshold_percent": changes.get("threshold_percent", rule.threshold_percent),
            "rebalance_amount": changes.get("rebalance_amount", rule.rebalance_amount),
            "frequency": changes.get("frequency", rule.frequency),
            "day_of_month": changes.get("day_of_month", rule.day_of_month),
            "day_of_week": changes.get("day_of_week", rule.day_of_week),
            "trigger_on_drift": changes.get("trigger_on_drift", rule.trigger_on_drift),
            "trigger_on_schedule": changes.get("trigger_on_schedule", rule.trigger_on_schedule),
            "min_drift_percent": changes.get("min_drift_percent", rule.min_drift_percent),
            "execute_automatically": changes.get("execute_automatically", rule.execute_automatically),
            "require_confirmation": changes.get("require_confirmation", rule.require_confirmation),
        }
    )
    updated = replace(
        rule,
        name=merged.name,
        description=merged.description,
        strategy=merged.strategy,
        target_allocation=dict(merged.target_allocation),
        threshold_percent=merged.threshold_percent,
        rebalance_amount=merged.rebalance_amount,
        frequency=merged.frequency,
        day_of_month=merged.day_of_month,
        day_of_week=merged.day_of_week,
        trigger_on_drift=merged.trigger_on_drift,
        trigger_on_schedule=merged.trigger_on_schedule,
        min_drift_percent=merged.min_drift_percent,
        execute_automatically=merged.execute_automatically,
        require_confirmation=merged.require_confirmation,
        is_enabled=changes.get("is_enabled", rule.is_enabled),
        updated_at=now,
    )
    schedule_keys = {"frequency", "day_of_month", "day_of_week", "trigger_on_schedule"}
    if schedule_keys & changes.keys():
        next_date = None
        if merged.trigger_on_schedule and merged.frequency is not None:
            next_date = first_occurrence(
                today, merged.frequency, day_of_month=merged.day_of_month, day_of_week=merged.day_of_week
            )
        updated = replace(updated, next_rebalancing_date=next_date)
    return updated


def apply_trigger_order_update(order: TriggerOrder, update: TriggerOrderUpdate, *, now: datetime) -> TriggerOrder:
    changes = update.model_dump(exclude_unset=True)
    amount = changes.get("amount", order.amount)
    units = changes.get("units", order.units)
    if "amount" in changes and "units" not in changes:
        units = None
    if "units" in changes and "amount" not in changes:
        amount = None
    valid_until = changes.get("valid_until", order.valid_until)
    if (amount is None) == (units is None):
        raise ValidationError("Exactly one of amount or units is required")
    if valid_until is not None and valid_until <= order.valid_from:
        raise ValidationError("validUntil must be after validFrom")
    condition_changed = "trigger_condition" in changes or "trigger_value" in changes
    return replace(
        order,
        name=changes.get("name", order.name),
        description=changes.get("description", order.description),
        trigger_condition=changes.get("trigger_condition", order.trigger_condition),
        trigger_value=changes.get("trigger_value", order.trigger_value),
        amount=amount,
        units=units,
        valid_until=valid_until,
        is_enabled=changes.get("is_enabled", order.is_enabled),
        # A new threshold starts a fresh crossing history.
        last_observed_value=None if condition_changed else order.last_observed_value,
        updated_at=now,
    )
