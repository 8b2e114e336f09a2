"""Notification preferences: validation, storage helpers and per-event filters."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, time, timedelta, timezone, tzinfo
from decimal import Decimal
from typing import Any, Callable, Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from wealthauto.automation.rules import generate_id, parse_spec, snake_keys
from wealthauto.errors import RuleNotFound
from wealthauto.persistence.interfaces import NotificationStore
from wealthauto.types import (
    NotificationChannel,
    NotificationEvent,
    NotificationPreference,
    QuietHours,
    utc_now,
)

logger = logging.getLogger(__name__)

_HHMM = r"^([01]\d|2[0-3]):[0-5]\d$"


def parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


# ---- Filters


def passes_scheme_filter(preference: NotificationPreference, scheme_id: Optional[int]) -> bool:
    """An empty allow-list or a payload without a scheme always passes."""
    if not preference.schemes or scheme_id is None:
        return True
    return scheme_id in preference.schemes


def passes_amount_filter(preference: NotificationPreference, amount: Optional[Decimal]) -> bool:
    """Amounts below `min_amount` are filtered; payloads without an amount pass."""
    if preference.min_amount is None or amount is None:
        return True
    return amount >= preference.min_amount


def quiet_hours_end(preference: NotificationPreference, now: datetime, tz: tzinfo) -> Optional[datetime]:
    """UTC instant when the current quiet window ends, or None if not quiet now."""
    window = preference.quiet_hours
    if window is None:
        return None
    local = now.astimezone(tz)
    if not window.contains(local.time().replace(tzinfo=None)):
        return None
    end_local = datetime.combine(local.date(), window.end, tzinfo=tz)
    if end_local <= local:
        end_local += timedelta(days=1)
    return end_local.astimezone(timezone.utc)


# ---- Input validation


class QuietHoursSpec(BaseModel):
    start: str = Field(..., pattern=_HHMM)
    end: str = Field(..., pattern=_HHMM)


class PreferenceSpec(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    client_id: int = Field(..., gt=0)
    user_id: Optional[int] = None
    event: NotificationEvent
    channels: list[NotificationChannel] = Field(..., min_length=1)
    enabled: bool = True
    quiet_hours: Optional[QuietHoursSpec] = None
    min_amount: Optional[Decimal] = Field(None, gt=0)
    schemes: list[int] = Field(default_factory=list)

    @field_validator("channels")
    @classmethod
    def _dedupe_channels(cls, value: list[NotificationChannel]) -> list[NotificationChannel]:
        return list(dict.fromkeys(value))


def _quiet_hours(spec: Optional[QuietHoursSpec]) -> Optional[QuietHours]:
    if spec is None:
        return None
    return QuietHours(start=parse_hhmm(spec.start), end=parse_hhmm(spec.end))


def _preference_to_spec_data(preference: NotificationPreference) -> dict[str, Any]:
    quiet = preference.quiet_hours
    return {
        "client_id": preference.client_id,
        "user_id": preference.user_id,
        "event": preference.event,
        "channels": list(preference.channels),
        "enabled": preference.enabled,
        "quiet_hours": (
            {"start": quiet.start.strftime("%H:%M"), "end": quiet.end.strftime("%H:%M")} if quiet else None
        ),
        "min_amount": preference.min_amount,
        "schemes": list(preference.schemes),
    }


class PreferenceManager:
    """CRUD over a client's notification preferences."""

    def __init__(self, store: NotificationStore, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.store = store
        self._clock = clock

    def create(self, data: Mapping[str, Any] | PreferenceSpec) -> NotificationPreference:
        spec = parse_spec(PreferenceSpec, data)
        now = self._clock()
        preference = NotificationPreference(
            id=generate_id("NOTIF-PREF", now),
            client_id=spec.client_id,
            user_id=spec.user_id,
            event=spec.event,
            channels=tuple(spec.channels),
            enabled=spec.enabled,
            quiet_hours=_quiet_hours(spec.quiet_hours),
            min_amount=spec.min_amount,
            schemes=tuple(spec.schemes),
            created_at=now,
            updated_at=now,
        )
        self.store.insert_preference(preference=preference)
        logger.info(f"Created notification preference {preference.id} for client {spec.client_id}")
        return preference

    def update(self, preference_id: str, changes: Mapping[str, Any]) -> NotificationPreference:
        current = self.store.get_preference(preference_id=preference_id)
        if current is None:
            raise RuleNotFound("NotificationPreference", preference_id)
        data = {**_preference_to_spec_data(current), **snake_keys(changes)}
        data["client_id"] = current.client_id
        spec = parse_spec(PreferenceSpec, data)
        updated = replace(
            current,
            user_id=spec.user_id,
            event=spec.event,
            channels=tuple(spec.channels),
            enabled=spec.enabled,
            quiet_hours=_quiet_hours(spec.quiet_hours),
            min_amount=spec.min_amount,
            schemes=tuple(spec.schemes),
            updated_at=self._clock(),
        )
        self.store.save_preference(preference=updated)
        return updated

    def delete(self, preference_id: str) -> bool:
        return self.store.delete_preference(preference_id=preference_id)

    def list_preferences(self, client_id: int, event: Optional[NotificationEvent] = None) -> Sequence[NotificationPreference]:
        return self.store.list_preferences(client_id=client_id, event=event)
