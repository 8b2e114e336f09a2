"""Runtime configuration read from environment variables.

Nothing here logs values: DATABASE_URL and webhook URLs may carry credentials.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional

from wealthauto.types import NOTIFICATION_CHANNELS, NotificationChannel


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def _env_decimal(environ: Mapping[str, str], name: str, default: Decimal) -> Decimal:
    raw = environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise ValueError(f"{name} must be a decimal, got {raw!r}") from exc


def _env_bool(environ: Mapping[str, str], name: str, default: bool) -> bool:
    raw = environ.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _channel_env_name(channel: NotificationChannel) -> str:
    return f"NOTIFY_{channel.upper().replace('-', '_')}_WEBHOOK_URL"


@dataclass(frozen=True)
class SchedulerConfig:
    """Configuration for the automation scheduler."""

    # Seconds between cycles
    poll_interval: int = 60

    # Concurrent rule executions within one cycle
    max_workers: int = 8

    # Upper bound on a single executor call, in seconds
    executor_timeout: float = 30.0

    # Rule lock lease; an expired lease can be reclaimed by the next cycle
    lock_lease_seconds: int = 300

    # Consecutive Failed attempts before a rule is paused (0 disables)
    max_consecutive_failures: int = 3

    # Absolute tolerance for "Equals" trigger comparisons
    equals_tolerance: Decimal = Decimal("0.0001")

    # Orders go to the paper executor unless disabled
    dry_run: bool = True

    # Stop after N cycles (None = run forever)
    max_iterations: Optional[int] = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> SchedulerConfig:
        env = os.environ if environ is None else environ
        return cls(
            poll_interval=_env_int(env, "AUTOMATION_CHECK_INTERVAL", cls.poll_interval),
            max_workers=_env_int(env, "AUTOMATION_MAX_WORKERS", cls.max_workers),
            executor_timeout=_env_float(env, "AUTOMATION_EXECUTOR_TIMEOUT", cls.executor_timeout),
            lock_lease_seconds=_env_int(env, "AUTOMATION_LOCK_LEASE", cls.lock_lease_seconds),
            max_consecutive_failures=_env_int(
                env, "AUTOMATION_MAX_CONSECUTIVE_FAILURES", cls.max_consecutive_failures
            ),
            equals_tolerance=_env_decimal(env, "AUTOMATION_EQUALS_TOLERANCE", cls.equals_tolerance),
            dry_run=_env_bool(env, "AUTOMATION_DRY_RUN", cls.dry_run),
        )


@dataclass(frozen=True)
class NotificationSettings:
    """Configuration for notification dispatch and transports."""

    # IANA zone used to evaluate quiet hours
    timezone: str = "UTC"

    # Channel -> webhook endpoint
    webhook_urls: Mapping[str, str] = field(default_factory=dict)

    # Transport request timeout in seconds
    timeout: float = 10.0

    # Seconds an immediate notification may stay Pending before redelivery picks it up
    redelivery_grace: int = 300

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> NotificationSettings:
        env = os.environ if environ is None else environ
        urls = {}
        for channel in NOTIFICATION_CHANNELS:
            url = env.get(_channel_env_name(channel), "").strip()
            if url:
                urls[channel] = url
        return cls(
            timezone=env.get("NOTIFICATION_TIMEZONE", "").strip() or cls.timezone,
            webhook_urls=urls,
            timeout=_env_float(env, "NOTIFICATION_TIMEOUT", cls.timeout),
            redelivery_grace=_env_int(env, "NOTIFICATION_REDELIVERY_GRACE", cls.redelivery_grace),
        )


@dataclass(frozen=True)
class AppConfig:
    database_url: Optional[str] = None
    value_source_url: Optional[str] = None
    claim_ttl_seconds: int = 900
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> AppConfig:
        env = os.environ if environ is None else environ
        return cls(
            database_url=env.get("DATABASE_URL") or None,
            value_source_url=env.get("VALUE_SOURCE_URL") or None,
            claim_ttl_seconds=_env_int(env, "CLAIM_TTL_SECONDS", cls.claim_ttl_seconds),
            scheduler=SchedulerConfig.from_env(env),
            notifications=NotificationSettings.from_env(env),
        )
