"""Notification dispatcher: matches automation events against client preferences
and fans them out to channel transports."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Mapping, Optional, Protocol
from zoneinfo import ZoneInfo

from wealthauto.automation.audit import to_jsonable
from wealthauto.automation.rules import generate_id
from wealthauto.config import NotificationSettings
from wealthauto.errors import DuplicateRecord
from wealthauto.notifications.preferences import (
    passes_amount_filter,
    passes_scheme_filter,
    quiet_hours_end,
)
from wealthauto.persistence.interfaces import NotificationStore
from wealthauto.types import (
    NotificationChannel,
    NotificationEvent,
    NotificationLog,
    utc_now,
)

logger = logging.getLogger(__name__)

EVENT_SUBJECTS: Mapping[str, str] = {
    "Order Submitted": "Order Submitted Successfully",
    "Order Executed": "Order Executed",
    "Order Failed": "Order Failed",
    "Order Settled": "Order Settled",
    "Auto-Invest Executed": "Auto-Invest Executed",
    "Auto-Invest Failed": "Auto-Invest Failed",
    "Rebalancing Triggered": "Portfolio Rebalancing Triggered",
    "Rebalancing Executed": "Portfolio Rebalancing Completed",
    "Trigger Order Activated": "Trigger Order Activated",
    "Goal Milestone Reached": "Goal Milestone Reached",
    "Portfolio Alert": "Portfolio Alert",
    "Market Update": "Market Update",
}


class NotificationTransport(Protocol):
    """Protocol for delivering one notification over a concrete channel."""

    async def send(self, channel: NotificationChannel, recipient: str, payload: Mapping[str, Any]) -> None:
        """Deliver the payload. Raises on failure."""
        ...


@dataclass(frozen=True)
class EventPayload:
    """What happened, as seen by notification filters and templates."""

    message: str
    subject: Optional[str] = None
    amount: Optional[Decimal] = None
    scheme_id: Optional[int] = None
    automation_id: Optional[str] = None
    execution_date: Optional[date] = None
    order_id: Optional[str] = None
    recipient: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


def dedup_key(event: NotificationEvent, payload: EventPayload, channel: NotificationChannel) -> Optional[str]:
    """Key that makes redelivery of one automation outcome idempotent per channel."""
    if payload.automation_id is None or payload.execution_date is None:
        return None
    return f"{payload.automation_id}:{payload.execution_date.isoformat()}:{event}:{channel}"


def _earliest(a: Optional[datetime], b: Optional[datetime]) -> Optional[datetime]:
    # None means "deliver now" and wins over any deferral.
    if a is None or b is None:
        return None
    return min(a, b)


class NotificationDispatcher:
    """Routes automation events to every channel a client subscribed to."""

    def __init__(
        self,
        *,
        store: NotificationStore,
        transport: NotificationTransport,
        settings: Optional[NotificationSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize notification dispatcher.

        Args:
            store: Preference source and notification log sink.
            transport: Channel delivery implementation.
            settings: Quiet-hours timezone. Defaults to the environment.
            clock: Source of the current UTC time.
        """
        self.store = store
        self.transport = transport
        self.settings = settings or NotificationSettings.from_env()
        self.tz = ZoneInfo(self.settings.timezone)
        self._clock = clock

    def _route(
        self,
        event: NotificationEvent,
        client_id: int,
        payload: EventPayload,
        now: datetime,
    ) -> dict[NotificationChannel, Optional[datetime]]:
        """Surviving channels mapped to their deferral instant (None = now)."""
        routes: dict[NotificationChannel, Optional[datetime]] = {}
        for preference in self.store.list_preferences(client_id=client_id, event=event, enabled_only=True):
            if not passes_scheme_filter(preference, payload.scheme_id):
                logger.debug(f"Preference {preference.id} skipped: scheme {payload.scheme_id} not in allow-list")
                continue
            if not passes_amount_filter(preference, payload.amount):
                logger.debug(f"Preference {preference.id} skipped: amount {payload.amount} below minimum")
                continue
            deferred_until = quiet_hours_end(preference, now, self.tz)
            for channel in preference.channels:
                if channel in routes:
                    routes[channel] = _earliest(routes[channel], deferred_until)
                else:
                    routes[channel] = deferred_until
        return routes

    async def dispatch(
        self,
        event: NotificationEvent,
        client_id: int,
        payload: EventPayload,
        *,
        now: Optional[datetime] = None,
    ) -> list[NotificationLog]:
        """Create one log row per surviving channel and deliver or defer it.

        Returns:
            The rows written by this call. Channels already logged for the same
            automation outcome are skipped.
        """
        now = now or self._clock()
        subject = payload.subject or EVENT_SUBJECTS.get(event, event)
        metadata = to_jsonable(
            {
                "amount": payload.amount,
                "scheme_id": payload.scheme_id,
                "automation_id": payload.automation_id,
                "execution_date": payload.execution_date,
                "order_id": payload.order_id,
                "recipient": payload.recipient,
                **payload.metadata,
            }
        )

        written: list[NotificationLog] = []
        for channel, deferred_until in self._route(event, client_id, payload, now).items():
            # Immediate rows still get a deadline so a send lost to a crash is redelivered.
            deliver_after = deferred_until or now + timedelta(seconds=self.settings.redelivery_grace)
            log = NotificationLog(
                id=generate_id("NOTIF-LOG", now),
                client_id=client_id,
                event=event,
                channel=channel,
                status="Pending",
                subject=subject,
                message=payload.message,
                dedup_key=dedup_key(event, payload, channel),
                deliver_after=deliver_after,
                metadata={k: v for k, v in metadata.items() if v is not None},
                created_at=now,
            )
            try:
                self.store.insert_notification_log(log=log)
            except DuplicateRecord:
                logger.info(f"{event} via {channel} already dispatched for {payload.automation_id}")
                continue

            if deferred_until is None:
                log = await self._deliver(log, now)
            else:
                logger.info(f"{event} via {channel} for client {client_id} deferred until {deliver_after.isoformat()}")
            written.append(log)
        return written

    async def redeliver_deferred(self, *, now: Optional[datetime] = None) -> list[NotificationLog]:
        """Deliver Pending rows whose quiet hours have ended or whose send never completed."""
        now = now or self._clock()
        delivered = []
        for log in self.store.list_deferred_notifications(due_before=now):
            delivered.append(await self._deliver(log, now))
        if delivered:
            logger.info(f"Redelivered {len(delivered)} deferred notification(s)")
        return delivered

    async def _deliver(self, log: NotificationLog, now: datetime) -> NotificationLog:
        recipient = str(log.metadata.get("recipient") or log.user_id or log.client_id)
        body = {
            "event": log.event,
            "subject": log.subject,
            "message": log.message,
            "clientId": log.client_id,
            "metadata": dict(log.metadata),
        }
        try:
            await self.transport.send(log.channel, recipient, body)
        except Exception as exc:
            logger.warning(
                f"{log.channel} notification error: {exc.__class__.__name__}: {exc} | event='{log.event}'"
            )
            self.store.mark_notification(log_id=log.id, status="Failed", error=str(exc))
            return replace(log, status="Failed", error=str(exc))

        self.store.mark_notification(log_id=log.id, status="Sent", sent_at=now)
        return replace(log, status="Sent", sent_at=now)
