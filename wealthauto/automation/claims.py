"""Claim/release mutual exclusion for manually-authorized orders.

State machine::

    PendingApproval -> Claimed(by) -> InProgress -> Authorized | Rejected
    Claimed --release--> PendingApproval

Every transition is a compare-and-set on the record version, so two operators
racing for the same record can never both win. A Claimed record whose claim
has expired may be claimed again by anyone.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Optional

from wealthauto.automation.rules import generate_id
from wealthauto.errors import AlreadyClaimed, ClaimError, InvalidTransition, NotAuthorized, RuleNotFound
from wealthauto.persistence.interfaces import AuthorizationStore
from wealthauto.types import AuthorizationRecord, utc_now

logger = logging.getLogger(__name__)

TERMINAL_STATES = frozenset({"Authorized", "Rejected"})

# Attempts before a compare-and-set loop gives up
MAX_CAS_ATTEMPTS = 5


def claim_expired(record: AuthorizationRecord, now: datetime) -> bool:
    return (
        record.state == "Claimed"
        and record.claim_expires_at is not None
        and record.claim_expires_at <= now
    )


class ClaimController:
    """Guards authorization records against concurrent operator actions."""

    def __init__(
        self,
        store: AuthorizationStore,
        *,
        claim_ttl: timedelta = timedelta(minutes=15),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.claim_ttl = claim_ttl
        self._clock = clock

    def create(self, *, order_ref: Optional[str] = None) -> AuthorizationRecord:
        now = self._clock()
        record = AuthorizationRecord(id=generate_id("AUTH", now), order_ref=order_ref, created_at=now)
        self.store.insert_authorization(record=record)
        logger.info(f"Authorization {record.id} awaiting approval for {order_ref}")
        return record

    def get(self, record_id: str) -> AuthorizationRecord:
        record = self.store.get_authorization(record_id=record_id)
        if record is None:
            raise RuleNotFound("Authorization", record_id)
        return record

    def _transition(
        self,
        record_id: str,
        build: Callable[[AuthorizationRecord, datetime], AuthorizationRecord],
    ) -> AuthorizationRecord:
        """Re-read, validate and conditionally write until the version matches."""
        for _ in range(MAX_CAS_ATTEMPTS):
            current = self.get(record_id)
            now = self._clock()
            updated = build(current, now)
            if self.store.compare_and_set_authorization(record=updated, expected_version=current.version):
                return replace(updated, version=current.version + 1)
            logger.debug(f"Authorization {record_id} changed concurrently, retrying")
        raise ClaimError(f"Authorization {record_id} is too contended to update", record_id)

    @staticmethod
    def _require_holder(record: AuthorizationRecord, operator_id: str, now: datetime) -> None:
        if record.state in TERMINAL_STATES:
            raise InvalidTransition(f"Authorization {record.id} is already {record.state}")
        if record.state not in ("Claimed", "InProgress") or record.claimed_by != operator_id:
            raise NotAuthorized(record.id, operator_id)
        if claim_expired(record, now):
            raise NotAuthorized(record.id, operator_id)

    # ---- Transitions

    def claim(self, record_id: str, operator_id: str) -> AuthorizationRecord:
        def build(record: AuthorizationRecord, now: datetime) -> AuthorizationRecord:
            if record.state in TERMINAL_STATES:
                raise InvalidTransition(f"Authorization {record.id} is already {record.state}")
            if record.state != "PendingApproval" and not claim_expired(record, now):
                raise AlreadyClaimed(record.id, record.claimed_by)
            return replace(
                record,
                state="Claimed",
                claimed_by=operator_id,
                claimed_at=now,
                claim_expires_at=now + self.claim_ttl,
            )

        claimed = self._transition(record_id, build)
        logger.info(f"Authorization {record_id} claimed by {operator_id}")
        return claimed

    def release(self, record_id: str, operator_id: str) -> AuthorizationRecord:
        def build(record: AuthorizationRecord, now: datetime) -> AuthorizationRecord:
            if record.state == "InProgress" and record.claimed_by == operator_id:
                raise InvalidTransition(f"Authorization {record.id} is in progress and cannot be released")
            if record.state != "Claimed" or record.claimed_by != operator_id:
                self._require_holder(record, operator_id, now)
            return replace(
                record,
                state="PendingApproval",
                claimed_by=None,
                claimed_at=None,
                claim_expires_at=None,
            )

        released = self._transition(record_id, build)
        logger.info(f"Authorization {record_id} released by {operator_id}")
        return released

    def start(self, record_id: str, operator_id: str) -> AuthorizationRecord:
        def build(record: AuthorizationRecord, now: datetime) -> AuthorizationRecord:
            self._require_holder(record, operator_id, now)
            if record.state != "Claimed":
                raise InvalidTransition(f"Authorization {record.id} is already {record.state}")
            return replace(record, state="InProgress", claim_expires_at=None)

        return self._transition(record_id, build)

    def authorize(self, record_id: str, operator_id: str) -> AuthorizationRecord:
        def build(record: AuthorizationRecord, now: datetime) -> AuthorizationRecord:
            self._require_holder(record, operator_id, now)
            return replace(record, state="Authorized", decided_by=operator_id, decided_at=now, claim_expires_at=None)

        authorized = self._transition(record_id, build)
        logger.info(f"Authorization {record_id} approved by {operator_id}")
        return authorized

    def reject(self, record_id: str, operator_id: str, reason: Optional[str] = None) -> AuthorizationRecord:
        def build(record: AuthorizationRecord, now: datetime) -> AuthorizationRecord:
            self._require_holder(record, operator_id, now)
            return replace(
                record,
                state="Rejected",
                decided_by=operator_id,
                decided_at=now,
                rejection_reason=reason,
                claim_expires_at=None,
            )

        rejected = self._transition(record_id, build)
        logger.info(f"Authorization {record_id} rejected by {operator_id}: {reason}")
        return rejected
