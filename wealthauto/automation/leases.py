"""Per-rule execution leases.

A lease is held by an owner token until it is released or expires. An expired
lease can be taken over, so a crashed worker never wedges a rule.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class Lease:
    key: str
    owner: str
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


class LeaseMap:
    """Thread-safe map of key -> lease with expiry."""

    def __init__(self) -> None:
        self._leases: dict[str, Lease] = {}
        self._lock = threading.Lock()

    def acquire(self, key: str, owner: str, *, expires_at: datetime, now: datetime) -> bool:
        with self._lock:
            current = self._leases.get(key)
            if current is not None and not current.is_expired(now):
                return False
            self._leases[key] = Lease(key=key, owner=owner, expires_at=expires_at)
            return True

    def release(self, key: str, owner: str) -> bool:
        with self._lock:
            current = self._leases.get(key)
            if current is None or current.owner != owner:
                return False
            del self._leases[key]
            return True

    def holder(self, key: str, *, now: datetime) -> Optional[Lease]:
        with self._lock:
            current = self._leases.get(key)
            if current is None or current.is_expired(now):
                return None
            return current

    def __len__(self) -> int:
        with self._lock:
            return len(self._leases)
