"""In-memory value source for tests, dry runs and back-office replays."""

from __future__ import annotations

from decimal import Decimal
from typing import Mapping, Optional, Union

Number = Union[Decimal, int, float, str]


class StaticValueSource:
    """Value source backed by explicitly set readings."""

    def __init__(self) -> None:
        self._values: dict[tuple[str, int, Optional[str]], Decimal] = {}
        self._allocations: dict[int, dict[str, Decimal]] = {}

    def set_value(self, kind: str, client_id: int, value: Optional[Number], ref: Optional[str] = None) -> None:
        key = (kind, client_id, ref)
        if value is None:
            self._values.pop(key, None)
        else:
            self._values[key] = Decimal(str(value))

    def set_allocation(self, client_id: int, allocation: Mapping[str, Number]) -> None:
        self._allocations[client_id] = {k: Decimal(str(v)) for k, v in allocation.items()}

    async def current_value(self, kind: str, client_id: int, ref: Optional[str] = None) -> Optional[Decimal]:
        value = self._values.get((kind, client_id, ref))
        if value is None and ref is not None:
            # Fall back to a client-wide reading
            value = self._values.get((kind, client_id, None))
        return value

    async def current_allocation(self, client_id: int) -> Mapping[str, Decimal]:
        return dict(self._allocations.get(client_id, {}))
