"""HTTP value source backed by the valuation service."""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

import httpx

logger = logging.getLogger(__name__)


class HttpValueSource:
    """Reads valuations from ``GET {base}/values`` and ``GET {base}/allocations/{client}``.

    Missing readings (404, null value) come back as None so rules simply do
    not fire; transport errors propagate to the scheduler's per-rule handler.
    """

    DEFAULT_TIMEOUT = 10.0  # seconds

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"Accept": "application/json", "User-Agent": "wealthauto/0.1"},
            )
        return self._client

    async def _get_json(self, path: str, params: Optional[Mapping[str, Any]] = None) -> Optional[Any]:
        client = await self._get_client()
        response = await client.get(f"{self.base_url}{path}", params=params)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()

    async def current_value(self, kind: str, client_id: int, ref: Optional[str] = None) -> Optional[Decimal]:
        params: dict[str, Any] = {"kind": kind, "clientId": client_id}
        if ref is not None:
            params["ref"] = ref
        data = await self._get_json("/values", params)
        if not isinstance(data, dict) or data.get("value") is None:
            logger.debug(f"No {kind} reading for client {client_id} ({ref})")
            return None
        try:
            return Decimal(str(data["value"]))
        except InvalidOperation:
            logger.warning(f"Unparseable {kind} reading for client {client_id}: {data['value']!r}")
            return None

    async def current_allocation(self, client_id: int) -> Mapping[str, Decimal]:
        data = await self._get_json(f"/allocations/{client_id}")
        if not isinstance(data, dict):
            return {}
        allocation = data.get("allocation", data)
        return {str(k): Decimal(str(v)) for k, v in allocation.items() if v is not None}

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
