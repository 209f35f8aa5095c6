from __future__ import annotations

import asyncio
from typing import Any

import httpx

from subsync.client.errors import ApiError, NetworkError, RequestTimeout

# Independent budgets per call class (seconds)
DEFAULT_TIMEOUTS: dict[str, float] = {
    "subscription": 10.0,
    "access": 5.0,
    "inventory": 5.0,
    "sync": 30.0,
    "events": 10.0,
}


class SubscriptionApi:
    def __init__(
        self,
        *,
        base_url: str,
        token: str,
        timeouts: dict[str, float] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = (base_url or "").rstrip("/")
        self._token = (token or "").strip()
        self._timeouts = {**DEFAULT_TIMEOUTS, **(timeouts or {})}
        self._client = client or httpx.AsyncClient(base_url=self._base_url)

    async def aclose(self) -> None:
        await self._client.aclose()

    def timeout_for(self, kind: str) -> float:
        return self._timeouts[kind]

    async def _request(self, kind: str, method: str, path: str, *, json: Any = None, params: dict[str, Any] | None = None) -> Any:
        timeout_s = self.timeout_for(kind)
        headers = {"Authorization": f"Bearer {self._token}", "Accept": "application/json"}
        try:
            resp = await asyncio.wait_for(
                self._client.request(method, path, headers=headers, json=json, params=params),
                timeout=timeout_s,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            raise RequestTimeout(kind, timeout_s)
        except httpx.TransportError as e:
            raise NetworkError(f"{kind} request failed: {e}") from e

        try:
            data = resp.json()
        except ValueError:
            data = None

        if resp.status_code >= 400:
            message = ""
            if isinstance(data, dict):
                message = str(data.get("error") or "")
            if not message:
                message = resp.text[:500]
            raise ApiError(resp.status_code, message, data)

        if data is None:
            raise ApiError(resp.status_code, "invalid JSON in response")
        return data

    async def fetch_subscription(self) -> dict[str, Any]:
        """{"subscription": {...}, "enhancedStatus": {...} | None}"""
        return await self._request("subscription", "GET", "/api/subscription")

    async def check_access(self) -> dict[str, Any]:
        return await self._request("access", "GET", "/api/subscription/access")

    async def inventory_limit(self) -> dict[str, Any]:
        return await self._request("inventory", "GET", "/api/subscription/inventory-limit")

    async def sync(self, user_id: str) -> dict[str, Any]:
        return await self._request("sync", "POST", "/sync", json={"userId": user_id})

    async def events(self, limit: int = 50) -> list[dict[str, Any]]:
        data = await self._request("events", "GET", "/api/events", params={"limit": limit})
        return list(data.get("events") or [])
