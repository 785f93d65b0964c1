from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Protocol

import httpx

from app.core.config import Settings, get_settings
from app.fulfillment.errors import DistributorTransportError

logger = logging.getLogger(__name__)


class DistributorClient(Protocol):
    backend: str

    async def send(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Post one order payload and return the decoded response body.

        Raises DistributorTransportError when no usable body came back.
        """
        ...


class EngineDistributorClient:
    backend = "engine"

    def __init__(self, settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings or get_settings()
        self.transport = transport

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "TGF-API-KEY": self.settings.distributor_api_key or "",
        }

    async def send(self, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.distributor_timeout_seconds,
                transport=self.transport,
            ) as client:
                resp = await client.post(self.settings.distributor_engine_url, json=payload, headers=self._headers())
        except httpx.TimeoutException as exc:
            raise DistributorTransportError(f"engine timeout: {exc}") from exc
        except httpx.HTTPError as exc:
            raise DistributorTransportError(f"engine request failed: {exc}") from exc

        if resp.status_code >= 500:
            raise DistributorTransportError(f"engine returned HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise DistributorTransportError(f"engine returned non-JSON body (HTTP {resp.status_code})") from exc
        if not isinstance(data, dict):
            raise DistributorTransportError("engine returned a non-object body")
        return data


class FakeDistributorClient:
    """Scripted distributor for tests and local runs.

    Responses are queued per account code (or for any account under None). A
    queued exception is raised instead of returned. With nothing queued the
    fake confirms the order.
    """

    backend = "fake"

    def __init__(self, delay_seconds: float = 0.0):
        self.delay_seconds = delay_seconds
        self.sent: list[dict[str, Any]] = []
        self._scripts: dict[str | None, deque[Any]] = {}
        self._counter = 0

    def script(self, *responses: Any, account_code: str | None = None) -> FakeDistributorClient:
        self._scripts.setdefault(account_code, deque()).extend(responses)
        return self

    def _next(self, account_code: str | None) -> Any:
        for key in (account_code, None):
            queue = self._scripts.get(key)
            if queue:
                return queue.popleft()
        return None

    async def send(self, payload: dict[str, Any]) -> dict[str, Any]:
        self.sent.append(payload)
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        scripted = self._next(payload.get("ShipAcccount"))
        if isinstance(scripted, BaseException):
            raise scripted
        if scripted is not None:
            return scripted
        self._counter += 1
        return {
            "result": {
                "StatusCode": "00",
                "StatusMessage": "Order accepted",
                "OrderNumber": f"FAKE-{self._counter:06d}",
            }
        }


def confirmed(order_number: str, message: str = "Order accepted") -> dict[str, Any]:
    return {"result": {"StatusCode": "00", "StatusMessage": message, "OrderNumber": order_number}}


def rejected(message: str, code: str = "20") -> dict[str, Any]:
    return {"result": {"StatusCode": code, "StatusMessage": message}}


def pending(message: str = "Order queued") -> dict[str, Any]:
    return {"result": {"StatusCode": "01", "StatusMessage": message}}


def build_distributor_client(settings: Settings | None = None) -> DistributorClient:
    settings = settings or get_settings()
    if settings.distributor_backend == "engine":
        if settings.distributor_api_key:
            return EngineDistributorClient(settings)
        if settings.env.lower() != "dev":
            raise RuntimeError("distributor backend 'engine' requires FS_DISTRIBUTOR_API_KEY outside dev mode")
        logger.warning("distributor api key not set, falling back to fake distributor")
    return FakeDistributorClient()
