from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Protocol

import httpx

from app.core.config import Settings, get_settings
from app.domain.orders.aggregates import CrmDealRecord
from app.fulfillment.errors import CrmTransportError, SyncConflictError

logger = logging.getLogger(__name__)

DEAL_KEY_FIELD = "Order_Key"
SUBFORM_FIELD = "Subform_1"
ZOHO_DATETIME_FORMAT = "%Y-%m-%dT%H:%M:%S"


@dataclass
class CrmUpsertResult:
    deal_id: str
    created: bool


class CrmClient(Protocol):
    backend: str

    async def upsert_deal(
        self,
        deal_key: str,
        fields: dict[str, Any],
        line_items: list[dict[str, Any]],
        deal_id: str | None = None,
    ) -> CrmUpsertResult:
        ...

    async def get_deal(self, deal_key: str) -> CrmDealRecord | None:
        ...


def to_wire(value: Any) -> Any:
    """Render a field value the way the CRM stores it."""
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.strftime(ZOHO_DATETIME_FORMAT)
    return value


class InMemoryCrmClient:
    backend = "memory"

    def __init__(self):
        self.deals: dict[str, CrmDealRecord] = {}
        self.creates = 0
        self.updates = 0
        self.upsert_calls: list[dict[str, Any]] = []

    async def upsert_deal(
        self,
        deal_key: str,
        fields: dict[str, Any],
        line_items: list[dict[str, Any]],
        deal_id: str | None = None,
    ) -> CrmUpsertResult:
        self.upsert_calls.append({"deal_key": deal_key, "fields": dict(fields), "deal_id": deal_id})
        wire_fields = {name: to_wire(value) for name, value in fields.items()}
        wire_fields[DEAL_KEY_FIELD] = deal_key
        wire_items = [{name: to_wire(value) for name, value in row.items()} for row in line_items]

        existing = self.deals.get(deal_key)
        if existing is None:
            self.creates += 1
            record = CrmDealRecord(
                deal_key=deal_key,
                fields=wire_fields,
                line_items=wire_items,
                deal_id=f"mem-{len(self.deals) + 1}",
                created=True,
            )
            self.deals[deal_key] = record
            return CrmUpsertResult(deal_id=record.deal_id, created=True)

        self.updates += 1
        existing.fields.update(wire_fields)
        existing.line_items = wire_items
        return CrmUpsertResult(deal_id=existing.deal_id, created=False)

    async def get_deal(self, deal_key: str) -> CrmDealRecord | None:
        record = self.deals.get(deal_key)
        return copy.deepcopy(record) if record is not None else None


class ZohoCrmClient:
    backend = "zoho"

    def __init__(self, settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings or get_settings()
        self.transport = transport

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Zoho-oauthtoken {self.settings.crm_access_token or ''}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = f"{self.settings.crm_api_base.rstrip('/')}/{path.lstrip('/')}"
        try:
            async with httpx.AsyncClient(timeout=self.settings.crm_timeout_seconds, transport=self.transport) as client:
                resp = await client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.HTTPError as exc:
            raise CrmTransportError(f"crm {method} {path} failed: {exc}") from exc
        if resp.status_code in (401, 429) or resp.status_code >= 500:
            raise CrmTransportError(f"crm {method} {path} returned HTTP {resp.status_code}")
        return resp

    async def upsert_deal(
        self,
        deal_key: str,
        fields: dict[str, Any],
        line_items: list[dict[str, Any]],
        deal_id: str | None = None,
    ) -> CrmUpsertResult:
        record = {name: to_wire(value) for name, value in fields.items()}
        record[DEAL_KEY_FIELD] = deal_key
        record[SUBFORM_FIELD] = [{name: to_wire(value) for name, value in row.items()} for row in line_items]
        if deal_id:
            record["id"] = deal_id
        body = {"data": [record], "duplicate_check_fields": [DEAL_KEY_FIELD]}

        resp = await self._request("POST", "Deals/upsert", json=body)
        try:
            entry = resp.json()["data"][0]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise CrmTransportError(f"crm upsert returned malformed body (HTTP {resp.status_code})") from exc

        if str(entry.get("status", "")).lower() != "success":
            raise SyncConflictError(deal_key, f"{entry.get('code')}: {entry.get('message')}")
        details = entry.get("details") or {}
        return CrmUpsertResult(
            deal_id=str(details.get("id") or deal_id or ""),
            created=entry.get("action") == "insert",
        )

    async def get_deal(self, deal_key: str) -> CrmDealRecord | None:
        resp = await self._request(
            "GET",
            "Deals/search",
            params={"criteria": f"({DEAL_KEY_FIELD}:equals:{deal_key})"},
        )
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            rows = resp.json().get("data") or []
        except ValueError as exc:
            raise CrmTransportError("crm search returned malformed body") from exc
        if not rows:
            return None
        if len(rows) > 1:
            raise SyncConflictError(deal_key, f"{len(rows)} deals share the key")

        row = dict(rows[0])
        deal_id = str(row.pop("id", "")) or None
        line_items = row.pop(SUBFORM_FIELD, None) or []
        return CrmDealRecord(deal_key=deal_key, fields=row, line_items=list(line_items), deal_id=deal_id)


def build_crm_client(settings: Settings | None = None) -> CrmClient:
    settings = settings or get_settings()
    if settings.crm_backend == "zoho":
        if settings.crm_access_token:
            return ZohoCrmClient(settings)
        if settings.env.lower() != "dev":
            raise RuntimeError("crm backend 'zoho' requires FS_CRM_ACCESS_TOKEN outside dev mode")
        logger.warning("crm access token not set, falling back to in-memory crm")
    return InMemoryCrmClient()
