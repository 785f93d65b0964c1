from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Any, Sequence

from app.core.config import Settings, get_settings
from app.crm.client import CrmClient, CrmUpsertResult, build_crm_client, to_wire
from app.crm.mapper import build_deal
from app.distributor.submitter import backoff_delay
from app.domain.orders.aggregates import CrmDealRecord, DistributorSubmission, Hold, Order
from app.fulfillment.errors import CrmTransportError, SyncConflictError

logger = logging.getLogger(__name__)


def _comparable(value: Any) -> Any:
    value = to_wire(value)
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, float):
        return Decimal(str(value)).quantize(Decimal("0.01"))
    if isinstance(value, str) and value == "":
        return None
    return value


def diff_deal(expected: CrmDealRecord, actual: CrmDealRecord | None) -> list[str]:
    """Field-level differences between the local projection and the CRM read-back."""
    if actual is None:
        return [f"deal {expected.deal_key} not found"]
    problems: list[str] = []
    if actual.deal_key != expected.deal_key:
        problems.append(f"deal key {actual.deal_key!r} != {expected.deal_key!r}")
    for name, value in expected.fields.items():
        if _comparable(actual.fields.get(name)) != _comparable(value):
            problems.append(f"{name}: crm={actual.fields.get(name)!r} local={to_wire(value)!r}")
    if len(actual.line_items) != len(expected.line_items):
        problems.append(f"line items: crm={len(actual.line_items)} local={len(expected.line_items)}")
    else:
        for idx, (want, got) in enumerate(zip(expected.line_items, actual.line_items), start=1):
            for name, value in want.items():
                if _comparable(got.get(name)) != _comparable(value):
                    problems.append(f"line {idx} {name}: crm={got.get(name)!r} local={to_wire(value)!r}")
    return problems


class DealSynchronizer:
    def __init__(self, client: CrmClient | None = None, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.client = client or build_crm_client(self.settings)

    async def _upsert(self, deal: CrmDealRecord, deal_id: str | None) -> CrmUpsertResult:
        max_attempts = self.settings.crm_max_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                return await self.client.upsert_deal(deal.deal_key, deal.fields, deal.line_items, deal_id=deal_id)
            except CrmTransportError as exc:
                if attempt >= max_attempts:
                    raise
                delay = backoff_delay(
                    attempt,
                    self.settings.distributor_backoff_base_seconds,
                    self.settings.distributor_backoff_max_seconds,
                )
                logger.warning(
                    "crm upsert failed deal=%s attempt=%s/%s retry_in=%.2fs error=%s",
                    deal.deal_key,
                    attempt,
                    max_attempts,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)
        raise CrmTransportError(f"crm upsert for {deal.deal_key} exhausted retries")

    async def read_back(self, deal_key: str) -> CrmDealRecord | None:
        return await self.client.get_deal(deal_key)

    async def sync(
        self,
        order: Order,
        submissions: Sequence[DistributorSubmission],
        holds: Sequence[Hold],
    ) -> CrmDealRecord:
        """Create or update the order's deal, then read it back and verify."""
        deal = build_deal(order, submissions, holds)
        result = await self._upsert(deal, deal.deal_id)
        logger.info(
            "crm deal %s key=%s deal_id=%s status=%s",
            "created" if result.created else "updated",
            deal.deal_key,
            result.deal_id,
            deal.fields["Order_Status"],
        )

        problems = diff_deal(deal, await self.read_back(deal.deal_key))
        if problems:
            logger.warning("crm sync conflict key=%s, retrying with full payload: %s", deal.deal_key, "; ".join(problems))
            retry = await self._upsert(deal, result.deal_id or deal.deal_id)
            problems = diff_deal(deal, await self.read_back(deal.deal_key))
            if problems:
                raise SyncConflictError(deal.deal_key, "; ".join(problems))
            result = CrmUpsertResult(deal_id=retry.deal_id or result.deal_id, created=result.created)

        deal.deal_id = result.deal_id
        deal.created = result.created
        return deal
