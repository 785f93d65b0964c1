from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Sequence
from uuid import uuid4

from app.core.canonical import payload_hash
from app.core.config import Settings, get_settings
from app.distributor.client import DistributorClient, build_distributor_client
from app.domain.orders.aggregates import (
    DistributorSubmission,
    FulfillmentRoute,
    Hold,
    Order,
    OrderLineItem,
    SubmissionOutcome,
)
from app.fulfillment.errors import (
    DistributorTransportError,
    ReconciliationAborted,
    SubmissionGroupingError,
)
from app.fulfillment.holds import is_item_held
from app.fulfillment.numbering import OrderNumber
from app.fulfillment.routing import account_route

logger = logging.getLogger(__name__)

CONFIRMED_CODE = "00"
PENDING_CODE = "01"

Recorder = Callable[[DistributorSubmission], None]


@dataclass(frozen=True)
class NormalizedResponse:
    outcome: SubmissionOutcome
    status_code: str | None
    status_message: str | None
    distributor_order_id: str | None = None
    error: str | None = None


def normalize_response(raw: Any) -> NormalizedResponse:
    """Map an engine response body onto the closed outcome set."""
    result = raw.get("result") if isinstance(raw, dict) else None
    if not isinstance(result, dict) or not result.get("StatusCode"):
        return NormalizedResponse(
            outcome=SubmissionOutcome.TRANSPORT_FAILURE,
            status_code=None,
            status_message=None,
            error="malformed response: missing result.StatusCode",
        )

    code = str(result["StatusCode"]).strip()
    message = result.get("StatusMessage")
    message = str(message) if message is not None else None

    if code == CONFIRMED_CODE:
        distributor_order_id = result.get("OrderNumber")
        if not distributor_order_id:
            return NormalizedResponse(
                outcome=SubmissionOutcome.TRANSPORT_FAILURE,
                status_code=code,
                status_message=message,
                error="malformed response: confirmation without distributor order number",
            )
        return NormalizedResponse(
            outcome=SubmissionOutcome.CONFIRMED,
            status_code=code,
            status_message=message,
            distributor_order_id=str(distributor_order_id),
        )
    if code == PENDING_CODE:
        return NormalizedResponse(
            outcome=SubmissionOutcome.PENDING,
            status_code=code,
            status_message=message,
            distributor_order_id=str(result["OrderNumber"]) if result.get("OrderNumber") else None,
        )
    return NormalizedResponse(outcome=SubmissionOutcome.REJECTED, status_code=code, status_message=message)


def po_reference(order_number: str, route: FulfillmentRoute, batch: int = 1) -> str:
    base = OrderNumber.parse(order_number).base
    suffix = "I" if route == FulfillmentRoute.IN_HOUSE else "D"
    return f"{base}-{suffix}" if batch <= 1 else f"{base}-{suffix}{batch}"


def backoff_delay(attempt: int, base_seconds: float, max_seconds: float) -> float:
    return min(max_seconds, base_seconds * (2 ** (attempt - 1)))


class DistributorSubmitter:
    """Submits one order's clear, classified items to the distributor."""

    def __init__(
        self,
        order: Order,
        holds: Sequence[Hold],
        client: DistributorClient | None = None,
        recorder: Recorder | None = None,
        settings: Settings | None = None,
    ):
        if not order.order_number:
            raise SubmissionGroupingError(f"order {order.id} has no order number")
        self.order = order
        self.holds = list(holds)
        self.settings = settings or get_settings()
        self.client = client or build_distributor_client(self.settings)
        self.recorder = recorder

    def _check_grouping(self, account_code: str, items: Sequence[OrderLineItem]) -> FulfillmentRoute:
        if not items:
            raise SubmissionGroupingError("empty submission grouping")
        try:
            route, environment = account_route(account_code)
        except KeyError as exc:
            raise SubmissionGroupingError(f"unknown account code {account_code}") from exc
        if environment != self.order.environment:
            raise SubmissionGroupingError(
                f"account {account_code} belongs to {environment.value}, order is {self.order.environment.value}"
            )
        for item in items:
            if is_item_held(item, self.holds):
                raise SubmissionGroupingError(f"line item {item.id} ({item.sku}) is held")
            if item.account_code != account_code or item.route != route:
                raise SubmissionGroupingError(
                    f"line item {item.id} is classified to {item.account_code}, not {account_code}"
                )
        return route

    def build_payload(
        self,
        account_code: str,
        route: FulfillmentRoute,
        items: Sequence[OrderLineItem],
        batch: int = 1,
    ) -> dict[str, Any]:
        address = self.order.shipping_address
        ffl_license = ""
        if any(item.requires_ffl for item in items):
            ffl_license = self.order.ffl.license_number if self.order.ffl else self.settings.distributor_ffl_fallback
        return {
            "Storename": self.settings.distributor_store_name,
            "ShipAddress": address.get("address1", ""),
            "ShipAddress2": address.get("address2", ""),
            "ShipCity": address.get("city", ""),
            "ShipState": address.get("state", ""),
            "ShipZip": address.get("zip", ""),
            # Y: ship to our warehouse first, N: distributor ships direct.
            "ShipToStore": "Y" if route == FulfillmentRoute.IN_HOUSE else "N",
            "ShipAcccount": account_code,
            "ShipFFL": ffl_license,
            "ContactNum": self.order.customer_phone or "0000000000",
            "POS": "I",
            "PONum": po_reference(self.order.order_number, route, batch),
            "Email": self.order.customer_email or "",
            "Items": [{"PartNum": item.distributor_stock_id, "WishQTY": item.quantity} for item in items],
            "FillOrKill": 1,
        }

    async def submit(
        self,
        account_code: str,
        items: Sequence[OrderLineItem],
        attempt: int = 1,
        batch: int = 1,
    ) -> DistributorSubmission:
        """Send one attempt for a single (route, account) grouping."""
        route = self._check_grouping(account_code, items)
        payload = self.build_payload(account_code, route, items, batch)
        raw: dict[str, Any] | None = None
        try:
            raw = await asyncio.wait_for(
                self.client.send(payload),
                timeout=self.settings.distributor_timeout_seconds,
            )
            normalized = normalize_response(raw)
        except asyncio.TimeoutError:
            normalized = NormalizedResponse(
                outcome=SubmissionOutcome.TRANSPORT_FAILURE,
                status_code=None,
                status_message=None,
                error=f"timeout after {self.settings.distributor_timeout_seconds}s",
            )
        except DistributorTransportError as exc:
            normalized = NormalizedResponse(
                outcome=SubmissionOutcome.TRANSPORT_FAILURE,
                status_code=None,
                status_message=None,
                error=str(exc),
            )

        escalated = (
            normalized.outcome == SubmissionOutcome.TRANSPORT_FAILURE
            and attempt >= self.settings.distributor_max_attempts
        )
        submission = DistributorSubmission(
            submission_id=str(uuid4()),
            order_id=self.order.id,
            route=route,
            account_code=account_code,
            attempt=attempt,
            po_reference=payload["PONum"],
            line_item_ids=tuple(item.id for item in items),
            payload=payload,
            payload_hash=payload_hash(payload),
            response=raw,
            outcome=normalized.outcome,
            submitted_at=datetime.now(timezone.utc),
            status_code=normalized.status_code,
            status_message=normalized.status_message,
            distributor_order_id=normalized.distributor_order_id,
            error=normalized.error,
            escalated=escalated,
        )
        logger.info(
            "distributor attempt order=%s po=%s account=%s attempt=%s outcome=%s",
            self.order.id,
            submission.po_reference,
            account_code,
            attempt,
            submission.outcome.value,
        )
        if self.recorder is not None:
            self.recorder(submission)
        return submission

    async def submit_with_retries(
        self,
        account_code: str,
        items: Sequence[OrderLineItem],
        abort: asyncio.Event | None = None,
        batch: int = 1,
    ) -> DistributorSubmission:
        """Retry transport failures with bounded backoff; other outcomes return at once."""
        max_attempts = self.settings.distributor_max_attempts
        attempt = 1
        while True:
            if abort is not None and abort.is_set():
                raise ReconciliationAborted(f"order {self.order.id} aborted before attempt {attempt}")
            submission = await self.submit(account_code, items, attempt=attempt, batch=batch)
            if submission.outcome != SubmissionOutcome.TRANSPORT_FAILURE:
                return submission
            if submission.escalated:
                logger.error(
                    "distributor grouping escalated to manual intervention order=%s account=%s attempts=%s error=%s",
                    self.order.id,
                    account_code,
                    attempt,
                    submission.error,
                )
                return submission

            delay = backoff_delay(
                attempt,
                self.settings.distributor_backoff_base_seconds,
                self.settings.distributor_backoff_max_seconds,
            )
            logger.warning(
                "distributor transport failure order=%s account=%s attempt=%s/%s retry_in=%.2fs error=%s",
                self.order.id,
                account_code,
                attempt,
                max_attempts,
                delay,
                submission.error,
            )
            await _sleep_unless_aborted(delay, abort)
            if abort is not None and abort.is_set():
                raise ReconciliationAborted(f"order {self.order.id} aborted during backoff")
            attempt += 1


async def _sleep_unless_aborted(delay: float, abort: asyncio.Event | None) -> None:
    if delay <= 0:
        await asyncio.sleep(0)
        return
    if abort is None:
        await asyncio.sleep(delay)
        return
    try:
        await asyncio.wait_for(abort.wait(), timeout=delay)
    except asyncio.TimeoutError:
        pass
