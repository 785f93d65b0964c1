from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Sequence

from app.domain.orders.aggregates import (
    CrmDealRecord,
    DistributorSubmission,
    FulfillmentRoute,
    Hold,
    Order,
    OrderLineItem,
    SubmissionOutcome,
)
from app.fulfillment.holds import active_holds_for
from app.fulfillment.numbering import OrderNumber
from app.fulfillment.routing import consignee_for


class CrmOrderStatus(str, Enum):
    CONFIRMED = "Confirmed"
    HELD = "Held"
    PENDING = "Pending"
    REJECTED = "Rejected"


STAGE_BY_STATUS: dict[CrmOrderStatus, str] = {
    CrmOrderStatus.CONFIRMED: "Needs Analysis",
    CrmOrderStatus.HELD: "Qualification",
    CrmOrderStatus.PENDING: "Proposal/Price Quote",
    CrmOrderStatus.REJECTED: "Closed Lost",
}

_FULFILLMENT_TYPE = {
    FulfillmentRoute.IN_HOUSE: "In-House",
    FulfillmentRoute.DROP_SHIP: "Drop-Ship",
}


def cents_to_currency(cents: int) -> Decimal:
    return (Decimal(cents) / Decimal(100)).quantize(Decimal("0.01"))


def latest_for_item(item_id: int, submissions: Sequence[DistributorSubmission]) -> DistributorSubmission | None:
    for submission in reversed(submissions):
        if item_id in submission.line_item_ids:
            return submission
    return None


def current_submissions(
    items: Iterable[OrderLineItem],
    submissions: Sequence[DistributorSubmission],
) -> list[DistributorSubmission]:
    """Records that are still the latest word on at least one line item.

    One account can carry several batches for an order, so a record is only
    superseded once every item it covered has a newer record. Result keeps
    recording order.
    """
    current_ids: set[str] = set()
    for item in items:
        latest = latest_for_item(item.id, submissions)
        if latest is not None:
            current_ids.add(latest.submission_id)
    return [sub for sub in submissions if sub.submission_id in current_ids]


def derive_order_status(
    items: Sequence[OrderLineItem],
    holds: Sequence[Hold],
    submissions: Sequence[DistributorSubmission],
) -> CrmOrderStatus:
    """Order status as reported to the CRM.

    Depends only on the hold set and the recorded submissions, so recomputing it
    from the same inputs always gives the same answer.
    """
    if any(sub.outcome == SubmissionOutcome.REJECTED for sub in current_submissions(items, submissions)):
        return CrmOrderStatus.REJECTED

    held_ids = {item.id for item in items if active_holds_for(item, holds)}
    if held_ids:
        return CrmOrderStatus.HELD

    for item in items:
        latest = latest_for_item(item.id, submissions)
        if latest is None or latest.outcome != SubmissionOutcome.CONFIRMED:
            return CrmOrderStatus.PENDING
    return CrmOrderStatus.CONFIRMED


def line_status(item: OrderLineItem, holds: Sequence[Hold], submissions: Sequence[DistributorSubmission]) -> str:
    if active_holds_for(item, holds):
        return "Held"
    latest = latest_for_item(item.id, submissions)
    if latest is None:
        return "Not Submitted"
    if latest.outcome == SubmissionOutcome.TRANSPORT_FAILURE:
        return "Manual Intervention" if latest.escalated else "Retrying"
    return latest.outcome.value


def _joined(values: Iterable[str]) -> str:
    seen: list[str] = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return ", ".join(seen)


def _app_status(status: CrmOrderStatus, holds: Sequence[Hold], latest: Sequence[DistributorSubmission]) -> str:
    escalated = [sub for sub in latest if sub.escalated and sub.outcome == SubmissionOutcome.TRANSPORT_FAILURE]
    if escalated:
        detail = "; ".join(f"{sub.po_reference} after {sub.attempt} attempts: {sub.error}" for sub in escalated)
        return f"Manual intervention required: distributor unreachable ({detail})"
    rejected = [sub for sub in latest if sub.outcome == SubmissionOutcome.REJECTED]
    if rejected:
        return "Distributor Rejected: " + "; ".join(sub.status_message or "no reason given" for sub in rejected)
    if status == CrmOrderStatus.HELD:
        return "On Hold: " + _joined(hold.reason.value for hold in holds if hold.is_active)
    if not latest:
        return "Not Submitted"
    messages = _joined(sub.status_message or "" for sub in latest)
    prefix = "Distributor Confirmed" if status == CrmOrderStatus.CONFIRMED else "Awaiting Distributor"
    return f"{prefix}: {messages}" if messages else prefix


def _first(values: Iterable[Any]) -> Any:
    for value in values:
        if value:
            return value
    return None


def build_line_items(
    order: Order,
    holds: Sequence[Hold],
    submissions: Sequence[DistributorSubmission],
) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for item in order.items:
        item_holds = active_holds_for(item, holds)
        rows.append(
            {
                "Product_Name": item.name or item.sku,
                "Product_Code": item.sku,
                "Distributor_Part_Number": item.distributor_stock_id,
                "Quantity": item.quantity,
                "Unit_Price": cents_to_currency(item.unit_price_cents),
                "Manufacturer": item.manufacturer or "",
                "Product_Category": item.category or "",
                "FFL_Required": item.requires_ffl,
                "Drop_Ship_Eligible": item.drop_ship_eligible,
                "Fulfillment_Type": _FULFILLMENT_TYPE[item.route] if item.route else "",
                "Ordering_Account": item.account_code or "",
                "Hold_Reason": _joined(hold.reason.value for hold in item_holds),
                "Line_Status": line_status(item, holds, submissions),
            }
        )
    return rows


def build_deal(
    order: Order,
    submissions: Sequence[DistributorSubmission],
    holds: Sequence[Hold],
) -> CrmDealRecord:
    """Project local order state onto the CRM deal field set."""
    if not order.order_number:
        raise ValueError(f"order {order.id} has no order number")
    number = OrderNumber.parse(order.order_number)
    status = derive_order_status(order.items, holds, submissions)
    latest = current_submissions(order.items, submissions)

    clear_items = [item for item in order.items if not active_holds_for(item, holds) and item.route is not None]
    routes = {item.route for item in clear_items}
    if len(routes) > 1:
        fulfillment_type = "Split"
    elif routes:
        fulfillment_type = _FULFILLMENT_TYPE[routes.pop()]
    else:
        fulfillment_type = "None"

    attempts = [sub for sub in submissions if sub.kind == "attempt"]
    answered = [sub for sub in submissions if sub.outcome != SubmissionOutcome.TRANSPORT_FAILURE]
    confirmed = [sub for sub in latest if sub.outcome == SubmissionOutcome.CONFIRMED]
    responses = [(sub.response or {}).get("result") or {} for sub in reversed(submissions)]

    fields: dict[str, Any] = {
        "Deal_Name": f"Order {number}",
        "TGF_Order_Number": str(number),
        "Order_Status": status.value,
        "Stage": STAGE_BY_STATUS[status],
        "Fulfillment_Type": fulfillment_type,
        "Consignee": _joined(consignee_for(item, item.route).value for item in clear_items),
        "Ordering_Account": _joined(item.account_code or "" for item in clear_items),
        "Hold_Type": _joined(hold.reason.value for hold in holds if hold.is_active),
        "APP_Status": _app_status(status, holds, latest),
        "APP_Confirmed": max((sub.submitted_at for sub in confirmed), default=None),
        "Distributor_Order_Number": _joined(sub.distributor_order_id or "" for sub in confirmed),
        "Submitted": min((sub.submitted_at for sub in attempts), default=None),
        "Last_Distributor_Update": max((sub.submitted_at for sub in answered), default=None),
        "Carrier": _first(result.get("Carrier") for result in responses) or "",
        "Tracking_Number": _first(result.get("TrackingNumber") for result in responses) or "",
        "Amount": cents_to_currency(order.total_cents),
    }
    return CrmDealRecord(
        deal_key=number.base,
        fields=fields,
        line_items=build_line_items(order, holds, submissions),
        deal_id=order.crm_deal_id,
    )
