from __future__ import annotations

from datetime import datetime
from typing import Any

from app.core.canonical import iso_utc
from app.domain.orders.aggregates import DistributorSubmission, Hold, Order
from app.persistence.models import OrderTransitionModel


def _iso(value: datetime | None) -> str | None:
    return iso_utc(value) if value is not None else None


def hold_to_dict(hold: Hold) -> dict[str, Any]:
    return {
        "id": hold.id,
        "reason": hold.reason.value,
        "line_item_id": hold.line_item_id,
        "active": hold.is_active,
        "note": hold.note,
        "created_at": _iso(hold.created_at),
        "cleared_at": _iso(hold.cleared_at),
    }


def submission_to_dict(submission: DistributorSubmission) -> dict[str, Any]:
    return {
        "submission_id": submission.submission_id,
        "kind": submission.kind,
        "route": submission.route.value,
        "account_code": submission.account_code,
        "attempt": submission.attempt,
        "po_reference": submission.po_reference,
        "line_item_ids": list(submission.line_item_ids),
        "payload": submission.payload,
        "payload_hash": submission.payload_hash,
        "response": submission.response,
        "outcome": submission.outcome.value,
        "status_code": submission.status_code,
        "status_message": submission.status_message,
        "distributor_order_id": submission.distributor_order_id,
        "error": submission.error,
        "escalated": submission.escalated,
        "submitted_at": _iso(submission.submitted_at),
    }


def order_to_dict(order: Order) -> dict[str, Any]:
    return {
        "id": order.id,
        "order_number": order.order_number,
        "status": order.status.value,
        "environment": order.environment.value,
        "customer_ref": order.customer_ref,
        "membership_tier": order.membership_tier.value,
        "ffl": order.ffl.to_dict() if order.ffl else None,
        "payment_reference": order.payment_reference,
        "amount_captured_cents": order.amount_captured_cents,
        "total_cents": order.total_cents,
        "needs_manual_intervention": order.needs_manual_intervention,
        "last_error": order.last_error,
        "crm_deal_id": order.crm_deal_id,
        "created_at": _iso(order.created_at),
        "items": [
            {
                "id": item.id,
                "position": item.position,
                "sku": item.sku,
                "distributor_stock_id": item.distributor_stock_id,
                "quantity": item.quantity,
                "unit_price_cents": item.unit_price_cents,
                "requires_ffl": item.requires_ffl,
                "drop_ship_eligible": item.drop_ship_eligible,
                "route": item.route.value if item.route else None,
                "account_code": item.account_code,
            }
            for item in order.items
        ],
    }


def transition_to_dict(row: OrderTransitionModel) -> dict[str, Any]:
    return {
        "from": row.from_state,
        "to": row.to_state,
        "reason": row.reason,
        "at": _iso(row.occurred_at),
    }
