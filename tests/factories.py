from __future__ import annotations

from typing import Any
from uuid import uuid4

import app.persistence.pg as pg
from app.fulfillment.pricing import PriceLadder, upsert_price_ladder

ON_FILE_FFL = {"license_number": "1-23-456-07-8A-12345", "name": "Springfield Guns", "zip_code": "62701", "status": "OnFile"}


def cart_line(
    sku: str | None = None,
    *,
    quantity: int = 1,
    price_cents: int = 50000,
    requires_ffl: bool = False,
    drop_ship_eligible: bool = False,
    name: str = "",
    manufacturer: str | None = "Acme Arms",
    category: str | None = "Accessories",
) -> dict[str, Any]:
    sku = sku or f"SKU-{uuid4().hex[:10].upper()}"
    return {
        "sku": sku,
        "distributor_stock_id": f"RSR-{sku}",
        "quantity": quantity,
        "unit_price_cents": price_cents,
        "requires_ffl": requires_ffl,
        "drop_ship_eligible": drop_ship_eligible,
        "name": name or f"Product {sku}",
        "manufacturer": manufacturer,
        "category": category,
    }


def intake_payload(
    items: list[dict[str, Any]],
    *,
    tier: str = "Bronze",
    ffl: dict[str, Any] | None = None,
    customer_ref: str | None = None,
    environment: str | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "payment": {
            "transaction_reference": f"txn-{uuid4().hex[:12]}",
            "amount_captured_cents": sum(line["unit_price_cents"] * line["quantity"] for line in items),
        },
        "customer_ref": customer_ref or f"cust-{uuid4().hex[:8]}",
        "customer_email": "buyer@example.com",
        "customer_phone": "5555550100",
        "membership_tier": tier,
        "shipping_address": {
            "address1": "100 Main St",
            "city": "Springfield",
            "state": "IL",
            "zip": "62701",
        },
        "items": items,
    }
    if ffl is not None:
        payload["ffl"] = ffl
    if environment is not None:
        payload["environment"] = environment
    return payload


def seed_ladders(items: list[dict[str, Any]]) -> None:
    """Give every cart SKU a ladder: bronze is the cart price, then -10% and -20%."""
    with pg.session_scope() as s:
        for line in items:
            bronze = line["unit_price_cents"]
            upsert_price_ladder(
                s,
                PriceLadder(
                    sku=line["sku"],
                    bronze_cents=bronze,
                    gold_cents=bronze * 9 // 10,
                    platinum_cents=bronze * 8 // 10,
                ),
            )


