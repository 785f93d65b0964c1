from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.domain.orders.aggregates import (
    Environment,
    FflRecord,
    FflStatus,
    MembershipTier,
    Order,
    OrderLineItem,
    OrderStatus,
)
from app.domain.orders.store import OrderStore


class PaymentResult(BaseModel):
    transaction_reference: str = Field(min_length=1)
    amount_captured_cents: int = Field(ge=0, description="int cents")


class ShippingAddress(BaseModel):
    address1: str
    address2: str = ""
    city: str
    state: str
    zip: str


class FflSelection(BaseModel):
    license_number: str = Field(min_length=1)
    name: str = ""
    zip_code: str = ""
    status: FflStatus = FflStatus.NOT_ON_FILE

    def to_record(self) -> FflRecord:
        return FflRecord(
            license_number=self.license_number,
            name=self.name,
            zip_code=self.zip_code,
            status=self.status,
        )


class CartLine(BaseModel):
    sku: str = Field(min_length=1)
    distributor_stock_id: str = Field(min_length=1)
    quantity: int = Field(gt=0)
    unit_price_cents: int = Field(ge=0, description="int cents, as shown at checkout")
    requires_ffl: bool = False
    drop_ship_eligible: bool = False
    name: str = ""
    manufacturer: str | None = None
    category: str | None = None


class OrderIntakeRequest(BaseModel):
    payment: PaymentResult
    customer_ref: str = Field(min_length=1)
    customer_email: str | None = None
    customer_phone: str | None = None
    membership_tier: MembershipTier = MembershipTier.BRONZE
    shipping_address: ShippingAddress
    ffl: FflSelection | None = None
    items: list[CartLine] = Field(min_length=1)
    environment: Environment | None = None

    @field_validator("items")
    @classmethod
    def _unique_skus(cls, value: list[CartLine]) -> list[CartLine]:
        seen: set[str] = set()
        for line in value:
            if line.sku in seen:
                raise ValueError(f"duplicate sku in cart snapshot: {line.sku}")
            seen.add(line.sku)
        return value

    @model_validator(mode="after")
    def _ffl_belongs_to_regulated_cart(self) -> OrderIntakeRequest:
        if self.ffl is not None and not any(line.requires_ffl for line in self.items):
            raise ValueError("ffl selected but no line item requires one")
        return self


def build_order(request: OrderIntakeRequest) -> Order:
    environment = request.environment or Environment(get_settings().fulfillment_environment)
    items = [
        OrderLineItem(
            id=0,
            position=idx,
            sku=line.sku,
            distributor_stock_id=line.distributor_stock_id,
            quantity=line.quantity,
            unit_price_cents=line.unit_price_cents,
            requires_ffl=line.requires_ffl,
            drop_ship_eligible=line.drop_ship_eligible,
            name=line.name,
            manufacturer=line.manufacturer,
            category=line.category,
        )
        for idx, line in enumerate(request.items, start=1)
    ]
    return Order(
        id=0,
        customer_ref=request.customer_ref,
        customer_email=request.customer_email,
        customer_phone=request.customer_phone,
        environment=environment,
        membership_tier=request.membership_tier,
        shipping_address=request.shipping_address.model_dump(),
        items=items,
        status=OrderStatus.CREATED,
        ffl=request.ffl.to_record() if request.ffl else None,
        payment_reference=request.payment.transaction_reference,
        amount_captured_cents=request.payment.amount_captured_cents,
        created_at=datetime.now(timezone.utc),
    )


def create_order(session: Session, request: OrderIntakeRequest | dict[str, Any]) -> Order:
    if isinstance(request, dict):
        request = OrderIntakeRequest.model_validate(request)
    return OrderStore(session).add_order(build_order(request))
