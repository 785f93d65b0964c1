from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Environment(str, Enum):
    TEST = "test"
    PRODUCTION = "production"


class OrderStatus(str, Enum):
    CREATED = "Created"
    CLASSIFIED = "Classified"
    SUBMITTED = "Submitted"
    RECONCILED = "Reconciled"
    HELD = "Held"
    REJECTED = "Rejected"
    FULFILLED_PENDING_SHIPMENT = "Fulfilled-Pending-Shipment"


TERMINAL_STATUSES = frozenset({OrderStatus.REJECTED, OrderStatus.FULFILLED_PENDING_SHIPMENT})


class FulfillmentRoute(str, Enum):
    IN_HOUSE = "in-house"
    DROP_SHIP = "drop-ship"


class HoldReason(str, Enum):
    FFL_NOT_ON_FILE = "FFL not on file"
    GUN_COUNT_RULE = "Gun Count Rule"
    DISTRIBUTOR_REJECTED = "distributor rejected item"
    MANUAL_REVIEW = "manual review"


class FflStatus(str, Enum):
    NOT_ON_FILE = "NotOnFile"
    ON_FILE = "OnFile"
    PREFERRED = "Preferred"

    @property
    def rank(self) -> int:
        return _FFL_RANK[self]


_FFL_RANK = {FflStatus.NOT_ON_FILE: 0, FflStatus.ON_FILE: 1, FflStatus.PREFERRED: 2}


class MembershipTier(str, Enum):
    BRONZE = "Bronze"
    GOLD = "Gold"
    PLATINUM = "Platinum"


class SubmissionOutcome(str, Enum):
    CONFIRMED = "Confirmed"
    REJECTED = "Rejected"
    PENDING = "Pending"
    TRANSPORT_FAILURE = "TransportFailure"


class Consignee(str, Enum):
    WAREHOUSE = "Warehouse"
    CUSTOMER = "Customer"
    FFL = "FFL"


@dataclass(frozen=True)
class FflRecord:
    license_number: str
    name: str
    zip_code: str
    status: FflStatus = FflStatus.NOT_ON_FILE

    @property
    def is_on_file(self) -> bool:
        return self.status.rank >= FflStatus.ON_FILE.rank

    def to_dict(self) -> dict[str, Any]:
        return {
            "license_number": self.license_number,
            "name": self.name,
            "zip_code": self.zip_code,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FflRecord:
        return cls(
            license_number=data["license_number"],
            name=data.get("name", ""),
            zip_code=data.get("zip_code", ""),
            status=FflStatus(data.get("status", FflStatus.NOT_ON_FILE.value)),
        )


@dataclass(frozen=True)
class DistributorAccount:
    code: str
    route: FulfillmentRoute
    environment: Environment


@dataclass
class OrderLineItem:
    id: int
    position: int
    sku: str
    distributor_stock_id: str
    quantity: int
    unit_price_cents: int
    requires_ffl: bool
    drop_ship_eligible: bool
    name: str = ""
    manufacturer: str | None = None
    category: str | None = None
    route: FulfillmentRoute | None = None
    account_code: str | None = None

    @property
    def line_total_cents(self) -> int:
        return self.quantity * self.unit_price_cents


@dataclass
class Hold:
    id: int
    order_id: int
    reason: HoldReason
    line_item_id: int | None
    created_at: datetime
    cleared_at: datetime | None = None
    note: str | None = None

    @property
    def is_active(self) -> bool:
        return self.cleared_at is None

    def applies_to(self, line_item_id: int) -> bool:
        # A hold without a line item is order-level and covers every item.
        return self.line_item_id is None or self.line_item_id == line_item_id


@dataclass(frozen=True)
class DistributorSubmission:
    submission_id: str
    order_id: int
    route: FulfillmentRoute
    account_code: str
    attempt: int
    po_reference: str
    line_item_ids: tuple[int, ...]
    payload: dict[str, Any]
    payload_hash: str
    response: dict[str, Any] | None
    outcome: SubmissionOutcome
    submitted_at: datetime
    status_code: str | None = None
    status_message: str | None = None
    distributor_order_id: str | None = None
    error: str | None = None
    escalated: bool = False
    kind: str = "attempt"


@dataclass
class Order:
    id: int
    customer_ref: str
    environment: Environment
    membership_tier: MembershipTier
    shipping_address: dict[str, Any]
    items: list[OrderLineItem] = field(default_factory=list)
    status: OrderStatus = OrderStatus.CREATED
    order_number: str | None = None
    ffl: FflRecord | None = None
    payment_reference: str = ""
    amount_captured_cents: int = 0
    customer_email: str | None = None
    customer_phone: str | None = None
    needs_manual_intervention: bool = False
    last_error: str | None = None
    crm_deal_id: str | None = None
    created_at: datetime | None = None

    @property
    def total_cents(self) -> int:
        return sum(item.line_total_cents for item in self.items)

    @property
    def requires_ffl(self) -> bool:
        return any(item.requires_ffl for item in self.items)

    def item(self, line_item_id: int) -> OrderLineItem:
        for item in self.items:
            if item.id == line_item_id:
                return item
        raise KeyError(line_item_id)


@dataclass
class CrmDealRecord:
    deal_key: str
    fields: dict[str, Any]
    line_items: list[dict[str, Any]] = field(default_factory=list)
    deal_id: str | None = None
    created: bool = False
