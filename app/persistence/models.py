from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import JSON


def _json_type():
    return JSON().with_variant(JSONB(astext_type=Text()), "postgresql")


class Base(DeclarativeBase):
    pass


class OrderModel(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_number: Mapped[Optional[str]] = mapped_column(String(32), unique=True, nullable=True)
    customer_ref: Mapped[str] = mapped_column(String(128), nullable=False)
    customer_email: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    customer_phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    membership_tier: Mapped[str] = mapped_column(String(16), nullable=False)
    environment: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="Created", nullable=False)
    shipping_address: Mapped[dict] = mapped_column(_json_type(), nullable=False, default=dict)
    ffl: Mapped[Optional[dict]] = mapped_column(_json_type(), nullable=True)
    payment_reference: Mapped[str] = mapped_column(String(128), nullable=False)
    amount_captured_cents: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    needs_manual_intervention: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    crm_deal_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    crm_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class OrderLineItemModel(Base):
    __tablename__ = "order_line_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    sku: Mapped[str] = mapped_column(String(64), nullable=False)
    distributor_stock_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    manufacturer: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    requires_ffl: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    drop_ship_eligible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    route: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    account_code: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)


class OrderHoldModel(Base):
    __tablename__ = "order_holds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    line_item_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("order_line_items.id", ondelete="CASCADE"),
        nullable=True,
    )
    reason: Mapped[str] = mapped_column(String(64), nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    cleared_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class DistributorSubmissionModel(Base):
    __tablename__ = "distributor_submissions"

    seq_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    submission_id: Mapped[str] = mapped_column(
        String(36), unique=True, nullable=False, default=lambda: str(uuid.uuid4())
    )
    order_id: Mapped[int] = mapped_column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default="attempt")
    route: Mapped[str] = mapped_column(String(16), nullable=False)
    account_code: Mapped[str] = mapped_column(String(16), nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False)
    po_reference: Mapped[str] = mapped_column(String(64), nullable=False)
    line_item_ids: Mapped[list] = mapped_column(_json_type(), nullable=False, default=list)
    payload: Mapped[dict] = mapped_column(_json_type(), nullable=False)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    response: Mapped[Optional[dict]] = mapped_column(_json_type(), nullable=True)
    outcome: Mapped[str] = mapped_column(String(24), nullable=False)
    status_code: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    status_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    distributor_order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    escalated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class OrderTransitionModel(Base):
    __tablename__ = "order_transitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    from_state: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    to_state: Mapped[str] = mapped_column(String(32), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class OrderSequenceModel(Base):
    __tablename__ = "order_sequences"

    environment: Mapped[str] = mapped_column(String(16), primary_key=True)
    last_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


class PriceLadderModel(Base):
    __tablename__ = "price_ladders"

    sku: Mapped[str] = mapped_column(String(64), primary_key=True)
    bronze_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    gold_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    platinum_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


Index("ix_order_line_items_order_id", OrderLineItemModel.order_id)
Index("ix_order_holds_order_id", OrderHoldModel.order_id)
Index("ix_distributor_submissions_order_id", DistributorSubmissionModel.order_id)
Index("ix_order_transitions_order_id", OrderTransitionModel.order_id)
Index("ix_orders_customer_ref_created_at", OrderModel.customer_ref, OrderModel.created_at)
