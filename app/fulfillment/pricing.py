from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, Sequence

from pydantic import BaseModel, Field, model_validator
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.domain.orders.aggregates import MembershipTier, Order
from app.fulfillment.errors import OrderValidationError
from app.persistence.models import PriceLadderModel


class PriceLadder(BaseModel):
    sku: str = Field(min_length=1)
    bronze_cents: int = Field(ge=0)
    gold_cents: int = Field(ge=0)
    # Members-only tier: never serialised, never shown before checkout.
    platinum_cents: int = Field(ge=0, exclude=True, repr=False)

    @model_validator(mode="after")
    def _monotonic(self) -> PriceLadder:
        if not self.bronze_cents >= self.gold_cents >= self.platinum_cents:
            raise ValueError(f"price ladder for {self.sku} must be non-increasing bronze >= gold >= platinum")
        return self

    def price_for(self, tier: MembershipTier) -> int:
        if tier == MembershipTier.PLATINUM:
            return self.platinum_cents
        if tier == MembershipTier.GOLD:
            return self.gold_cents
        return self.bronze_cents


class PublicPrice(BaseModel):
    sku: str
    bronze_cents: int
    gold_cents: int


class CartPreviewLine(BaseModel):
    sku: str
    quantity: int
    unit_price_cents: int
    line_total_cents: int
    tier_shown: MembershipTier


class CartPreview(BaseModel):
    tier: MembershipTier
    lines: list[CartPreviewLine]
    subtotal_cents: int
    member_price_at_checkout: bool = False


def _ladder_from_row(row: PriceLadderModel) -> PriceLadder:
    return PriceLadder(
        sku=row.sku,
        bronze_cents=row.bronze_cents,
        gold_cents=row.gold_cents,
        platinum_cents=row.platinum_cents,
    )


def upsert_price_ladder(session: Session, ladder: PriceLadder) -> PriceLadder:
    row = session.get(PriceLadderModel, ladder.sku)
    now = datetime.now(timezone.utc)
    if row is None:
        row = PriceLadderModel(
            sku=ladder.sku,
            bronze_cents=ladder.bronze_cents,
            gold_cents=ladder.gold_cents,
            platinum_cents=ladder.platinum_cents,
            updated_at=now,
        )
        session.add(row)
    else:
        row.bronze_cents = ladder.bronze_cents
        row.gold_cents = ladder.gold_cents
        row.platinum_cents = ladder.platinum_cents
        row.updated_at = now
    session.flush()
    return ladder


def load_price_ladder(session: Session, sku: str) -> PriceLadder:
    row = session.get(PriceLadderModel, sku)
    if row is None:
        raise OrderValidationError(f"no price ladder for sku {sku}")
    try:
        return _ladder_from_row(row)
    except ValueError as exc:
        raise OrderValidationError(str(exc)) from exc


def public_price(ladder: PriceLadder) -> PublicPrice:
    return PublicPrice(sku=ladder.sku, bronze_cents=ladder.bronze_cents, gold_cents=ladder.gold_cents)


# Pre-checkout read paths. None of these may carry the platinum price.


def catalog_prices(session: Session, skus: Iterable[str]) -> list[PublicPrice]:
    return [public_price(load_price_ladder(session, sku)) for sku in skus]


def search_prices(session: Session, sku_prefix: str, limit: int = 50) -> list[PublicPrice]:
    rows = session.scalars(
        select(PriceLadderModel)
        .where(PriceLadderModel.sku.startswith(sku_prefix))
        .order_by(PriceLadderModel.sku.asc())
        .limit(limit)
    ).all()
    return [public_price(_ladder_from_row(row)) for row in rows]


def cart_preview(session: Session, lines: Sequence[tuple[str, int]], tier: MembershipTier) -> CartPreview:
    """Price a cart for display; platinum members see gold until checkout completes."""
    shown = MembershipTier.GOLD if tier == MembershipTier.PLATINUM else tier
    preview_lines: list[CartPreviewLine] = []
    for sku, quantity in lines:
        ladder = load_price_ladder(session, sku)
        unit = ladder.price_for(shown)
        preview_lines.append(
            CartPreviewLine(
                sku=sku,
                quantity=quantity,
                unit_price_cents=unit,
                line_total_cents=unit * quantity,
                tier_shown=shown,
            )
        )
    return CartPreview(
        tier=tier,
        lines=preview_lines,
        subtotal_cents=sum(line.line_total_cents for line in preview_lines),
        member_price_at_checkout=tier == MembershipTier.PLATINUM,
    )


class PriceResolver:
    """Resolves the unit price actually charged. Only runs after payment confirmation."""

    def __init__(self, session: Session):
        self.session = session

    def resolve(self, sku: str, tier: MembershipTier) -> int:
        return load_price_ladder(self.session, sku).price_for(tier)

    def resolve_order(self, order: Order) -> dict[int, int]:
        return {item.id: self.resolve(item.sku, order.membership_tier) for item in order.items}
