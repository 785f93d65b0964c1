from __future__ import annotations

import json
import uuid

import pytest
from pydantic import ValidationError

from app.domain.orders.aggregates import MembershipTier
from app.fulfillment.errors import OrderValidationError
from app.fulfillment.pricing import (
    PriceLadder,
    PriceResolver,
    cart_preview,
    catalog_prices,
    search_prices,
    upsert_price_ladder,
)

# Distinctive so it can be searched for in serialised output.
PLATINUM_CENTS = 71717


def _ladder(sku: str) -> PriceLadder:
    return PriceLadder(sku=sku, bronze_cents=99900, gold_cents=89900, platinum_cents=PLATINUM_CENTS)


def test_ladder_must_not_increase_with_tier():
    with pytest.raises(ValidationError):
        PriceLadder(sku="X", bronze_cents=1000, gold_cents=1200, platinum_cents=900)
    with pytest.raises(ValidationError):
        PriceLadder(sku="X", bronze_cents=1000, gold_cents=900, platinum_cents=950)

    flat = PriceLadder(sku="X", bronze_cents=1000, gold_cents=1000, platinum_cents=1000)
    assert flat.price_for(MembershipTier.PLATINUM) == 1000


def test_resolver_charges_each_tier_its_own_price(session):
    sku = f"P-{uuid.uuid4().hex[:8]}"
    upsert_price_ladder(session, _ladder(sku))
    resolver = PriceResolver(session)

    assert resolver.resolve(sku, MembershipTier.BRONZE) == 99900
    assert resolver.resolve(sku, MembershipTier.GOLD) == 89900
    assert resolver.resolve(sku, MembershipTier.PLATINUM) == PLATINUM_CENTS


def test_missing_ladder_is_a_validation_error(session):
    with pytest.raises(OrderValidationError):
        PriceResolver(session).resolve("NO-SUCH-SKU", MembershipTier.BRONZE)


def test_platinum_price_never_serialised_before_checkout(session):
    prefix = f"S-{uuid.uuid4().hex[:8]}"
    sku = f"{prefix}-1"
    ladder = upsert_price_ladder(session, _ladder(sku))

    exposed = [
        ladder.model_dump(),
        ladder.model_dump_json(),
        repr(ladder),
        [p.model_dump() for p in catalog_prices(session, [sku])],
        [p.model_dump() for p in search_prices(session, prefix)],
        cart_preview(session, [(sku, 1)], MembershipTier.PLATINUM).model_dump(mode="json"),
    ]
    for value in exposed:
        text = value if isinstance(value, str) else json.dumps(value, default=str)
        assert str(PLATINUM_CENTS) not in text
        assert "platinum_cents" not in text


def test_platinum_cart_preview_shows_gold_with_checkout_flag(session):
    sku = f"C-{uuid.uuid4().hex[:8]}"
    upsert_price_ladder(session, _ladder(sku))

    preview = cart_preview(session, [(sku, 2)], MembershipTier.PLATINUM)
    assert preview.member_price_at_checkout is True
    assert preview.lines[0].tier_shown == MembershipTier.GOLD
    assert preview.subtotal_cents == 2 * 89900

    bronze = cart_preview(session, [(sku, 1)], MembershipTier.BRONZE)
    assert bronze.member_price_at_checkout is False
    assert bronze.subtotal_cents == 99900


def test_upsert_replaces_existing_ladder(session):
    sku = f"U-{uuid.uuid4().hex[:8]}"
    upsert_price_ladder(session, _ladder(sku))
    upsert_price_ladder(session, PriceLadder(sku=sku, bronze_cents=500, gold_cents=400, platinum_cents=300))

    assert PriceResolver(session).resolve(sku, MembershipTier.GOLD) == 400
