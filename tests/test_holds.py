from __future__ import annotations

from datetime import datetime, timezone

from app.domain.orders.aggregates import (
    Environment,
    FflRecord,
    FflStatus,
    Hold,
    HoldReason,
    MembershipTier,
    Order,
    OrderLineItem,
)
from app.fulfillment.holds import CompliancePolicy, HoldEvaluator, split_items

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def _item(item_id: int, *, requires_ffl: bool = False, quantity: int = 1) -> OrderLineItem:
    return OrderLineItem(
        id=item_id,
        position=item_id,
        sku=f"SKU-{item_id}",
        distributor_stock_id=f"RSR-{item_id}",
        quantity=quantity,
        unit_price_cents=10000,
        requires_ffl=requires_ffl,
        drop_ship_eligible=False,
    )


def _order(items: list[OrderLineItem], ffl: FflRecord | None = None) -> Order:
    return Order(
        id=1,
        customer_ref="cust-1",
        environment=Environment.TEST,
        membership_tier=MembershipTier.BRONZE,
        shipping_address={},
        items=items,
        ffl=ffl,
    )


def _ffl(status: FflStatus) -> FflRecord:
    return FflRecord(license_number="1-23-456", name="Dealer", zip_code="62701", status=status)


def test_ffl_item_without_selected_ffl_is_held():
    order = _order([_item(1, requires_ffl=True), _item(2)])
    decisions = HoldEvaluator(CompliancePolicy()).evaluate(order)

    assert [(d.reason, d.line_item_id) for d in decisions] == [(HoldReason.FFL_NOT_ON_FILE, 1)]


def test_ffl_below_on_file_is_held_and_on_file_or_better_is_clear():
    evaluator = HoldEvaluator(CompliancePolicy(multi_firearm_hold=False))
    items = [_item(1, requires_ffl=True)]

    assert evaluator.evaluate(_order(items, _ffl(FflStatus.NOT_ON_FILE)))[0].reason == HoldReason.FFL_NOT_ON_FILE
    assert evaluator.evaluate(_order(items, _ffl(FflStatus.ON_FILE))) == []
    assert evaluator.evaluate(_order(items, _ffl(FflStatus.PREFERRED))) == []


def test_order_without_regulated_items_is_clear():
    assert HoldEvaluator(CompliancePolicy()).evaluate(_order([_item(1), _item(2)])) == []


def test_gun_count_rule_counts_recent_purchases():
    evaluator = HoldEvaluator(CompliancePolicy(firearm_limit=5))
    order = _order([_item(1, requires_ffl=True, quantity=2), _item(2)], _ffl(FflStatus.ON_FILE))

    assert evaluator.evaluate(order, recent_firearm_quantity=2) == []
    decisions = evaluator.evaluate(order, recent_firearm_quantity=3)
    assert [(d.reason, d.line_item_id) for d in decisions] == [(HoldReason.GUN_COUNT_RULE, 1)]


def test_existing_or_cleared_holds_are_not_raised_again():
    evaluator = HoldEvaluator(CompliancePolicy())
    order = _order([_item(1, requires_ffl=True), _item(2, requires_ffl=True)])
    active = Hold(id=10, order_id=1, reason=HoldReason.FFL_NOT_ON_FILE, line_item_id=1, created_at=NOW)
    cleared = Hold(
        id=11,
        order_id=1,
        reason=HoldReason.FFL_NOT_ON_FILE,
        line_item_id=2,
        created_at=NOW,
        cleared_at=NOW,
    )

    assert evaluator.evaluate(order, [active, cleared]) == []


def test_disabled_ffl_policy_raises_nothing():
    evaluator = HoldEvaluator(CompliancePolicy(ffl_hold=False, multi_firearm_hold=False))
    assert evaluator.evaluate(_order([_item(1, requires_ffl=True)])) == []


def test_order_level_hold_blocks_every_item():
    order = _order([_item(1), _item(2)])
    item_hold = Hold(id=1, order_id=1, reason=HoldReason.MANUAL_REVIEW, line_item_id=2, created_at=NOW)
    clear, held = split_items(order, [item_hold])
    assert [i.id for i in clear] == [1]
    assert [i.id for i in held] == [2]

    order_hold = Hold(id=2, order_id=1, reason=HoldReason.MANUAL_REVIEW, line_item_id=None, created_at=NOW)
    clear, held = split_items(order, [order_hold])
    assert clear == []
    assert [i.id for i in held] == [1, 2]


def test_items_already_submitted_are_never_held():
    evaluator = HoldEvaluator(CompliancePolicy(firearm_limit=5))
    order = _order(
        [_item(1, requires_ffl=True, quantity=3), _item(2, requires_ffl=True, quantity=1)],
        _ffl(FflStatus.ON_FILE),
    )

    decisions = evaluator.evaluate(order, recent_firearm_quantity=2, submitted_item_ids={1})
    assert [(d.reason, d.line_item_id) for d in decisions] == [(HoldReason.GUN_COUNT_RULE, 2)]
    assert evaluator.evaluate(order, recent_firearm_quantity=2, submitted_item_ids={1, 2}) == []
