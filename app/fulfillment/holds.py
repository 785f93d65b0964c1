from __future__ import annotations

from dataclasses import dataclass
from typing import Collection, Iterable, Sequence

from app.core.config import get_settings
from app.domain.orders.aggregates import Hold, HoldReason, Order, OrderLineItem


@dataclass(frozen=True)
class HoldDecision:
    reason: HoldReason
    line_item_id: int | None
    note: str


@dataclass(frozen=True)
class CompliancePolicy:
    ffl_hold: bool = True
    multi_firearm_hold: bool = True
    firearm_limit: int = 5
    firearm_window_days: int = 30

    @classmethod
    def from_settings(cls) -> CompliancePolicy:
        settings = get_settings()
        return cls(
            ffl_hold=settings.feature_ffl_hold,
            multi_firearm_hold=settings.feature_multi_firearm_hold,
            firearm_limit=settings.policy_firearm_limit,
            firearm_window_days=settings.policy_firearm_window_days,
        )


def active_holds_for(item: OrderLineItem, holds: Iterable[Hold]) -> list[Hold]:
    return [hold for hold in holds if hold.is_active and hold.applies_to(item.id)]


def is_item_held(item: OrderLineItem, holds: Iterable[Hold]) -> bool:
    return bool(active_holds_for(item, holds))


def split_items(order: Order, holds: Sequence[Hold]) -> tuple[list[OrderLineItem], list[OrderLineItem]]:
    """Return (clear, held) line items, preserving cart order."""
    clear: list[OrderLineItem] = []
    held: list[OrderLineItem] = []
    for item in order.items:
        (held if is_item_held(item, holds) else clear).append(item)
    return clear, held


class HoldEvaluator:
    """Raises compliance holds; never clears one."""

    def __init__(self, policy: CompliancePolicy | None = None):
        self.policy = policy or CompliancePolicy.from_settings()

    def evaluate(
        self,
        order: Order,
        existing: Sequence[Hold] = (),
        recent_firearm_quantity: int = 0,
        submitted_item_ids: Collection[int] = (),
    ) -> list[HoldDecision]:
        """Decide which new holds the order needs.

        `existing` is every hold ever recorded for the order. A reason that is
        already active, or that an operator cleared, for the same line item is
        not raised again. `recent_firearm_quantity` is the customer's FFL-required
        quantity in earlier orders inside the policy window. Items listed in
        `submitted_item_ids` are already with the distributor and are never held.
        """
        decisions: list[HoldDecision] = []
        ffl_items = [item for item in order.items if item.requires_ffl]
        if not ffl_items:
            return decisions

        ffl_on_file = order.ffl is not None and order.ffl.is_on_file
        needs_ffl_hold = self.policy.ffl_hold and not ffl_on_file

        over_limit = False
        if self.policy.multi_firearm_hold and not needs_ffl_hold:
            total = recent_firearm_quantity + sum(item.quantity for item in ffl_items)
            over_limit = total >= self.policy.firearm_limit

        for item in ffl_items:
            if item.id in submitted_item_ids:
                continue
            if needs_ffl_hold:
                note = "no FFL selected" if order.ffl is None else f"FFL {order.ffl.license_number} is {order.ffl.status.value}"
                self._raise(decisions, existing, item, HoldReason.FFL_NOT_ON_FILE, note)
            elif over_limit:
                note = (
                    f"would reach limit of {self.policy.firearm_limit} firearms "
                    f"in {self.policy.firearm_window_days} days"
                )
                self._raise(decisions, existing, item, HoldReason.GUN_COUNT_RULE, note)
        return decisions

    @staticmethod
    def _raise(
        decisions: list[HoldDecision],
        existing: Sequence[Hold],
        item: OrderLineItem,
        reason: HoldReason,
        note: str,
    ) -> None:
        for hold in existing:
            if hold.reason == reason and hold.line_item_id == item.id:
                return
        decisions.append(HoldDecision(reason=reason, line_item_id=item.id, note=note))
