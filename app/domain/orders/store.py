from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.domain.orders.aggregates import (
    DistributorSubmission,
    Environment,
    FflRecord,
    FulfillmentRoute,
    Hold,
    HoldReason,
    MembershipTier,
    Order,
    OrderLineItem,
    OrderStatus,
    SubmissionOutcome,
)
from app.fulfillment.errors import OrderNotFoundError
from app.persistence.models import (
    DistributorSubmissionModel,
    OrderHoldModel,
    OrderLineItemModel,
    OrderModel,
    OrderTransitionModel,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything written here is UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _item_from_row(row: OrderLineItemModel) -> OrderLineItem:
    return OrderLineItem(
        id=row.id,
        position=row.position,
        sku=row.sku,
        distributor_stock_id=row.distributor_stock_id,
        quantity=row.quantity,
        unit_price_cents=row.unit_price_cents,
        requires_ffl=row.requires_ffl,
        drop_ship_eligible=row.drop_ship_eligible,
        name=row.name,
        manufacturer=row.manufacturer,
        category=row.category,
        route=FulfillmentRoute(row.route) if row.route else None,
        account_code=row.account_code,
    )


def _hold_from_row(row: OrderHoldModel) -> Hold:
    return Hold(
        id=row.id,
        order_id=row.order_id,
        reason=HoldReason(row.reason),
        line_item_id=row.line_item_id,
        created_at=_utc(row.created_at),
        cleared_at=_utc(row.cleared_at),
        note=row.note,
    )


def _submission_from_row(row: DistributorSubmissionModel) -> DistributorSubmission:
    return DistributorSubmission(
        submission_id=row.submission_id,
        order_id=row.order_id,
        route=FulfillmentRoute(row.route),
        account_code=row.account_code,
        attempt=row.attempt,
        po_reference=row.po_reference,
        line_item_ids=tuple(int(x) for x in row.line_item_ids or []),
        payload=row.payload,
        payload_hash=row.payload_hash,
        response=row.response,
        outcome=SubmissionOutcome(row.outcome),
        submitted_at=_utc(row.submitted_at),
        status_code=row.status_code,
        status_message=row.status_message,
        distributor_order_id=row.distributor_order_id,
        error=row.error,
        escalated=row.escalated,
        kind=row.kind,
    )


class OrderStore:
    def __init__(self, session: Session):
        self.session = session

    def _order_row(self, order_id: int) -> OrderModel:
        row = self.session.get(OrderModel, order_id)
        if row is None:
            raise OrderNotFoundError(f"order not found: {order_id}")
        return row

    def add_order(self, order: Order) -> Order:
        now = _now()
        row = OrderModel(
            customer_ref=order.customer_ref,
            customer_email=order.customer_email,
            customer_phone=order.customer_phone,
            membership_tier=order.membership_tier.value,
            environment=order.environment.value,
            status=order.status.value,
            shipping_address=order.shipping_address,
            ffl=order.ffl.to_dict() if order.ffl else None,
            payment_reference=order.payment_reference,
            amount_captured_cents=order.amount_captured_cents,
            created_at=order.created_at or now,
            updated_at=now,
        )
        self.session.add(row)
        self.session.flush()

        for item in order.items:
            self.session.add(
                OrderLineItemModel(
                    order_id=row.id,
                    position=item.position,
                    sku=item.sku,
                    distributor_stock_id=item.distributor_stock_id,
                    name=item.name,
                    manufacturer=item.manufacturer,
                    category=item.category,
                    quantity=item.quantity,
                    unit_price_cents=item.unit_price_cents,
                    requires_ffl=item.requires_ffl,
                    drop_ship_eligible=item.drop_ship_eligible,
                )
            )
        self.session.add(
            OrderTransitionModel(
                order_id=row.id,
                from_state=None,
                to_state=order.status.value,
                reason=f"payment {order.payment_reference} confirmed",
                occurred_at=now,
            )
        )
        self.session.flush()
        return self.load(row.id)

    def load(self, order_id: int) -> Order:
        row = self._order_row(order_id)
        items = self.session.scalars(
            select(OrderLineItemModel)
            .where(OrderLineItemModel.order_id == order_id)
            .order_by(OrderLineItemModel.position.asc())
        ).all()
        return Order(
            id=row.id,
            customer_ref=row.customer_ref,
            customer_email=row.customer_email,
            customer_phone=row.customer_phone,
            environment=Environment(row.environment),
            membership_tier=MembershipTier(row.membership_tier),
            shipping_address=dict(row.shipping_address or {}),
            items=[_item_from_row(item) for item in items],
            status=OrderStatus(row.status),
            order_number=row.order_number,
            ffl=FflRecord.from_dict(row.ffl) if row.ffl else None,
            payment_reference=row.payment_reference,
            amount_captured_cents=row.amount_captured_cents,
            needs_manual_intervention=row.needs_manual_intervention,
            last_error=row.last_error,
            crm_deal_id=row.crm_deal_id,
            created_at=_utc(row.created_at),
        )

    def holds(self, order_id: int) -> list[Hold]:
        rows = self.session.scalars(
            select(OrderHoldModel).where(OrderHoldModel.order_id == order_id).order_by(OrderHoldModel.id.asc())
        ).all()
        return [_hold_from_row(row) for row in rows]

    def add_hold(self, order_id: int, reason: HoldReason, line_item_id: int | None, note: str | None = None) -> Hold:
        self._order_row(order_id)
        row = OrderHoldModel(
            order_id=order_id,
            line_item_id=line_item_id,
            reason=reason.value,
            note=note,
            created_at=_now(),
        )
        self.session.add(row)
        self.session.flush()
        return _hold_from_row(row)

    def clear_hold(self, order_id: int, hold_id: int, note: str | None = None) -> Hold:
        row = self.session.get(OrderHoldModel, hold_id)
        if row is None or row.order_id != order_id:
            raise OrderNotFoundError(f"hold not found: order={order_id} hold={hold_id}")
        if row.cleared_at is None:
            row.cleared_at = _now()
            if note:
                row.note = f"{row.note}; {note}" if row.note else note
            self.session.flush()
        return _hold_from_row(row)

    def submissions(self, order_id: int) -> list[DistributorSubmission]:
        rows = self.session.scalars(
            select(DistributorSubmissionModel)
            .where(DistributorSubmissionModel.order_id == order_id)
            .order_by(DistributorSubmissionModel.seq_id.asc())
        ).all()
        return [_submission_from_row(row) for row in rows]

    def record_submission(self, submission: DistributorSubmission) -> DistributorSubmission:
        row = DistributorSubmissionModel(
            submission_id=submission.submission_id,
            order_id=submission.order_id,
            kind=submission.kind,
            route=submission.route.value,
            account_code=submission.account_code,
            attempt=submission.attempt,
            po_reference=submission.po_reference,
            line_item_ids=list(submission.line_item_ids),
            payload=submission.payload,
            payload_hash=submission.payload_hash,
            response=submission.response,
            outcome=submission.outcome.value,
            status_code=submission.status_code,
            status_message=submission.status_message,
            distributor_order_id=submission.distributor_order_id,
            error=submission.error,
            escalated=submission.escalated,
            submitted_at=submission.submitted_at,
        )
        self.session.add(row)
        self.session.flush()
        return submission

    def transition(self, order_id: int, from_state: OrderStatus, to_state: OrderStatus, reason: str | None) -> None:
        row = self._order_row(order_id)
        now = _now()
        row.status = to_state.value
        row.updated_at = now
        self.session.add(
            OrderTransitionModel(
                order_id=order_id,
                from_state=from_state.value,
                to_state=to_state.value,
                reason=reason,
                occurred_at=now,
            )
        )
        self.session.flush()

    def transitions(self, order_id: int) -> list[OrderTransitionModel]:
        return list(
            self.session.scalars(
                select(OrderTransitionModel)
                .where(OrderTransitionModel.order_id == order_id)
                .order_by(OrderTransitionModel.id.asc())
            ).all()
        )

    def set_order_number(self, order_id: int, order_number: str) -> None:
        row = self._order_row(order_id)
        row.order_number = order_number
        row.updated_at = _now()
        self.session.flush()

    def set_unit_prices(self, order_id: int, prices: dict[int, int]) -> None:
        for row in self._item_rows(order_id):
            if row.id in prices:
                row.unit_price_cents = prices[row.id]
        self.session.flush()

    def set_routes(self, order_id: int, routes: dict[int, tuple[FulfillmentRoute, str]]) -> None:
        for row in self._item_rows(order_id):
            if row.id in routes:
                route, account_code = routes[row.id]
                row.route = route.value
                row.account_code = account_code
        self.session.flush()

    def set_ffl(self, order_id: int, ffl: FflRecord) -> None:
        row = self._order_row(order_id)
        row.ffl = ffl.to_dict()
        row.updated_at = _now()
        self.session.flush()

    def mark_manual_intervention(self, order_id: int, error: str) -> None:
        row = self._order_row(order_id)
        row.needs_manual_intervention = True
        row.last_error = error
        row.updated_at = _now()
        self.session.flush()

    def clear_manual_intervention(self, order_id: int) -> None:
        row = self._order_row(order_id)
        row.needs_manual_intervention = False
        row.last_error = None
        row.updated_at = _now()
        self.session.flush()

    def mark_crm_synced(self, order_id: int, deal_id: str | None) -> None:
        row = self._order_row(order_id)
        now = _now()
        row.crm_deal_id = deal_id or row.crm_deal_id
        row.crm_synced_at = now
        row.updated_at = now
        self.session.flush()

    def firearm_quantity_between(
        self, customer_ref: str, since: datetime, until: datetime, exclude_order_id: int
    ) -> int:
        """FFL-required quantity in the customer's other orders created in [since, until)."""
        stmt = (
            select(func.coalesce(func.sum(OrderLineItemModel.quantity), 0))
            .join(OrderModel, OrderModel.id == OrderLineItemModel.order_id)
            .where(OrderModel.customer_ref == customer_ref)
            .where(OrderModel.id != exclude_order_id)
            .where(OrderModel.created_at >= since)
            .where(OrderModel.created_at < until)
            .where(OrderModel.status != OrderStatus.REJECTED.value)
            .where(OrderLineItemModel.requires_ffl.is_(True))
        )
        return int(self.session.scalar(stmt) or 0)

    def _item_rows(self, order_id: int) -> list[OrderLineItemModel]:
        return list(
            self.session.scalars(select(OrderLineItemModel).where(OrderLineItemModel.order_id == order_id)).all()
        )
