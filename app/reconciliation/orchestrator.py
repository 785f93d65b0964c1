from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator
from uuid import uuid4

import app.persistence.pg as pg
from app.core.canonical import payload_hash
from app.crm.client import CrmClient, build_crm_client
from app.crm.mapper import CrmOrderStatus, build_deal, current_submissions, derive_order_status, latest_for_item
from app.crm.sync import DealSynchronizer
from app.distributor.client import DistributorClient, build_distributor_client
from app.distributor.submitter import DistributorSubmitter, normalize_response
from app.domain.orders.aggregates import (
    TERMINAL_STATUSES,
    DistributorSubmission,
    FflRecord,
    Hold,
    HoldReason,
    Order,
    OrderLineItem,
    OrderStatus,
    SubmissionOutcome,
)
from app.domain.orders.store import OrderStore
from app.fulfillment.errors import (
    CrmTransportError,
    InvalidTransitionError,
    OrderValidationError,
    ReconciliationAborted,
    SyncConflictError,
)
from app.fulfillment.holds import HoldEvaluator, active_holds_for, split_items
from app.fulfillment.numbering import OrderNumber, OrderNumberAllocator
from app.fulfillment.pricing import PriceResolver
from app.fulfillment.routing import classify, group_by_account
from app.reconciliation.rules import ReconciliationResult, run_order_verification

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.CREATED: frozenset({OrderStatus.CLASSIFIED, OrderStatus.HELD}),
    OrderStatus.CLASSIFIED: frozenset({OrderStatus.SUBMITTED, OrderStatus.HELD}),
    OrderStatus.HELD: frozenset({OrderStatus.CLASSIFIED, OrderStatus.HELD, OrderStatus.RECONCILED}),
    OrderStatus.SUBMITTED: frozenset({OrderStatus.RECONCILED, OrderStatus.REJECTED}),
    OrderStatus.RECONCILED: frozenset(
        {
            OrderStatus.RECONCILED,
            OrderStatus.SUBMITTED,
            OrderStatus.HELD,
            OrderStatus.REJECTED,
            OrderStatus.FULFILLED_PENDING_SHIPMENT,
        }
    ),
    OrderStatus.REJECTED: frozenset(),
    OrderStatus.FULFILLED_PENDING_SHIPMENT: frozenset(),
}

_SETTLED_BY_CRM_STATUS = {
    CrmOrderStatus.REJECTED: OrderStatus.REJECTED,
    CrmOrderStatus.HELD: OrderStatus.HELD,
    CrmOrderStatus.CONFIRMED: OrderStatus.FULFILLED_PENDING_SHIPMENT,
}


@dataclass
class Snapshot:
    order: Order
    holds: list[Hold]
    submissions: list[DistributorSubmission]


@dataclass
class ReconcileReport:
    order_id: int
    status: OrderStatus
    order_number: str | None = None
    crm_status: CrmOrderStatus | None = None
    crm_deal_id: str | None = None
    held_line_item_ids: list[int] = field(default_factory=list)
    submissions: list[DistributorSubmission] = field(default_factory=list)
    needs_manual_intervention: bool = False
    errors: list[str] = field(default_factory=list)
    aborted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "order_number": self.order_number,
            "status": self.status.value,
            "crm_status": self.crm_status.value if self.crm_status else None,
            "crm_deal_id": self.crm_deal_id,
            "held_line_item_ids": self.held_line_item_ids,
            "submissions": [
                {
                    "submission_id": sub.submission_id,
                    "po_reference": sub.po_reference,
                    "account_code": sub.account_code,
                    "attempt": sub.attempt,
                    "outcome": sub.outcome.value,
                    "status_message": sub.status_message,
                    "distributor_order_id": sub.distributor_order_id,
                    "escalated": sub.escalated,
                }
                for sub in self.submissions
            ],
            "needs_manual_intervention": self.needs_manual_intervention,
            "errors": self.errors,
            "aborted": self.aborted,
        }


class ReconciliationOrchestrator:
    """Drives one order at a time through holds, submission and CRM sync.

    Only this class changes Order.status. Every step commits in its own short
    session so the recorded state survives a failure in the next network call.
    """

    def __init__(
        self,
        distributor: DistributorClient | None = None,
        crm: CrmClient | None = None,
        allocator: OrderNumberAllocator | None = None,
        evaluator: HoldEvaluator | None = None,
    ):
        self.distributor = distributor or build_distributor_client()
        self.crm = crm or build_crm_client()
        self.allocator = allocator or OrderNumberAllocator()
        self.evaluator = evaluator
        self._locks: dict[int, tuple[asyncio.Lock, int]] = {}
        self._aborts: dict[int, asyncio.Event] = {}

    # ---------- plumbing ----------

    @asynccontextmanager
    async def _order_lock(self, order_id: int) -> AsyncIterator[None]:
        lock, users = self._locks.get(order_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[order_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[order_id]
            if users <= 1:
                del self._locks[order_id]
            else:
                self._locks[order_id] = (lock, users - 1)

    def _snapshot(self, order_id: int) -> Snapshot:
        with pg.session_scope() as session:
            store = OrderStore(session)
            return Snapshot(
                order=store.load(order_id),
                holds=store.holds(order_id),
                submissions=store.submissions(order_id),
            )

    def _transition(self, order_id: int, from_state: OrderStatus, to_state: OrderStatus, reason: str) -> OrderStatus:
        if to_state not in ALLOWED_TRANSITIONS[from_state]:
            raise InvalidTransitionError(f"order {order_id}: {from_state.value} -> {to_state.value} is not allowed")
        with pg.session_scope() as session:
            OrderStore(session).transition(order_id, from_state, to_state, reason)
        logger.info("order %s %s -> %s (%s)", order_id, from_state.value, to_state.value, reason)
        return to_state

    def _record_submission(self, submission: DistributorSubmission) -> None:
        with pg.session_scope() as session:
            OrderStore(session).record_submission(submission)

    def _escalate(self, order_id: int, error: str) -> None:
        with pg.session_scope() as session:
            OrderStore(session).mark_manual_intervention(order_id, error)
        logger.error("order %s needs manual intervention: %s", order_id, error)

    def _hold_evaluator(self) -> HoldEvaluator:
        return self.evaluator or HoldEvaluator()

    def _report(self, order_id: int, **extra: Any) -> ReconcileReport:
        snap = self._snapshot(order_id)
        order = snap.order
        return ReconcileReport(
            order_id=order.id,
            status=order.status,
            order_number=order.order_number,
            crm_status=derive_order_status(order.items, snap.holds, snap.submissions) if order.order_number else None,
            crm_deal_id=order.crm_deal_id,
            held_line_item_ids=[item.id for item in order.items if active_holds_for(item, snap.holds)],
            needs_manual_intervention=order.needs_manual_intervention,
            **extra,
        )

    # ---------- pipeline steps ----------

    def _evaluate_holds(self, order: Order, submissions: list[DistributorSubmission]) -> list[Hold]:
        evaluator = self._hold_evaluator()
        # Window ends when this order was placed; later orders never count against it.
        placed = order.created_at or datetime.now(timezone.utc)
        since = placed - timedelta(days=evaluator.policy.firearm_window_days)
        submitted = {item_id for sub in submissions for item_id in sub.line_item_ids}
        with pg.session_scope() as session:
            store = OrderStore(session)
            existing = store.holds(order.id)
            recent = store.firearm_quantity_between(order.customer_ref, since, placed, exclude_order_id=order.id)
            for decision in evaluator.evaluate(
                order, existing, recent_firearm_quantity=recent, submitted_item_ids=submitted
            ):
                store.add_hold(order.id, decision.reason, decision.line_item_id, note=decision.note)
                logger.info(
                    "order %s line item %s held: %s (%s)",
                    order.id,
                    decision.line_item_id,
                    decision.reason.value,
                    decision.note,
                )
            return store.holds(order.id)

    def _price_and_number(self, order: Order) -> None:
        with pg.session_scope() as session:
            store = OrderStore(session)
            store.set_unit_prices(order.id, PriceResolver(session).resolve_order(order))
        number = self.allocator.allocate(order.environment)
        with pg.session_scope() as session:
            OrderStore(session).set_order_number(order.id, str(number))

    def _classify(self, order_id: int, holds: list[Hold]) -> Order:
        with pg.session_scope() as session:
            store = OrderStore(session)
            order = store.load(order_id)
            clear, _ = split_items(order, holds)
            results = classify(clear, order.environment)
            store.set_routes(order_id, {c.line_item_id: (c.route, c.account.code) for c in results})

            shipments = len({(c.route, c.account.code) for c in results})
            number = OrderNumber.parse(order.order_number).with_shipments(min(shipments, 9))
            if str(number) != order.order_number:
                store.set_order_number(order_id, str(number))
            return store.load(order_id)

    @staticmethod
    def _pending_items(
        order: Order,
        holds: list[Hold],
        submissions: list[DistributorSubmission],
        resubmit_escalated: bool,
    ) -> list[OrderLineItem]:
        clear, _ = split_items(order, holds)
        pending: list[OrderLineItem] = []
        for item in clear:
            latest = latest_for_item(item.id, submissions)
            if latest is None:
                pending.append(item)
            elif latest.outcome == SubmissionOutcome.TRANSPORT_FAILURE and (resubmit_escalated or not latest.escalated):
                pending.append(item)
        return pending

    @staticmethod
    def _batch_number(submissions: list[DistributorSubmission], account_code: str, item_ids: tuple[int, ...]) -> int:
        batches: list[tuple[int, ...]] = []
        for sub in submissions:
            if sub.kind == "attempt" and sub.account_code == account_code and sub.line_item_ids not in batches:
                batches.append(sub.line_item_ids)
        if item_ids in batches:
            return batches.index(item_ids) + 1
        return len(batches) + 1

    async def _submit(
        self,
        order_id: int,
        pending: list[OrderLineItem],
        abort: asyncio.Event,
    ) -> list[DistributorSubmission]:
        snap = self._snapshot(order_id)
        recorded: list[DistributorSubmission] = []

        def recorder(submission: DistributorSubmission) -> None:
            self._record_submission(submission)
            recorded.append(submission)

        submitter = DistributorSubmitter(snap.order, snap.holds, client=self.distributor, recorder=recorder)
        pending_ids = {item.id for item in pending}
        fresh = [item for item in snap.order.items if item.id in pending_ids]
        groups = group_by_account(fresh)

        # In-house and drop-ship groupings are independent distributor calls.
        results = await asyncio.gather(
            *(
                submitter.submit_with_retries(
                    account_code,
                    items,
                    abort=abort,
                    batch=self._batch_number(snap.submissions, account_code, tuple(item.id for item in items)),
                )
                for (_, account_code), items in groups.items()
            ),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return recorded

    def _fold(self, order_id: int) -> None:
        """Turn the latest distributor outcomes into holds and escalation flags."""
        snap = self._snapshot(order_id)
        with pg.session_scope() as session:
            store = OrderStore(session)
            for item in snap.order.items:
                submission = latest_for_item(item.id, snap.submissions)
                if submission is None or submission.outcome != SubmissionOutcome.REJECTED:
                    continue
                already = any(
                    hold.reason == HoldReason.DISTRIBUTOR_REJECTED and hold.line_item_id == item.id
                    for hold in snap.holds
                )
                if not already:
                    store.add_hold(
                        order_id,
                        HoldReason.DISTRIBUTOR_REJECTED,
                        item.id,
                        note=submission.status_message,
                    )

        escalated = [
            sub
            for sub in current_submissions(snap.order.items, snap.submissions)
            if sub.outcome == SubmissionOutcome.TRANSPORT_FAILURE and sub.escalated
        ]
        if escalated:
            detail = "; ".join(f"{sub.po_reference}: {sub.error}" for sub in escalated)
            self._escalate(order_id, f"distributor transport failure after retries ({detail})")

    async def _sync_crm(self, order_id: int) -> str | None:
        snap = self._snapshot(order_id)
        deal = await DealSynchronizer(client=self.crm).sync(snap.order, snap.submissions, snap.holds)
        with pg.session_scope() as session:
            OrderStore(session).mark_crm_synced(order_id, deal.deal_id)
        return deal.deal_id

    def _settle(self, order_id: int, crm_synced: bool) -> OrderStatus:
        snap = self._snapshot(order_id)
        status = snap.order.status
        derived = derive_order_status(snap.order.items, snap.holds, snap.submissions)

        if not crm_synced:
            # Terminal outcomes are recorded even when the CRM is unreachable.
            if derived == CrmOrderStatus.REJECTED and OrderStatus.REJECTED in ALLOWED_TRANSITIONS[status]:
                status = self._transition(order_id, status, OrderStatus.REJECTED, "distributor rejected; crm sync pending")
            return status

        if status in (OrderStatus.SUBMITTED, OrderStatus.RECONCILED):
            status = self._transition(order_id, status, OrderStatus.RECONCILED, "crm deal synced")
        elif status == OrderStatus.HELD and derived != CrmOrderStatus.HELD:
            status = self._transition(order_id, status, OrderStatus.RECONCILED, "holds cleared; crm deal synced")
        if status == OrderStatus.RECONCILED:
            target = _SETTLED_BY_CRM_STATUS.get(derived)
            if target is not None:
                status = self._transition(order_id, status, target, f"crm status {derived.value}")

        escalated = any(
            sub.escalated and sub.outcome == SubmissionOutcome.TRANSPORT_FAILURE
            for sub in current_submissions(snap.order.items, snap.submissions)
        )
        if snap.order.needs_manual_intervention and not escalated:
            with pg.session_scope() as session:
                OrderStore(session).clear_manual_intervention(order_id)
        return status

    async def _finish(self, order_id: int, errors: list[str]) -> bool:
        """Fold outcomes, sync the CRM and settle. Returns whether the CRM sync succeeded."""
        self._fold(order_id)
        try:
            await self._sync_crm(order_id)
        except (CrmTransportError, SyncConflictError) as exc:
            error = f"crm sync failed: {exc}"
            errors.append(error)
            self._escalate(order_id, error)
            self._settle(order_id, crm_synced=False)
            return False
        self._settle(order_id, crm_synced=True)
        return True

    # ---------- public operations ----------

    async def reconcile(self, order_id: int, resubmit_escalated: bool = False) -> ReconcileReport:
        async with self._order_lock(order_id):
            abort = asyncio.Event()
            self._aborts[order_id] = abort
            errors: list[str] = []
            recorded: list[DistributorSubmission] = []
            try:
                await self._run(order_id, abort, resubmit_escalated, errors, recorded)
            except ReconciliationAborted as exc:
                logger.warning("reconciliation aborted order=%s: %s", order_id, exc)
                return self._report(order_id, errors=[str(exc)], aborted=True)
            finally:
                self._aborts.pop(order_id, None)
            return self._report(order_id, errors=errors, submissions=recorded)

    async def _run(
        self,
        order_id: int,
        abort: asyncio.Event,
        resubmit_escalated: bool,
        errors: list[str],
        recorded: list[DistributorSubmission],
    ) -> None:
        snap = self._snapshot(order_id)
        order = snap.order
        if order.status in TERMINAL_STATUSES:
            if order.needs_manual_intervention:
                await self._finish(order_id, errors)
            else:
                logger.info("order %s is %s, nothing to reconcile", order_id, order.status.value)
            return

        holds = self._evaluate_holds(order, snap.submissions)
        if order.order_number is None:
            self._price_and_number(order)
        order = self._classify(order_id, holds)

        pending = self._pending_items(order, holds, snap.submissions, resubmit_escalated)
        status = order.status
        if pending:
            if status in (OrderStatus.CREATED, OrderStatus.HELD):
                status = self._transition(
                    order_id, status, OrderStatus.CLASSIFIED, f"{len(pending)} line item(s) clear for submission"
                )
            if status in (OrderStatus.CLASSIFIED, OrderStatus.RECONCILED):
                status = self._transition(order_id, status, OrderStatus.SUBMITTED, "submitting to distributor")
            recorded.extend(await self._submit(order_id, pending, abort))
        elif status in (OrderStatus.CREATED, OrderStatus.CLASSIFIED):
            reasons = sorted({hold.reason.value for hold in holds if hold.is_active})
            status = self._transition(order_id, status, OrderStatus.HELD, ", ".join(reasons) or "no clear items")

        await self._finish(order_id, errors)

    async def apply_distributor_update(self, order_id: int, account_code: str, response: dict[str, Any]) -> ReconcileReport:
        """Fold a later distributor status response for one grouping into the order."""
        async with self._order_lock(order_id):
            snap = self._snapshot(order_id)
            previous = [sub for sub in snap.submissions if sub.account_code == account_code]
            if not previous:
                raise OrderValidationError(f"order {order_id} has no submission for account {account_code}")
            last = previous[-1]
            normalized = normalize_response(response)
            payload = {"status_update_for": last.submission_id, "PONum": last.po_reference}
            update = DistributorSubmission(
                submission_id=str(uuid4()),
                order_id=order_id,
                route=last.route,
                account_code=account_code,
                attempt=last.attempt,
                po_reference=last.po_reference,
                line_item_ids=last.line_item_ids,
                payload=payload,
                payload_hash=payload_hash(payload),
                response=response,
                outcome=normalized.outcome,
                submitted_at=datetime.now(timezone.utc),
                status_code=normalized.status_code,
                status_message=normalized.status_message,
                distributor_order_id=normalized.distributor_order_id or last.distributor_order_id,
                error=normalized.error,
                kind="status_update",
            )
            self._record_submission(update)
            logger.info(
                "distributor status update order=%s po=%s outcome=%s",
                order_id,
                update.po_reference,
                update.outcome.value,
            )

            errors: list[str] = []
            if snap.order.status in TERMINAL_STATUSES:
                # Terminal orders are not re-entered; the CRM still gets the news.
                try:
                    await self._sync_crm(order_id)
                except (CrmTransportError, SyncConflictError) as exc:
                    errors.append(f"crm sync failed: {exc}")
                    self._escalate(order_id, errors[-1])
            else:
                await self._finish(order_id, errors)
            return self._report(order_id, errors=errors, submissions=[update])

    def abort(self, order_id: int) -> bool:
        """Signal an in-flight reconciliation to stop at its next retry boundary."""
        event = self._aborts.get(order_id)
        logger.warning("abort requested order=%s in_flight=%s", order_id, event is not None)
        if event is None:
            return False
        event.set()
        return True

    def place_hold(
        self,
        order_id: int,
        line_item_id: int | None,
        reason: HoldReason = HoldReason.MANUAL_REVIEW,
        note: str | None = None,
    ) -> Hold:
        with pg.session_scope() as session:
            store = OrderStore(session)
            order = store.load(order_id)
            if line_item_id is not None and line_item_id not in {item.id for item in order.items}:
                raise OrderValidationError(f"line item {line_item_id} is not part of order {order_id}")
            hold = store.add_hold(order_id, reason, line_item_id, note=note)
        logger.info("order %s hold placed: %s line_item=%s", order_id, reason.value, line_item_id)
        return hold

    def clear_hold(self, order_id: int, hold_id: int, ffl: FflRecord | None = None, note: str | None = None) -> Hold:
        with pg.session_scope() as session:
            store = OrderStore(session)
            if ffl is not None:
                store.set_ffl(order_id, ffl)
            hold = store.clear_hold(order_id, hold_id, note=note)
        logger.info("order %s hold %s cleared (%s)", order_id, hold_id, hold.reason.value)
        return hold

    async def crm_view(self, order_id: int) -> dict[str, Any]:
        snap = self._snapshot(order_id)
        if not snap.order.order_number:
            return {"local": None, "crm": None}
        local = build_deal(snap.order, snap.submissions, snap.holds)
        remote = await DealSynchronizer(client=self.crm).read_back(local.deal_key)
        return {
            "local": {"deal_key": local.deal_key, "fields": local.fields, "line_items": local.line_items},
            "crm": None
            if remote is None
            else {"deal_key": remote.deal_key, "deal_id": remote.deal_id, "fields": remote.fields, "line_items": remote.line_items},
        }

    async def verify(self, order_id: int) -> list[ReconciliationResult]:
        snap = self._snapshot(order_id)
        remote = None
        if snap.order.order_number:
            key = OrderNumber.parse(snap.order.order_number).base
            remote = await DealSynchronizer(client=self.crm).read_back(key)
        return run_order_verification(snap.order, snap.holds, snap.submissions, remote)
