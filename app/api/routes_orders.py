from __future__ import annotations

from functools import lru_cache
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.api.utils import hold_to_dict, order_to_dict, submission_to_dict, transition_to_dict
from app.core.security import Operator, require_operator
from app.crm.client import to_wire
from app.domain.orders.aggregates import HoldReason
from app.domain.orders.commands import FflSelection, OrderIntakeRequest, create_order
from app.domain.orders.store import OrderStore
from app.persistence.pg import get_session, session_scope
from app.reconciliation.orchestrator import ReconciliationOrchestrator

router = APIRouter(tags=["orders"])


@lru_cache(maxsize=1)
def get_orchestrator() -> ReconciliationOrchestrator:
    return ReconciliationOrchestrator()


class PlaceHoldRequest(BaseModel):
    line_item_id: int | None = None
    reason: HoldReason = HoldReason.MANUAL_REVIEW
    note: str | None = None


class ClearHoldRequest(BaseModel):
    note: str | None = None
    ffl: FflSelection | None = Field(default=None, description="verified FFL replacing the order's selection")
    reconcile: bool = True


class DistributorUpdateRequest(BaseModel):
    account_code: str = Field(min_length=1)
    response: dict[str, Any]


@router.post("/orders", status_code=201)
async def intake_order(
    req: OrderIntakeRequest,
    reconcile: bool = Query(default=False),
    _: Operator = Depends(require_operator),
    orchestrator: ReconciliationOrchestrator = Depends(get_orchestrator),
):
    with session_scope() as session:
        order = create_order(session, req)
    body: dict[str, Any] = {"order": order_to_dict(order)}
    if reconcile:
        report = await orchestrator.reconcile(order.id)
        body["reconciliation"] = report.to_dict()
    return body


@router.get("/orders/{order_id}")
def get_order(
    order_id: int,
    _: Operator = Depends(require_operator),
    session: Session = Depends(get_session),
):
    store = OrderStore(session)
    order = store.load(order_id)
    return {
        "order": order_to_dict(order),
        "holds": [hold_to_dict(hold) for hold in store.holds(order_id)],
        "submissions": [submission_to_dict(sub) for sub in store.submissions(order_id)],
        "transitions": [transition_to_dict(row) for row in store.transitions(order_id)],
    }


@router.post("/orders/{order_id}/reconcile")
async def reconcile_order(
    order_id: int,
    resubmit_escalated: bool = Query(default=False),
    _: Operator = Depends(require_operator),
    orchestrator: ReconciliationOrchestrator = Depends(get_orchestrator),
):
    report = await orchestrator.reconcile(order_id, resubmit_escalated=resubmit_escalated)
    return report.to_dict()


@router.post("/orders/{order_id}/holds", status_code=201)
def place_hold(
    order_id: int,
    req: PlaceHoldRequest,
    _: Operator = Depends(require_operator),
    orchestrator: ReconciliationOrchestrator = Depends(get_orchestrator),
):
    hold = orchestrator.place_hold(order_id, req.line_item_id, reason=req.reason, note=req.note)
    return hold_to_dict(hold)


@router.post("/orders/{order_id}/holds/{hold_id}/clear")
async def clear_hold(
    order_id: int,
    hold_id: int,
    req: ClearHoldRequest,
    _: Operator = Depends(require_operator),
    orchestrator: ReconciliationOrchestrator = Depends(get_orchestrator),
):
    ffl = req.ffl.to_record() if req.ffl else None
    hold = orchestrator.clear_hold(order_id, hold_id, ffl=ffl, note=req.note)
    body: dict[str, Any] = {"hold": hold_to_dict(hold)}
    if req.reconcile:
        body["reconciliation"] = (await orchestrator.reconcile(order_id)).to_dict()
    return body


@router.post("/orders/{order_id}/abort")
async def abort_order(
    order_id: int,
    _: Operator = Depends(require_operator),
    orchestrator: ReconciliationOrchestrator = Depends(get_orchestrator),
):
    return {"order_id": order_id, "signalled": orchestrator.abort(order_id)}


@router.post("/orders/{order_id}/distributor-updates")
async def distributor_update(
    order_id: int,
    req: DistributorUpdateRequest,
    _: Operator = Depends(require_operator),
    orchestrator: ReconciliationOrchestrator = Depends(get_orchestrator),
):
    report = await orchestrator.apply_distributor_update(order_id, req.account_code, req.response)
    return report.to_dict()


@router.get("/orders/{order_id}/crm")
async def crm_deal(
    order_id: int,
    _: Operator = Depends(require_operator),
    orchestrator: ReconciliationOrchestrator = Depends(get_orchestrator),
):
    view = await orchestrator.crm_view(order_id)
    return {"order_id": order_id, **_jsonable(view)}


@router.get("/orders/{order_id}/verify")
async def verify_order(
    order_id: int,
    _: Operator = Depends(require_operator),
    orchestrator: ReconciliationOrchestrator = Depends(get_orchestrator),
):
    results = await orchestrator.verify(order_id)
    return {
        "order_id": order_id,
        "passed": all(result.passed for result in results),
        "results": [result.__dict__ for result in results],
    }


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_jsonable(item) for item in value]
    return to_wire(value)
