from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence

from app.crm.mapper import STAGE_BY_STATUS, build_deal, derive_order_status
from app.crm.sync import diff_deal
from app.domain.orders.aggregates import CrmDealRecord, DistributorSubmission, Hold, Order


@dataclass
class ReconciliationResult:
    rule: str
    passed: bool
    detail: str


def _active_at(hold: Hold, submission: DistributorSubmission) -> bool:
    if hold.created_at > submission.submitted_at:
        return False
    return hold.cleared_at is None or hold.cleared_at > submission.submitted_at


def check_hold_gating(
    order: Order,
    holds: Iterable[Hold],
    submissions: Iterable[DistributorSubmission],
) -> ReconciliationResult:
    holds = list(holds)
    for submission in submissions:
        if submission.kind != "attempt":
            continue
        sent_parts = {str(row.get("PartNum")) for row in submission.payload.get("Items", [])}
        for item in order.items:
            blocking = [hold for hold in holds if hold.applies_to(item.id) and _active_at(hold, submission)]
            if not blocking:
                continue
            if item.id in submission.line_item_ids or item.distributor_stock_id in sent_parts:
                return ReconciliationResult(
                    rule="hold_gating",
                    passed=False,
                    detail=(
                        f"held sku={item.sku} ({blocking[0].reason.value}) "
                        f"sent in {submission.po_reference} attempt {submission.attempt}"
                    ),
                )
    return ReconciliationResult(rule="hold_gating", passed=True, detail="ok")


def check_deal_matches_local(expected: CrmDealRecord, actual: CrmDealRecord | None) -> ReconciliationResult:
    problems = diff_deal(expected, actual)
    return ReconciliationResult(
        rule="crm_deal_matches_local",
        passed=not problems,
        detail="; ".join(problems) if problems else "ok",
    )


def check_crm_status(
    order: Order,
    holds: Sequence[Hold],
    submissions: Sequence[DistributorSubmission],
    crm_deal: CrmDealRecord | None,
) -> ReconciliationResult:
    """The CRM must report the status derived from local holds and submissions."""
    derived = derive_order_status(order.items, holds, submissions)
    if crm_deal is None:
        return ReconciliationResult(
            rule="crm_status_matches_derived",
            passed=False,
            detail=f"derived={derived.value}; crm deal missing",
        )
    reported = crm_deal.fields.get("Order_Status")
    stage = crm_deal.fields.get("Stage")
    passed = reported == derived.value and stage == STAGE_BY_STATUS[derived]
    return ReconciliationResult(
        rule="crm_status_matches_derived",
        passed=passed,
        detail=f"derived={derived.value}" if passed else f"derived={derived.value}; crm has {reported} / {stage}",
    )


def run_order_verification(
    order: Order,
    holds: Sequence[Hold],
    submissions: Sequence[DistributorSubmission],
    crm_deal: CrmDealRecord | None,
) -> list[ReconciliationResult]:
    results = [
        check_hold_gating(order, holds, submissions),
    ]
    if order.order_number:
        results.append(check_crm_status(order, holds, submissions, crm_deal))
        results.append(check_deal_matches_local(build_deal(order, submissions, holds), crm_deal))
    else:
        results.append(
            ReconciliationResult(rule="crm_deal_matches_local", passed=True, detail="no order number yet")
        )
    return results
