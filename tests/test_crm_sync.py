from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from app.core.config import get_settings
from app.crm.client import InMemoryCrmClient, ZohoCrmClient
from app.crm.mapper import CrmOrderStatus, build_deal, derive_order_status
from app.crm.sync import DealSynchronizer, diff_deal
from app.domain.orders.aggregates import (
    DistributorSubmission,
    Environment,
    FulfillmentRoute,
    Hold,
    HoldReason,
    MembershipTier,
    Order,
    OrderLineItem,
    SubmissionOutcome,
)
from app.fulfillment.errors import SyncConflictError

T0 = datetime(2026, 5, 4, 15, 30, tzinfo=timezone.utc)


def _item(item_id: int, route: FulfillmentRoute | None, account: str | None, **kwargs) -> OrderLineItem:
    return OrderLineItem(
        id=item_id,
        position=item_id,
        sku=f"SKU-{item_id}",
        distributor_stock_id=f"RSR-{item_id}",
        quantity=1,
        unit_price_cents=12345,
        requires_ffl=kwargs.get("requires_ffl", False),
        drop_ship_eligible=route == FulfillmentRoute.DROP_SHIP,
        name=f"Item {item_id}",
        route=route,
        account_code=account,
    )


def _order(items: list[OrderLineItem]) -> Order:
    return Order(
        id=11,
        customer_ref="cust-11",
        environment=Environment.TEST,
        membership_tier=MembershipTier.BRONZE,
        shipping_address={},
        items=items,
        order_number="TEST00000111",
    )


def _submission(
    items: list[OrderLineItem],
    outcome: SubmissionOutcome,
    *,
    at: datetime = T0,
    message: str | None = None,
    escalated: bool = False,
    attempt: int = 1,
) -> DistributorSubmission:
    first = items[0]
    result = {"StatusCode": "00" if outcome == SubmissionOutcome.CONFIRMED else "20", "StatusMessage": message}
    return DistributorSubmission(
        submission_id=f"sub-{first.id}-{attempt}-{outcome.value}",
        order_id=11,
        route=first.route,
        account_code=first.account_code,
        attempt=attempt,
        po_reference="TEST0000011-I" if first.route == FulfillmentRoute.IN_HOUSE else "TEST0000011-D",
        line_item_ids=tuple(item.id for item in items),
        payload={},
        payload_hash="0" * 64,
        response=None if outcome == SubmissionOutcome.TRANSPORT_FAILURE else {"result": result},
        outcome=outcome,
        submitted_at=at,
        status_message=message,
        distributor_order_id="RSR-55" if outcome == SubmissionOutcome.CONFIRMED else None,
        error="connection refused" if outcome == SubmissionOutcome.TRANSPORT_FAILURE else None,
        escalated=escalated,
    )


def test_status_derivation_precedence():
    a = _item(1, FulfillmentRoute.IN_HOUSE, "99901")
    b = _item(2, FulfillmentRoute.DROP_SHIP, "99902")
    hold = Hold(id=1, order_id=11, reason=HoldReason.MANUAL_REVIEW, line_item_id=2, created_at=T0)

    assert derive_order_status([a, b], [], []) == CrmOrderStatus.PENDING
    assert derive_order_status([a, b], [hold], [_submission([a], SubmissionOutcome.CONFIRMED)]) == CrmOrderStatus.HELD
    assert (
        derive_order_status(
            [a, b],
            [hold],
            [_submission([a], SubmissionOutcome.REJECTED)],
        )
        == CrmOrderStatus.REJECTED
    )
    both = [_submission([a], SubmissionOutcome.CONFIRMED), _submission([b], SubmissionOutcome.CONFIRMED)]
    assert derive_order_status([a, b], [], both) == CrmOrderStatus.CONFIRMED
    assert derive_order_status([a, b], [], both[:1]) == CrmOrderStatus.PENDING


def test_status_derivation_is_pure():
    a = _item(1, FulfillmentRoute.IN_HOUSE, "99901")
    subs = [_submission([a], SubmissionOutcome.TRANSPORT_FAILURE), _submission([a], SubmissionOutcome.CONFIRMED, attempt=2)]
    results = {derive_order_status([a], [], subs) for _ in range(5)}
    assert results == {CrmOrderStatus.CONFIRMED}


def test_deal_lists_every_item_including_held_ones():
    a = _item(1, FulfillmentRoute.IN_HOUSE, "99901")
    held = _item(2, None, None, requires_ffl=True)
    hold = Hold(id=3, order_id=11, reason=HoldReason.FFL_NOT_ON_FILE, line_item_id=2, created_at=T0)
    deal = build_deal(_order([a, held]), [_submission([a], SubmissionOutcome.CONFIRMED)], [hold])

    assert deal.deal_key == "TEST0000011"
    assert deal.fields["Order_Status"] == "Held"
    assert deal.fields["Hold_Type"] == "FFL not on file"
    assert deal.fields["Fulfillment_Type"] == "In-House"
    assert [row["Line_Status"] for row in deal.line_items] == ["Confirmed", "Held"]
    assert deal.line_items[1]["Hold_Reason"] == "FFL not on file"
    assert str(deal.fields["Amount"]) == "246.90"


def test_escalated_grouping_shows_manual_intervention():
    a = _item(1, FulfillmentRoute.IN_HOUSE, "99901")
    deal = build_deal(
        _order([a]),
        [_submission([a], SubmissionOutcome.TRANSPORT_FAILURE, attempt=3, escalated=True)],
        [],
    )
    assert deal.fields["Order_Status"] == "Pending"
    assert deal.fields["APP_Status"].startswith("Manual intervention required")
    assert deal.line_items[0]["Line_Status"] == "Manual Intervention"


def test_later_batch_on_same_account_does_not_hide_escalation():
    a = _item(1, FulfillmentRoute.IN_HOUSE, "99901")
    b = _item(2, FulfillmentRoute.IN_HOUSE, "99901", requires_ffl=True)
    subs = [
        _submission([a], SubmissionOutcome.TRANSPORT_FAILURE, attempt=3, escalated=True),
        _submission([b], SubmissionOutcome.CONFIRMED, at=T0 + timedelta(hours=1)),
    ]
    deal = build_deal(_order([a, b]), subs, [])

    assert deal.fields["Order_Status"] == "Pending"
    assert deal.fields["APP_Status"].startswith("Manual intervention required")
    assert [row["Line_Status"] for row in deal.line_items] == ["Manual Intervention", "Confirmed"]

    rejected = [_submission([a], SubmissionOutcome.REJECTED, message="Discontinued"), subs[1]]
    assert derive_order_status([a, b], [], rejected) == CrmOrderStatus.REJECTED


@pytest.mark.asyncio
async def test_sync_twice_creates_one_deal_and_updates_it():
    crm = InMemoryCrmClient()
    sync = DealSynchronizer(crm)
    a = _item(1, FulfillmentRoute.IN_HOUSE, "99901")
    order = _order([a])

    first = await sync.sync(order, [], [])
    order.crm_deal_id = first.deal_id
    second = await sync.sync(order, [_submission([a], SubmissionOutcome.CONFIRMED)], [])

    assert first.created is True and second.created is False
    assert crm.creates == 1 and crm.updates == 1
    assert len(crm.deals) == 1
    stored = crm.deals["TEST0000011"]
    assert stored.fields["Order_Status"] == "Confirmed"
    assert stored.fields["APP_Confirmed"] == T0.strftime("%Y-%m-%dT%H:%M:%S")


class _DriftingCrm(InMemoryCrmClient):
    """Read-back always disagrees with what was written."""

    async def get_deal(self, deal_key):
        record = await super().get_deal(deal_key)
        if record is not None:
            record.fields["Order_Status"] = "Stale"
        return record


@pytest.mark.asyncio
async def test_persistent_mismatch_raises_after_one_corrected_retry():
    crm = _DriftingCrm()
    order = _order([_item(1, FulfillmentRoute.IN_HOUSE, "99901")])

    with pytest.raises(SyncConflictError) as excinfo:
        await DealSynchronizer(crm).sync(order, [], [])

    assert "Order_Status" in excinfo.value.detail
    assert len(crm.upsert_calls) == 2
    assert crm.upsert_calls[1]["deal_id"] == "mem-1"
    assert len(crm.deals) == 1


def test_diff_tolerates_float_and_empty_string_rendering():
    a = _item(1, FulfillmentRoute.IN_HOUSE, "99901")
    deal = build_deal(_order([a]), [], [])
    echoed = build_deal(_order([a]), [], [])
    echoed.fields = {name: (float(v) if name == "Amount" else v) for name, v in echoed.fields.items()}
    echoed.fields["Carrier"] = None

    assert diff_deal(deal, echoed) == []
    assert diff_deal(deal, None) == ["deal TEST0000011 not found"]


@pytest.mark.asyncio
async def test_zoho_client_upserts_by_order_key_and_reads_back():
    stored: dict[str, dict] = {}
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.method == "POST" and request.url.path.endswith("/Deals/upsert"):
            body = json.loads(request.content)
            assert body["duplicate_check_fields"] == ["Order_Key"]
            record = body["data"][0]
            action = "update" if record["Order_Key"] in stored else "insert"
            stored[record["Order_Key"]] = {**record, "id": "4000001"}
            return httpx.Response(
                200,
                json={"data": [{"status": "success", "code": "SUCCESS", "action": action, "details": {"id": "4000001"}}]},
            )
        if request.method == "GET" and request.url.path.endswith("/Deals/search"):
            assert request.url.params["criteria"] == "(Order_Key:equals:TEST0000011)"
            row = stored.get("TEST0000011")
            return httpx.Response(200, json={"data": [row]}) if row else httpx.Response(204)
        return httpx.Response(404)

    settings = get_settings().model_copy(update={"crm_access_token": "zoho-token", "crm_api_base": "https://crm.test/v2"})
    crm = ZohoCrmClient(settings, transport=httpx.MockTransport(handler))
    a = _item(1, FulfillmentRoute.IN_HOUSE, "99901")

    assert await crm.get_deal("TEST0000011") is None
    deal = await DealSynchronizer(crm, settings).sync(
        _order([a]), [_submission([a], SubmissionOutcome.CONFIRMED, at=T0 + timedelta(minutes=5))], []
    )

    assert deal.created is True
    assert deal.deal_id == "4000001"
    assert seen[-1].headers["Authorization"] == "Zoho-oauthtoken zoho-token"
    assert stored["TEST0000011"]["Subform_1"][0]["Product_Code"] == "SKU-1"


@pytest.mark.asyncio
async def test_zoho_record_error_is_a_sync_conflict():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"data": [{"status": "error", "code": "DUPLICATE_DATA", "message": "duplicate data"}]},
        )

    crm = ZohoCrmClient(get_settings(), transport=httpx.MockTransport(handler))
    with pytest.raises(SyncConflictError):
        await crm.upsert_deal("TEST0000011", {"Deal_Name": "x"}, [])
