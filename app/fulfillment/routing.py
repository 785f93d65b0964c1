from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from app.domain.orders.aggregates import (
    Consignee,
    DistributorAccount,
    Environment,
    FulfillmentRoute,
    OrderLineItem,
)

# The only place distributor account codes appear.
ACCOUNT_TABLE: dict[tuple[FulfillmentRoute, Environment], str] = {
    (FulfillmentRoute.IN_HOUSE, Environment.TEST): "99901",
    (FulfillmentRoute.DROP_SHIP, Environment.TEST): "99902",
    (FulfillmentRoute.IN_HOUSE, Environment.PRODUCTION): "60742",
    (FulfillmentRoute.DROP_SHIP, Environment.PRODUCTION): "63824",
}


@dataclass(frozen=True)
class Classification:
    line_item_id: int
    route: FulfillmentRoute
    account: DistributorAccount
    consignee: Consignee


def route_for(item: OrderLineItem) -> FulfillmentRoute:
    return FulfillmentRoute.DROP_SHIP if item.drop_ship_eligible else FulfillmentRoute.IN_HOUSE


def account_for(route: FulfillmentRoute, environment: Environment | str) -> DistributorAccount:
    env = Environment(environment)
    return DistributorAccount(code=ACCOUNT_TABLE[(route, env)], route=route, environment=env)


def consignee_for(item: OrderLineItem, route: FulfillmentRoute) -> Consignee:
    if route == FulfillmentRoute.IN_HOUSE:
        return Consignee.WAREHOUSE
    return Consignee.FFL if item.requires_ffl else Consignee.CUSTOMER


def classify_item(item: OrderLineItem, environment: Environment | str) -> Classification:
    route = route_for(item)
    return Classification(
        line_item_id=item.id,
        route=route,
        account=account_for(route, environment),
        consignee=consignee_for(item, route),
    )


def classify(items: Sequence[OrderLineItem], environment: Environment | str) -> list[Classification]:
    """Classify clear line items; callers filter out held items first."""
    return [classify_item(item, environment) for item in items]


def group_by_account(
    items: Sequence[OrderLineItem],
) -> dict[tuple[FulfillmentRoute, str], list[OrderLineItem]]:
    groups: dict[tuple[FulfillmentRoute, str], list[OrderLineItem]] = {}
    for item in items:
        if item.route is None or item.account_code is None:
            raise ValueError(f"line item {item.id} has not been classified")
        groups.setdefault((item.route, item.account_code), []).append(item)
    return groups


def account_route(account_code: str) -> tuple[FulfillmentRoute, Environment]:
    for key, code in ACCOUNT_TABLE.items():
        if code == account_code:
            return key
    raise KeyError(account_code)
