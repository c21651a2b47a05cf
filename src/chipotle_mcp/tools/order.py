"""Server-side order lifecycle.

The order service uses optimistic concurrency: every mutating call sends the etag from
the previous response in ``If-Match`` and gets a new one back. Mutations on one order must
therefore be issued one at a time, each with the latest etag. A 412 surfaces as
:class:`~chipotle_mcp.errors.StaleConcurrencyToken` and is never retried here, since a
retry could apply the same meal twice.
"""

import json
import logging
from typing import Any, Sequence, Union

from chipotle_mcp.client import decode_json, response_etag
from chipotle_mcp.errors import MirrorStateMissing
from chipotle_mcp.models import MealContent, MealEntree
from chipotle_mcp.state import Session

logger = logging.getLogger(__name__)

CREATE_PATH = "/order/v2/online"
MEALS_PATH = "/order/v2/online/{order_id}/meals"
NON_FOOD_PATH = "/order/v2/online/{order_id}/nonFoodItems"

ONLINE_ORDER_TYPE = 1
ORDER_SOURCE = "WebV2"
UTENSILS_ITEM_ID = "CMG-6110"

STORAGE_KEY = "cmg-vuex"

_READ_STORAGE = "key => window.localStorage.getItem(key)"
_WRITE_STORAGE = "([key, value]) => window.localStorage.setItem(key, value)"

Content = Union[MealContent, dict[str, Any]]
Entree = Union[MealEntree, dict[str, Any]]


def _payload(item: Union[MealContent, MealEntree, dict[str, Any]], model) -> dict[str, Any]:
    """Dicts are checked against the model but sent exactly as given."""
    if isinstance(item, model):
        return item.payload()
    model.model_validate(item)
    return dict(item)


async def create_order(session: Session, restaurant_id: int) -> tuple[dict[str, Any], str]:
    """Open an empty online order. Returns the order and its first etag."""
    client = session.require_client(CREATE_PATH)
    response = await client.request(
        "POST",
        CREATE_PATH,
        params={"embeds": "order"},
        json={
            "restaurantId": restaurant_id,
            "orderType": ONLINE_ORDER_TYPE,
            "orderSource": ORDER_SOURCE,
        },
    )
    order = decode_json(CREATE_PATH, response)["order"]
    etag = response_etag(CREATE_PATH, response)
    logger.info(f"Created order {order.get('orderId')} at restaurant {restaurant_id}")
    return order, etag


async def add_meal(
    session: Session,
    order_id: str,
    etag: str,
    meal_name: str,
    entrees: Sequence[Entree],
    sides: Sequence[Content] = (),
    drinks: Sequence[Content] = (),
) -> tuple[dict[str, Any], str]:
    """Add one named meal and have the server finalise pricing.

    Returns the response body (``mealId``, ``swappedEntrees``, ``order``) and the new etag.
    """
    path = MEALS_PATH.format(order_id=order_id)
    client = session.require_client(path)
    response = await client.request(
        "POST",
        path,
        params={"embeds": "order", "finalizePricing": "true"},
        json={
            "meal": {
                "mealName": meal_name,
                "entrees": [_payload(e, MealEntree) for e in entrees],
                "sides": [_payload(s, MealContent) for s in sides],
                "drinks": [_payload(d, MealContent) for d in drinks],
            }
        },
        etag=etag,
    )
    body = decode_json(path, response)
    new_etag = response_etag(path, response)
    logger.info(f"Added meal {body.get('mealId')} to order {order_id}")
    return body, new_etag


async def add_utensils(session: Session, order_id: str, etag: str) -> tuple[dict[str, Any], str]:
    path = NON_FOOD_PATH.format(order_id=order_id)
    client = session.require_client(path)
    response = await client.request(
        "POST",
        path,
        params={"embeds": "order", "finalizePricing": "true"},
        json={"menuItemId": UTENSILS_ITEM_ID, "quantity": 1, "isUpSell": False},
        etag=etag,
    )
    body = decode_json(path, response)
    return body, response_etag(path, response)


async def mirror_to_browser(session: Session, etag: str, order: dict[str, Any]) -> None:
    """Write the order into the web app's persisted store so the site picks it up.

    Only ``order.pendingOrder`` is replaced; every other key is written back untouched.
    The site must have been opened once so its store exists.
    """
    page = session.page
    raw = await page.evaluate(_READ_STORAGE, STORAGE_KEY)
    if not raw:
        raise MirrorStateMissing(STORAGE_KEY)

    storage = json.loads(raw)
    storage.setdefault("order", {})["pendingOrder"] = {
        "etag": etag,
        "order": order,
        "discounts": [],
    }
    # Compact separators match what the web app itself writes with JSON.stringify.
    await page.evaluate(
        _WRITE_STORAGE, [STORAGE_KEY, json.dumps(storage, separators=(",", ":"))]
    )
    logger.info(f"Mirrored order {order.get('orderId')} into browser storage")
