import logging
from typing import Any

from chipotle_mcp.state import Session

logger = logging.getLogger(__name__)

SEARCH_PATH = "/restaurant/v3/restaurant"
MENU_PATH = "/menuinnovation/v1/restaurants/{restaurant_id}/onlinemenu"
PICKUP_TIMES_PATH = "/sput/v1/pickuptimes/{restaurant_id}"
WALLET_PATH = "/transaction/v3/wallet/wallet"

SEARCH_PAGE_SIZE = 10


async def search_restaurants(
    session: Session,
    latitude: float,
    longitude: float,
    radius: int,
) -> list[dict[str, Any]]:
    """Find open restaurants near a point, closest first. Only the first page is returned."""
    client = session.require_client(SEARCH_PATH)
    body = await client.post_json(
        SEARCH_PATH,
        json={
            "latitude": latitude,
            "longitude": longitude,
            "radius": radius,
            "restaurantStatuses": ["OPEN", "LAB"],
            "conceptIds": ["CMG"],
            "orderBy": "distance",
            "orderByDescending": False,
            "pageSize": SEARCH_PAGE_SIZE,
            "pageIndex": 0,
            "embeds": {
                "addressTypes": ["MAIN"],
                "realHours": True,
                "directions": True,
                "onlineOrdering": True,
            },
        },
    )
    restaurants = body.get("data", [])
    logger.info(f"Found {len(restaurants)} restaurants near ({latitude}, {longitude})")
    return restaurants


async def get_menu(session: Session, restaurant_id: int) -> dict[str, Any]:
    """Full online menu, unavailable items included."""
    path = MENU_PATH.format(restaurant_id=restaurant_id)
    client = session.require_client(path)
    return await client.get_json(
        path,
        params={"channelId": "web", "includeUnavailableItems": "true"},
    )


async def get_pickup_times(session: Session, restaurant_id: int) -> list[str]:
    """Pickup slots as local time strings (YYYY-MM-DDTHH:MM:SS)."""
    path = PICKUP_TIMES_PATH.format(restaurant_id=restaurant_id)
    client = session.require_client(path)
    return await client.get_json(path, params={"itemCount": 1})


async def get_wallet(session: Session) -> list[dict[str, Any]]:
    client = session.require_client(WALLET_PATH)
    return await client.get_json(WALLET_PATH)
