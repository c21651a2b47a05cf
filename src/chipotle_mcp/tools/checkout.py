import logging
import os
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

import requests

from chipotle_mcp.config import ApiSettings
from chipotle_mcp.state import Session

logger = logging.getLogger(__name__)

LOG_PATH = os.environ.get("LOG_PATH", "/data/orders.log")
CONFIRMATION = "YES_PLACE_MY_ORDER"

BAG_PICKUP_LOCATION_ID = 1


def is_dry_run() -> bool:
    return os.environ.get("DRY_RUN", "false").lower() in ("true", "1", "yes")


def audit_log(message: str) -> None:
    """Append an entry to the audit log."""
    try:
        log_dir = os.path.dirname(LOG_PATH)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        with open(LOG_PATH, "a") as f:
            f.write(f"{timestamp} | {message}\n")
    except OSError as e:
        logger.warning(f"Failed to write audit log: {e}")


def check_confirmation(confirm_order: str, order_id: Optional[str]) -> Optional[dict[str, Any]]:
    """Return an abort result when the caller has not confirmed, else None."""
    if confirm_order != CONFIRMATION:
        audit_log(f"SUBMIT_ORDER | ABORTED | order={order_id} | reason=NOT_CONFIRMED")
        return {
            "success": False,
            "error": f"Order not confirmed. Pass confirm_order='{CONFIRMATION}' to proceed.",
            "code": "NOT_CONFIRMED",
        }
    return None


def build_payment(wallet: Mapping[str, Any]) -> dict[str, Any]:
    """Map a saved wallet entry onto the payment block the submit call expects."""
    return {
        "cardHolderName": wallet["cardHolderName"],
        "creditCardSingleUseToken": wallet["tokenizedAccountNumber"],
        "chipotleWalletId": wallet["tokenId"],
        "creditCardType": wallet["paymentMethod"],
        "creditCardExpiration": f"{wallet['expirationMonth']}{wallet['expirationYear']}",
        "creditCardZipcode": wallet["billingZip"],
        "paymentType": wallet["paymentTypeId"],
        "paymentProviderId": wallet["paymentProviderId"],
        "lastFourAccountNumbers": wallet["lastFourAccountNumbers"],
    }


async def submit_order(
    session: Session,
    order_id: str,
    etag: str,
    antibot_headers: Mapping[str, str],
    wallet: Mapping[str, Any],
    pickup_time: str,
    api: Optional[ApiSettings] = None,
) -> requests.Response:
    """Submit payment and pickup time for an order over REST.

    The submit endpoint only accepts requests carrying the site's anti-bot headers
    (``x-ep1cc1qk-*``). They cannot be produced here and must be supplied by the caller.
    The whole response is returned so callers can read the status and checkout errors;
    only a stale etag raises.
    """
    api = api or ApiSettings()
    path = api.submit_path.format(order_id=order_id)
    client = session.require_client(path)
    response = await client.request(
        "POST",
        path,
        json={
            "bagPickupLocationId": BAG_PICKUP_LOCATION_ID,
            "isAboveStorePayment": True,
            "payments": [build_payment(wallet)],
            "pickupDateTime": pickup_time,
        },
        headers=dict(antibot_headers),
        etag=etag,
        raise_for_status=False,
    )
    logger.info(f"Submitted order {order_id}, status {response.status_code}")
    return response
