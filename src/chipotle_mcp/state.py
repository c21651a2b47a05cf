import asyncio
import json
import logging
import os
from dataclasses import dataclass, field, asdict
from typing import Any, Optional

from chipotle_mcp.client import ApiClient
from chipotle_mcp.errors import NotAuthenticated

logger = logging.getLogger(__name__)

STATE_PATH = os.environ.get("CHIPOTLE_STATE_PATH", "/tmp/chipotle_order_state.json")


@dataclass
class Session:
    """Browser handles plus the credential and the client built from it."""

    page: Any
    user_agent: str
    context: Any = None
    browser: Any = None
    playwright: Any = None
    token: str = ""
    client: Optional[ApiClient] = None

    @property
    def authenticated(self) -> bool:
        return self.client is not None

    def require_client(self, endpoint: str) -> ApiClient:
        if self.client is None:
            raise NotAuthenticated(endpoint)
        return self.client


@dataclass
class PendingOrder:
    order_id: str
    restaurant_id: int
    etag: str
    order: dict[str, Any] = field(default_factory=dict)

    def advance(self, etag: str, order: Optional[dict[str, Any]] = None) -> None:
        """Replace the token (and snapshot) with what the last response returned."""
        self.etag = etag
        if order is not None:
            self.order = order


@dataclass
class ServerState:
    session: Optional[Session] = None
    pending: Optional[PendingOrder] = None
    wallet: list[dict[str, Any]] = field(default_factory=list)
    order_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def __post_init__(self):
        self._load()

    def _load(self):
        if not os.path.exists(STATE_PATH):
            return
        try:
            with open(STATE_PATH) as f:
                data = json.load(f)
            if data.get("pending"):
                self.pending = PendingOrder(**data["pending"])
        except (OSError, ValueError, TypeError) as e:
            logger.warning(f"Ignoring unreadable order state at {STATE_PATH}: {e}")

    def begin_order(self, order: dict[str, Any], etag: str, restaurant_id: int) -> PendingOrder:
        self.pending = PendingOrder(
            order_id=order["orderId"],
            restaurant_id=restaurant_id,
            etag=etag,
            order=order,
        )
        self.save()
        return self.pending

    def advance(self, etag: str, order: Optional[dict[str, Any]] = None) -> None:
        if self.pending is None:
            return
        self.pending.advance(etag, order)
        self.save()

    def clear_order(self) -> None:
        self.pending = None
        self.save()

    def save(self):
        try:
            data = {"pending": asdict(self.pending) if self.pending else None}
            with open(STATE_PATH, "w") as f:
                json.dump(data, f)
        except OSError as e:
            logger.warning(f"Failed to persist order state: {e}")
