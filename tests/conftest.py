import asyncio
import json
from typing import Any, Callable, Optional
from urllib.parse import parse_qs, urlparse

import pytest
import requests
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from requests.adapters import BaseAdapter
from requests.structures import CaseInsensitiveDict

import chipotle_mcp.state as state_mod
import chipotle_mcp.tools.checkout as checkout_mod
from chipotle_mcp.client import ApiClient
from chipotle_mcp.state import Session

BASE_URL = "https://services.chipotle.com"
LOGIN_URL = "https://services.chipotle.com/auth/v2/customer/login"


# --- REST side ---


def make_response(request, status: int, body: Any = None, headers: Optional[dict] = None):
    response = requests.Response()
    response.status_code = status
    response._content = json.dumps(body).encode() if body is not None else b""
    response.headers = CaseInsensitiveDict(headers or {})
    response.url = request.url
    response.request = request
    response.encoding = "utf-8"
    return response


class FakeOrderService(BaseAdapter):
    """In-process order service that enforces If-Match like the real one.

    Every mutating response carries a new etag; a request whose If-Match is not the latest
    etag for that order gets a 412.
    """

    def __init__(self):
        super().__init__()
        self.requests: list[requests.PreparedRequest] = []
        self.routes: dict[tuple[str, str], tuple[int, Any]] = {}
        self.orders: dict[str, dict[str, Any]] = {}
        self.current_etag: dict[str, str] = {}
        self.issued: list[str] = []
        self.drop_etag = False
        self.submit_status = 200

    def _issue(self, order_id: str) -> str:
        etag = f"T{len(self.issued) + 1}"
        self.issued.append(etag)
        self.current_etag[order_id] = etag
        return etag

    def requests_to(self, fragment: str) -> list[requests.PreparedRequest]:
        return [r for r in self.requests if fragment in urlparse(r.url).path]

    def send(self, request, **kwargs):
        self.requests.append(request)
        path = urlparse(request.url).path
        body = json.loads(request.body) if request.body else None

        if request.method == "POST" and path == "/order/v2/online":
            order_id = f"R{len(self.orders) + 1}"
            order = {"orderId": order_id, "restaurantId": body["restaurantId"], "meals": []}
            self.orders[order_id] = order
            return self._mutated(request, order_id, {"orderId": order_id, "order": order})

        for order_id, order in self.orders.items():
            if path == f"/order/v2/online/{order_id}/meals":
                return self._guarded(request, order_id, lambda: self._add_meal(order, body))
            if path == f"/order/v2/online/{order_id}/nonFoodItems":
                return self._guarded(
                    request,
                    order_id,
                    lambda: {"nonFoodItemId": "NF1", "order": order},
                )
            if path == f"/order/v2/online{order_id}/submit":
                return self._guarded(
                    request,
                    order_id,
                    lambda: {"orderId": order_id, "status": "submitted"},
                    status=self.submit_status,
                )

        status, payload = self.routes.get((request.method, path), (404, {"error": "not found"}))
        return make_response(request, status, payload)

    def _add_meal(self, order, body):
        meal_id = f"M{len(order['meals']) + 1}"
        order["meals"].append({"mealId": meal_id, **body["meal"]})
        return {"mealId": meal_id, "swappedEntrees": None, "order": order}

    def _guarded(self, request, order_id, handler: Callable[[], Any], status: int = 200):
        if request.headers.get("If-Match") != self.current_etag.get(order_id):
            return make_response(request, 412, {"error": "precondition failed"})
        return self._mutated(request, order_id, handler(), status)

    def _mutated(self, request, order_id, payload, status: int = 200):
        headers = {} if self.drop_etag else {"etag": self._issue(order_id)}
        return make_response(request, status, payload, headers)

    def close(self):
        pass


def query(request: requests.PreparedRequest) -> dict[str, list[str]]:
    return parse_qs(urlparse(request.url).query)


# --- Browser side ---


class FakeRequest:
    def __init__(self, method: str):
        self.method = method


class FakeResponse:
    def __init__(self, url: str, status: int = 200, body: Any = None, text: str = "", method: str = "POST"):
        self.url = url
        self.status = status
        self.request = FakeRequest(method)
        self._text = json.dumps(body) if body is not None else text

    async def json(self):
        return json.loads(self._text)

    async def text(self):
        return self._text


class _ExpectResponse:
    def __init__(self, page, predicate, timeout):
        self.page = page
        self.predicate = predicate
        self.timeout = timeout
        self._future = None

    async def __aenter__(self):
        self._future = asyncio.get_running_loop().create_future()
        self.page.expectations.append(self)
        return self

    @property
    def value(self):
        return self._future

    def offer(self, response) -> None:
        if not self._future.done() and self.predicate(response):
            self._future.set_result(response)

    async def __aexit__(self, exc_type, exc, tb):
        self.page.expectations.remove(self)
        if exc_type is None and not self._future.done():
            raise PlaywrightTimeoutError(f"Timeout {self.timeout}ms exceeded while waiting for response")
        return False


class FakeLocator:
    def __init__(self, page, selector: str):
        self.page = page
        self.selector = selector

    @property
    def first(self):
        return self

    async def wait_for(self, timeout=None):
        self.page.waits.append((self.selector, timeout))
        if self.selector not in self.page.visible:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded")

    async def click(self, timeout=None):
        if self.selector in self.page.blocked:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded: element is not visible")
        await self.page.click(self.selector, timeout=timeout)


class FakePage:
    """Just enough of playwright's Page for the login, cart and checkout flows."""

    def __init__(self, visible=(), local_storage: Optional[dict[str, str]] = None):
        self.visible = set(visible)
        self.blocked: set[str] = set()
        self.on_click: dict[str, Callable[["FakePage"], None]] = {}
        self.local_storage = dict(local_storage or {})
        self.expectations: list[_ExpectResponse] = []
        self.clicks: list[str] = []
        self.typed: list[tuple[str, str]] = []
        self.waits: list[tuple[str, Any]] = []
        self.visited: list[str] = []
        self.extra_headers: dict[str, str] = {}
        self.viewport = None

    def emit(self, response) -> None:
        for expectation in list(self.expectations):
            expectation.offer(response)

    def reveal(self, *selectors: str) -> None:
        self.visible.update(selectors)

    async def goto(self, url, **kwargs):
        self.visited.append(url)

    async def wait_for_selector(self, selector, timeout=None):
        self.waits.append((selector, timeout))
        if selector not in self.visible:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded")
        return object()

    async def click(self, selector, timeout=None, click_count=1):
        if selector not in self.visible:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded")
        self.clicks.append(selector)
        action = self.on_click.get(selector)
        if action:
            action(self)

    async def type(self, selector, text, delay=None, timeout=None):
        if selector not in self.visible:
            raise PlaywrightTimeoutError("Timeout exceeded")
        self.typed.append((selector, text))

    def expect_response(self, predicate, timeout=None):
        return _ExpectResponse(self, predicate, timeout)

    def locator(self, selector):
        return FakeLocator(self, selector)

    async def evaluate(self, expression, arg=None):
        if "getItem" in expression:
            return self.local_storage.get(arg)
        if "setItem" in expression:
            key, value = arg
            self.local_storage[key] = value
            return None
        raise AssertionError(f"unexpected script {expression}")

    async def set_viewport_size(self, size):
        self.viewport = size

    async def set_extra_http_headers(self, headers):
        self.extra_headers.update(headers)


# --- Fixtures ---


@pytest.fixture(autouse=True)
def isolated_files(tmp_path, monkeypatch):
    """Keep order state and audit log out of /tmp and /data."""
    monkeypatch.setattr(state_mod, "STATE_PATH", str(tmp_path / "state.json"))
    monkeypatch.setattr(checkout_mod, "LOG_PATH", str(tmp_path / "orders.log"))


@pytest.fixture
def service():
    return FakeOrderService()


@pytest.fixture
def page():
    return FakePage()


@pytest.fixture
def session(service, page):
    client = ApiClient("jwt-token", BASE_URL, "sub-key")
    client.http.mount("https://", service)
    return Session(page=page, user_agent="test-agent", token="jwt-token", client=client)
