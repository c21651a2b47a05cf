import asyncio
import logging
from typing import Any, Optional

import requests

from chipotle_mcp.errors import StaleConcurrencyToken, TransportFailure

logger = logging.getLogger(__name__)


class ApiClient:
    """Authenticated client for services.chipotle.com.

    Every request carries the bearer token and the subscription key. Requests run in a
    worker thread so the browser's event loop is not blocked while they are in flight.
    """

    def __init__(
        self,
        token: str,
        base_url: str,
        subscription_key: str,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = requests.Session()
        self.http.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Ocp-Apim-Subscription-Key": subscription_key,
                "Accept": "application/json",
            }
        )

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json: Any = None,
        headers: Optional[dict[str, str]] = None,
        etag: Optional[str] = None,
        raise_for_status: bool = True,
    ) -> requests.Response:
        request_headers = dict(headers or {})
        if etag is not None:
            request_headers["If-Match"] = etag

        logger.debug(f"{method} {path}")
        try:
            response = await asyncio.to_thread(
                self.http.request,
                method,
                self.base_url + path,
                params=params,
                json=json,
                headers=request_headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TransportFailure(path, detail=str(e)) from e

        if response.status_code == 412:
            raise StaleConcurrencyToken(path, etag)
        if raise_for_status and not response.ok:
            raise TransportFailure(path, response.status_code, response.text[:200])
        return response

    async def get_json(self, path: str, **kwargs) -> Any:
        response = await self.request("GET", path, **kwargs)
        return decode_json(path, response)

    async def post_json(self, path: str, **kwargs) -> Any:
        response = await self.request("POST", path, **kwargs)
        return decode_json(path, response)

    def close(self) -> None:
        self.http.close()


def decode_json(path: str, response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError as e:
        raise TransportFailure(path, response.status_code, "response was not JSON") from e


def response_etag(path: str, response: requests.Response) -> str:
    """Return the fresh concurrency token a mutating call responded with."""
    etag = response.headers.get("etag")
    if not etag:
        raise TransportFailure(path, response.status_code, "response carried no etag")
    return etag
