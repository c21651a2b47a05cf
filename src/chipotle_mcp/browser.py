"""Page steps that turn Playwright timeouts into client errors naming the element."""

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from chipotle_mcp.errors import TransportFailure, UISelectorNotFound

TYPING_DELAY_MS = 100


async def goto(page, url: str) -> None:
    try:
        await page.goto(url)
    except PlaywrightError as e:
        raise TransportFailure(url, detail=str(e)) from e


async def wait_for(page, selector: str, timeout=None):
    try:
        return await page.wait_for_selector(selector, timeout=timeout)
    except PlaywrightTimeoutError as e:
        raise UISelectorNotFound(selector) from e


async def click(page, selector: str, timeout=None, **kwargs) -> None:
    try:
        await page.click(selector, timeout=timeout, **kwargs)
    except PlaywrightTimeoutError as e:
        raise UISelectorNotFound(selector) from e


async def type_into(page, selector: str, text: str, timeout=None) -> None:
    try:
        await page.type(selector, text, delay=TYPING_DELAY_MS, timeout=timeout)
    except PlaywrightTimeoutError as e:
        raise UISelectorNotFound(selector) from e
