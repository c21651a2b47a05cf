"""Browser session setup and account login.

Login goes through the real sign-in form so the site's own anti-bot checks see a normal
browser. The bearer token is read off the login response and used to build the
:class:`~chipotle_mcp.client.ApiClient` for every REST call that follows.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from chipotle_mcp.browser import click, goto, type_into, wait_for
from chipotle_mcp.client import ApiClient
from chipotle_mcp.config import ApiSettings, BrowserSettings, Timeouts
from chipotle_mcp.errors import LoginExhausted, LoginRejected, TwoFactorRequired
from chipotle_mcp.state import Session

logger = logging.getLogger(__name__)

SIGN_IN_LINK = '[data-button="sign-in"]'
EMAIL_INPUT = '[aria-label="Enter email address"]'
PASSWORD_INPUT = '[aria-label="Enter password"]'
SIGN_IN_BUTTON = ".sign-in-button"
TWO_FACTOR_FORM = '[class*="two-step-verification-welcome-form"]'


@dataclass(frozen=True)
class Authenticated:
    token: str


@dataclass(frozen=True)
class TwoFactorPrompt:
    pass


@dataclass(frozen=True)
class Exhausted:
    attempts: int


@dataclass(frozen=True)
class Rejected:
    status: int
    reason: str = ""


LoginOutcome = Union[Authenticated, TwoFactorPrompt, Exhausted, Rejected]


async def initialize(settings: Optional[BrowserSettings] = None) -> Session:
    """Launch Chromium with a single page. Launch failures propagate."""
    settings = settings or BrowserSettings()
    playwright = await async_playwright().start()
    try:
        browser = await playwright.chromium.launch(headless=settings.headless)
    except Exception:
        await playwright.stop()
        raise
    try:
        context = await browser.new_context(user_agent=settings.user_agent)
        page = await context.new_page()
        await page.set_viewport_size(
            {"width": settings.viewport_width, "height": settings.viewport_height}
        )
    except Exception:
        await browser.close()
        await playwright.stop()
        raise
    logger.info(f"Browser started (headless={settings.headless})")
    return Session(
        page=page,
        user_agent=settings.user_agent,
        context=context,
        browser=browser,
        playwright=playwright,
    )


async def set_user_agent(session: Session, user_agent: str) -> None:
    session.user_agent = user_agent
    await session.page.set_extra_http_headers({"User-Agent": user_agent})


async def attempt_login(
    session: Session,
    email: str,
    password: str,
    max_attempts: int = 5,
    api: Optional[ApiSettings] = None,
    timeouts: Optional[Timeouts] = None,
) -> LoginOutcome:
    """Fill in the sign-in form and report how the login ended.

    Each attempt first looks for the two-step verification form, then presses the
    sign-in button and waits for the login call. A two-factor prompt ends the loop at
    once; it can only be cleared by the account owner.
    """
    api = api or ApiSettings()
    timeouts = timeouts or Timeouts()
    page = session.page

    await goto(page, api.site_url)
    await click(page, SIGN_IN_LINK, timeouts.ui_ms)
    await wait_for(page, EMAIL_INPUT, timeouts.ui_ms)
    await type_into(page, EMAIL_INPUT, email, timeouts.ui_ms)
    await type_into(page, PASSWORD_INPUT, password, timeouts.ui_ms)

    def is_login_response(response) -> bool:
        return response.url == api.login_url and response.request.method == "POST"

    login_response = None
    for attempt in range(1, max_attempts + 1):
        try:
            await page.wait_for_selector(TWO_FACTOR_FORM, timeout=timeouts.two_factor_ms)
        except PlaywrightTimeoutError:
            pass
        else:
            logger.warning("Two factor verification requested")
            return TwoFactorPrompt()

        try:
            async with page.expect_response(
                is_login_response, timeout=timeouts.login_response_ms
            ) as response_info:
                await click(page, SIGN_IN_BUTTON, timeouts.ui_ms)
            login_response = await response_info.value
            break
        except PlaywrightTimeoutError:
            logger.info(f"No login response on attempt {attempt}/{max_attempts}")

    if login_response is None:
        return Exhausted(max_attempts)

    if login_response.status != 200:
        return Rejected(login_response.status)

    try:
        body = await login_response.json()
    except ValueError:
        return Rejected(login_response.status, "login response was not JSON")
    jwt = body.get("jwt") if isinstance(body, dict) else None
    if not jwt:
        return Rejected(login_response.status, "login response had no jwt")
    return Authenticated(jwt.removeprefix("Bearer "))


async def login(
    session: Session,
    email: str,
    password: str,
    max_attempts: int = 5,
    api: Optional[ApiSettings] = None,
    timeouts: Optional[Timeouts] = None,
) -> str:
    """Log the session in and install the authenticated API client. Returns the token."""
    api = api or ApiSettings()
    outcome = await attempt_login(session, email, password, max_attempts, api, timeouts)

    if isinstance(outcome, TwoFactorPrompt):
        raise TwoFactorRequired()
    if isinstance(outcome, Exhausted):
        raise LoginExhausted(outcome.attempts)
    if isinstance(outcome, Rejected):
        raise LoginRejected(outcome.status, outcome.reason)

    session.token = outcome.token
    session.client = ApiClient(
        outcome.token,
        base_url=api.base_url,
        subscription_key=api.subscription_key,
        timeout=api.request_timeout,
    )
    logger.info("Logged in")
    return session.token


async def create(
    email: str,
    password: str,
    settings: Optional[BrowserSettings] = None,
    max_attempts: int = 5,
    api: Optional[ApiSettings] = None,
    timeouts: Optional[Timeouts] = None,
) -> Session:
    session = await initialize(settings)
    try:
        await login(session, email, password, max_attempts, api, timeouts)
    except Exception:
        await close(session)
        raise
    return session


async def close(session: Session) -> None:
    if session.client is not None:
        session.client.close()
        session.client = None
    if session.context is not None:
        await session.context.close()
    if session.browser is not None:
        await session.browser.close()
    if session.playwright is not None:
        await session.playwright.stop()
    logger.info("Browser closed")
