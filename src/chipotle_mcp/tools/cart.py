"""Cart and checkout driven through the storefront page.

These steps click through chipotle.com the way a customer would. They are slower and more
fragile than the REST calls in :mod:`chipotle_mcp.tools.order` but reach things the API
does not expose, such as a checkout that passes the site's anti-bot checks. A missing
element ends the call with :class:`~chipotle_mcp.errors.UISelectorNotFound`; nothing here
retries.
"""

import logging
from datetime import datetime
from typing import Any, Mapping, Optional, Protocol, Sequence, Union

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from chipotle_mcp import browser
from chipotle_mcp.config import ApiSettings, Timeouts
from chipotle_mcp.errors import InvalidTimeSlot, UISelectorNotFound
from chipotle_mcp.models import MealContent, MealEntree
from chipotle_mcp.state import Session

logger = logging.getLogger(__name__)

INCREMENT = '[aria-label="Increment"]'
COMPLETE_MEAL = '[meal-ids="complete-meal"]'
SAVE_MEAL = ".button.save.size-md.type-primary"
MEAL_NAME_INPUT = '[aria-label="Enter the Meal Name"]'
BAG_CHECKOUT = ".bagCheckout"
UTENSILS_TOGGLE = '[aria-label="Include Napkins & Utensils"]'
KEBAB_MENU = ".kebab-menu-container"

BAG = ".bag-container"
CHECKOUT = ".checkout"
TIME_EXPANDER = ".expander-container"
SUBMIT = ".submit-btn"

SLOT_CLICK_TIMEOUT_MS = 2000


def group_selector(category: str) -> str:
    return f'[data-qa-group-name*="{category}"]'


def item_selector(menu_item_id: str) -> str:
    return f'[data-qa-item-id="{menu_item_id}"]'


def customization_selector(customization_id: int) -> str:
    return f".customizations :nth-child({customization_id + 1})"


def slot_selector(slot: str) -> str:
    return f"xpath=//*[normalize-space() = '{slot}']"


def card_selector(last_four: str) -> str:
    return f"xpath=//div[contains(text(), '{last_four}')]/parent::*/parent::*/div[@role='radio']"


class CategoryResolver(Protocol):
    def __call__(self, entree: MealEntree) -> str: ...


class SecondWordCategory:
    """Guess the menu group from the entree name: "Chicken Burrito Bowl" -> "Burrito".

    Works for the usual "<protein> <type>" names and nothing else.
    """

    def __call__(self, entree: MealEntree) -> str:
        words = entree.menu_item_name.split(" ")
        if len(words) < 2:
            raise UISelectorNotFound(f"menu group for {entree.menu_item_name!r}")
        return words[1]


class MappedCategory:
    """Look the menu group up by item id, falling back to another resolver."""

    def __init__(
        self,
        mapping: Mapping[str, str],
        fallback: Optional[CategoryResolver] = None,
    ):
        self.mapping = dict(mapping)
        self.fallback = fallback

    def __call__(self, entree: MealEntree) -> str:
        if entree.menu_item_id in self.mapping:
            return self.mapping[entree.menu_item_id]
        if self.fallback is None:
            raise UISelectorNotFound(f"menu group for {entree.menu_item_id!r}")
        return self.fallback(entree)


def format_pickup_slot(pickup_time: str) -> str:
    """Render a pickup time the way the checkout page labels its slots, e.g. "1:30pm"."""
    time = datetime.fromisoformat(pickup_time)
    ending = "pm" if time.hour >= 12 else "am"
    hours = time.hour % 12 or 12
    return f"{hours}:{time.minute:02d}{ending}"


async def _pick(page, item: MealContent, timeout: int) -> None:
    selector = item_selector(item.menu_item_id)
    await browser.click(page, selector, timeout)
    for _ in range(1, item.quantity):
        await browser.click(page, f"{selector} {INCREMENT}", timeout)


async def add_to_cart_via_ui(
    session: Session,
    entree: Union[MealEntree, dict[str, Any]],
    sides: Sequence[Union[MealContent, dict[str, Any]]] = (),
    drinks: Sequence[Union[MealContent, dict[str, Any]]] = (),
    meal_name: str = "",
    add_utensils: bool = False,
    categories: Optional[CategoryResolver] = None,
    api: Optional[ApiSettings] = None,
    timeouts: Optional[Timeouts] = None,
) -> None:
    """Build one meal in the storefront and put it in the bag."""
    api = api or ApiSettings()
    timeout = (timeouts or Timeouts()).ui_ms
    categories = categories or SecondWordCategory()
    page = session.page

    entree = MealEntree.model_validate(entree) if isinstance(entree, dict) else entree
    sides = [MealContent.model_validate(s) if isinstance(s, dict) else s for s in sides]
    drinks = [MealContent.model_validate(d) if isinstance(d, dict) else d for d in drinks]

    await browser.goto(page, api.site_url)

    group = group_selector(categories(entree))
    await browser.wait_for(page, group, timeout)
    await browser.click(page, group, timeout)

    entree_selector = item_selector(entree.menu_item_id)
    await browser.wait_for(page, entree_selector, timeout)
    await browser.click(page, entree_selector, timeout)

    for content in entree.contents:
        content_selector = item_selector(content.menu_item_id)
        await browser.click(page, content_selector, timeout)
        if content.customization_id:
            await browser.click(page, f"{content_selector} {KEBAB_MENU}", timeout)
            customization = customization_selector(content.customization_id)
            await browser.wait_for(page, customization, timeout)
            await browser.click(page, customization, timeout)

    for item in [*sides, *drinks]:
        await _pick(page, item, timeout)

    await browser.click(page, COMPLETE_MEAL, timeout)
    await browser.wait_for(page, SAVE_MEAL, timeout)
    # Triple click selects the prefilled name so typing replaces it.
    await browser.click(page, MEAL_NAME_INPUT, timeout, click_count=3)
    await browser.type_into(page, MEAL_NAME_INPUT, meal_name, timeout)
    await browser.click(page, SAVE_MEAL, timeout)
    await browser.wait_for(page, BAG_CHECKOUT, timeout)
    logger.info(f"Added {entree.menu_item_name} to the bag as {meal_name!r}")

    if add_utensils:
        try:
            async with page.expect_response(
                lambda r: "nonFoodItems" in r.url and r.request.method == "POST",
                timeout=timeout,
            ):
                await browser.click(page, UTENSILS_TOGGLE, timeout)
        except PlaywrightTimeoutError as e:
            raise UISelectorNotFound(f"{UTENSILS_TOGGLE} (no nonFoodItems response)") from e


async def _click_slot(page, slot: str, timeout: int) -> None:
    button = page.locator(slot_selector(slot)).first
    try:
        await button.wait_for(timeout=timeout)
    except PlaywrightTimeoutError as e:
        raise InvalidTimeSlot(slot) from e

    try:
        await button.click(timeout=SLOT_CLICK_TIMEOUT_MS)
        return
    except PlaywrightError:
        logger.info(f"Slot {slot} not clickable, expanding the time list")

    await browser.click(page, TIME_EXPANDER, timeout)
    try:
        await button.click(timeout=SLOT_CLICK_TIMEOUT_MS)
    except PlaywrightError as e:
        raise InvalidTimeSlot(slot) from e


async def checkout_via_ui(
    session: Session,
    pickup_time: str,
    card_last_four: str,
    api: Optional[ApiSettings] = None,
    timeouts: Optional[Timeouts] = None,
) -> Union[dict[str, Any], list[Any], str]:
    """Check out whatever is in the browser's bag.

    Returns the submit response body: parsed JSON (order details or a list of checkout
    errors) when it parses, the raw text otherwise.
    """
    api = api or ApiSettings()
    timeout = (timeouts or Timeouts()).ui_ms
    page = session.page

    await browser.goto(page, api.site_url)
    await browser.wait_for(page, BAG, timeout)
    await browser.click(page, BAG, timeout)
    await browser.wait_for(page, CHECKOUT, timeout)
    await browser.click(page, CHECKOUT, timeout)

    await _click_slot(page, format_pickup_slot(pickup_time), timeout)

    card = page.locator(card_selector(card_last_four)).first
    try:
        await card.click(timeout=timeout)
    except PlaywrightTimeoutError as e:
        raise UISelectorNotFound(card_selector(card_last_four)) from e

    try:
        async with page.expect_response(
            lambda r: "/submit" in r.url and r.request.method == "POST",
            timeout=timeout,
        ) as response_info:
            await browser.click(page, SUBMIT, timeout)
        response = await response_info.value
    except PlaywrightTimeoutError as e:
        raise UISelectorNotFound(f"{SUBMIT} (no submit response)") from e

    logger.info(f"Checkout submitted via browser, status {response.status}")
    try:
        return await response.json()
    except ValueError:
        return await response.text()
