import json
import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Any, Optional

from mcp.server.fastmcp import FastMCP, Context
from pydantic import ValidationError

from chipotle_mcp import auth
from chipotle_mcp.config import ChipotleConfig, load_config
from chipotle_mcp.errors import ChipotleError, NotAuthenticated
from chipotle_mcp.state import PendingOrder, ServerState, Session
from chipotle_mcp.tools.cart import (
    MappedCategory,
    SecondWordCategory,
    add_to_cart_via_ui,
    checkout_via_ui,
)
from chipotle_mcp.tools.catalog import get_menu, get_pickup_times, get_wallet, search_restaurants
from chipotle_mcp.tools.checkout import audit_log, check_confirmation, is_dry_run, submit_order
from chipotle_mcp.tools.order import add_meal, add_utensils, create_order, mirror_to_browser

# Configure logging
log_level = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(server: FastMCP):
    """Initialize server state and config on startup, close the browser on shutdown."""
    logger.info("Starting Chipotle MCP server...")

    try:
        config = load_config()
        logger.info("Config loaded successfully")
    except FileNotFoundError as e:
        logger.error(str(e))
        raise

    state = ServerState()

    try:
        yield {"config": config, "state": state}
    finally:
        if state.session is not None:
            await auth.close(state.session)
        logger.info("Shutting down Chipotle MCP server")


host = os.environ.get("HOST", "0.0.0.0")
port = int(os.environ.get("PORT", "8000"))

mcp = FastMCP(
    "Chipotle Ordering MCP Server",
    lifespan=lifespan,
    host=host,
    port=port,
)


def _get_deps(ctx) -> tuple[ServerState, ChipotleConfig]:
    """Extract state and config from the MCP context."""
    state = ctx.request_context.lifespan_context["state"]
    config = ctx.request_context.lifespan_context["config"]
    return state, config


def _session(state: ServerState) -> Session:
    if state.session is None:
        raise NotAuthenticated("browser session")
    return state.session


def _pending(state: ServerState) -> PendingOrder:
    if state.pending is None:
        raise ChipotleError("No order in progress. Call create_order first.")
    return state.pending


def _failure(e: ChipotleError) -> str:
    return json.dumps({"success": False, "error": str(e), "code": e.code})


def _unexpected(action: str, e: Exception) -> str:
    logger.exception(f"Error {action}")
    code = "INVALID_REQUEST" if isinstance(e, ValidationError) else "UNEXPECTED_ERROR"
    return json.dumps({"success": False, "error": str(e), "code": code})


# --- Session Tools ---


@mcp.tool()
async def tool_login(ctx: Context, headless: Optional[bool] = None) -> str:
    """Start the browser (if needed) and log into the configured Chipotle account.
    Fails with TWO_FACTOR_REQUIRED if the account asks for a verification code; solve it
    in the browser window and call login again."""
    state, config = _get_deps(ctx)
    try:
        if state.session is None:
            settings = config.browser
            if headless is not None:
                settings = settings.model_copy(update={"headless": headless})
            state.session = await auth.initialize(settings)
        await auth.login(
            state.session,
            config.account.email,
            config.account.password,
            config.timeouts.max_login_attempts,
            config.api,
            config.timeouts,
        )
    except ChipotleError as e:
        logger.exception("Error logging in")
        return _failure(e)
    except Exception as e:
        return _unexpected("logging in", e)
    return json.dumps({"success": True, "authenticated": True})


@mcp.tool()
async def tool_set_user_agent(ctx: Context, user_agent: str) -> str:
    """Change the user agent the browser reports."""
    state, config = _get_deps(ctx)
    try:
        await auth.set_user_agent(_session(state), user_agent)
    except ChipotleError as e:
        return _failure(e)
    except Exception as e:
        return _unexpected("setting user agent", e)
    return json.dumps({"success": True, "user_agent": user_agent})


# --- Catalog Tools ---


@mcp.tool()
async def tool_search_restaurants(
    ctx: Context,
    latitude: float,
    longitude: float,
    radius: int = 80467,
) -> str:
    """Find open Chipotle restaurants near a latitude/longitude, closest first (max 10)."""
    state, config = _get_deps(ctx)
    try:
        restaurants = await search_restaurants(_session(state), latitude, longitude, radius)
    except ChipotleError as e:
        logger.exception("Error searching restaurants")
        return _failure(e)
    except Exception as e:
        return _unexpected("searching restaurants", e)
    return json.dumps({"success": True, "restaurants": restaurants})


@mcp.tool()
async def tool_get_menu(ctx: Context, restaurant_id: int) -> str:
    """Get a restaurant's online menu. Unavailable items are included, check isItemAvailable."""
    state, config = _get_deps(ctx)
    try:
        menu = await get_menu(_session(state), restaurant_id)
    except ChipotleError as e:
        logger.exception("Error fetching menu")
        return _failure(e)
    except Exception as e:
        return _unexpected("fetching menu", e)
    return json.dumps({"success": True, "menu": menu})


@mcp.tool()
async def tool_get_pickup_times(ctx: Context, restaurant_id: int) -> str:
    """List available pickup times (YYYY-MM-DDTHH:MM:SS, restaurant local time)."""
    state, config = _get_deps(ctx)
    try:
        times = await get_pickup_times(_session(state), restaurant_id)
    except ChipotleError as e:
        logger.exception("Error fetching pickup times")
        return _failure(e)
    except Exception as e:
        return _unexpected("fetching pickup times", e)
    return json.dumps({"success": True, "pickup_times": times})


@mcp.tool()
async def tool_get_wallet(ctx: Context) -> str:
    """List saved payment methods (card type, last four digits, wallet token id)."""
    state, config = _get_deps(ctx)
    try:
        state.wallet = await get_wallet(_session(state))
    except ChipotleError as e:
        logger.exception("Error fetching wallet")
        return _failure(e)
    except Exception as e:
        return _unexpected("fetching wallet", e)
    cards = [
        {
            "token_id": entry.get("tokenId"),
            "card_type": entry.get("paymentMethod"),
            "last_four": entry.get("lastFourAccountNumbers"),
            "card_holder": entry.get("cardHolderName"),
        }
        for entry in state.wallet
    ]
    return json.dumps({"success": True, "cards": cards})


# --- Order Tools ---


@mcp.tool()
async def tool_create_order(ctx: Context, restaurant_id: int) -> str:
    """Start a new empty pickup order at a restaurant. Replaces any order in progress."""
    state, config = _get_deps(ctx)
    async with state.order_lock:
        try:
            order, etag = await create_order(_session(state), restaurant_id)
            pending = state.begin_order(order, etag, restaurant_id)
        except ChipotleError as e:
            logger.exception("Error creating order")
            return _failure(e)
        except Exception as e:
            return _unexpected("creating order", e)
    return json.dumps({"success": True, "order_id": pending.order_id, "order": order})


@mcp.tool()
async def tool_add_meal(
    ctx: Context,
    meal_name: str,
    entrees: list[dict[str, Any]],
    sides: Optional[list[dict[str, Any]]] = None,
    drinks: Optional[list[dict[str, Any]]] = None,
) -> str:
    """Add a named meal to the order in progress.
    Entree format: {"menuItemId": "CMG-1001", "menuItemName": "Chicken Burrito",
    "quantity": 1, "contents": [{"menuItemId": "CMG-5001", "quantity": 1}]}.
    Sides and drinks use the content format; customizationId is optional."""
    state, config = _get_deps(ctx)
    async with state.order_lock:
        try:
            pending = _pending(state)
            body, etag = await add_meal(
                _session(state),
                pending.order_id,
                pending.etag,
                meal_name,
                entrees,
                sides or [],
                drinks or [],
            )
            state.advance(etag, body.get("order"))
        except ChipotleError as e:
            logger.exception("Error adding meal")
            return _failure(e)
        except Exception as e:
            return _unexpected("adding meal", e)
    return json.dumps({"success": True, "meal_id": body.get("mealId"), "order": body.get("order")})


@mcp.tool()
async def tool_add_utensils(ctx: Context) -> str:
    """Add napkins and utensils to the order in progress."""
    state, config = _get_deps(ctx)
    async with state.order_lock:
        try:
            pending = _pending(state)
            body, etag = await add_utensils(_session(state), pending.order_id, pending.etag)
            state.advance(etag, body.get("order"))
        except ChipotleError as e:
            logger.exception("Error adding utensils")
            return _failure(e)
        except Exception as e:
            return _unexpected("adding utensils", e)
    return json.dumps({"success": True, "non_food_item_id": body.get("nonFoodItemId")})


@mcp.tool()
async def tool_get_order(ctx: Context) -> str:
    """Show the order in progress as last returned by the order service."""
    state, config = _get_deps(ctx)
    if state.pending is None:
        return json.dumps({"success": False, "error": "No order in progress.", "code": "NO_ORDER"})
    return json.dumps(
        {
            "success": True,
            "order_id": state.pending.order_id,
            "restaurant_id": state.pending.restaurant_id,
            "order": state.pending.order,
        }
    )


@mcp.tool()
async def tool_mirror_order(ctx: Context) -> str:
    """Copy the order in progress into the browser so chipotle.com shows it in the bag.
    The site must have been opened once (login does this)."""
    state, config = _get_deps(ctx)
    async with state.order_lock:
        try:
            pending = _pending(state)
            await mirror_to_browser(_session(state), pending.etag, pending.order)
        except ChipotleError as e:
            logger.exception("Error mirroring order")
            return _failure(e)
        except Exception as e:
            return _unexpected("mirroring order", e)
    return json.dumps({"success": True, "order_id": pending.order_id})


# --- Browser Tools ---


@mcp.tool()
async def tool_browser_add_to_cart(
    ctx: Context,
    entree: dict[str, Any],
    meal_name: str,
    sides: Optional[list[dict[str, Any]]] = None,
    drinks: Optional[list[dict[str, Any]]] = None,
    add_utensils: bool = False,
    category: str = "",
) -> str:
    """Add a meal by clicking through chipotle.com instead of the API. Slower and more
    fragile than add_meal. category names the menu group (e.g. "Bowl"); when omitted it is
    guessed from the second word of the entree name."""
    state, config = _get_deps(ctx)
    resolver = SecondWordCategory()
    if category:
        resolver = MappedCategory({entree.get("menuItemId", ""): category}, fallback=resolver)
    try:
        await add_to_cart_via_ui(
            _session(state),
            entree,
            sides or [],
            drinks or [],
            meal_name,
            add_utensils,
            categories=resolver,
            api=config.api,
            timeouts=config.timeouts,
        )
    except ChipotleError as e:
        logger.exception("Error adding to cart in browser")
        return _failure(e)
    except Exception as e:
        return _unexpected("adding to cart in browser", e)
    return json.dumps({"success": True, "meal_name": meal_name})


@mcp.tool()
async def tool_browser_checkout(
    ctx: Context,
    confirm_order: str,
    pickup_time: str,
    card_last_four: str = "",
) -> str:
    """PLACES A REAL ORDER AND CHARGES YOUR CARD via the browser bag.
    confirm_order must be exactly 'YES_PLACE_MY_ORDER'. pickup_time comes from
    get_pickup_times. card_last_four defaults to the configured card."""
    state, config = _get_deps(ctx)
    async with state.order_lock:
        order_id = state.pending.order_id if state.pending else None
        aborted = check_confirmation(confirm_order, order_id)
        if aborted:
            return json.dumps(aborted)

        last_four = card_last_four or config.account.card_last_four
        if is_dry_run():
            audit_log(f"BROWSER_CHECKOUT | DRY_RUN | pickup={pickup_time} | card={last_four}")
            return json.dumps(
                {
                    "success": True,
                    "dry_run": True,
                    "message": "DRY RUN: order was NOT placed. Set DRY_RUN=false to place real orders.",
                }
            )

        try:
            result = await checkout_via_ui(
                _session(state), pickup_time, last_four, api=config.api, timeouts=config.timeouts
            )
        except ChipotleError as e:
            logger.exception("Error checking out in browser")
            audit_log(f"BROWSER_CHECKOUT | ERROR | reason={e}")
            return _failure(e)
        except Exception as e:
            audit_log(f"BROWSER_CHECKOUT | ERROR | reason={e}")
            return _unexpected("checking out in browser", e)

        # The submit call answers a rejected checkout with a list of errors.
        if isinstance(result, list):
            audit_log(f"BROWSER_CHECKOUT | REJECTED | pickup={pickup_time} | card={last_four}")
            return json.dumps({"success": False, "errors": result, "code": "CHECKOUT_REJECTED"})

        audit_log(f"BROWSER_CHECKOUT | SUBMITTED | pickup={pickup_time} | card={last_four}")
        state.clear_order()
    return json.dumps({"success": True, "result": result})


@mcp.tool()
async def tool_submit_order(
    ctx: Context,
    confirm_order: str,
    antibot_headers: dict[str, str],
    pickup_time: str,
    wallet_token_id: Optional[int] = None,
) -> str:
    """PLACES A REAL ORDER AND CHARGES YOUR CARD over the REST API.
    confirm_order must be exactly 'YES_PLACE_MY_ORDER'. antibot_headers are the
    x-ep1cc1qk-* headers captured from a real browser session; they cannot be generated.
    wallet_token_id picks a saved card from get_wallet; defaults to the configured card."""
    state, config = _get_deps(ctx)
    async with state.order_lock:
        order_id = state.pending.order_id if state.pending else None
        aborted = check_confirmation(confirm_order, order_id)
        if aborted:
            return json.dumps(aborted)

        try:
            pending = _pending(state)
            session = _session(state)
            if not state.wallet:
                state.wallet = await get_wallet(session)
            wallet = _choose_wallet(state.wallet, wallet_token_id, config.account.card_last_four)
        except ChipotleError as e:
            logger.exception("Error preparing submission")
            return _failure(e)
        except Exception as e:
            return _unexpected("preparing submission", e)

        if is_dry_run():
            audit_log(
                f"SUBMIT_ORDER | DRY_RUN | order={pending.order_id} | pickup={pickup_time}"
            )
            return json.dumps(
                {
                    "success": True,
                    "order_id": pending.order_id,
                    "dry_run": True,
                    "message": "DRY RUN: order was NOT placed. Set DRY_RUN=false to place real orders.",
                }
            )

        try:
            response = await submit_order(
                session,
                pending.order_id,
                pending.etag,
                antibot_headers,
                wallet,
                pickup_time,
                api=config.api,
            )
        except ChipotleError as e:
            logger.exception("Error submitting order")
            audit_log(f"SUBMIT_ORDER | ERROR | order={pending.order_id} | reason={e}")
            return _failure(e)
        except Exception as e:
            audit_log(f"SUBMIT_ORDER | ERROR | order={pending.order_id} | reason={e}")
            return _unexpected("submitting order", e)

        try:
            body = response.json()
        except ValueError:
            body = response.text

        if not response.ok:
            audit_log(
                f"SUBMIT_ORDER | REJECTED | order={pending.order_id} | status={response.status_code}"
            )
            return json.dumps(
                {
                    "success": False,
                    "status": response.status_code,
                    "errors": body,
                    "code": "SUBMIT_REJECTED",
                }
            )

        audit_log(
            f"SUBMIT_ORDER | CONFIRMED | order={pending.order_id} | pickup={pickup_time}"
        )
        state.clear_order()
    return json.dumps({"success": True, "order_id": pending.order_id, "result": body})


def _choose_wallet(
    wallet: list[dict[str, Any]],
    token_id: Optional[int],
    last_four: str,
) -> dict[str, Any]:
    for entry in wallet:
        if token_id is not None and entry.get("tokenId") == token_id:
            return entry
        if token_id is None and last_four and entry.get("lastFourAccountNumbers") == last_four:
            return entry
    if token_id is None and not last_four and wallet:
        return wallet[0]
    raise ChipotleError("No matching saved card. Call get_wallet to list saved cards.")


if __name__ == "__main__":
    logger.info(f"Starting MCP server on {host}:{port}")
    mcp.run(transport="streamable-http")
