"""
Market data routes: the Polymarket action endpoint, plus REST helpers for
markets and the trader leaderboard.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Security

from market_gateway import MarketNotFound, MarketUnavailable, InvalidOrder, OrderPlacementError
from trader_registry import TraderNotFound
from .deps import (
    BadRequest,
    api_key_header,
    check_api_key,
    error_response,
    get_param,
    parse_action,
    get_config,
    get_gateway,
    get_fetcher,
    get_traders,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["markets"])


def _int_param(params: dict, *names: str, default: int) -> int:
    value = get_param(params, *names, required=False, default=default)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise BadRequest(f"{names[0]} must be an integer")


# =============================================================================
# POLYMARKET ACTIONS
# =============================================================================

async def _get_markets(params: dict):
    limit = _int_param(params, "limit", default=get_config().market_limit)
    markets = await get_gateway().list_markets(limit=limit)
    return [m.to_dict() for m in markets]


async def _get_market(params: dict):
    market = await get_gateway().get_market(str(get_param(params, "market_id", "marketId")))
    return market.to_dict()


async def _get_trader_positions(params: dict):
    fetched = await get_fetcher().get_live_positions(get_param(params, "address"))
    return [p.to_dict() for p in fetched.positions]


async def _get_leaderboard(params: dict):
    limit = _int_param(params, "limit", default=get_config().leaderboard_limit)
    period = get_param(params, "period", required=False, default="monthly")
    return get_traders().get_leaderboard(limit=limit, period=period)


async def _get_order_book(params: dict):
    return await get_gateway().get_order_book(get_param(params, "token_id", "tokenId"))


async def _get_price(params: dict):
    token_id = get_param(params, "token_id", "tokenId")
    side = get_param(params, "side", required=False, default="BUY")
    price = await get_gateway().get_price(token_id, side=side)
    return {"token_id": token_id, "side": side.upper(), "price": price}


async def _place_order(params: dict):
    return await get_gateway().place_order(
        token_id=get_param(params, "token_id", "tokenId"),
        side=get_param(params, "side"),
        price=get_param(params, "price"),
        size=get_param(params, "size"),
    )


ACTIONS = {
    "get_markets": _get_markets,
    "get_market": _get_market,
    "get_trader_positions": _get_trader_positions,
    "get_leaderboard": _get_leaderboard,
    "get_order_book": _get_order_book,
    "get_price": _get_price,
    "place_order": _place_order,
}

# Actions that move money need the API key
PROTECTED_ACTIONS = {"place_order"}


@router.post("/api/polymarket")
async def polymarket_action(body: dict, api_key: Optional[str] = Security(api_key_header)):
    """Dispatch a market-data or order action"""
    try:
        action, params = parse_action(body)
        handler = ACTIONS.get(action)
        if handler is None:
            raise BadRequest(f"Unknown action: {action}")
        if action in PROTECTED_ACTIONS and not check_api_key(api_key):
            return error_response("Invalid or missing API key. Include X-API-Key header.", 403)

        logger.info(f"[API] Polymarket action: {action}")
        return await handler(params)

    except (BadRequest, InvalidOrder) as e:
        return error_response(str(e), 400)
    except (MarketNotFound, TraderNotFound) as e:
        return error_response(str(e), 404)
    except OrderPlacementError as e:
        logger.error(f"[API] Order placement failed: {e}")
        return error_response(str(e), 502)
    except MarketUnavailable as e:
        return error_response(str(e), 502)
    except ValueError as e:
        return error_response(str(e), 400)
    except Exception as e:
        logger.error(f"[API] Polymarket action failed: {e}")
        return error_response(str(e) or "Unknown error", 500)


# =============================================================================
# REST HELPERS
# =============================================================================

@router.get("/api/markets")
async def list_markets(limit: Optional[int] = None):
    """Active markets, or the fallback catalog when the exchange is down"""
    markets = await get_gateway().list_markets(limit=limit or get_config().market_limit)
    return [m.to_dict() for m in markets]


@router.get("/api/markets/{market_id}")
async def get_market(market_id: str):
    try:
        market = await get_gateway().get_market(market_id)
    except MarketNotFound as e:
        return error_response(str(e), 404)
    except MarketUnavailable as e:
        return error_response(str(e), 502)
    return market.to_dict()


@router.get("/api/leaderboard")
async def get_leaderboard(limit: Optional[int] = None, period: str = "monthly"):
    try:
        return get_traders().get_leaderboard(limit=limit or get_config().leaderboard_limit, period=period)
    except ValueError as e:
        return error_response(str(e), 400)
