"""
Market Data Gateway - Polymarket listings, market detail, order books,
prices, and order placement.

Read paths that only feed rendering favor availability: listings fall back
to a fixed catalog, order books to an empty book, prices to None. Paths
that gate a financial action favor correctness: an unknown market raises
MarketNotFound and a failed order raises OrderPlacementError.
"""

import json
import logging
from dataclasses import dataclass, field, asdict
from typing import Any, Optional

import aiohttp

from config import PolymarketAPI, ExchangeCredentials, CopyTradingConfig, DEFAULT_CONFIG
from exchange_auth import build_auth_headers, serialize_body
from retry import (
    retry_http_request,
    connection_monitor,
    HTTP_RETRY_CONFIG,
    ORDER_RETRY_CONFIG,
)

logger = logging.getLogger(__name__)

DEFAULT_OUTCOMES = ["Yes", "No"]


class MarketParseError(ValueError):
    """Payload does not look like a market at all"""


class MarketNotFound(Exception):
    """No market with the requested id"""


class MarketUnavailable(Exception):
    """Market data could not be fetched (network error, timeout, 5xx)"""


class InvalidOrder(ValueError):
    """Order parameters rejected before reaching the exchange"""


class OrderPlacementError(Exception):
    """The exchange did not accept the order"""


# ============================================================================
# DATA MODELS
# ============================================================================

@dataclass
class Market:
    """Canonical market record"""
    id: str
    title: str
    description: str = ""
    outcomes: list[str] = field(default_factory=lambda: list(DEFAULT_OUTCOMES))
    volume: float = 0.0
    liquidity: float = 0.0
    end_date: Optional[str] = None
    image: Optional[str] = None
    active: bool = True
    tokens: list = field(default_factory=list)
    clob_token_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


# ============================================================================
# PAYLOAD NORMALIZATION
# ============================================================================

def _decode_json_list(raw: Any) -> Optional[list]:
    """Accept a list or a JSON-encoded list; anything else is None"""
    if isinstance(raw, list):
        return raw
    if isinstance(raw, str):
        try:
            decoded = json.loads(raw)
        except ValueError:
            return None
        if isinstance(decoded, list):
            return decoded
    return None


def parse_outcomes(raw: Any) -> list[str]:
    """
    Normalize the outcomes field.

    The Gamma API sends outcomes as a JSON-encoded string ('["Yes","No"]'),
    other sources send a real list. Missing, unparsable or empty values
    default to ["Yes", "No"].
    """
    outcomes = _decode_json_list(raw)
    if not outcomes:
        return list(DEFAULT_OUTCOMES)
    return [str(o) for o in outcomes]


def _to_float(*values: Any) -> float:
    """First value that converts to float, else 0.0"""
    for value in values:
        if value is None or value == "":
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            continue
    return 0.0


def parse_market(data: Any) -> Market:
    """
    Map a raw market payload into a Market.

    Known field variants:
        id:       id | condition_id | conditionId
        title:    question | title
        volume:   volume | volumeNum
        end date: end_date_iso | endDate
    """
    if not isinstance(data, dict):
        raise MarketParseError(f"Expected a market object, got {type(data).__name__}")

    market_id = data.get("id") or data.get("condition_id") or data.get("conditionId")
    title = data.get("question") or data.get("title")

    if not market_id and not title:
        raise MarketParseError(f"Unrecognized market payload (keys: {sorted(data.keys())[:10]})")

    return Market(
        id=str(market_id or title),
        title=str(title or market_id),
        description=data.get("description") or "",
        outcomes=parse_outcomes(data.get("outcomes")),
        volume=_to_float(data.get("volume"), data.get("volumeNum")),
        liquidity=_to_float(data.get("liquidity"), data.get("liquidityNum")),
        end_date=data.get("end_date_iso") or data.get("endDate"),
        image=data.get("image"),
        active=data.get("active") is not False,
        tokens=data.get("tokens") or [],
        clob_token_ids=[str(t) for t in (_decode_json_list(data.get("clobTokenIds")) or [])],
    )


# ============================================================================
# FALLBACK CATALOG
# ============================================================================

FALLBACK_MARKETS = [
    Market(
        id="btc-100k-2025",
        title="Will Bitcoin reach $100,000 by end of 2025?",
        description="This market resolves to Yes if Bitcoin reaches $100,000 USD on any major exchange.",
        volume=4850000,
        liquidity=1290000,
        end_date="2025-12-31T23:59:59Z",
    ),
    Market(
        id="fed-rate-jan",
        title="Will the Fed cut rates in January 2025?",
        description="Resolves to Yes if Federal Reserve cuts interest rates.",
        volume=1290000,
        liquidity=420000,
        end_date="2025-01-31T23:59:59Z",
    ),
    Market(
        id="eth-5k-q2",
        title="Will ETH be above $5,000 by Q2 2025?",
        description="Ethereum price prediction market.",
        volume=2130000,
        liquidity=645000,
        end_date="2025-06-30T23:59:59Z",
    ),
    Market(
        id="ai-regulation-2025",
        title="Major AI regulation passed in US by 2025?",
        description="Comprehensive AI regulation at federal level.",
        volume=890000,
        liquidity=320000,
        end_date="2025-12-31T23:59:59Z",
    ),
]


def get_fallback_markets(limit: Optional[int] = None) -> list[Market]:
    markets = [Market(**m.to_dict()) for m in FALLBACK_MARKETS]
    return markets[:limit] if limit else markets


# ============================================================================
# GATEWAY
# ============================================================================

class MarketGateway:
    """
    Async client for the Gamma (listings) and CLOB (books, prices, orders) APIs.
    """

    def __init__(
        self,
        credentials: Optional[ExchangeCredentials] = None,
        config: CopyTradingConfig = DEFAULT_CONFIG,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.credentials = credentials
        self.config = config
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self.config.http_timeout_sec)

    async def close(self):
        if self._session and self._owns_session:
            await self._session.close()
        self._session = None

    # -------------------------------------------------------------------------
    # LISTINGS
    # -------------------------------------------------------------------------

    async def list_markets(self, limit: int = 20, active_only: bool = True) -> list[Market]:
        """
        Fetch market listings. Never raises: any failure returns the
        fallback catalog so the UI always has something to render.
        """
        params = {"limit": str(limit)}
        if active_only:
            params["active"] = "true"
            params["closed"] = "false"

        try:
            resp = await retry_http_request(
                self._get_session(), "GET", PolymarketAPI.MARKETS,
                params=params,
                timeout=self._timeout(),
                config=HTTP_RETRY_CONFIG,
            )
            async with resp:
                if resp.status != 200:
                    logger.warning(f"[Gateway] Listings returned {resp.status}, using fallback markets")
                    connection_monitor.mark_error("gamma_api")
                    return get_fallback_markets(limit)
                data = await resp.json(content_type=None)

        except Exception as e:
            logger.warning(f"[Gateway] Listings unavailable ({type(e).__name__}: {e}), using fallback markets")
            connection_monitor.mark_error("gamma_api")
            return get_fallback_markets(limit)

        if not isinstance(data, list):
            logger.warning("[Gateway] Listings payload is not a list, using fallback markets")
            connection_monitor.mark_error("gamma_api")
            return get_fallback_markets(limit)

        connection_monitor.mark_success("gamma_api")

        markets = []
        for raw in data:
            try:
                markets.append(parse_market(raw))
            except MarketParseError as e:
                logger.warning(f"[Gateway] Dropping market: {e}")

        logger.info(f"[Gateway] Fetched {len(markets)} markets")
        return markets

    async def get_market(self, market_id: str) -> Market:
        """
        Single market lookup, no fallback.

        Raises:
            MarketNotFound: the exchange has no such market (404 or a
                payload that is not a market)
            MarketUnavailable: the lookup failed for any other reason
        """
        try:
            resp = await retry_http_request(
                self._get_session(), "GET", f"{PolymarketAPI.MARKETS}/{market_id}",
                timeout=self._timeout(),
                config=HTTP_RETRY_CONFIG,
            )
            async with resp:
                status = resp.status
                if status == 200:
                    try:
                        data = await resp.json(content_type=None)
                    except ValueError as e:
                        raise MarketNotFound(f"Market not found: {market_id}") from e

        except MarketNotFound:
            raise
        except Exception as e:
            logger.error(f"[Gateway] Error fetching market {market_id}: {e}")
            connection_monitor.mark_error("gamma_api")
            raise MarketUnavailable(f"Market data unavailable for {market_id}: {e}") from e

        if status == 404:
            raise MarketNotFound(f"Market not found: {market_id}")
        if status != 200:
            logger.warning(f"[Gateway] Market {market_id} lookup returned HTTP {status}")
            connection_monitor.mark_error("gamma_api")
            raise MarketUnavailable(f"Market data unavailable for {market_id}: HTTP {status}")

        connection_monitor.mark_success("gamma_api")
        try:
            return parse_market(data)
        except MarketParseError as e:
            raise MarketNotFound(f"Market not found: {market_id}") from e

    # -------------------------------------------------------------------------
    # ORDER BOOK / PRICE
    # -------------------------------------------------------------------------

    async def get_order_book(self, token_id: str) -> dict:
        """Order book for a token. Returns an empty book on any failure."""
        empty = {"bids": [], "asks": []}
        try:
            resp = await retry_http_request(
                self._get_session(), "GET", PolymarketAPI.ORDERBOOK,
                params={"token_id": token_id},
                timeout=self._timeout(),
                config=HTTP_RETRY_CONFIG,
            )
            async with resp:
                if resp.status != 200:
                    connection_monitor.mark_error("clob_api")
                    return empty
                data = await resp.json(content_type=None)

        except Exception as e:
            logger.warning(f"[Gateway] Order book for {token_id} unavailable: {e}")
            connection_monitor.mark_error("clob_api")
            return empty

        if not isinstance(data, dict):
            return empty

        connection_monitor.mark_success("clob_api")
        return {
            **data,
            "bids": data.get("bids") or [],
            "asks": data.get("asks") or [],
        }

    async def get_price(self, token_id: str, side: str = "BUY") -> Optional[float]:
        """Best price for a token, or None on any failure."""
        try:
            resp = await retry_http_request(
                self._get_session(), "GET", PolymarketAPI.PRICE,
                params={"token_id": token_id, "side": side.upper()},
                timeout=self._timeout(),
                config=HTTP_RETRY_CONFIG,
            )
            async with resp:
                if resp.status != 200:
                    connection_monitor.mark_error("clob_api")
                    return None
                data = await resp.json(content_type=None)

            connection_monitor.mark_success("clob_api")
            return float(data["price"])

        except Exception as e:
            logger.warning(f"[Gateway] Price for {token_id} unavailable: {e}")
            return None

    # -------------------------------------------------------------------------
    # ORDERS
    # -------------------------------------------------------------------------

    async def place_order(self, token_id: str, side: str, price: float, size: float) -> dict:
        """
        Place a GTC limit order. Failures always propagate.

        Raises:
            InvalidOrder: bad side, price outside (0, 1), or non-positive size
            OrderPlacementError: no credentials, transport error, or non-2xx
        """
        side = (side or "").upper()
        if side not in ("BUY", "SELL"):
            raise InvalidOrder(f"Invalid side: {side!r}")
        if not token_id:
            raise InvalidOrder("token_id is required")
        try:
            price = float(price)
            size = float(size)
        except (TypeError, ValueError):
            raise InvalidOrder("price and size must be numbers")
        if not 0 < price < 1:
            raise InvalidOrder(f"Price must be between 0 and 1, got {price}")
        if size <= 0:
            raise InvalidOrder(f"Size must be positive, got {size}")

        if self.credentials is None:
            raise OrderPlacementError("Failed to place order - check API credentials")

        body = serialize_body({
            "token_id": token_id,
            "side": side,
            "price": str(price),
            "size": str(size),
            "type": "GTC",
        })
        path = PolymarketAPI.ORDERS_PATH
        headers = build_auth_headers(self.credentials, "POST", path, body)

        try:
            resp = await retry_http_request(
                self._get_session(), "POST", f"{PolymarketAPI.CLOB_API}{path}",
                data=body,
                headers=headers,
                timeout=self._timeout(),
                config=ORDER_RETRY_CONFIG,
            )
            async with resp:
                if resp.status not in (200, 201):
                    text = await resp.text()
                    raise OrderPlacementError(f"Order rejected ({resp.status}): {text[:200]}")
                order = await resp.json(content_type=None)

        except OrderPlacementError:
            raise
        except Exception as e:
            raise OrderPlacementError(f"Failed to place order: {type(e).__name__}: {e}") from e

        logger.info(f"[Gateway] Order placed: {side} {size} @ {price} on {token_id}")
        return order
