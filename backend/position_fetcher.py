"""
Trader Position Fetcher - a trader's current on-exchange positions.

Authenticated path: signed GET /positions?user=<address> on the CLOB API.

Simulated path: when credentials are missing, or the authenticated call
fails for any reason, positions are generated deterministically from the
trader's address. The same address always yields the same positions, so
downstream replication can be exercised without live market access.

Provenance is never hidden: every position carries its source, and the
simulated path logs at WARNING.
"""

import hashlib
import logging
import string
from dataclasses import dataclass, field, asdict
from typing import Any, Optional
from urllib.parse import urlencode

import aiohttp

from config import PolymarketAPI, ExchangeCredentials, CopyTradingConfig, DEFAULT_CONFIG
from exchange_auth import build_auth_headers
from retry import retry_http_request, connection_monitor, AUTH_RETRY_CONFIG

logger = logging.getLogger(__name__)


class PositionSource:
    AUTHENTICATED = "authenticated"
    SIMULATED = "simulated"


class PositionParseError(ValueError):
    """Position payload has no recognizable market identifier"""


class PositionFetchError(Exception):
    """Authenticated positions request did not succeed"""


@dataclass
class LivePosition:
    """A position currently held by a trader on the exchange"""
    market_id: str
    market_title: str
    outcome: str
    size: float
    entry_price: float
    current_price: Optional[float] = None
    pnl: float = 0.0
    pnl_percent: float = 0.0
    position_id: Optional[str] = None  # Exchange-side id, when present
    source: str = PositionSource.AUTHENTICATED

    @property
    def key(self) -> tuple[str, str]:
        """Identity used when diffing live against recorded positions"""
        return (self.market_id, self.outcome)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class FetchResult:
    positions: list[LivePosition] = field(default_factory=list)
    source: str = PositionSource.AUTHENTICATED
    reason: Optional[str] = None  # Why we fell back, when simulated

    @property
    def is_simulated(self) -> bool:
        return self.source == PositionSource.SIMULATED


# ============================================================================
# PAYLOAD NORMALIZATION
# ============================================================================

def _first(data: dict, *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def parse_live_position(data: Any, source: str = PositionSource.AUTHENTICATED) -> LivePosition:
    """
    Map a raw position payload into a LivePosition.

    Known field variants:
        market id:     condition_id | market_id | conditionId | id
        title:         market | title | market_title | marketTitle
        entry price:   avg_price | avgPrice | entry_price | entryPrice
        current price: current_price | curPrice | currentPrice
    """
    if isinstance(data, LivePosition):
        return data
    if not isinstance(data, dict):
        raise PositionParseError(f"Expected a position object, got {type(data).__name__}")

    market_id = _first(data, "condition_id", "market_id", "conditionId", "id")
    if market_id is None:
        raise PositionParseError(f"Unrecognized position payload (keys: {sorted(data.keys())[:10]})")

    current = _first(data, "current_price", "curPrice", "currentPrice")

    return LivePosition(
        market_id=str(market_id),
        market_title=str(_first(data, "market", "title", "market_title", "marketTitle") or "Unknown Market"),
        outcome=str(_first(data, "outcome") or "Unknown"),
        size=_float(_first(data, "size")),
        entry_price=_float(_first(data, "avg_price", "avgPrice", "entry_price", "entryPrice")),
        current_price=_float(current) if current is not None else None,
        pnl=_float(_first(data, "pnl", "cashPnl")),
        pnl_percent=_float(_first(data, "pnl_percent", "percentPnl")),
        position_id=str(data["id"]) if data.get("id") and data["id"] != market_id else None,
        source=data.get("source") or source,
    )


def _extract_rows(payload: Any) -> list:
    """Positions arrive as a bare list or wrapped under data/positions"""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in ("data", "positions"):
            if isinstance(payload.get(key), list):
                return payload[key]
    raise PositionParseError(f"Unrecognized positions payload: {type(payload).__name__}")


# ============================================================================
# SIMULATED POSITIONS
# ============================================================================

SIMULATED_MARKETS = [
    {"id": "btc-100k", "title": "Bitcoin reaches $100k in 2025", "outcome": "Yes"},
    {"id": "eth-5k", "title": "ETH above $5,000 by Q2 2025", "outcome": "Yes"},
    {"id": "fed-rates", "title": "Fed cuts rates in January 2025", "outcome": "No"},
    {"id": "ai-regulation", "title": "Major AI regulation passes in 2025", "outcome": "Yes"},
]


def _address_seed(address: str) -> str:
    """Eight hex digits from the address, or from its hash if not hex"""
    seed = (address or "")[2:10].lower()
    if len(seed) == 8 and all(c in string.hexdigits for c in seed):
        return seed
    return hashlib.sha256((address or "").encode("utf-8")).hexdigest()[:8]


def _hex(chunk: str) -> int:
    return int(chunk, 16) if chunk else 0


def simulated_positions(address: str) -> list[LivePosition]:
    """
    Deterministic, plausible positions for an address.

    1-4 positions from a fixed market list; entry price, current price
    and size all derive from the seed digits.
    """
    seed = _address_seed(address)
    count = (_hex(seed[0:2]) % len(SIMULATED_MARKETS)) + 1

    positions = []
    for i, market in enumerate(SIMULATED_MARKETS[:count]):
        entry_price = 0.3 + (_hex(seed[i * 2:i * 2 + 2]) % 40) / 100
        drift = (_hex(seed[i + 4:i + 6]) % 20 - 10) / 100
        current_price = max(0.01, min(0.99, entry_price + drift))
        size = float(500 + (_hex(seed[i:i + 4]) % 5000))
        pnl = (current_price - entry_price) * size

        positions.append(LivePosition(
            market_id=market["id"],
            market_title=market["title"],
            outcome=market["outcome"],
            size=size,
            entry_price=round(entry_price, 4),
            current_price=round(current_price, 4),
            pnl=round(pnl, 2),
            pnl_percent=round((current_price - entry_price) / entry_price * 100, 2),
            source=PositionSource.SIMULATED,
        ))

    return positions


# ============================================================================
# FETCHER
# ============================================================================

class TraderPositionFetcher:
    """Fetches live positions, falling back to simulation"""

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

        # Stats
        self.authenticated_fetches = 0
        self.simulated_fetches = 0

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self):
        if self._session and self._owns_session:
            await self._session.close()
        self._session = None

    async def get_live_positions(self, address: str) -> FetchResult:
        """Live positions for a trader address. Never raises."""
        if self.credentials is None:
            return self._simulate(address, "exchange credentials not configured")

        try:
            positions = await self._fetch_authenticated(address)
        except Exception as e:
            connection_monitor.mark_error("clob_positions")
            return self._simulate(address, f"{type(e).__name__}: {e}")

        connection_monitor.mark_success("clob_positions")
        self.authenticated_fetches += 1
        logger.info(f"[PositionFetcher] {len(positions)} live positions for {address} (authenticated)")
        return FetchResult(positions=positions, source=PositionSource.AUTHENTICATED)

    async def _fetch_authenticated(self, address: str) -> list[LivePosition]:
        path = f"{PolymarketAPI.POSITIONS_PATH}?{urlencode({'user': address})}"
        headers = build_auth_headers(self.credentials, "GET", path)

        resp = await retry_http_request(
            self._get_session(), "GET", f"{PolymarketAPI.CLOB_API}{path}",
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=self.config.http_timeout_sec),
            config=AUTH_RETRY_CONFIG,
        )
        async with resp:
            if resp.status != 200:
                raise PositionFetchError(f"Positions request returned {resp.status}")
            payload = await resp.json(content_type=None)

        return [parse_live_position(row) for row in _extract_rows(payload)]

    def _simulate(self, address: str, reason: str) -> FetchResult:
        self.simulated_fetches += 1
        positions = simulated_positions(address)
        logger.warning(
            f"[PositionFetcher] Using SIMULATED positions for {address} ({reason}); "
            f"{len(positions)} synthetic positions, not real exchange data"
        )
        return FetchResult(positions=positions, source=PositionSource.SIMULATED, reason=reason)
