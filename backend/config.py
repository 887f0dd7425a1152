"""
Configuration for the Polymarket Copy-Trading backend.
Contains API endpoints, exchange credentials, and replication parameters.
"""

import logging
import os
from dataclasses import dataclass, asdict
from datetime import datetime
from pathlib import Path
from typing import Optional

# ============================================================================
# API ENDPOINTS
# ============================================================================

class PolymarketAPI:
    # REST APIs
    GAMMA_API = "https://gamma-api.polymarket.com"
    CLOB_API = "https://clob.polymarket.com"

    # Public endpoints
    MARKETS = f"{GAMMA_API}/markets"
    ORDERBOOK = f"{CLOB_API}/book"
    PRICE = f"{CLOB_API}/price"

    # Authenticated CLOB paths (signed relative to CLOB_API)
    POSITIONS_PATH = "/positions"
    ORDERS_PATH = "/orders"


# ============================================================================
# EXCHANGE CREDENTIALS
# ============================================================================

@dataclass
class ExchangeCredentials:
    """CLOB API credentials. Key, secret and passphrase are needed to sign a request."""
    api_key: str
    api_secret: str  # url-safe base64, as issued by the CLOB
    passphrase: str
    address: Optional[str] = None  # wallet that owns the key

    @classmethod
    def from_env(cls) -> Optional["ExchangeCredentials"]:
        """Load credentials, or None when any of them is missing"""
        api_key = os.getenv("POLYMARKET_API_KEY")
        api_secret = os.getenv("POLYMARKET_API_SECRET")
        passphrase = os.getenv("POLYMARKET_PASSPHRASE")

        if not api_key or not api_secret or not passphrase:
            return None

        return cls(
            api_key=api_key,
            api_secret=api_secret,
            passphrase=passphrase,
            address=os.getenv("POLYMARKET_ADDRESS") or None,
        )


# ============================================================================
# COPY TRADING PARAMETERS
# ============================================================================

def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class CopyTradingConfig:
    # Storage
    db_path: str = "copytrade.db"

    # Sweep scheduling
    sweep_interval_sec: float = 60.0
    sweep_enabled: bool = True

    # Timeouts (every external call is bounded)
    http_timeout_sec: float = 10.0
    trader_timeout_sec: float = 60.0

    # Replication
    min_trade_size: float = 1.0  # Copies smaller than this are skipped

    # Listing defaults
    market_limit: int = 20
    leaderboard_limit: int = 20

    # Logging
    log_dir: str = "logs"

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "CopyTradingConfig":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    @classmethod
    def from_env(cls) -> "CopyTradingConfig":
        """Load config from environment variables"""
        defaults = cls()
        return cls(
            db_path=os.getenv("COPYTRADE_DB_PATH", defaults.db_path),
            sweep_interval_sec=float(os.getenv("SWEEP_INTERVAL_SEC", defaults.sweep_interval_sec)),
            sweep_enabled=_env_bool("SWEEP_ENABLED", defaults.sweep_enabled),
            http_timeout_sec=float(os.getenv("HTTP_TIMEOUT_SEC", defaults.http_timeout_sec)),
            trader_timeout_sec=float(os.getenv("TRADER_TIMEOUT_SEC", defaults.trader_timeout_sec)),
            min_trade_size=float(os.getenv("MIN_TRADE_SIZE", defaults.min_trade_size)),
            log_dir=os.getenv("LOG_DIR", defaults.log_dir),
        )


DEFAULT_CONFIG = CopyTradingConfig()


# ============================================================================
# LOGGING SETUP
# ============================================================================

def setup_logging(log_dir: str = "logs", level: int = logging.INFO) -> logging.Logger:
    """
    Setup logging for the audit trail.

    - Daily file with everything at DEBUG
    - Copy-trade file with replication engine output only
    - Console at the requested level
    """
    Path(log_dir).mkdir(parents=True, exist_ok=True)
    today = datetime.now().strftime('%Y%m%d')

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    file_handler = logging.FileHandler(f"{log_dir}/copytrade_{today}.log")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s | %(levelname)s | %(name)s | %(message)s'
    ))

    # Replication audit log
    replication_handler = logging.FileHandler(f"{log_dir}/replication_{today}.log")
    replication_handler.setLevel(logging.INFO)
    replication_handler.addFilter(logging.Filter("replication_engine"))
    replication_handler.setFormatter(logging.Formatter(
        '%(asctime)s | %(message)s'
    ))

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s | %(levelname)s | %(message)s'
    ))

    root.addHandler(file_handler)
    root.addHandler(replication_handler)
    root.addHandler(console_handler)

    return root
