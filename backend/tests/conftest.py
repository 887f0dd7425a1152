"""
Pytest fixtures for the test suite.
"""
import pytest
import sys
import os
from typing import Optional
from unittest.mock import MagicMock, AsyncMock

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import CopyTradingConfig, ExchangeCredentials
from position_fetcher import FetchResult, LivePosition, PositionSource
from position_ledger import PositionLedger
from replication_engine import ReplicationEngine
from storage import Database
from subscription_registry import SubscriptionRegistry
from trader_registry import TraderRegistry


TRADER_ADDRESS = "0xabcdef0123456789abcdef0123456789abcdef01"


class FakeResponse:
    """Stand-in for aiohttp.ClientResponse as used by the gateway and fetcher."""

    def __init__(self, status: int = 200, payload=None, text: str = ""):
        self.status = status
        self._payload = payload
        self._text = text
        self.closed = False

    async def json(self, **kwargs):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload

    async def text(self):
        return self._text

    def close(self):
        self.closed = True

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.close()
        return False


@pytest.fixture
def make_response():
    return FakeResponse


@pytest.fixture
def mock_session():
    """aiohttp session whose request() is an AsyncMock."""
    session = MagicMock()
    session.request = AsyncMock()
    session.close = AsyncMock()
    return session


class StubFetcher:
    """Position fetcher returning whatever the test sets."""

    def __init__(self):
        self.positions: list = []
        self.source = PositionSource.AUTHENTICATED
        self.error: Optional[Exception] = None
        self.calls = 0

    async def get_live_positions(self, address: str) -> FetchResult:
        self.calls += 1
        if self.error:
            raise self.error
        return FetchResult(positions=list(self.positions), source=self.source)


def live_position(market_id: str, outcome: str = "Yes", size: float = 100.0, **kwargs) -> LivePosition:
    return LivePosition(
        market_id=market_id,
        market_title=kwargs.pop("market_title", f"Market {market_id}"),
        outcome=outcome,
        size=size,
        entry_price=kwargs.pop("entry_price", 0.5),
        current_price=kwargs.pop("current_price", 0.55),
        **kwargs,
    )


@pytest.fixture
def config(tmp_path):
    """Test config: no sweep loop, logs in the temp dir."""
    return CopyTradingConfig(
        db_path=str(tmp_path / "copytrade_test.db"),
        sweep_enabled=False,
        http_timeout_sec=1.0,
        trader_timeout_sec=5.0,
        log_dir=str(tmp_path / "logs"),
    )


@pytest.fixture
def credentials():
    return ExchangeCredentials(api_key="test-key", api_secret="c2VjcmV0", passphrase="test-pass")


@pytest.fixture
def db(config):
    return Database(config.db_path)


@pytest.fixture
def traders(db):
    return TraderRegistry(db)


@pytest.fixture
def subscriptions(db):
    return SubscriptionRegistry(db)


@pytest.fixture
def ledger(db):
    return PositionLedger(db)


@pytest.fixture
def trader(traders):
    return traders.upsert_trader(TRADER_ADDRESS, username="CryptoWhale", roi_monthly=42.0)


@pytest.fixture
def stub_fetcher():
    return StubFetcher()


@pytest.fixture
def engine(stub_fetcher, traders, subscriptions, ledger, config):
    return ReplicationEngine(stub_fetcher, traders, subscriptions, ledger, config=config)
