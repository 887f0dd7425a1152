"""
SQLite storage shared by the trader registry, subscription registry and
position ledger.

One database file, opened per operation. Multi-statement writes go
through transaction(), which takes the write lock up front
(BEGIN IMMEDIATE) so check-then-insert sequences are atomic across
concurrent sweeps and user actions.
"""

import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone

logger = logging.getLogger("storage")


def new_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


SCHEMA = [
    # ------------------------------------------------------------------
    # Traders (copy sources)
    # ------------------------------------------------------------------
    """
    CREATE TABLE IF NOT EXISTS traders (
        id TEXT PRIMARY KEY,
        address TEXT NOT NULL UNIQUE,
        username TEXT,
        avatar_url TEXT,
        is_verified INTEGER NOT NULL DEFAULT 0,
        total_volume REAL NOT NULL DEFAULT 0,
        total_trades INTEGER NOT NULL DEFAULT 0,
        win_rate REAL NOT NULL DEFAULT 0,
        roi_daily REAL NOT NULL DEFAULT 0,
        roi_weekly REAL NOT NULL DEFAULT 0,
        roi_monthly REAL NOT NULL DEFAULT 0,
        roi_all_time REAL NOT NULL DEFAULT 0,
        risk_score TEXT NOT NULL DEFAULT 'medium'
            CHECK (risk_score IN ('low', 'medium', 'high')),
        followers_count INTEGER NOT NULL DEFAULT 0,
        active_positions INTEGER NOT NULL DEFAULT 0,
        last_synced_at TEXT,
        created_at TEXT NOT NULL
    )
    """,
    # Trader-side snapshot of the positions seen at each sync
    """
    CREATE TABLE IF NOT EXISTS trader_positions (
        id TEXT PRIMARY KEY,
        trader_id TEXT NOT NULL REFERENCES traders(id),
        market_id TEXT NOT NULL,
        market_title TEXT NOT NULL,
        outcome TEXT NOT NULL,
        size REAL NOT NULL,
        entry_price REAL NOT NULL,
        current_price REAL,
        source TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'open' CHECK (status IN ('open', 'closed')),
        first_seen_at TEXT NOT NULL,
        last_seen_at TEXT NOT NULL,
        closed_at TEXT
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_trader_positions_open
        ON trader_positions(trader_id, market_id, outcome) WHERE status = 'open'
    """,
    # ------------------------------------------------------------------
    # Copy subscriptions
    # ------------------------------------------------------------------
    """
    CREATE TABLE IF NOT EXISTS copy_subscriptions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        trader_id TEXT NOT NULL REFERENCES traders(id),
        allocation REAL NOT NULL,
        max_trade_size REAL NOT NULL,
        risk_multiplier REAL NOT NULL,
        max_open_positions INTEGER NOT NULL,
        stop_loss REAL NOT NULL,
        status TEXT NOT NULL DEFAULT 'active'
            CHECK (status IN ('active', 'paused', 'stopped')),
        total_pnl REAL NOT NULL DEFAULT 0,
        started_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    # One live (non-stopped) subscription per user and trader
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_subscriptions_user_trader
        ON copy_subscriptions(user_id, trader_id) WHERE status != 'stopped'
    """,
    "CREATE INDEX IF NOT EXISTS idx_subscriptions_trader_status ON copy_subscriptions(trader_id, status)",
    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------
    """
    CREATE TABLE IF NOT EXISTS positions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        trader_id TEXT REFERENCES traders(id),
        subscription_id TEXT REFERENCES copy_subscriptions(id),
        market_id TEXT NOT NULL,
        market_title TEXT NOT NULL,
        outcome TEXT NOT NULL,
        position_type TEXT NOT NULL CHECK (position_type IN ('long', 'short', 'copy')),
        size REAL NOT NULL CHECK (size > 0),
        entry_price REAL NOT NULL,
        current_price REAL,
        pnl REAL,
        pnl_percent REAL,
        status TEXT NOT NULL DEFAULT 'open' CHECK (status IN ('open', 'closed')),
        opened_at TEXT NOT NULL,
        closed_at TEXT,
        CHECK ((status = 'closed') = (closed_at IS NOT NULL))
    )
    """,
    # Idempotency key: one open copy per subscription, market and outcome
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_positions_copy_open
        ON positions(subscription_id, market_id, outcome)
        WHERE status = 'open' AND subscription_id IS NOT NULL
    """,
    "CREATE INDEX IF NOT EXISTS idx_positions_user_status ON positions(user_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_positions_trader_status ON positions(trader_id, status)",
    # ------------------------------------------------------------------
    # Trades (append-only)
    # ------------------------------------------------------------------
    """
    CREATE TABLE IF NOT EXISTS trades (
        id TEXT PRIMARY KEY,
        user_id TEXT,
        trader_id TEXT REFERENCES traders(id),
        subscription_id TEXT REFERENCES copy_subscriptions(id),
        position_id TEXT REFERENCES positions(id),
        market_id TEXT NOT NULL,
        market_title TEXT NOT NULL,
        outcome TEXT NOT NULL,
        trade_type TEXT NOT NULL CHECK (trade_type IN ('buy', 'sell')),
        size REAL NOT NULL,
        price REAL NOT NULL,
        pnl REAL,
        status TEXT NOT NULL DEFAULT 'executed'
            CHECK (status IN ('executed', 'pending', 'failed')),
        executed_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_trades_user_executed ON trades(user_id, executed_at)",
    """
    CREATE TRIGGER IF NOT EXISTS trades_no_update BEFORE UPDATE ON trades
    BEGIN
        SELECT RAISE(ABORT, 'trades are append-only');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS trades_no_delete BEFORE DELETE ON trades
    BEGIN
        SELECT RAISE(ABORT, 'trades are append-only');
    END
    """,
]


class Database:
    """
    SQLite database holding all copy-trading state.

    Needs a file path: every operation opens its own connection, so an
    in-memory database would not be shared between them.
    """

    def __init__(self, db_path: str = "copytrade.db", busy_timeout_sec: float = 10.0):
        self.db_path = db_path
        self.busy_timeout_sec = busy_timeout_sec
        self._init_schema()
        logger.info(f"Database initialized: {db_path}")

    def _init_schema(self):
        with self.connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            for statement in SCHEMA:
                conn.execute(statement)
            conn.commit()

    @contextmanager
    def connect(self):
        """Get a database connection with proper cleanup"""
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout_sec)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self):
        """Write transaction holding the database write lock throughout"""
        with self.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.commit()
            except BaseException:
                conn.rollback()
                raise
