"""
Position Ledger - durable record of user positions and trades.

Owns the lifecycle of position and trade rows:
- Positions open, then close exactly once (closed_at set iff closed)
- Trades are append-only; the schema rejects updates and deletes
- Copy positions are unique per (subscription, market, outcome) while open

Prices and P&L are refreshed elsewhere; nothing here writes them after
a position is created.
"""

import logging
import sqlite3
from dataclasses import dataclass, asdict
from typing import Optional, List

from storage import Database, new_id, utc_now

logger = logging.getLogger("position_ledger")


# ============================================================================
# TYPES
# ============================================================================

class PositionType:
    LONG = "long"
    SHORT = "short"
    COPY = "copy"


class PositionStatus:
    OPEN = "open"
    CLOSED = "closed"


class TradeType:
    BUY = "buy"
    SELL = "sell"


class TradeStatus:
    EXECUTED = "executed"
    PENDING = "pending"
    FAILED = "failed"


class ConstraintViolation(Exception):
    """Write rejected by a ledger constraint (duplicate copy, cap, bad value)"""


class PositionNotFound(LookupError):
    pass


@dataclass
class Position:
    id: str
    user_id: str
    market_id: str
    market_title: str
    outcome: str
    position_type: str
    size: float
    entry_price: float
    status: str
    opened_at: str
    trader_id: Optional[str] = None
    subscription_id: Optional[str] = None
    current_price: Optional[float] = None
    pnl: Optional[float] = None
    pnl_percent: Optional[float] = None
    closed_at: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Trade:
    """Immutable execution record, one per fill"""
    id: str
    market_id: str
    market_title: str
    outcome: str
    trade_type: str
    size: float
    price: float
    status: str
    executed_at: str
    user_id: Optional[str] = None
    trader_id: Optional[str] = None
    subscription_id: Optional[str] = None
    position_id: Optional[str] = None
    pnl: Optional[float] = None

    def to_dict(self) -> dict:
        return asdict(self)


# ============================================================================
# POSITION LEDGER
# ============================================================================

class PositionLedger:
    """
    SQLite-backed position and trade ledger.

    Every write is a single-row insert/update or one IMMEDIATE
    transaction, so a user closing a position while a sweep runs never
    loses an update.
    """

    def __init__(self, db: Database):
        self.db = db

    # -------------------------------------------------------------------------
    # READ OPERATIONS
    # -------------------------------------------------------------------------

    def get_open_positions(self, trader_id: str) -> List[Position]:
        """Open copy-originated positions sourced from a trader"""
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM positions WHERE trader_id = ? AND status = 'open' "
                "ORDER BY opened_at, rowid",
                (trader_id,),
            ).fetchall()
        return [Position(**dict(row)) for row in rows]

    def get_position(self, position_id: str) -> Optional[Position]:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM positions WHERE id = ?", (position_id,)).fetchone()
        return Position(**dict(row)) if row else None

    def list_user_positions(self, user_id: str, status: Optional[str] = PositionStatus.OPEN) -> List[Position]:
        query = "SELECT * FROM positions WHERE user_id = ?"
        params: list = [user_id]
        if status:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY opened_at DESC, rowid DESC"

        with self.db.connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [Position(**dict(row)) for row in rows]

    def list_user_trades(self, user_id: str, limit: int = 20) -> List[Trade]:
        """Most recent trades first"""
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM trades WHERE user_id = ? ORDER BY executed_at DESC, rowid DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [Trade(**dict(row)) for row in rows]

    def count_open_positions(self, user_id: str) -> int:
        with self.db.connect() as conn:
            return _count_open(conn, user_id)

    def get_copy_exposure(self, subscription_id: str) -> float:
        """Capital currently committed to open copies of one subscription"""
        with self.db.connect() as conn:
            return _copy_exposure(conn, subscription_id)

    # -------------------------------------------------------------------------
    # WRITE OPERATIONS
    # -------------------------------------------------------------------------

    def insert_position(
        self,
        user_id: str,
        market_id: str,
        market_title: str,
        outcome: str,
        position_type: str,
        size: float,
        entry_price: float,
        trader_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
        current_price: Optional[float] = None,
    ) -> Position:
        """
        Create one open position.

        Raises:
            ConstraintViolation: duplicate open copy, unknown trader or
                subscription, non-positive size, or invalid type
        """
        position = Position(
            id=new_id(),
            user_id=user_id,
            market_id=market_id,
            market_title=market_title,
            outcome=outcome,
            position_type=position_type,
            size=size,
            entry_price=entry_price,
            status=PositionStatus.OPEN,
            opened_at=utc_now(),
            trader_id=trader_id,
            subscription_id=subscription_id,
            current_price=current_price,
        )

        try:
            with self.db.transaction() as conn:
                _insert_position(conn, position)
        except sqlite3.IntegrityError as e:
            raise ConstraintViolation(f"Cannot open position on {market_id}: {e}") from e

        logger.info(f"Opened position: {position.id} | {position.position_type} | {market_title} {outcome} | ${size:,.2f}")
        return position

    def insert_trade(
        self,
        market_id: str,
        market_title: str,
        outcome: str,
        trade_type: str,
        size: float,
        price: float,
        user_id: Optional[str] = None,
        trader_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
        position_id: Optional[str] = None,
        pnl: Optional[float] = None,
        status: str = TradeStatus.EXECUTED,
    ) -> Trade:
        """Append one trade record"""
        trade = Trade(
            id=new_id(),
            market_id=market_id,
            market_title=market_title,
            outcome=outcome,
            trade_type=trade_type,
            size=size,
            price=price,
            status=status,
            executed_at=utc_now(),
            user_id=user_id,
            trader_id=trader_id,
            subscription_id=subscription_id,
            position_id=position_id,
            pnl=pnl,
        )

        try:
            with self.db.transaction() as conn:
                _insert_trade(conn, trade)
        except sqlite3.IntegrityError as e:
            raise ConstraintViolation(f"Cannot record trade on {market_id}: {e}") from e

        logger.info(f"Recorded trade: {trade.id} | {trade_type} {market_title} {outcome} | ${size:,.2f} @ {price}")
        return trade

    def close_position(self, position_id: str) -> Position:
        """
        Close an open position. Closing an already-closed position is a
        no-op that returns it unchanged.

        Raises:
            PositionNotFound: unknown id
        """
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE positions SET status = 'closed', closed_at = ? WHERE id = ? AND status = 'open'",
                (utc_now(), position_id),
            )
            row = conn.execute("SELECT * FROM positions WHERE id = ?", (position_id,)).fetchone()

        if not row:
            raise PositionNotFound(f"Position not found: {position_id}")

        if cursor.rowcount:
            logger.info(f"Closed position: {position_id}")
        return Position(**dict(row))

    def record_copy_trade(
        self,
        user_id: str,
        trader_id: str,
        subscription_id: str,
        market_id: str,
        market_title: str,
        outcome: str,
        size: float,
        entry_price: float,
        current_price: Optional[float] = None,
        max_open_positions: Optional[int] = None,
        allocation: Optional[float] = None,
    ) -> tuple[Position, Trade]:
        """
        Open a copy position and its buy trade in one transaction.

        The user's open position count and the subscription's open
        exposure are re-checked under the write lock, so concurrent
        writers cannot push a subscriber past either limit.

        Raises:
            ConstraintViolation: limit reached, or a copy of this market
                and outcome is already open for the subscription
        """
        now = utc_now()
        position = Position(
            id=new_id(),
            user_id=user_id,
            market_id=market_id,
            market_title=market_title,
            outcome=outcome,
            position_type=PositionType.COPY,
            size=size,
            entry_price=entry_price,
            status=PositionStatus.OPEN,
            opened_at=now,
            trader_id=trader_id,
            subscription_id=subscription_id,
            current_price=current_price,
        )
        trade = Trade(
            id=new_id(),
            market_id=market_id,
            market_title=market_title,
            outcome=outcome,
            trade_type=TradeType.BUY,
            size=size,
            price=entry_price,
            status=TradeStatus.EXECUTED,
            executed_at=now,
            user_id=user_id,
            trader_id=trader_id,
            subscription_id=subscription_id,
            position_id=position.id,
        )

        try:
            with self.db.transaction() as conn:
                if max_open_positions is not None and _count_open(conn, user_id) >= max_open_positions:
                    raise ConstraintViolation(
                        f"User {user_id} is at max open positions ({max_open_positions})"
                    )
                if allocation is not None and _copy_exposure(conn, subscription_id) + size > allocation + 1e-9:
                    raise ConstraintViolation(
                        f"Subscription {subscription_id} would exceed allocation ${allocation:,.2f}"
                    )
                _insert_position(conn, position)
                _insert_trade(conn, trade)
        except sqlite3.IntegrityError as e:
            raise ConstraintViolation(
                f"Cannot copy {market_id}/{outcome} for subscription {subscription_id}: {e}"
            ) from e

        return position, trade


# ============================================================================
# SQL HELPERS
# ============================================================================

def _count_open(conn, user_id: str) -> int:
    row = conn.execute(
        "SELECT COUNT(*) AS n FROM positions WHERE user_id = ? AND status = 'open'", (user_id,)
    ).fetchone()
    return row["n"]


def _copy_exposure(conn, subscription_id: str) -> float:
    row = conn.execute(
        "SELECT COALESCE(SUM(size), 0) AS total FROM positions WHERE subscription_id = ? AND status = 'open'",
        (subscription_id,),
    ).fetchone()
    return float(row["total"])


def _insert_position(conn, position: Position):
    conn.execute("""
        INSERT INTO positions (
            id, user_id, trader_id, subscription_id, market_id, market_title,
            outcome, position_type, size, entry_price, current_price,
            pnl, pnl_percent, status, opened_at, closed_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        position.id, position.user_id, position.trader_id, position.subscription_id,
        position.market_id, position.market_title, position.outcome, position.position_type,
        position.size, position.entry_price, position.current_price,
        position.pnl, position.pnl_percent, position.status, position.opened_at, position.closed_at,
    ))


def _insert_trade(conn, trade: Trade):
    conn.execute("""
        INSERT INTO trades (
            id, user_id, trader_id, subscription_id, position_id, market_id,
            market_title, outcome, trade_type, size, price, pnl, status, executed_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        trade.id, trade.user_id, trade.trader_id, trade.subscription_id, trade.position_id,
        trade.market_id, trade.market_title, trade.outcome, trade.trade_type,
        trade.size, trade.price, trade.pnl, trade.status, trade.executed_at,
    ))
