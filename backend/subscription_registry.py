"""
Subscription Registry - which users copy which traders, and how.

A subscription carries the follower's risk parameters. It is never
deleted: pausing stops replication, stopping ends it for good. Only one
non-stopped subscription may exist per (user, trader).
"""

import logging
import sqlite3
from dataclasses import dataclass, asdict
from typing import Optional

from storage import Database, new_id, utc_now
from trader_registry import TraderNotFound

logger = logging.getLogger(__name__)


class SubscriptionStatus:
    ACTIVE = "active"
    PAUSED = "paused"
    STOPPED = "stopped"

    ALL = (ACTIVE, PAUSED, STOPPED)


# Defaults offered by the copy-trade form
DEFAULT_PARAMS = {
    "allocation": 1000.0,
    "max_trade_size": 200.0,
    "risk_multiplier": 1.0,
    "max_open_positions": 5,
    "stop_loss": 20.0,
}


class SubscriptionExists(Exception):
    """User already has a live subscription to this trader"""


class SubscriptionNotFound(LookupError):
    pass


class InvalidSubscription(ValueError):
    pass


@dataclass
class Subscription:
    id: str
    user_id: str
    trader_id: str
    allocation: float
    max_trade_size: float
    risk_multiplier: float
    max_open_positions: int
    stop_loss: float
    status: str
    total_pnl: float
    started_at: str
    updated_at: str

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE

    def to_dict(self) -> dict:
        return asdict(self)


def validate_params(params: dict) -> dict:
    """
    Coerce and check subscription parameters.

    Raises:
        InvalidSubscription: unknown field or out-of-range value
    """
    unknown = set(params) - set(DEFAULT_PARAMS)
    if unknown:
        raise InvalidSubscription(f"Unknown subscription fields: {sorted(unknown)}")

    clean = {}
    try:
        for name, value in params.items():
            if value is None:
                continue
            clean[name] = int(value) if name == "max_open_positions" else float(value)
    except (TypeError, ValueError) as e:
        raise InvalidSubscription(f"Invalid subscription value: {e}") from e

    if clean.get("allocation", 1) <= 0:
        raise InvalidSubscription("allocation must be positive")
    if clean.get("max_trade_size", 1) <= 0:
        raise InvalidSubscription("max_trade_size must be positive")
    if clean.get("risk_multiplier", 1) <= 0:
        raise InvalidSubscription("risk_multiplier must be positive")
    if clean.get("max_open_positions", 1) < 1:
        raise InvalidSubscription("max_open_positions must be at least 1")
    if not 0 <= clean.get("stop_loss", 0) <= 100:
        raise InvalidSubscription("stop_loss must be between 0 and 100")

    return clean


class SubscriptionRegistry:

    def __init__(self, db: Database):
        self.db = db

    # -------------------------------------------------------------------------
    # QUERIES
    # -------------------------------------------------------------------------

    def get(self, subscription_id: str) -> Subscription:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM copy_subscriptions WHERE id = ?", (subscription_id,)
            ).fetchone()
        if not row:
            raise SubscriptionNotFound(f"Subscription not found: {subscription_id}")
        return Subscription(**dict(row))

    def list_for_user(self, user_id: str) -> list[Subscription]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM copy_subscriptions WHERE user_id = ? ORDER BY started_at DESC, rowid DESC",
                (user_id,),
            ).fetchall()
        return [Subscription(**dict(row)) for row in rows]

    def list_active_subscriptions(self, trader_id: str) -> list[Subscription]:
        """Active subscriptions to a trader, oldest first"""
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM copy_subscriptions WHERE trader_id = ? AND status = 'active' "
                "ORDER BY started_at, rowid",
                (trader_id,),
            ).fetchall()
        return [Subscription(**dict(row)) for row in rows]

    def list_traders_with_active_subscriptions(self) -> list[str]:
        """Distinct trader ids followed by at least one active subscription"""
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT trader_id, MIN(started_at) AS first_started FROM copy_subscriptions "
                "WHERE status = 'active' GROUP BY trader_id ORDER BY first_started, MIN(rowid)"
            ).fetchall()
        return [row["trader_id"] for row in rows]

    def count_open_positions(self, user_id: str) -> int:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM positions WHERE user_id = ? AND status = 'open'",
                (user_id,),
            ).fetchone()
        return row["n"]

    # -------------------------------------------------------------------------
    # MUTATIONS
    # -------------------------------------------------------------------------

    def create(self, user_id: str, trader_id: str, **params) -> Subscription:
        """
        Subscribe a user to a trader.

        Raises:
            InvalidSubscription: bad parameters or missing user id
            TraderNotFound: unknown trader
            SubscriptionExists: a live subscription already exists
        """
        if not user_id:
            raise InvalidSubscription("user_id is required")

        values = {**DEFAULT_PARAMS, **validate_params(params)}
        now = utc_now()
        subscription = Subscription(
            id=new_id(),
            user_id=user_id,
            trader_id=trader_id,
            status=SubscriptionStatus.ACTIVE,
            total_pnl=0.0,
            started_at=now,
            updated_at=now,
            **values,
        )

        try:
            with self.db.transaction() as conn:
                if not conn.execute("SELECT 1 FROM traders WHERE id = ?", (trader_id,)).fetchone():
                    raise TraderNotFound(f"Trader not found: {trader_id}")
                conn.execute("""
                    INSERT INTO copy_subscriptions (
                        id, user_id, trader_id, allocation, max_trade_size,
                        risk_multiplier, max_open_positions, stop_loss, status,
                        total_pnl, started_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    subscription.id, user_id, trader_id, subscription.allocation,
                    subscription.max_trade_size, subscription.risk_multiplier,
                    subscription.max_open_positions, subscription.stop_loss,
                    subscription.status, subscription.total_pnl, now, now,
                ))
        except sqlite3.IntegrityError as e:
            raise SubscriptionExists(
                f"User {user_id} already has a subscription to trader {trader_id}"
            ) from e

        logger.info(
            f"[Subscriptions] {user_id} now copying {trader_id} | "
            f"allocation ${subscription.allocation:,.2f} | x{subscription.risk_multiplier}"
        )
        return subscription

    def update(self, subscription_id: str, status: Optional[str] = None, **params) -> Subscription:
        """
        Change status and/or risk parameters.

        Raises:
            SubscriptionNotFound: unknown id
            InvalidSubscription: bad values, or leaving the stopped state
            SubscriptionExists: reactivating while another live one exists
        """
        values = validate_params(params)
        if status is not None:
            if status not in SubscriptionStatus.ALL:
                raise InvalidSubscription(f"Invalid status: {status}")
            values["status"] = status

        current = self.get(subscription_id)
        if current.status == SubscriptionStatus.STOPPED:
            if status not in (None, SubscriptionStatus.STOPPED) or params:
                raise InvalidSubscription("A stopped subscription cannot be changed")
            return current

        if not values:
            return current

        values["updated_at"] = utc_now()
        assignments = ", ".join(f"{k} = ?" for k in values)
        try:
            with self.db.transaction() as conn:
                cursor = conn.execute(
                    f"UPDATE copy_subscriptions SET {assignments} WHERE id = ? AND status != 'stopped'",
                    (*values.values(), subscription_id),
                )
        except sqlite3.IntegrityError as e:
            raise SubscriptionExists(str(e)) from e

        if cursor.rowcount == 0:
            raise InvalidSubscription("A stopped subscription cannot be changed")

        if status is not None and status != current.status:
            logger.info(f"[Subscriptions] {subscription_id}: {current.status} -> {status}")
        return self.get(subscription_id)
