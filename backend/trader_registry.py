"""
Trader Registry - copy-source traders, the leaderboard, and the snapshot
of positions observed for each trader at sync time.

The observed snapshot is what sync diffs against: a position seen once
stays recorded until the trader no longer holds it, whether or not any
subscriber was able to copy it.
"""

import logging
import random
from dataclasses import dataclass, asdict
from typing import Iterable, Optional

from storage import Database, new_id, utc_now

logger = logging.getLogger("trader_registry")

RISK_SCORES = ("low", "medium", "high")

LEADERBOARD_PERIODS = {
    "daily": "roi_daily",
    "weekly": "roi_weekly",
    "monthly": "roi_monthly",
    "all_time": "roi_all_time",
}

STAT_FIELDS = (
    "username", "avatar_url", "is_verified", "total_volume", "total_trades",
    "win_rate", "roi_daily", "roi_weekly", "roi_monthly", "roi_all_time",
    "risk_score", "followers_count",
)


class TraderNotFound(LookupError):
    pass


def default_avatar(seed: str) -> str:
    return f"https://api.dicebear.com/7.x/identicon/svg?seed={seed}"


@dataclass
class Trader:
    id: str
    address: str
    username: Optional[str] = None
    avatar_url: Optional[str] = None
    is_verified: bool = False
    total_volume: float = 0.0
    total_trades: int = 0
    win_rate: float = 0.0
    roi_daily: float = 0.0
    roi_weekly: float = 0.0
    roi_monthly: float = 0.0
    roi_all_time: float = 0.0
    risk_score: str = "medium"
    followers_count: int = 0
    active_positions: int = 0
    last_synced_at: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "Trader":
        data = dict(row)
        data["is_verified"] = bool(data["is_verified"])
        return cls(**data)

    def to_dict(self) -> dict:
        return asdict(self)

    def to_leaderboard_entry(self) -> dict:
        return {
            "id": self.id,
            "address": self.address,
            "username": self.username or f"Trader_{self.address[2:8]}",
            "avatar": self.avatar_url or default_avatar(self.address),
            "roi": {
                "daily": round(self.roi_daily, 2),
                "weekly": round(self.roi_weekly, 2),
                "monthly": round(self.roi_monthly, 2),
                "all_time": round(self.roi_all_time, 2),
            },
            "win_rate": round(self.win_rate, 1),
            "total_volume": self.total_volume,
            "active_positions": self.active_positions,
            "risk_score": self.risk_score,
            "followers": self.followers_count,
            "is_verified": self.is_verified,
            "trades": self.total_trades,
            "last_synced_at": self.last_synced_at,
        }


@dataclass
class ObservedPosition:
    """A trader position as recorded by the last sync"""
    id: str
    trader_id: str
    market_id: str
    market_title: str
    outcome: str
    size: float
    entry_price: float
    current_price: Optional[float]
    source: str
    status: str
    first_seen_at: str
    last_seen_at: str
    closed_at: Optional[str] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.market_id, self.outcome)

    def to_dict(self) -> dict:
        return asdict(self)


# ============================================================================
# GENERATED LEADERBOARD
# ============================================================================

LEADERBOARD_NAMES = [
    "CryptoWhale", "PredictionKing", "MarketMaven", "BullishBets", "ElectionPro",
    "SteadyGains", "NewsTrader", "AlphaSeeker", "RiskMaster", "QuantTrader",
    "DataDriven", "TrendFollower", "ContraryView", "MomentumKing", "ValueHunter",
    "EventBet", "MacroMaster", "MicroBets", "SwingTrader", "ScalpKing",
]


def generate_leaderboard(limit: int, rng: Optional[random.Random] = None) -> list[dict]:
    """Plausible leaderboard for an empty database, best monthly ROI first"""
    rng = rng or random.Random()
    entries = []

    for i, name in enumerate(LEADERBOARD_NAMES[:limit]):
        base_roi = rng.random() * 100 + 20
        address = f"0x{rng.getrandbits(160):040x}"
        entries.append({
            "id": f"trader-{i + 1}",
            "address": address,
            "username": name,
            "avatar": default_avatar(name.lower()),
            "roi": {
                "daily": round(rng.random() * 10 - 2, 2),
                "weekly": round(rng.random() * 30 - 5, 2),
                "monthly": round(base_roi, 2),
                "all_time": round(base_roi * (2 + rng.random() * 3), 2),
            },
            "win_rate": round(60 + rng.random() * 30, 1),
            "total_volume": rng.randint(100_000, 10_100_000),
            "active_positions": rng.randint(1, 15),
            "risk_score": rng.choice(RISK_SCORES),
            "followers": rng.randint(100, 5100),
            "is_verified": rng.random() > 0.4,
            "trades": rng.randint(50, 3050),
            "last_synced_at": None,
            "generated": True,
        })

    entries.sort(key=lambda e: e["roi"]["monthly"], reverse=True)
    return entries


# ============================================================================
# REGISTRY
# ============================================================================

class TraderRegistry:

    def __init__(self, db: Database):
        self.db = db

    # -------------------------------------------------------------------------
    # TRADERS
    # -------------------------------------------------------------------------

    def upsert_trader(self, address: str, **stats) -> Trader:
        """
        Create or update a trader by address (leaderboard ingestion).

        Only the fields in STAT_FIELDS are accepted; sync-owned fields
        (active_positions, last_synced_at) are never written here.
        """
        unknown = set(stats) - set(STAT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown trader fields: {sorted(unknown)}")
        if stats.get("risk_score") is not None and stats["risk_score"] not in RISK_SCORES:
            raise ValueError(f"Invalid risk_score: {stats['risk_score']}")

        address = address.strip().lower()
        if not address:
            raise ValueError("Trader address is required")

        values = {k: v for k, v in stats.items() if v is not None}
        if "is_verified" in values:
            values["is_verified"] = 1 if values["is_verified"] else 0

        with self.db.transaction() as conn:
            row = conn.execute("SELECT id FROM traders WHERE address = ?", (address,)).fetchone()
            if row:
                trader_id = row["id"]
                if values:
                    assignments = ", ".join(f"{k} = ?" for k in values)
                    conn.execute(
                        f"UPDATE traders SET {assignments} WHERE id = ?",
                        (*values.values(), trader_id),
                    )
            else:
                trader_id = new_id()
                columns = ["id", "address", "created_at", *values.keys()]
                conn.execute(
                    f"INSERT INTO traders ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
                    (trader_id, address, utc_now(), *values.values()),
                )
                logger.info(f"Added trader {values.get('username') or address} ({trader_id})")

        return self.get_trader(trader_id)

    def get_trader(self, trader_id: str) -> Trader:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM traders WHERE id = ?", (trader_id,)).fetchone()
        if not row:
            raise TraderNotFound(f"Trader not found: {trader_id}")
        return Trader.from_row(row)

    def find_by_address(self, address: str) -> Optional[Trader]:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM traders WHERE address = ?", (address.strip().lower(),)
            ).fetchone()
        return Trader.from_row(row) if row else None

    def get_leaderboard(self, limit: int = 20, period: str = "monthly") -> list[dict]:
        """Traders ranked by ROI for the period; generated data if none stored"""
        column = LEADERBOARD_PERIODS.get(period)
        if column is None:
            raise ValueError(f"Unknown period: {period}. Use one of {list(LEADERBOARD_PERIODS)}")

        with self.db.connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM traders ORDER BY {column} DESC LIMIT ?", (limit,)
            ).fetchall()

        if not rows:
            logger.info("No traders stored, generating leaderboard data")
            return generate_leaderboard(limit)

        return [Trader.from_row(row).to_leaderboard_entry() for row in rows]

    # -------------------------------------------------------------------------
    # OBSERVED POSITIONS
    # -------------------------------------------------------------------------

    def get_observed_positions(self, trader_id: str) -> list[ObservedPosition]:
        """Open positions recorded for the trader by previous syncs"""
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM trader_positions WHERE trader_id = ? AND status = 'open' "
                "ORDER BY first_seen_at, rowid",
                (trader_id,),
            ).fetchall()
        return [ObservedPosition(**dict(row)) for row in rows]

    def record_sync(
        self,
        trader_id: str,
        live_positions: list,
        closed_keys: Iterable[tuple[str, str]],
        source: str,
    ) -> str:
        """
        Commit one sync atomically. Live positions without an open row are
        recorded, the rest get fresh size and price; closed keys are marked
        closed; the trader's active_positions and last_synced_at are set.

        Returns the sync timestamp.
        """
        now = utc_now()

        with self.db.transaction() as conn:
            for pos in live_positions:
                cursor = conn.execute(
                    """
                    UPDATE trader_positions
                    SET size = ?, current_price = ?, last_seen_at = ?
                    WHERE trader_id = ? AND market_id = ? AND outcome = ? AND status = 'open'
                    """,
                    (pos.size, pos.current_price, now, trader_id, pos.market_id, pos.outcome),
                )
                if cursor.rowcount == 0:
                    conn.execute(
                        """
                        INSERT INTO trader_positions (
                            id, trader_id, market_id, market_title, outcome, size,
                            entry_price, current_price, source, status,
                            first_seen_at, last_seen_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'open', ?, ?)
                        """,
                        (
                            new_id(), trader_id, pos.market_id, pos.market_title, pos.outcome,
                            pos.size, pos.entry_price, pos.current_price, source, now, now,
                        ),
                    )

            for market_id, outcome in closed_keys:
                conn.execute(
                    """
                    UPDATE trader_positions SET status = 'closed', closed_at = ?
                    WHERE trader_id = ? AND market_id = ? AND outcome = ? AND status = 'open'
                    """,
                    (now, trader_id, market_id, outcome),
                )

            conn.execute(
                "UPDATE traders SET active_positions = ?, last_synced_at = ? WHERE id = ?",
                (len(live_positions), now, trader_id),
            )

        return now

    def mark_synced(self, trader_id: str, active_positions: int) -> str:
        """Stamp a sync that recorded nothing. Returns the sync timestamp."""
        now = utc_now()
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE traders SET active_positions = ?, last_synced_at = ? WHERE id = ?",
                (active_positions, now, trader_id),
            )
        return now
