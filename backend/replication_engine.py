"""
Replication Engine - mirrors traders' new positions into follower accounts.

One replication pass for a trader:
1. Diff: fetch live positions and compare them with the recorded ones
   (positions seen by earlier passes and copies still open)
2. Execute: fan every new position out to each active subscriber, sized
   from the subscription's risk parameters and caps
3. Record: commit the live snapshot so the same positions are not
   copied again

A standalone sync only diffs; it never records.

A sweep runs the pass for every trader with at least one active
subscriber. One trader failing never stops the sweep; one subscriber
failing never stops the batch.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Iterable

from config import CopyTradingConfig, DEFAULT_CONFIG
from position_fetcher import (
    LivePosition,
    PositionSource,
    TraderPositionFetcher,
    parse_live_position,
)
from position_ledger import PositionLedger, ConstraintViolation
from subscription_registry import SubscriptionRegistry, Subscription
from trader_registry import TraderRegistry

logger = logging.getLogger("replication_engine")


class ReplicationInProgress(Exception):
    """Another replication for the same trader is still running"""


# ============================================================================
# RESULTS
# ============================================================================

@dataclass
class SyncResult:
    trader_id: str
    trader_address: str
    synced_at: Optional[str]
    live_positions: list[LivePosition]
    new_positions: list[LivePosition]
    closed_positions: list[dict]  # market_id, outcome, market_title
    source: str = PositionSource.AUTHENTICATED

    def to_dict(self) -> dict:
        return {
            "trader_id": self.trader_id,
            "trader_address": self.trader_address,
            "synced_at": self.synced_at,
            "live_positions": len(self.live_positions),
            "new_positions": [p.to_dict() for p in self.new_positions],
            "closed_positions": len(self.closed_positions),
            "closed": self.closed_positions,
            "source": self.source,
        }


@dataclass
class CopyTradeResult:
    trades_executed: int = 0
    trades: list[dict] = field(default_factory=list)
    skipped: list[dict] = field(default_factory=list)
    failures: list[dict] = field(default_factory=list)
    message: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "trades_executed": self.trades_executed,
            "trades": self.trades,
            "skipped": self.skipped,
            "failures": self.failures,
            "message": self.message,
        }


@dataclass
class TraderSweepResult:
    """One trader's entry in a sweep"""
    trader_id: str
    synced: bool
    new_positions: int = 0
    closed_positions: int = 0
    trades_executed: int = 0
    source: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        result = {
            "trader_id": self.trader_id,
            "synced": self.synced,
        }
        if self.synced:
            result.update({
                "new_positions": self.new_positions,
                "closed_positions": self.closed_positions,
                "trades_executed": self.trades_executed,
                "source": self.source,
            })
        else:
            result["error"] = self.error
        return result


@dataclass
class SweepResult:
    checked_at: str
    traders_checked: int
    results: list[TraderSweepResult] = field(default_factory=list)

    @property
    def total_trades(self) -> int:
        return sum(r.trades_executed for r in self.results)

    @property
    def errors(self) -> int:
        return sum(1 for r in self.results if not r.synced)

    def to_dict(self) -> dict:
        return {
            "checked_at": self.checked_at,
            "traders_checked": self.traders_checked,
            "total_trades": self.total_trades,
            "results": [r.to_dict() for r in self.results],
        }


# ============================================================================
# SIZING
# ============================================================================

def size_copy_trade(
    trader_size: float,
    risk_multiplier: float,
    max_trade_size: float,
    remaining_allocation: float,
) -> float:
    """
    Follower size for one copied position.

    The trader's size is scaled by the risk multiplier, then capped by the
    per-trade maximum and by the allocation not yet committed to open
    copies. Rounded to cents; never negative.
    """
    size = min(trader_size * risk_multiplier, max_trade_size, remaining_allocation)
    return max(0.0, round(size, 2))


def _dedupe(positions: Iterable[LivePosition]) -> list[LivePosition]:
    """Collapse repeated (market, outcome) keys, first occurrence wins"""
    seen = set()
    unique = []
    for pos in positions:
        if pos.key in seen:
            continue
        seen.add(pos.key)
        unique.append(pos)
    return unique


# ============================================================================
# ENGINE
# ============================================================================

class ReplicationEngine:

    def __init__(
        self,
        fetcher: TraderPositionFetcher,
        traders: TraderRegistry,
        subscriptions: SubscriptionRegistry,
        ledger: PositionLedger,
        config: CopyTradingConfig = DEFAULT_CONFIG,
    ):
        self.fetcher = fetcher
        self.traders = traders
        self.subscriptions = subscriptions
        self.ledger = ledger
        self.config = config

        # trader_id -> lock held while that trader is replicating
        self._locks: dict[str, asyncio.Lock] = {}

        # Stats
        self.syncs_completed = 0
        self.trades_executed = 0

    @asynccontextmanager
    async def _in_flight(self, trader_id: str):
        lock = self._locks.get(trader_id)
        if lock is not None and lock.locked():
            raise ReplicationInProgress(f"Replication already running for trader {trader_id}")
        lock = self._locks.setdefault(trader_id, asyncio.Lock())
        try:
            async with lock:
                yield
        finally:
            if not lock.locked() and self._locks.get(trader_id) is lock:
                del self._locks[trader_id]

    def is_replicating(self, trader_id: str) -> bool:
        lock = self._locks.get(trader_id)
        return lock is not None and lock.locked()

    # -------------------------------------------------------------------------
    # SYNC
    # -------------------------------------------------------------------------

    async def sync_trader_positions(self, trader_id: str) -> SyncResult:
        """
        Diff a trader's live positions against the recorded ones.

        Read-only for the recorded set: only a replication pass records
        positions, so a standalone sync never keeps new positions from
        being copied by the next sweep.

        Raises:
            TraderNotFound: unknown trader id
            ReplicationInProgress: the trader is already being replicated
        """
        async with self._in_flight(trader_id):
            sync = await self._diff(trader_id)
            sync.synced_at = self.traders.mark_synced(trader_id, len(sync.live_positions))
            return sync

    async def _diff(self, trader_id: str) -> SyncResult:
        trader = self.traders.get_trader(trader_id)
        logger.info(f"[Sync] Syncing positions for trader: {trader.username or trader.address} ({trader.address})")

        fetched = await self.fetcher.get_live_positions(trader.address)
        live = _dedupe(fetched.positions)

        # Recorded: positions seen by earlier passes plus copies still open
        recorded = {p.key: p for p in self.traders.get_observed_positions(trader_id)}
        for pos in self.ledger.get_open_positions(trader_id):
            recorded.setdefault((pos.market_id, pos.outcome), pos)

        live_keys = {p.key for p in live}
        new_positions = [p for p in live if p.key not in recorded]
        closed_keys = [key for key in recorded if key not in live_keys]

        self.syncs_completed += 1
        logger.info(
            f"[Sync] {trader_id}: {len(live)} live, {len(new_positions)} new, "
            f"{len(closed_keys)} closed ({fetched.source})"
        )

        return SyncResult(
            trader_id=trader_id,
            trader_address=trader.address,
            synced_at=None,
            live_positions=live,
            new_positions=new_positions,
            closed_positions=[
                {"market_id": k[0], "outcome": k[1], "market_title": recorded[k].market_title}
                for k in closed_keys
            ],
            source=fetched.source,
        )

    # -------------------------------------------------------------------------
    # EXECUTE
    # -------------------------------------------------------------------------

    async def execute_copy_trades(self, trader_id: str, new_positions: list) -> CopyTradeResult:
        """
        Replicate new trader positions to every active subscriber.

        Accepts LivePosition objects or raw position dicts.

        Raises:
            ReplicationInProgress: the trader is already being replicated
        """
        async with self._in_flight(trader_id):
            return self._execute(trader_id, new_positions)

    def _execute(self, trader_id: str, new_positions: list) -> CopyTradeResult:
        result = CopyTradeResult()

        positions = []
        for raw in new_positions:
            try:
                positions.append(parse_live_position(raw))
            except ValueError as e:
                logger.warning(f"[CopyTrade] Ignoring unparseable position for {trader_id}: {e}")
                result.failures.append({"position": raw, "error": str(e)})

        subscriptions = self.subscriptions.list_active_subscriptions(trader_id)
        if not subscriptions:
            logger.info(f"[CopyTrade] No active subscribers for trader {trader_id}")
            result.message = "No active subscribers"
            return result

        logger.info(f"[CopyTrade] {len(subscriptions)} active subscribers for trader {trader_id}")

        for subscription in subscriptions:
            self._copy_for_subscriber(trader_id, subscription, positions, result)

        result.trades_executed = len(result.trades)
        self.trades_executed += result.trades_executed
        result.message = f"Executed {result.trades_executed} copy trades for {len(subscriptions)} subscribers"
        return result

    def _copy_for_subscriber(
        self,
        trader_id: str,
        subscription: Subscription,
        positions: list[LivePosition],
        result: CopyTradeResult,
    ):
        user_id = subscription.user_id

        try:
            open_count = self.subscriptions.count_open_positions(user_id)
            exposure = self.ledger.get_copy_exposure(subscription.id)
        except Exception as e:
            logger.error(f"[CopyTrade] Could not load state for subscription {subscription.id}: {e}")
            result.failures.append({"subscription_id": subscription.id, "user_id": user_id, "error": str(e)})
            return

        if open_count >= subscription.max_open_positions:
            logger.info(
                f"[CopyTrade] User {user_id} has reached max open positions "
                f"({subscription.max_open_positions})"
            )
            result.skipped.append({
                "subscription_id": subscription.id,
                "user_id": user_id,
                "reason": "max_open_positions",
            })
            return

        for pos in positions:
            skip = {
                "subscription_id": subscription.id,
                "user_id": user_id,
                "market_id": pos.market_id,
                "outcome": pos.outcome,
            }

            if open_count >= subscription.max_open_positions:
                result.skipped.append({**skip, "reason": "max_open_positions"})
                continue

            size = size_copy_trade(
                pos.size,
                subscription.risk_multiplier,
                subscription.max_trade_size,
                subscription.allocation - exposure,
            )
            if size < self.config.min_trade_size:
                logger.info(f"[CopyTrade] Adjusted size too small for user {user_id}, skipping {pos.market_title}")
                result.skipped.append({**skip, "reason": "below_min_trade_size", "size": size})
                continue

            try:
                _, trade = self.ledger.record_copy_trade(
                    user_id=user_id,
                    trader_id=trader_id,
                    subscription_id=subscription.id,
                    market_id=pos.market_id,
                    market_title=pos.market_title,
                    outcome=pos.outcome,
                    size=size,
                    entry_price=pos.entry_price,
                    current_price=pos.current_price,
                    max_open_positions=subscription.max_open_positions,
                    allocation=subscription.allocation,
                )
            except ConstraintViolation as e:
                logger.info(f"[CopyTrade] Skipped {pos.market_title} for user {user_id}: {e}")
                result.skipped.append({**skip, "reason": str(e)})
                continue
            except Exception as e:
                logger.error(f"[CopyTrade] Error creating position for user {user_id}: {e}")
                result.failures.append({**skip, "error": str(e)})
                continue

            open_count += 1
            exposure += size
            result.trades.append(trade.to_dict())
            logger.info(
                f"[CopyTrade] Executed copy trade for user {user_id}: "
                f"{pos.market_title} {pos.outcome} ${size:,.2f} @ {pos.entry_price}"
            )

    # -------------------------------------------------------------------------
    # REPLICATE / SWEEP
    # -------------------------------------------------------------------------

    async def replicate_trader(self, trader_id: str) -> TraderSweepResult:
        """
        Diff a trader, copy any new positions, then record the live
        snapshot, holding the trader's in-flight lock for the whole pass.

        Nothing is recorded when execution fails as a whole, so the next
        sweep detects the same positions again.
        """
        async with self._in_flight(trader_id):
            sync = await self._diff(trader_id)

            trades_executed = 0
            if sync.new_positions:
                execution = self._execute(trader_id, sync.new_positions)
                trades_executed = execution.trades_executed

            self.traders.record_sync(
                trader_id,
                sync.live_positions,
                [(c["market_id"], c["outcome"]) for c in sync.closed_positions],
                sync.source,
            )

        return TraderSweepResult(
            trader_id=trader_id,
            synced=True,
            new_positions=len(sync.new_positions),
            closed_positions=len(sync.closed_positions),
            trades_executed=trades_executed,
            source=sync.source,
        )

    async def check_and_replicate_trades(self) -> SweepResult:
        """Run one replication pass over every followed trader"""
        logger.info("[Sweep] Starting trade replication check...")

        trader_ids = self.subscriptions.list_traders_with_active_subscriptions()
        logger.info(f"[Sweep] Checking {len(trader_ids)} traders with active subscribers")

        results = []
        for trader_id in trader_ids:
            try:
                entry = await asyncio.wait_for(
                    self.replicate_trader(trader_id),
                    timeout=self.config.trader_timeout_sec,
                )
            except asyncio.TimeoutError:
                logger.error(f"[Sweep] Trader {trader_id} timed out after {self.config.trader_timeout_sec}s")
                entry = TraderSweepResult(
                    trader_id=trader_id,
                    synced=False,
                    error=f"Timed out after {self.config.trader_timeout_sec}s",
                )
            except Exception as e:
                logger.error(f"[Sweep] Error processing trader {trader_id}: {e}")
                entry = TraderSweepResult(trader_id=trader_id, synced=False, error=str(e) or type(e).__name__)
            results.append(entry)

        sweep = SweepResult(
            checked_at=datetime.now(timezone.utc).isoformat(),
            traders_checked=len(trader_ids),
            results=results,
        )
        logger.info(
            f"[Sweep] Checked {sweep.traders_checked} traders | "
            f"{sweep.total_trades} trades | {sweep.errors} errors"
        )
        return sweep

    def get_stats(self) -> dict:
        return {
            "syncs_completed": self.syncs_completed,
            "trades_executed": self.trades_executed,
            "in_flight": sorted(t for t, lock in self._locks.items() if lock.locked()),
        }
