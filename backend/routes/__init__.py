"""
Route modules for the Polymarket Copy-Trading API.

This package organizes API endpoints into logical groups:
- markets: Market data, orders and the trader leaderboard
- copy_trading: Trade replication actions and sweep status
- subscriptions: Copy subscriptions
- positions: Positions and trade history
"""

from .markets import router as markets_router
from .copy_trading import router as copy_trading_router
from .subscriptions import router as subscriptions_router
from .positions import router as positions_router

__all__ = [
    "markets_router",
    "copy_trading_router",
    "subscriptions_router",
    "positions_router",
]
