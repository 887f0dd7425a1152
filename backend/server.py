#!/usr/bin/env python3
"""
HTTP server for the Polymarket Copy-Trading backend.
Serves market data, copy subscriptions and positions, and runs the
periodic replication sweep.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from config import CopyTradingConfig, ExchangeCredentials, setup_logging
from market_gateway import MarketGateway
from position_fetcher import TraderPositionFetcher
from position_ledger import PositionLedger
from replication_engine import ReplicationEngine
from retry import connection_monitor
from scheduler import SweepScheduler
from storage import Database
from subscription_registry import SubscriptionRegistry
from trader_registry import TraderRegistry
from routes import markets_router, copy_trading_router, subscriptions_router, positions_router
from routes.deps import set_state

logger = logging.getLogger(__name__)

# ============================================================================
# FASTAPI APP
# ============================================================================

app = FastAPI(
    title="Polymarket Copy-Trading API",
    description="Markets, top traders, copy subscriptions and trade replication",
    version="1.0.0",
)

# CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, restrict this
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(markets_router)
app.include_router(copy_trading_router)
app.include_router(subscriptions_router)
app.include_router(positions_router)

# ============================================================================
# GLOBAL STATE
# ============================================================================

gateway: Optional[MarketGateway] = None
fetcher: Optional[TraderPositionFetcher] = None
scheduler: Optional[SweepScheduler] = None


# ============================================================================
# STARTUP / SHUTDOWN
# ============================================================================

@app.on_event("startup")
async def startup():
    """Build services and start the replication sweep"""
    global gateway, fetcher, scheduler

    config = CopyTradingConfig.from_env()
    setup_logging(config.log_dir)

    credentials = ExchangeCredentials.from_env()
    if credentials is None:
        logger.warning("[Server] Exchange credentials not configured: trader positions will be SIMULATED")

    db = Database(config.db_path)
    traders = TraderRegistry(db)
    subscriptions = SubscriptionRegistry(db)
    ledger = PositionLedger(db)

    gateway = MarketGateway(credentials=credentials, config=config)
    fetcher = TraderPositionFetcher(credentials=credentials, config=config)
    engine = ReplicationEngine(fetcher, traders, subscriptions, ledger, config=config)
    scheduler = SweepScheduler(engine, interval_sec=config.sweep_interval_sec)

    set_state("config", config)
    set_state("gateway", gateway)
    set_state("fetcher", fetcher)
    set_state("traders", traders)
    set_state("subscriptions", subscriptions)
    set_state("ledger", ledger)
    set_state("engine", engine)
    set_state("scheduler", scheduler)

    if config.sweep_enabled:
        scheduler.start_background()
    else:
        logger.info("[Server] Periodic sweep disabled (SWEEP_ENABLED=false)")

    logger.info("[Server] Started copy-trading services")


@app.on_event("shutdown")
async def shutdown():
    """Clean up on shutdown"""
    if scheduler:
        await scheduler.stop()
    if gateway:
        await gateway.close()
    if fetcher:
        await fetcher.close()

    logger.info("[Server] Shutdown complete")


# ============================================================================
# REST ENDPOINTS
# ============================================================================

@app.get("/")
async def root():
    """Health check"""
    return {"status": "ok", "timestamp": datetime.now().isoformat()}


@app.get("/health")
async def health():
    """Exchange connectivity and sweep state"""
    connections = connection_monitor.get_status()
    return {
        "status": "ok" if all(c["is_healthy"] for c in connections.values()) else "degraded",
        "timestamp": datetime.now().isoformat(),
        "connections": connections,
        "simulated_positions": fetcher.credentials is None if fetcher else None,
        "sweep": scheduler.get_status() if scheduler else None,
    }


# ============================================================================
# MAIN
# ============================================================================

def main():
    """Run the server"""
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info",
    )


if __name__ == "__main__":
    main()
