"""
Trade executor routes: sync, replicate and sweep actions.

Every route here changes copy-trading state or exposes it, so the whole
router sits behind the API key.
"""

import logging

from fastapi import APIRouter, Security

from replication_engine import ReplicationInProgress
from scheduler import SweepInProgress
from trader_registry import TraderNotFound
from .deps import (
    BadRequest,
    error_response,
    get_param,
    parse_action,
    verify_api_key,
    get_engine,
    get_fetcher,
    get_scheduler,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["copy-trading"], dependencies=[Security(verify_api_key)])


async def _sync_trader_positions(params: dict):
    result = await get_engine().sync_trader_positions(str(get_param(params, "trader_id", "traderId")))
    return result.to_dict()


async def _execute_copy_trades(params: dict):
    trader_id = str(get_param(params, "trader_id", "traderId"))
    new_positions = get_param(params, "new_positions", "newPositions", required=False, default=[])
    if not isinstance(new_positions, list):
        raise BadRequest("new_positions must be a list")
    result = await get_engine().execute_copy_trades(trader_id, new_positions)
    return result.to_dict()


async def _check_and_replicate(params: dict):
    result = await get_scheduler().run_once(trigger="api")
    return result.to_dict()


async def _get_trader_live_positions(params: dict):
    fetched = await get_fetcher().get_live_positions(get_param(params, "address"))
    return [p.to_dict() for p in fetched.positions]


ACTIONS = {
    "sync_trader_positions": _sync_trader_positions,
    "execute_copy_trades": _execute_copy_trades,
    "check_and_replicate": _check_and_replicate,
    "get_trader_live_positions": _get_trader_live_positions,
}


@router.post("/api/trade-executor")
async def trade_executor_action(body: dict):
    """Dispatch a replication action"""
    try:
        action, params = parse_action(body)
        handler = ACTIONS.get(action)
        if handler is None:
            raise BadRequest(f"Unknown action: {action}")

        logger.info(f"[API] Trade executor action: {action}")
        return await handler(params)

    except BadRequest as e:
        return error_response(str(e), 400)
    except TraderNotFound as e:
        return error_response(str(e), 404)
    except (ReplicationInProgress, SweepInProgress) as e:
        return error_response(str(e), 409)
    except Exception as e:
        logger.error(f"[API] Trade executor error: {e}")
        return error_response(str(e) or "Unknown error", 500)


@router.get("/api/sweep/status")
async def sweep_status():
    return get_scheduler().get_status()
