"""
Position and trade history routes.
"""

from typing import Optional

from fastapi import APIRouter

from position_ledger import PositionNotFound, PositionStatus
from .deps import error_response, get_ledger

router = APIRouter(tags=["positions"])


@router.get("/api/positions")
async def list_positions(user_id: str, status: Optional[str] = PositionStatus.OPEN):
    """A user's positions; status=all for open and closed"""
    if status == "all":
        status = None
    elif status not in (PositionStatus.OPEN, PositionStatus.CLOSED):
        return error_response(f"Invalid status: {status}", 400)
    return [p.to_dict() for p in get_ledger().list_user_positions(user_id, status=status)]


@router.post("/api/positions/{position_id}/close")
async def close_position(position_id: str):
    try:
        position = get_ledger().close_position(position_id)
    except PositionNotFound as e:
        return error_response(str(e), 404)
    return position.to_dict()


@router.get("/api/trades")
async def list_trades(user_id: str, limit: int = 20):
    return [t.to_dict() for t in get_ledger().list_user_trades(user_id, limit=limit)]
