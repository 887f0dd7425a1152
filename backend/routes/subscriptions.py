"""
Copy subscription routes.

User identity comes from the caller (the wallet-auth layer in front of
this service); it is taken as given here.
"""

import logging

from fastapi import APIRouter

from subscription_registry import (
    SubscriptionExists,
    SubscriptionNotFound,
    InvalidSubscription,
)
from trader_registry import TraderNotFound
from .deps import error_response, get_subscriptions

logger = logging.getLogger(__name__)

router = APIRouter(tags=["subscriptions"])


@router.get("/api/subscriptions")
async def list_subscriptions(user_id: str):
    return [s.to_dict() for s in get_subscriptions().list_for_user(user_id)]


@router.post("/api/subscriptions")
async def create_subscription(body: dict):
    """Start copying a trader"""
    params = dict(body)
    user_id = params.pop("user_id", None)
    trader_id = params.pop("trader_id", None)
    if not user_id or not trader_id:
        return error_response("user_id and trader_id are required", 400)

    try:
        subscription = get_subscriptions().create(user_id, trader_id, **params)
    except InvalidSubscription as e:
        return error_response(str(e), 400)
    except TraderNotFound as e:
        return error_response(str(e), 404)
    except SubscriptionExists as e:
        return error_response(str(e), 409)

    return subscription.to_dict()


@router.patch("/api/subscriptions/{subscription_id}")
async def update_subscription(subscription_id: str, body: dict):
    """Pause, resume, stop, or change risk parameters"""
    params = dict(body)
    status = params.pop("status", None)

    try:
        subscription = get_subscriptions().update(subscription_id, status=status, **params)
    except SubscriptionNotFound as e:
        return error_response(str(e), 404)
    except InvalidSubscription as e:
        return error_response(str(e), 400)
    except SubscriptionExists as e:
        return error_response(str(e), 409)

    return subscription.to_dict()
