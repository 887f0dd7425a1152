"""
Tests for the SubscriptionRegistry.
"""
import pytest
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from subscription_registry import (
    DEFAULT_PARAMS,
    InvalidSubscription,
    SubscriptionExists,
    SubscriptionNotFound,
    SubscriptionStatus,
)
from trader_registry import TraderNotFound


class TestCreate:

    def test_defaults(self, subscriptions, trader):
        sub = subscriptions.create("user-1", trader.id)

        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.allocation == DEFAULT_PARAMS["allocation"]
        assert sub.max_trade_size == 200
        assert sub.risk_multiplier == 1.0
        assert sub.max_open_positions == 5
        assert sub.stop_loss == 20
        assert subscriptions.get(sub.id) == sub

    def test_custom_params(self, subscriptions, trader):
        sub = subscriptions.create("user-1", trader.id, allocation="250", risk_multiplier=0.5)

        assert sub.allocation == 250.0
        assert sub.risk_multiplier == 0.5

    @pytest.mark.parametrize("params", [
        {"allocation": 0},
        {"max_trade_size": -5},
        {"risk_multiplier": 0},
        {"max_open_positions": 0},
        {"stop_loss": 150},
        {"allocation": "lots"},
        {"leverage": 10},
    ])
    def test_invalid_params(self, subscriptions, trader, params):
        with pytest.raises(InvalidSubscription):
            subscriptions.create("user-1", trader.id, **params)

    def test_unknown_trader(self, subscriptions):
        with pytest.raises(TraderNotFound):
            subscriptions.create("user-1", "no-such-trader")

    def test_one_live_subscription_per_trader(self, subscriptions, trader):
        subscriptions.create("user-1", trader.id)

        with pytest.raises(SubscriptionExists):
            subscriptions.create("user-1", trader.id)

        # Other users are unaffected
        subscriptions.create("user-2", trader.id)

    def test_paused_still_blocks_duplicate(self, subscriptions, trader):
        sub = subscriptions.create("user-1", trader.id)
        subscriptions.update(sub.id, status=SubscriptionStatus.PAUSED)

        with pytest.raises(SubscriptionExists):
            subscriptions.create("user-1", trader.id)

    def test_resubscribe_after_stop(self, subscriptions, trader):
        first = subscriptions.create("user-1", trader.id)
        subscriptions.update(first.id, status=SubscriptionStatus.STOPPED)

        second = subscriptions.create("user-1", trader.id)

        assert second.id != first.id
        assert [s.id for s in subscriptions.list_for_user("user-1")] == [second.id, first.id]


class TestUpdate:

    def test_pause_and_resume(self, subscriptions, trader):
        sub = subscriptions.create("user-1", trader.id)

        paused = subscriptions.update(sub.id, status=SubscriptionStatus.PAUSED)
        assert paused.status == SubscriptionStatus.PAUSED
        assert subscriptions.list_active_subscriptions(trader.id) == []

        resumed = subscriptions.update(sub.id, status=SubscriptionStatus.ACTIVE)
        assert resumed.status == SubscriptionStatus.ACTIVE

    def test_partial_param_update(self, subscriptions, trader):
        sub = subscriptions.create("user-1", trader.id)

        updated = subscriptions.update(sub.id, max_trade_size=50)

        assert updated.max_trade_size == 50
        assert updated.allocation == sub.allocation
        assert updated.updated_at >= sub.updated_at

    def test_stopped_is_terminal(self, subscriptions, trader):
        sub = subscriptions.create("user-1", trader.id)
        subscriptions.update(sub.id, status=SubscriptionStatus.STOPPED)

        with pytest.raises(InvalidSubscription):
            subscriptions.update(sub.id, status=SubscriptionStatus.ACTIVE)
        with pytest.raises(InvalidSubscription):
            subscriptions.update(sub.id, allocation=10)

        assert subscriptions.get(sub.id).status == SubscriptionStatus.STOPPED

    def test_invalid_status(self, subscriptions, trader):
        sub = subscriptions.create("user-1", trader.id)
        with pytest.raises(InvalidSubscription):
            subscriptions.update(sub.id, status="deleted")

    def test_unknown_subscription(self, subscriptions):
        with pytest.raises(SubscriptionNotFound):
            subscriptions.update("missing", status=SubscriptionStatus.PAUSED)


class TestQueries:

    def test_active_subscriptions_in_start_order(self, subscriptions, trader):
        ids = [subscriptions.create(f"user-{i}", trader.id).id for i in range(3)]

        assert [s.id for s in subscriptions.list_active_subscriptions(trader.id)] == ids

    def test_traders_with_active_subscriptions(self, subscriptions, traders, trader):
        other = traders.upsert_trader("0x2222222222222222222222222222222222222222", username="Other")
        idle = traders.upsert_trader("0x3333333333333333333333333333333333333333", username="Idle")
        subscriptions.create("user-1", trader.id)
        subscriptions.create("user-2", trader.id)
        paused = subscriptions.create("user-1", idle.id)
        subscriptions.update(paused.id, status=SubscriptionStatus.PAUSED)
        subscriptions.create("user-3", other.id)

        assert subscriptions.list_traders_with_active_subscriptions() == [trader.id, other.id]

    def test_count_open_positions(self, subscriptions, ledger, trader):
        sub = subscriptions.create("user-1", trader.id)
        assert subscriptions.count_open_positions("user-1") == 0

        ledger.record_copy_trade(
            user_id="user-1", trader_id=trader.id, subscription_id=sub.id,
            market_id="m1", market_title="M1", outcome="Yes", size=10, entry_price=0.5,
        )

        assert subscriptions.count_open_positions("user-1") == 1
