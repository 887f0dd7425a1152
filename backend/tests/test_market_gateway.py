"""
Tests for the Market Data Gateway.

Tests cover:
- Outcome and market payload normalization
- Listing fallback on any failure
- Strict errors for market lookup and order placement
"""
import pytest
import aiohttp
import json
import os
import sys
from unittest.mock import patch, AsyncMock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from market_gateway import (
    MarketGateway,
    MarketNotFound,
    MarketParseError,
    MarketUnavailable,
    InvalidOrder,
    OrderPlacementError,
    FALLBACK_MARKETS,
    parse_market,
    parse_outcomes,
)


GAMMA_MARKET = {
    "id": "253591",
    "question": "Will Bitcoin reach $100,000 by end of 2025?",
    "description": "Resolves Yes on any major exchange print.",
    "outcomes": '["Yes", "No"]',
    "volume": "4850000.5",
    "liquidity": 1290000,
    "endDate": "2025-12-31T23:59:59Z",
    "clobTokenIds": '["111", "222"]',
}


class TestOutcomeNormalization:

    def test_json_encoded_string(self):
        assert parse_outcomes('["Up", "Down"]') == ["Up", "Down"]

    def test_real_list(self):
        assert parse_outcomes(["Trump", "Harris"]) == ["Trump", "Harris"]

    def test_missing_or_garbage_defaults_to_yes_no(self):
        assert parse_outcomes(None) == ["Yes", "No"]
        assert parse_outcomes("not json") == ["Yes", "No"]
        assert parse_outcomes("[]") == ["Yes", "No"]
        assert parse_outcomes('{"a": 1}') == ["Yes", "No"]


class TestParseMarket:

    def test_gamma_payload(self):
        market = parse_market(GAMMA_MARKET)

        assert market.id == "253591"
        assert market.title.startswith("Will Bitcoin")
        assert market.outcomes == ["Yes", "No"]
        assert market.volume == 4850000.5
        assert market.end_date == "2025-12-31T23:59:59Z"
        assert market.clob_token_ids == ["111", "222"]

    def test_alternate_field_names(self):
        market = parse_market({"condition_id": "0xc0nd", "title": "Fed cuts?", "volumeNum": 12})
        assert market.id == "0xc0nd"
        assert market.title == "Fed cuts?"
        assert market.volume == 12.0

    def test_unrecognized_payload_raises(self):
        with pytest.raises(MarketParseError):
            parse_market({"foo": "bar"})
        with pytest.raises(MarketParseError):
            parse_market(["not", "a", "dict"])


class TestListMarkets:

    @pytest.mark.asyncio
    async def test_success(self, mock_session, make_response):
        mock_session.request.return_value = make_response(200, [GAMMA_MARKET, {"junk": True}])
        gateway = MarketGateway(session=mock_session)

        markets = await gateway.list_markets(limit=5)

        # Unparseable rows are dropped, not fatal
        assert [m.id for m in markets] == ["253591"]
        _, kwargs = mock_session.request.call_args
        assert kwargs["params"] == {"limit": "5", "active": "true", "closed": "false"}

    @pytest.mark.asyncio
    async def test_non_200_falls_back(self, mock_session, make_response):
        mock_session.request.return_value = make_response(404)
        gateway = MarketGateway(session=mock_session)

        markets = await gateway.list_markets(limit=2)

        assert [m.id for m in markets] == [m.id for m in FALLBACK_MARKETS[:2]]

    @pytest.mark.asyncio
    async def test_network_error_falls_back(self, mock_session):
        mock_session.request.side_effect = aiohttp.ClientError("connection reset")
        gateway = MarketGateway(session=mock_session)

        with patch("retry.asyncio.sleep", new=AsyncMock()):
            markets = await gateway.list_markets()

        assert len(markets) == len(FALLBACK_MARKETS)
        # Retried before giving up
        assert mock_session.request.call_count == 4

    @pytest.mark.asyncio
    async def test_non_list_payload_falls_back(self, mock_session, make_response):
        mock_session.request.return_value = make_response(200, {"error": "rate limited"})
        gateway = MarketGateway(session=mock_session)

        markets = await gateway.list_markets()

        assert len(markets) == len(FALLBACK_MARKETS)

    @pytest.mark.asyncio
    async def test_fallback_is_a_copy(self, mock_session, make_response):
        mock_session.request.return_value = make_response(404)
        gateway = MarketGateway(session=mock_session)

        markets = await gateway.list_markets()
        markets[0].title = "mutated"

        assert FALLBACK_MARKETS[0].title != "mutated"


class TestGetMarket:

    @pytest.mark.asyncio
    async def test_found(self, mock_session, make_response):
        mock_session.request.return_value = make_response(200, GAMMA_MARKET)
        gateway = MarketGateway(session=mock_session)

        market = await gateway.get_market("253591")

        assert market.id == "253591"
        args, _ = mock_session.request.call_args
        assert args[1].endswith("/markets/253591")

    @pytest.mark.asyncio
    async def test_not_found_raises(self, mock_session, make_response):
        mock_session.request.return_value = make_response(404)
        gateway = MarketGateway(session=mock_session)

        with pytest.raises(MarketNotFound):
            await gateway.get_market("missing")

    @pytest.mark.asyncio
    async def test_unparseable_raises_not_found(self, mock_session, make_response):
        mock_session.request.return_value = make_response(200, {"unexpected": 1})
        gateway = MarketGateway(session=mock_session)

        with pytest.raises(MarketNotFound):
            await gateway.get_market("weird")

    @pytest.mark.asyncio
    async def test_server_error_is_unavailable_not_missing(self, mock_session, make_response):
        mock_session.request.return_value = make_response(503)
        gateway = MarketGateway(session=mock_session)

        with patch("retry.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(MarketUnavailable, match="HTTP 503"):
                await gateway.get_market("253591")

    @pytest.mark.asyncio
    async def test_network_error_is_unavailable(self, mock_session):
        mock_session.request.side_effect = aiohttp.ClientConnectionError("refused")
        gateway = MarketGateway(session=mock_session)

        with patch("retry.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(MarketUnavailable):
                await gateway.get_market("253591")


class TestOrderBookAndPrice:

    @pytest.mark.asyncio
    async def test_order_book(self, mock_session, make_response):
        book = {"bids": [{"price": "0.48", "size": "100"}], "asks": [{"price": "0.52", "size": "80"}]}
        mock_session.request.return_value = make_response(200, book)
        gateway = MarketGateway(session=mock_session)

        result = await gateway.get_order_book("111")

        assert result["bids"] == book["bids"]
        assert result["asks"] == book["asks"]

    @pytest.mark.asyncio
    async def test_order_book_failure_is_empty(self, mock_session, make_response):
        mock_session.request.return_value = make_response(404)
        gateway = MarketGateway(session=mock_session)

        assert await gateway.get_order_book("111") == {"bids": [], "asks": []}

    @pytest.mark.asyncio
    async def test_price(self, mock_session, make_response):
        mock_session.request.return_value = make_response(200, {"price": "0.53"})
        gateway = MarketGateway(session=mock_session)

        assert await gateway.get_price("111") == 0.53

    @pytest.mark.asyncio
    async def test_price_failure_is_none(self, mock_session, make_response):
        mock_session.request.return_value = make_response(200, ValueError("bad json"))
        gateway = MarketGateway(session=mock_session)

        assert await gateway.get_price("111") is None


class TestPlaceOrder:

    @pytest.mark.asyncio
    async def test_missing_credentials_raises(self, mock_session):
        gateway = MarketGateway(session=mock_session)

        with pytest.raises(OrderPlacementError, match="check API credentials"):
            await gateway.place_order("111", "BUY", 0.5, 10)
        mock_session.request.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("side,price,size", [
        ("HOLD", 0.5, 10),
        ("BUY", 1.5, 10),
        ("BUY", 0.5, 0),
        ("SELL", "abc", 10),
    ])
    async def test_invalid_order_rejected(self, mock_session, credentials, side, price, size):
        gateway = MarketGateway(credentials=credentials, session=mock_session)

        with pytest.raises(InvalidOrder):
            await gateway.place_order("111", side, price, size)

    @pytest.mark.asyncio
    async def test_signed_order_sent(self, mock_session, make_response, credentials):
        mock_session.request.return_value = make_response(201, {"orderID": "abc123", "status": "live"})
        gateway = MarketGateway(credentials=credentials, session=mock_session)

        order = await gateway.place_order("111", "buy", 0.5, 10)

        assert order["orderID"] == "abc123"
        args, kwargs = mock_session.request.call_args
        assert args[0] == "POST"
        assert args[1].endswith("/orders")
        assert json.loads(kwargs["data"]) == {
            "token_id": "111", "side": "BUY", "price": "0.5", "size": "10.0", "type": "GTC",
        }
        assert kwargs["headers"]["POLY_API_KEY"] == "test-key"

    @pytest.mark.asyncio
    async def test_rejected_order_is_not_retried(self, mock_session, make_response, credentials):
        mock_session.request.return_value = make_response(503, text="busy")
        gateway = MarketGateway(credentials=credentials, session=mock_session)

        with pytest.raises(OrderPlacementError):
            await gateway.place_order("111", "SELL", 0.4, 5)
        assert mock_session.request.call_count == 1
