"""
Tests for the Zerodha Kite adapter with a mocked KiteConnect client.
"""

from datetime import date
from unittest.mock import MagicMock

import pytest
from kiteconnect.exceptions import KiteException

from hedgeflow.brokers.zerodha import KiteBroker
from hedgeflow.core.config import KiteSettings
from hedgeflow.core.exceptions import ExternalFeedError, OrderExecutionError
from hedgeflow.schemas.broker import OptionType, OrderRequest, OrderSide, OrderStatus, OrderType


@pytest.fixture
def kite():
    client = MagicMock()
    client.VARIETY_REGULAR = "regular"
    client.VALIDITY_DAY = "DAY"
    return client


@pytest.fixture
def broker(kite):
    return KiteBroker(KiteSettings(api_key="key", access_token="token"), kite=kite)


class TestKiteFeed:
    """Tests for market data calls."""

    @pytest.mark.asyncio
    async def test_ltp(self, broker, kite):
        kite.ltp.return_value = {"NSE:NIFTY 50": {"last_price": 24012.5}}
        assert await broker.get_ltp(["NSE:NIFTY 50"]) == {"NSE:NIFTY 50": 24012.5}

    @pytest.mark.asyncio
    async def test_ltp_failure_is_feed_error(self, broker, kite):
        kite.ltp.side_effect = KiteException("Too many requests")
        with pytest.raises(ExternalFeedError):
            await broker.get_ltp(["NSE:NIFTY 50"])

    @pytest.mark.asyncio
    async def test_option_chain_filtered_and_cached(self, broker, kite):
        kite.instruments.return_value = [
            {"name": "NIFTY", "instrument_type": "CE", "tradingsymbol": "NIFTY2510724150CE",
             "strike": 24150, "expiry": date(2025, 1, 7), "instrument_token": 11},
            {"name": "NIFTY", "instrument_type": "FUT", "tradingsymbol": "NIFTY25JANFUT",
             "strike": 0, "expiry": date(2025, 1, 30), "instrument_token": 12},
            {"name": "BANKNIFTY", "instrument_type": "PE", "tradingsymbol": "BANKNIFTY2510851000PE",
             "strike": 51000, "expiry": date(2025, 1, 8), "instrument_token": 13},
        ]
        chain = await broker.get_option_chain("NFO", "NIFTY")
        await broker.get_option_chain("NFO", "NIFTY")

        assert len(chain) == 1
        assert chain[0].option_type == OptionType.CALL
        assert chain[0].strike == 24150.0
        kite.instruments.assert_called_once_with("NFO")


class TestKiteOrders:
    """Tests for the execution gateway calls."""

    @pytest.mark.asyncio
    async def test_stop_order_params(self, broker, kite):
        kite.place_order.return_value = 250107000123
        request = OrderRequest(
            symbol="NIFTY2510724000CE",
            exchange="NFO",
            quantity=20,
            side=OrderSide.SELL,
            order_type=OrderType.STOP_LOSS_MARKET,
            trigger_price=187.5,
            tag="scalp-nifty-trailing-stop",
        )
        assert await broker.place_order(request) == "250107000123"

        params = kite.place_order.call_args.kwargs
        assert params["order_type"] == "SL-M"
        assert params["trigger_price"] == 187.5
        assert "price" not in params
        assert params["tag"] == "scalp-nifty-trailing"

    @pytest.mark.asyncio
    async def test_rejection_is_execution_error(self, broker, kite):
        kite.place_order.side_effect = KiteException("Insufficient margin")
        with pytest.raises(OrderExecutionError):
            await broker.place_order(OrderRequest(symbol="X", exchange="NFO", quantity=75, side=OrderSide.SELL))

    @pytest.mark.asyncio
    async def test_cancel_of_terminal_order_swallowed(self, broker, kite):
        kite.cancel_order.side_effect = KiteException("Order is already COMPLETE")
        await broker.cancel_order("1")

    @pytest.mark.asyncio
    async def test_cancel_failure_raises(self, broker, kite):
        kite.cancel_order.side_effect = KiteException("Gateway timeout")
        with pytest.raises(OrderExecutionError):
            await broker.cancel_order("1")

    @pytest.mark.asyncio
    async def test_status_maps_trigger_pending(self, broker, kite):
        kite.order_history.return_value = [
            {"status": "PUT ORDER REQ RECEIVED"},
            {"status": "TRIGGER PENDING", "filled_quantity": 0, "average_price": 0},
        ]
        status = await broker.get_order_status("1")
        assert status.status == OrderStatus.OPEN
        assert status.filled_quantity == 0
