"""
Tests for the trading desk registry and dispatcher.
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from conftest import MONDAY
from hedgeflow.backtest.simulator import SimulatedOptionFeed
from hedgeflow.brokers.paper import PaperBroker
from hedgeflow.core.config import TradingSettings
from hedgeflow.core.exceptions import ConfigurationError
from hedgeflow.execution.orchestrator import TradingDesk, create_desk


@pytest.fixture
def feed():
    feed = SimulatedOptionFeed()
    feed.add_underlying("NIFTY", "NSE:NIFTY 50", "NFO", 50, 1, [])
    feed.update("NIFTY", MONDAY, 24000.0)
    return feed


@pytest.fixture
def desk(feed):
    return TradingDesk(feed, PaperBroker(price_source=feed.premium), settle_delay=0)


class TestRegistry:
    """Tests for registering strategy instances."""

    def test_same_instrument_shares_lock(self, desk, spread_config, single_leg_config, delta_neutral_config):
        a = desk.add_instance(spread_config)
        b = desk.add_instance(single_leg_config)
        c = desk.add_instance(delta_neutral_config)
        assert a._lock is b._lock
        assert a._lock is not c._lock
        assert desk.instruments == ["NIFTY", "SENSEX"]

    def test_duplicate_id_rejected(self, desk, spread_config):
        desk.add_instance(spread_config)
        with pytest.raises(ConfigurationError):
            desk.add_instance(spread_config)

    def test_invalid_raw_config_left_out(self, desk):
        engine = desk.add_raw_instance({
            "id": "broken",
            "kind": "spread",
            "instrument": "NIFTY",
            "underlying_symbol": "NSE:NIFTY 50",
            "lot_size": 0,
            "strike_step": 50,
        })
        assert engine is None
        assert "broken" not in desk.engines

    def test_create_desk_applies_settings(self, feed, spread_config):
        trading = TradingSettings(settle_delay_seconds=0.25, quote_timeout_seconds=2.0)
        desk = create_desk([spread_config], feed=feed, gateway=PaperBroker(), trading=trading)
        engine = desk.engines["ic-test"]
        assert engine.sequencer.settle_delay == 0.25
        assert engine.quote_timeout == 2.0
        assert desk.market_open == trading.market_open_time


class TestDispatch:
    """Tests for tick routing."""

    @pytest.mark.asyncio
    async def test_tick_opens_position(self, desk, spread_config):
        desk.add_instance(spread_config)
        await desk.tick(MONDAY)
        status = desk.get_status()
        assert status["open_positions"] == 1
        assert status["instances"]["ic-test"]["status"] == "ACTIVE"

    @pytest.mark.asyncio
    async def test_failure_isolated_to_engine(self, desk, spread_config):
        broken = desk.add_instance(spread_config.model_copy(update={"id": "ic-broken"}))
        healthy = desk.add_instance(spread_config)
        broken.check_entry = AsyncMock(side_effect=RuntimeError("boom"))

        await desk.tick(MONDAY)
        broken.check_entry.assert_awaited_once()
        assert healthy.position is not None

    @pytest.mark.asyncio
    async def test_instrument_filter(self, desk, spread_config):
        engine = desk.add_instance(spread_config)
        engine.check_entry = AsyncMock()
        await desk.tick(MONDAY, ["SENSEX"])
        engine.check_entry.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_close_all(self, desk, spread_config):
        desk.add_instance(spread_config)
        await desk.tick(MONDAY)
        await desk.close_all(MONDAY + timedelta(hours=1), "End of Data")

        status = desk.get_status()
        assert status["open_positions"] == 0
        assert desk.engines["ic-test"].ledger[0].close_reason == "End of Data"
