"""
Tests for settings and strategy instance configuration.
"""

import json
from datetime import time

import pytest

from hedgeflow.core.config import (
    PersistenceSettings,
    StrategyKind,
    TradingSettings,
    build_instance_config,
    default_trail_table,
    load_instance_configs,
)
from hedgeflow.core.exceptions import ConfigurationError, ErrorCategory
from hedgeflow.strategies.presets import PRESETS, preset_configs
from hedgeflow.strategies.registry import StrategyRegistry


def raw(**overrides):
    data = dict(
        id="ic-raw",
        kind="spread",
        instrument="NIFTY",
        underlying_symbol="NSE:NIFTY 50",
        lot_size=75,
        strike_step=50,
    )
    data.update(overrides)
    return data


class TestSettings:
    """Tests for environment-driven settings."""

    def test_trading_defaults(self):
        trading = TradingSettings()
        assert trading.mode == "PAPER"
        assert trading.market_open_time == time(9, 15)
        assert trading.settle_delay_seconds == 1.0

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("PERSIST_PNL_INTERVAL_SECONDS", "60")
        monkeypatch.setenv("PERSIST_PNL_MIN_CHANGE", "25")
        persistence = PersistenceSettings()
        assert persistence.pnl_interval_seconds == 60
        assert persistence.pnl_min_change == 25.0


class TestTrailTable:
    """Tests for the default trailing-lock table."""

    def test_steps(self):
        table = default_trail_table()
        assert (table[0].trigger, table[0].lock) == (1000, 250)
        assert (table[1].trigger, table[1].lock) == (2000, 1000)
        assert (table[2].trigger, table[2].lock) == (3000, 1750)


class TestInstanceConfig:
    """Tests for StrategyInstanceConfig validation."""

    def test_valid_config(self):
        cfg = build_instance_config(raw())
        assert cfg.kind == StrategyKind.SPREAD
        assert cfg.entry_weekdays == [0]
        assert cfg.exit_weekday == "expiry"

    def test_missing_field_raises_configuration_error(self):
        data = raw()
        del data["lot_size"]
        with pytest.raises(ConfigurationError) as exc:
            build_instance_config(data)
        assert exc.value.category == ErrorCategory.VALIDATION
        assert exc.value.details["errors"]

    @pytest.mark.parametrize("overrides", [
        dict(entry_start=time(10, 0), entry_end=time(9, 30)),
        dict(entry_weekdays=[7]),
        dict(max_rolls=1, max_system_rolls=2),
        dict(roll_expansion=5.0, exit_expansion=4.0),
        dict(trail_table=[{"trigger": 2000, "lock": 500}, {"trigger": 1000, "lock": 250}]),
        dict(lot_size=0),
        dict(kind="butterfly"),
    ])
    def test_invalid_configs(self, overrides):
        with pytest.raises(ConfigurationError):
            build_instance_config(raw(**overrides))

    def test_exit_day(self):
        expiry = build_instance_config(raw(expiry_weekday=1))
        assert expiry.is_exit_day(1)
        assert not expiry.is_exit_day(0)

        monday = build_instance_config(raw(exit_weekday=0))
        assert monday.is_exit_day(0)
        assert not monday.is_exit_day(1)

        daily = build_instance_config(raw(exit_weekday="daily"))
        assert all(daily.is_exit_day(d) for d in range(5))


class TestLoadInstanceConfigs:
    """Tests for loading instance configs from JSON."""

    def test_load(self, tmp_path):
        path = tmp_path / "instances.json"
        path.write_text(json.dumps([raw(id="a"), raw(id="b", instrument="SENSEX")]))
        configs = load_instance_configs(path)
        assert [c.id for c in configs] == ["a", "b"]

    def test_duplicate_ids_rejected(self, tmp_path):
        path = tmp_path / "instances.json"
        path.write_text(json.dumps([raw(id="a"), raw(id="a")]))
        with pytest.raises(ConfigurationError):
            load_instance_configs(path)

    def test_not_a_list(self, tmp_path):
        path = tmp_path / "instances.json"
        path.write_text(json.dumps(raw()))
        with pytest.raises(ConfigurationError):
            load_instance_configs(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_instance_configs(tmp_path / "missing.json")


class TestPresets:
    """Tests for preset instances."""

    def test_all_presets_valid_and_buildable(self):
        for name, factory in PRESETS.items():
            cfg = factory()
            assert cfg.id == name
            StrategyRegistry.create(cfg).validate()

    def test_preset_schedules(self):
        configs = preset_configs(["ic-nifty", "ic-sensex", "dn-sensex"])
        assert configs["ic-nifty"].entry_weekdays == [0]
        assert configs["ic-nifty"].expiry_weekday == 1
        assert configs["ic-sensex"].entry_weekdays == [2]
        assert configs["ic-sensex"].expiry_weekday == 3
        assert configs["dn-sensex"].entry_weekdays == [4]
        assert configs["dn-sensex"].is_exit_day(0)

    def test_overrides(self):
        cfg = PRESETS["ic-nifty"](target_credit=15.0)
        assert cfg.target_credit == 15.0

    def test_unknown_preset(self):
        with pytest.raises(ConfigurationError):
            preset_configs(["ic-bank"])
