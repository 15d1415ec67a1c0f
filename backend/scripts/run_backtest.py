#!/usr/bin/env python3
"""
Backtest Script for Options Strategy Instances

Replays historical underlying candles through the live decision path and
prints the backtest report. Candle files are CSV or JSON with
date/open/high/low/close[/volume] columns.

Usage:
    python scripts/run_backtest.py --preset ic-nifty --data NIFTY=data/NIFTY_50/day.csv --interval day
    python scripts/run_backtest.py --preset ic-nifty --preset ic-sensex \\
        --data NIFTY=data/nifty.csv --data SENSEX=data/sensex.csv --output data/backtest_iron_condor.json
    python scripts/run_backtest.py --config instances.json --data NIFTY=nifty_1m.csv --ledger ledger.json
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Dict, List

import pandas as pd

# Setup path
SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
BACKEND_DIR = os.path.dirname(SCRIPT_DIR)
sys.path.insert(0, BACKEND_DIR)

from loguru import logger

from hedgeflow.backtest.engine import BacktestConfig, BacktestHarness
from hedgeflow.core.config import LoggingSettings, load_instance_configs
from hedgeflow.core.exceptions import HedgeflowError
from hedgeflow.core.logging import setup_logging
from hedgeflow.schemas.broker import Candle
from hedgeflow.strategies.presets import preset_configs


def load_candles(path: str) -> List[Candle]:
    """Load candles from CSV or JSON into Candle models, sorted by date."""
    if path.lower().endswith(".json"):
        df = pd.read_json(path)
    else:
        df = pd.read_csv(path)
    df.columns = [c.strip().lower() for c in df.columns]
    missing = {"date", "open", "high", "low", "close"} - set(df.columns)
    if missing:
        raise ValueError(f"{path}: missing columns {sorted(missing)}")

    df["date"] = pd.to_datetime(df["date"])
    if getattr(df["date"].dt, "tz", None) is not None:
        df["date"] = df["date"].dt.tz_localize(None)
    if "volume" not in df.columns:
        df["volume"] = 0
    df = df.dropna(subset=["open", "high", "low", "close"]).sort_values("date")

    return [
        Candle(
            date=row.date.to_pydatetime(),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=int(row.volume or 0),
        )
        for row in df.itertuples(index=False)
    ]


def parse_data_args(pairs: List[str]) -> Dict[str, str]:
    data = {}
    for pair in pairs:
        instrument, sep, path = pair.partition("=")
        if not sep or not instrument or not path:
            raise ValueError(f"--data expects INSTRUMENT=PATH, got {pair!r}")
        data[instrument.upper()] = path
    return data


async def main():
    parser = argparse.ArgumentParser(description="Backtest options strategy instances")
    parser.add_argument("--preset", action="append", default=[], help="Preset instance name (repeatable)")
    parser.add_argument("--config", type=str, help="JSON file with a list of instance configs")
    parser.add_argument("--data", action="append", default=[], help="INSTRUMENT=PATH candle file (repeatable)")
    parser.add_argument("--interval", choices=["minute", "day"], default="minute", help="Candle interval")
    parser.add_argument("--pricing", choices=["decay", "black_scholes"], default="decay", help="Premium model")
    parser.add_argument("--iv", type=float, default=0.15, help="Implied volatility as a decimal (default: 0.15)")
    parser.add_argument("--capital", type=float, default=100000.0, help="Capital for returns and Sharpe")
    parser.add_argument("--output", type=str, help="Write stats and ledger JSON here")
    parser.add_argument("--ledger", type=str, help="Write the canonical ledger JSON here")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    args = parser.parse_args()

    setup_logging(LoggingSettings(level="DEBUG" if args.verbose else "INFO", json_logs=False))

    try:
        configs = list(preset_configs(args.preset).values())
        if args.config:
            configs.extend(load_instance_configs(args.config))
        if not configs:
            parser.error("at least one --preset or --config is required")

        data = parse_data_args(args.data)
        if not data:
            parser.error("at least one --data INSTRUMENT=PATH is required")
        candles = {instrument: load_candles(path) for instrument, path in data.items()}
        for instrument, rows in candles.items():
            logger.info(f"Loaded {len(rows)} {instrument} candles")

        harness = BacktestHarness(
            configs,
            BacktestConfig(capital=args.capital, iv=args.iv, pricing=args.pricing, interval=args.interval),
        )
        result = await harness.run(candles)
    except (HedgeflowError, ValueError, OSError) as e:
        logger.error(f"Backtest failed: {e}")
        sys.exit(1)

    print(result.report())
    if args.output:
        Path(args.output).write_text(result.to_json(), encoding="utf-8")
        logger.info(f"Results saved: {args.output}")
    if args.ledger:
        Path(args.ledger).write_text(result.ledger_json(), encoding="utf-8")
        logger.info(f"Ledger saved: {args.ledger}")


if __name__ == "__main__":
    asyncio.run(main())
