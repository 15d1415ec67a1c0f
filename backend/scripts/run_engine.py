#!/usr/bin/env python3
"""
Engine Runner

Starts the trading desk with the minute scheduler against Zerodha Kite.
In PAPER mode quotes come from Kite and orders go to the in-process
PaperBroker; in LIVE mode both go to Kite.

Usage:
    python scripts/run_engine.py --preset ic-nifty --preset ic-sensex
    python scripts/run_engine.py --config instances.json --mode LIVE
"""

import argparse
import asyncio
import os
import signal
import sys

# Setup path
SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
BACKEND_DIR = os.path.dirname(SCRIPT_DIR)
sys.path.insert(0, BACKEND_DIR)

from loguru import logger

from hedgeflow.brokers.paper import PaperBroker
from hedgeflow.brokers.zerodha import KiteBroker
from hedgeflow.core.config import get_settings, load_instance_configs
from hedgeflow.core.events import (
    CompositeNotificationChannel,
    InMemoryNotificationChannel,
    RedisStreamNotificationChannel,
)
from hedgeflow.core.exceptions import HedgeflowError
from hedgeflow.core.logging import setup_logging
from hedgeflow.db.session import create_engine, create_session_factory, init_db
from hedgeflow.execution.orchestrator import create_desk
from hedgeflow.services.persistence import SqlPersistenceSink, WriteBehindQueue
from hedgeflow.services.scheduler import SchedulerService
from hedgeflow.strategies.presets import preset_configs


async def main():
    parser = argparse.ArgumentParser(description="Run the options strategy engine")
    parser.add_argument("--preset", action="append", default=[], help="Preset instance name (repeatable)")
    parser.add_argument("--config", type=str, help="JSON file with a list of instance configs")
    parser.add_argument("--mode", choices=["LIVE", "PAPER"], help="Override TRADING_MODE")
    args = parser.parse_args()

    settings = get_settings()
    setup_logging(settings.logging)
    mode = args.mode or settings.trading.mode
    if mode == "BACKTEST":
        logger.error("BACKTEST mode runs through scripts/run_backtest.py")
        sys.exit(1)

    try:
        configs = list(preset_configs(args.preset).values())
        config_path = args.config or settings.STRATEGY_CONFIG_PATH
        if config_path:
            configs.extend(load_instance_configs(config_path))
    except HedgeflowError as e:
        logger.error(f"Invalid strategy configuration: {e.message}")
        sys.exit(1)
    if not configs:
        parser.error("at least one --preset or --config is required")

    if not settings.kite.is_configured:
        logger.error("KITE_API_KEY and KITE_ACCESS_TOKEN must be set")
        sys.exit(1)
    kite = KiteBroker(settings.kite)
    gateway = kite if mode == "LIVE" else PaperBroker()

    channels = [InMemoryNotificationChannel(max_events=1000)]
    if settings.notification.enabled:
        redis_channel = RedisStreamNotificationChannel.from_settings(settings.notification)
        await redis_channel.connect()
        channels.append(redis_channel)
    notifier = CompositeNotificationChannel(channels)

    persistence = None
    db_engine = None
    if settings.persistence.enabled:
        db_engine = create_engine(settings.persistence.database_url)
        await init_db(db_engine)
        sink = SqlPersistenceSink(create_session_factory(db_engine))
        persistence = WriteBehindQueue.from_settings(sink, settings.persistence)
        persistence.start()

    desk = create_desk(configs, kite, gateway, notifier, persistence, settings.trading)
    scheduler = SchedulerService(desk)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    logger.info(f"Starting {mode} engine with {', '.join(desk.engines)}")
    scheduler.start()
    try:
        await stop.wait()
    finally:
        await scheduler.stop()
        if persistence is not None:
            await persistence.stop()
        if db_engine is not None:
            await db_engine.dispose()
        await notifier.close()
        open_positions = [e.config.id for e in desk.engines.values() if e.position is not None]
        if open_positions:
            logger.warning(f"Shutting down with open positions: {', '.join(open_positions)}")
        logger.info("Engine stopped")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
