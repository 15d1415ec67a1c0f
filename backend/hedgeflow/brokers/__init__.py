"""
Broker Integrations
Hedgeflow Options Engine

Market data and order execution behind two interfaces:
    - MarketFeed: LTP, option chains, historical candles
    - ExecutionGateway: place / cancel / status

Implementations:
    - KiteBroker: Zerodha Kite Connect (live)
    - PaperBroker: in-process fills for paper trading and backtests
"""

from hedgeflow.brokers.base import ExecutionGateway, MarketFeed
from hedgeflow.brokers.paper import GatewayCall, PaperBroker
from hedgeflow.brokers.zerodha import KiteBroker


__all__ = [
    "MarketFeed",
    "ExecutionGateway",
    "KiteBroker",
    "PaperBroker",
    "GatewayCall",
]
