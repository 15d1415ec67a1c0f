"""
Zerodha Kite Connect Adapter
Hedgeflow Options Engine

MarketFeed and ExecutionGateway backed by kiteconnect. The Kite client is
synchronous; every call is pushed to a worker thread so the engine's event
loop is never blocked.

Requires: pip install kiteconnect
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

from loguru import logger
from kiteconnect import KiteConnect
from kiteconnect.exceptions import KiteException

from hedgeflow.brokers.base import ExecutionGateway, MarketFeed
from hedgeflow.core.config import KiteSettings
from hedgeflow.core.exceptions import ExternalFeedError, OrderExecutionError
from hedgeflow.schemas.broker import (
    Candle,
    OptionContract,
    OptionType,
    OrderRequest,
    OrderResponse,
    OrderStatus,
    OrderType,
)


# Broker messages that mean the order is already terminal
_TERMINAL_CANCEL_HINTS = ("complete", "cancelled", "canceled", "rejected", "not found")


class KiteBroker(MarketFeed, ExecutionGateway):
    """Zerodha Kite Connect implementation of the feed and gateway interfaces."""

    ORDER_TYPE_MAP = {
        OrderType.MARKET: "MARKET",
        OrderType.LIMIT: "LIMIT",
        OrderType.STOP_LOSS: "SL",
        OrderType.STOP_LOSS_MARKET: "SL-M",
    }

    STATUS_MAP = {
        "COMPLETE": OrderStatus.COMPLETE,
        "CANCELLED": OrderStatus.CANCELLED,
        "REJECTED": OrderStatus.REJECTED,
        "OPEN": OrderStatus.OPEN,
        "TRIGGER PENDING": OrderStatus.OPEN,
    }

    def __init__(self, config: KiteSettings, kite: Optional[KiteConnect] = None):
        self.config = config
        self.kite = kite or KiteConnect(api_key=config.api_key)
        if config.access_token and kite is None:
            self.kite.set_access_token(config.access_token)
            logger.info("Kite client initialized with access token")
        self._instrument_cache: Dict[str, List[Dict[str, Any]]] = {}

    async def _call(self, fn, *args, **kwargs):
        return await asyncio.to_thread(fn, *args, **kwargs)

    # =========================================================================
    # Market data
    # =========================================================================

    async def get_ltp(self, symbols: List[str]) -> Dict[str, float]:
        if not symbols:
            return {}
        try:
            data = await self._call(self.kite.ltp, symbols)
        except KiteException as e:
            raise ExternalFeedError(f"LTP lookup failed: {e}", details={"symbols": symbols}) from e
        return {key: float(row["last_price"]) for key, row in data.items()}

    async def get_option_chain(self, exchange: str, underlying: str) -> List[OptionContract]:
        try:
            if exchange not in self._instrument_cache:
                self._instrument_cache[exchange] = await self._call(self.kite.instruments, exchange)
        except KiteException as e:
            raise ExternalFeedError(f"Instrument dump for {exchange} failed: {e}") from e

        chain = []
        for row in self._instrument_cache[exchange]:
            if row.get("name") != underlying or row.get("instrument_type") not in ("CE", "PE"):
                continue
            chain.append(OptionContract(
                symbol=row["tradingsymbol"],
                strike=float(row["strike"]),
                option_type=OptionType(row["instrument_type"]),
                expiry=row["expiry"],
                exchange=exchange,
                token=row.get("instrument_token"),
            ))
        logger.debug(f"Option chain {exchange}:{underlying} has {len(chain)} contracts")
        return chain

    async def get_historical_candles(
        self,
        token: int,
        interval: str,
        from_date: datetime,
        to_date: datetime,
    ) -> List[Candle]:
        try:
            rows = await self._call(self.kite.historical_data, token, from_date, to_date, interval)
        except KiteException as e:
            raise ExternalFeedError(f"Historical data for {token} failed: {e}") from e
        return [
            Candle(
                date=r["date"],
                open=r["open"],
                high=r["high"],
                low=r["low"],
                close=r["close"],
                volume=r.get("volume", 0),
            )
            for r in rows
        ]

    def clear_instrument_cache(self) -> None:
        self._instrument_cache.clear()

    # =========================================================================
    # Orders
    # =========================================================================

    async def place_order(self, order: OrderRequest) -> str:
        order_params = {
            "variety": self.kite.VARIETY_REGULAR,
            "exchange": order.exchange,
            "tradingsymbol": order.symbol,
            "transaction_type": order.side.value,
            "quantity": order.quantity,
            "product": order.product.value,
            "order_type": self.ORDER_TYPE_MAP[order.order_type],
            "validity": self.kite.VALIDITY_DAY,
        }

        # Add price for limit orders
        if order.order_type in (OrderType.LIMIT, OrderType.STOP_LOSS):
            order_params["price"] = order.price

        # Add trigger price for SL orders
        if order.order_type in (OrderType.STOP_LOSS, OrderType.STOP_LOSS_MARKET):
            order_params["trigger_price"] = order.trigger_price

        if order.tag:
            order_params["tag"] = order.tag[:20]  # Max 20 chars

        try:
            order_id = await self._call(self.kite.place_order, **order_params)
        except KiteException as e:
            raise OrderExecutionError(
                f"Kite rejected {order.side.value} {order.symbol}: {e}",
                details={"symbol": order.symbol},
            ) from e

        logger.info(f"Kite order placed: {order_id} {order.side.value} {order.quantity} {order.symbol}")
        return str(order_id)

    async def cancel_order(self, order_id: str) -> None:
        try:
            await self._call(self.kite.cancel_order, self.kite.VARIETY_REGULAR, order_id)
            logger.info(f"Kite order cancelled: {order_id}")
        except KiteException as e:
            message = str(e).lower()
            if any(hint in message for hint in _TERMINAL_CANCEL_HINTS):
                logger.info(f"Order {order_id} already terminal, nothing to cancel: {e}")
                return
            raise OrderExecutionError(f"Cancel failed for {order_id}: {e}", order_id=order_id) from e

    async def get_order_status(self, order_id: str) -> Optional[OrderResponse]:
        try:
            history = await self._call(self.kite.order_history, order_id)
        except KiteException as e:
            logger.warning(f"Order history unavailable for {order_id}: {e}")
            return None
        if not history:
            return None

        latest = history[-1]
        return OrderResponse(
            order_id=order_id,
            status=self.STATUS_MAP.get(str(latest.get("status", "")).upper(), OrderStatus.PENDING),
            message=latest.get("status_message"),
            filled_quantity=latest.get("filled_quantity") or 0,
            average_price=latest.get("average_price") or 0.0,
        )
