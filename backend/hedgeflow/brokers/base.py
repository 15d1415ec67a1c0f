from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from hedgeflow.schemas.broker import Candle, OptionContract, OrderRequest, OrderResponse


class MarketFeed(ABC):
    """
    Abstract market data source.
    Implementations raise ExternalFeedError when a lookup fails.
    """

    @abstractmethod
    async def get_ltp(self, symbols: List[str]) -> Dict[str, float]:
        """Last traded prices keyed by symbol. Missing symbols are omitted."""
        pass

    @abstractmethod
    async def get_option_chain(self, exchange: str, underlying: str) -> List[OptionContract]:
        """Tradable option contracts for an underlying."""
        pass

    @abstractmethod
    async def get_historical_candles(
        self,
        token: int,
        interval: str,
        from_date: datetime,
        to_date: datetime,
    ) -> List[Candle]:
        """Fetch historical OHLC data."""
        pass


class ExecutionGateway(ABC):
    """
    Abstract order gateway.
    Implementations raise OrderExecutionError when the broker rejects a call.
    """

    @abstractmethod
    async def place_order(self, order: OrderRequest) -> str:
        """Place an order and return the broker order id."""
        pass

    @abstractmethod
    async def cancel_order(self, order_id: str) -> None:
        """Cancel an order. Cancelling a filled or cancelled order must not raise."""
        pass

    async def get_order_status(self, order_id: str) -> Optional[OrderResponse]:
        """Order status if the gateway can report it, else None."""
        return None
