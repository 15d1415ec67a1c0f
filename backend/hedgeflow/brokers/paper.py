from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

from loguru import logger

from hedgeflow.brokers.base import ExecutionGateway
from hedgeflow.core.exceptions import OrderExecutionError
from hedgeflow.schemas.broker import OrderRequest, OrderResponse, OrderStatus, OrderType


@dataclass
class GatewayCall:
    """One call received by the paper gateway, in arrival order."""
    action: str                 # "place" or "cancel"
    order_id: str
    symbol: Optional[str] = None
    side: Optional[str] = None
    order_type: Optional[str] = None
    quantity: int = 0
    price: Optional[float] = None


@dataclass
class PaperOrder:
    request: OrderRequest
    status: OrderStatus
    average_price: float = 0.0


class PaperBroker(ExecutionGateway):
    """
    Deterministic in-process gateway for paper trading and backtests.
    Market orders fill immediately at the price source's quote; stop and
    limit orders rest until cancelled. Order ids are sequential.
    """

    def __init__(
        self,
        price_source: Optional[Callable[[str], Optional[float]]] = None,
        id_prefix: str = "PAPER",
    ):
        self.price_source = price_source
        self.id_prefix = id_prefix
        self.orders: Dict[str, PaperOrder] = {}
        self.calls: List[GatewayCall] = []
        self.reject_symbols: Set[str] = set()
        self._counter = 0

    def _next_id(self) -> str:
        self._counter += 1
        return f"{self.id_prefix}{self._counter:06d}"

    async def place_order(self, order: OrderRequest) -> str:
        if order.symbol in self.reject_symbols:
            self.calls.append(GatewayCall("place", "", order.symbol, order.side.value,
                                          order.order_type.value, order.quantity, order.price))
            raise OrderExecutionError(f"Paper gateway rejected {order.symbol}")

        order_id = self._next_id()
        if order.order_type == OrderType.MARKET:
            quote = self.price_source(order.symbol) if self.price_source else None
            paper = PaperOrder(order, OrderStatus.COMPLETE, quote if quote is not None else (order.price or 0.0))
        else:
            paper = PaperOrder(order, OrderStatus.OPEN)

        self.orders[order_id] = paper
        self.calls.append(GatewayCall("place", order_id, order.symbol, order.side.value,
                                      order.order_type.value, order.quantity,
                                      order.trigger_price or order.price))
        logger.debug(f"Paper {order.order_type.value} {order.side.value} {order.quantity} {order.symbol} -> {order_id}")
        return order_id

    async def cancel_order(self, order_id: str) -> None:
        self.calls.append(GatewayCall("cancel", order_id))
        paper = self.orders.get(order_id)
        if paper is None or paper.status != OrderStatus.OPEN:
            logger.info(f"Paper order {order_id} not open, nothing to cancel")
            return
        paper.status = OrderStatus.CANCELLED

    async def get_order_status(self, order_id: str) -> Optional[OrderResponse]:
        paper = self.orders.get(order_id)
        if paper is None:
            return None
        filled = paper.request.quantity if paper.status == OrderStatus.COMPLETE else 0
        return OrderResponse(
            order_id=order_id,
            status=paper.status,
            filled_quantity=filled,
            average_price=paper.average_price,
        )

    def open_orders(self) -> List[str]:
        return [oid for oid, o in self.orders.items() if o.status == OrderStatus.OPEN]
