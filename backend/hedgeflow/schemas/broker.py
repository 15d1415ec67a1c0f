from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
from datetime import date, datetime
from enum import Enum


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, Enum):
    """Order types."""
    MARKET = "MARKET"
    LIMIT = "LIMIT"
    STOP_LOSS = "SL"
    STOP_LOSS_MARKET = "SL-M"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    OPEN = "OPEN"
    COMPLETE = "COMPLETE"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"


class ProductType(str, Enum):
    """Product types."""
    MIS = "MIS"
    NRML = "NRML"


class OptionType(str, Enum):
    CALL = "CE"
    PUT = "PE"


class OrderRequest(BaseModel):
    symbol: str
    exchange: str
    quantity: int = Field(gt=0)
    side: OrderSide
    order_type: OrderType = OrderType.MARKET
    product: ProductType = ProductType.NRML
    price: Optional[float] = None  # None for Market Order
    trigger_price: Optional[float] = None
    tag: Optional[str] = None  # Custom tag for identification


class OrderResponse(BaseModel):
    order_id: str
    status: OrderStatus
    message: Optional[str] = None
    filled_quantity: int = 0
    average_price: float = 0.0


class OptionContract(BaseModel):
    """One row of an option chain."""
    symbol: str
    strike: float
    option_type: OptionType
    expiry: date
    exchange: str = "NFO"
    token: Optional[int] = None


class Candle(BaseModel):
    model_config = ConfigDict(frozen=True)

    date: datetime
    open: float
    high: float
    low: float
    close: float
    volume: int = 0
