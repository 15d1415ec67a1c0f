"""
Position Domain Model
Hedgeflow Options Engine

Leg, Position, AdjustmentRecord and Trade. Position pnl is always derived
from its legs; a CLOSED leg is frozen at its exit premium.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from hedgeflow.core.config import StrategyKind
from hedgeflow.core.exceptions import InvariantViolation
from hedgeflow.schemas.broker import OptionType, OrderSide


class LegStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


class PositionStatus(str, Enum):
    IDLE = "IDLE"
    ACTIVE = "ACTIVE"
    PARTIAL = "PARTIAL"        # some legs closed, survivor trailing
    ADJUSTING = "ADJUSTING"    # roll in progress
    CLOSED = "CLOSED"


class AdjustmentType(str, Enum):
    ROLL_SYSTEM = "ROLL_SYSTEM"
    ROLL_DISCRETIONARY = "ROLL_DISCRETIONARY"
    IRON_FLY_CONVERSION = "IRON_FLY_CONVERSION"


# Sell legs are bought back before hedges are sold
EXIT_PRIORITY = {
    (OrderSide.SELL, OptionType.CALL): 1,
    (OrderSide.SELL, OptionType.PUT): 2,
    (OrderSide.BUY, OptionType.CALL): 3,
    (OrderSide.BUY, OptionType.PUT): 4,
}


def _r(value: float) -> float:
    return round(value, 2)


def net_credit(legs: List["Leg"]) -> float:
    """Per-unit premium received minus premium paid at entry."""
    return _r(sum(l.entry_premium if l.side == OrderSide.SELL else -l.entry_premium for l in legs))


@dataclass
class Leg:
    """One option contract held by a position."""
    leg_id: str
    side: OrderSide
    option_type: OptionType
    strike: float
    symbol: str
    exchange: str
    quantity: int
    entry_premium: float
    expiry: Optional[date] = None
    current_premium: float = 0.0
    peak_premium: float = 0.0
    exit_premium: Optional[float] = None
    status: LegStatus = LegStatus.ACTIVE
    exit_priority: int = 0
    pending_order_id: Optional[str] = None
    entry_order_id: Optional[str] = None
    close_reason: Optional[str] = None
    opened_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    delta: Optional[float] = None

    def __post_init__(self):
        if not self.exit_priority:
            self.exit_priority = EXIT_PRIORITY[(self.side, self.option_type)]
        if not self.current_premium:
            self.current_premium = self.entry_premium
        if not self.peak_premium:
            self.peak_premium = self.entry_premium

    @property
    def is_active(self) -> bool:
        return self.status == LegStatus.ACTIVE

    @property
    def is_buy(self) -> bool:
        return self.side == OrderSide.BUY

    @property
    def pnl(self) -> float:
        price = self.exit_premium if self.exit_premium is not None else self.current_premium
        move = price - self.entry_premium if self.is_buy else self.entry_premium - price
        return move * self.quantity

    def mark(self, price: float) -> None:
        if not self.is_active:
            raise InvariantViolation(f"Cannot mark closed leg {self.leg_id}")
        self.current_premium = price
        self.peak_premium = max(self.peak_premium, price)

    def close(self, price: float, reason: str, at: datetime) -> None:
        if not self.is_active:
            raise InvariantViolation(f"Leg {self.leg_id} is already closed")
        self.current_premium = price
        self.exit_premium = price
        self.status = LegStatus.CLOSED
        self.close_reason = reason
        self.closed_at = at
        self.pending_order_id = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "leg_id": self.leg_id,
            "side": self.side.value,
            "option_type": self.option_type.value,
            "strike": self.strike,
            "symbol": self.symbol,
            "exchange": self.exchange,
            "quantity": self.quantity,
            "expiry": self.expiry.isoformat() if self.expiry else None,
            "entry_premium": _r(self.entry_premium),
            "current_premium": _r(self.current_premium),
            "peak_premium": _r(self.peak_premium),
            "exit_premium": _r(self.exit_premium) if self.exit_premium is not None else None,
            "status": self.status.value,
            "exit_priority": self.exit_priority,
            "pnl": _r(self.pnl),
            "close_reason": self.close_reason,
            "opened_at": self.opened_at.isoformat() if self.opened_at else None,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
        }


@dataclass
class AdjustmentRecord:
    timestamp: datetime
    type: AdjustmentType
    side: Optional[OptionType] = None
    credit: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "type": self.type.value,
            "side": self.side.value if self.side else None,
            "credit": _r(self.credit),
            "details": self.details,
        }


@dataclass
class Position:
    """
    Multi-leg position owned by one strategy instance.

    `entry_credit` is per-unit premium received minus paid at entry, so a
    debit structure carries a negative value. `total_credit` starts equal
    to it and moves with roll credits.
    """
    position_id: str
    instance_id: str
    instrument: str
    kind: StrategyKind
    entry_date: datetime
    expiry_date: Optional[date]
    spot_at_entry: float
    legs: List[Leg] = field(default_factory=list)
    status: PositionStatus = PositionStatus.IDLE
    quantity: int = 0
    entry_credit: float = 0.0
    total_credit: float = 0.0
    system_rolls: int = 0
    discretionary_rolls: int = 0
    adjustments: List[AdjustmentRecord] = field(default_factory=list)
    alerts: List[Dict[str, Any]] = field(default_factory=list)
    is_iron_fly: bool = False
    locked_profit: float = 0.0
    trail_floor: Optional[float] = None
    close_reason: Optional[str] = None
    closed_at: Optional[datetime] = None

    @property
    def pnl(self) -> float:
        return sum(leg.pnl for leg in self.legs)

    @property
    def net_debit(self) -> float:
        return -self.total_credit

    @property
    def total_rolls(self) -> int:
        return self.system_rolls + self.discretionary_rolls

    @property
    def is_open(self) -> bool:
        return self.status in (PositionStatus.ACTIVE, PositionStatus.PARTIAL, PositionStatus.ADJUSTING)

    def active_legs(self) -> List[Leg]:
        return [leg for leg in self.legs if leg.is_active]

    def leg(self, leg_id: str) -> Optional[Leg]:
        for leg in self.legs:
            if leg.leg_id == leg_id:
                return leg
        return None

    def side_legs(self, option_type: OptionType) -> List[Leg]:
        """Active legs of one option type (a spread or a delta pair)."""
        return [leg for leg in self.active_legs() if leg.option_type == option_type]

    @property
    def last_leg(self) -> Optional[Leg]:
        """The survivor when exactly one BUY leg and no SELL legs remain active."""
        active = self.active_legs()
        if len(active) == 1 and active[0].is_buy:
            return active[0]
        return None

    def entry_value(self) -> float:
        """Absolute rupee net credit or debit exchanged at entry."""
        return abs(self.entry_credit) * self.quantity

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_id": self.position_id,
            "instance_id": self.instance_id,
            "instrument": self.instrument,
            "kind": self.kind.value,
            "status": self.status.value,
            "entry_date": self.entry_date.isoformat(),
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
            "spot_at_entry": _r(self.spot_at_entry),
            "quantity": self.quantity,
            "entry_credit": _r(self.entry_credit),
            "total_credit": _r(self.total_credit),
            "pnl": _r(self.pnl),
            "system_rolls": self.system_rolls,
            "discretionary_rolls": self.discretionary_rolls,
            "is_iron_fly": self.is_iron_fly,
            "locked_profit": _r(self.locked_profit),
            "trail_floor": _r(self.trail_floor) if self.trail_floor is not None else None,
            "close_reason": self.close_reason,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "legs": [leg.to_dict() for leg in self.legs],
            "adjustments": [a.to_dict() for a in self.adjustments],
            "alerts": list(self.alerts),
        }


@dataclass(frozen=True)
class Trade:
    """Archived ledger entry: snapshot of a closed position."""
    trade_id: str
    instance_id: str
    instrument: str
    entry_date: datetime
    exit_date: datetime
    pnl: float
    close_reason: str
    snapshot: Dict[str, Any]

    @classmethod
    def from_position(cls, trade_id: str, position: Position) -> "Trade":
        return cls(
            trade_id=trade_id,
            instance_id=position.instance_id,
            instrument=position.instrument,
            entry_date=position.entry_date,
            exit_date=position.closed_at,
            pnl=_r(position.pnl),
            close_reason=position.close_reason or "",
            snapshot=position.to_dict(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trade_id": self.trade_id,
            "instance_id": self.instance_id,
            "instrument": self.instrument,
            "entry_date": self.entry_date.isoformat(),
            "exit_date": self.exit_date.isoformat(),
            "pnl": self.pnl,
            "close_reason": self.close_reason,
            "position": self.snapshot,
        }
