"""
Position State Machine
Hedgeflow Options Engine

Owns the single position slot of one strategy instance:
- IDLE -> ACTIVE on open, PARTIAL once only a trailing BUY survives,
  ADJUSTING while a roll is worked, CLOSED when every leg is closed
- Closed positions are archived to the ledger and the slot resets to IDLE
- Every mutation emits a notification and feeds the persistence queue

Illegal transitions raise nothing: they are logged and ignored.
"""

from datetime import date, datetime
from typing import Dict, Iterable, List, Optional

from loguru import logger

from hedgeflow.core.config import StrategyInstanceConfig, StrategyKind
from hedgeflow.core.events import (
    AlertSeverity,
    EventType,
    NotificationChannel,
    NotificationEvent,
    safe_publish,
)
from hedgeflow.core.exceptions import InvariantViolation
from hedgeflow.execution.models import (
    AdjustmentRecord,
    AdjustmentType,
    Leg,
    Position,
    PositionStatus,
    Trade,
    net_credit,
)
from hedgeflow.schemas.broker import OptionType, OrderSide
from hedgeflow.services.persistence import WriteBehindQueue


def topology_error(kind: StrategyKind, legs: List[Leg]) -> Optional[str]:
    """Reason the leg set does not match the topology, or None."""
    buys = [l for l in legs if l.side == OrderSide.BUY]
    sells = [l for l in legs if l.side == OrderSide.SELL]

    if kind == StrategyKind.SINGLE_LEG:
        if len(legs) != 1 or len(buys) != 1:
            return f"single-leg topology needs 1 BUY leg, got {len(legs)} legs"
        return None

    if len(buys) != 2 or len(sells) != 2:
        return f"{kind.value} topology needs 2 BUY + 2 SELL legs, got {len(buys)}+{len(sells)}"
    for option_type in (OptionType.CALL, OptionType.PUT):
        side = [l for l in legs if l.option_type == option_type]
        if {l.side for l in side} != {OrderSide.BUY, OrderSide.SELL}:
            return f"{option_type.value} side needs one BUY and one SELL leg"
    return None


class PositionStateMachine:
    """Lifecycle of the positions of one strategy instance."""

    def __init__(
        self,
        config: StrategyInstanceConfig,
        notifier: Optional[NotificationChannel] = None,
        persistence: Optional[WriteBehindQueue] = None,
    ):
        self.config = config
        self.notifier = notifier
        self.persistence = persistence
        self.position: Optional[Position] = None
        self.ledger: List[Trade] = []
        self._sequence = 0

    @property
    def status(self) -> PositionStatus:
        return self.position.status if self.position else PositionStatus.IDLE

    # =========================================================================
    # Opening
    # =========================================================================

    def propose(
        self,
        legs: List[Leg],
        spot: float,
        expiry: Optional[date],
        now: datetime,
    ) -> Optional[Position]:
        """
        Build an unopened position from candidate legs.

        Returns None when the slot is occupied, the legs do not match the
        instance topology, or a spread's combined credit is below
        `min_credit_fraction` of the target.
        """
        cfg = self.config
        if self.position is not None:
            logger.warning(f"[{cfg.id}] slot already holds {self.position.position_id}, not proposing")
            return None

        problem = topology_error(cfg.kind, legs)
        if problem:
            logger.warning(f"[{cfg.id}] rejected entry: {problem}")
            return None

        credit = net_credit(legs)

        if cfg.kind == StrategyKind.SPREAD:
            required = round(cfg.target_credit * cfg.min_credit_fraction, 2)
            if credit < required:
                logger.warning(
                    f"[{cfg.id}] {cfg.instrument} combined credit {credit} below "
                    f"{cfg.min_credit_fraction:.0%} of target {cfg.target_credit} - skipping entry"
                )
                return None

        return Position(
            position_id=f"{cfg.id}-{self._sequence + 1:04d}",
            instance_id=cfg.id,
            instrument=cfg.instrument,
            kind=cfg.kind,
            entry_date=now,
            expiry_date=expiry,
            spot_at_entry=spot,
            legs=list(legs),
            quantity=cfg.lot_size,
            entry_credit=credit,
            total_credit=credit,
        )

    async def open_position(self, position: Position, now: datetime) -> Optional[Position]:
        if self.position is not None:
            logger.warning(f"[{self.config.id}] cannot open {position.position_id}: slot occupied")
            return None

        self._sequence += 1
        for leg in position.legs:
            leg.opened_at = now
        # Confirmed fills may differ from the quotes the proposal was priced on
        position.entry_credit = position.total_credit = net_credit(position.legs)
        position.status = PositionStatus.ACTIVE
        self.position = position

        legs = " | ".join(
            f"{l.side.value} {l.strike:g}{l.option_type.value} @ {l.entry_premium:.2f}" for l in position.legs
        )
        logger.info(
            f"[{self.config.id}] {position.instrument} position {position.position_id} opened "
            f"spot={position.spot_at_entry} credit={position.entry_credit} :: {legs}"
        )

        if self.persistence:
            self.persistence.enqueue_entry(position.to_dict(), now)
        await self._emit(EventType.POSITION_OPENED, now, f"Position opened with {len(position.legs)} legs")
        return position

    # =========================================================================
    # Marking and closing
    # =========================================================================

    async def mark(self, prices: Dict[str, float], now: datetime) -> None:
        """Refresh active legs from prices keyed by leg_id. Missing legs keep their last premium."""
        position = self.position
        if position is None:
            return
        for leg in position.active_legs():
            price = prices.get(leg.leg_id)
            if price is None:
                continue
            leg.mark(price)

        if self.persistence:
            self.persistence.enqueue_pnl(position.position_id, position.pnl, now)
        await self._emit(EventType.POSITION_UPDATE, now)

    async def close_legs(self, closes: Dict[str, float], reason: str, now: datetime) -> List[str]:
        """
        Close legs at the given exit premiums. Archives the position once no
        leg remains active. Returns the ids actually closed.
        """
        position = self.position
        if position is None:
            logger.warning(f"[{self.config.id}] close_legs with empty slot ignored")
            return []

        closed = []
        for leg_id, price in closes.items():
            leg = position.leg(leg_id)
            if leg is None:
                logger.warning(f"[{self.config.id}] unknown leg {leg_id}")
                continue
            try:
                leg.close(price, reason, now)
            except InvariantViolation as e:
                logger.warning(f"[{self.config.id}] {e.message}, ignoring")
                continue
            closed.append(leg_id)

        if closed:
            logger.info(f"[{self.config.id}] legs closed: {', '.join(closed)} | reason: {reason}")

        if not position.active_legs():
            self._archive(position, reason, now)
            await self._finish_close(position, reason, now)
            return closed

        if position.last_leg is not None and position.status == PositionStatus.ACTIVE and len(position.legs) > 1:
            position.status = PositionStatus.PARTIAL
            logger.info(f"[{self.config.id}] last leg {position.last_leg.leg_id} survives - trailing mode")

        await self._emit(EventType.POSITION_UPDATE, now, f"Closed {', '.join(closed)}: {reason}" if closed else "")
        return closed

    async def close_position(
        self,
        reason: str,
        now: datetime,
        prices: Optional[Dict[str, float]] = None,
    ) -> Optional[Trade]:
        """
        Close every remaining leg and archive. A no-op on an empty slot, so
        repeated calls never duplicate a ledger entry.
        """
        position = self.position
        if position is None or position.status == PositionStatus.CLOSED:
            logger.info(f"[{self.config.id}] close_position({reason}) on idle slot - nothing to do")
            return None

        prices = prices or {}
        for leg in position.active_legs():
            leg.close(prices.get(leg.leg_id, leg.current_premium), reason, now)

        trade = self._archive(position, reason, now)
        await self._finish_close(position, reason, now)
        return trade

    def _archive(self, position: Position, reason: str, now: datetime) -> Trade:
        position.status = PositionStatus.CLOSED
        position.close_reason = reason
        position.closed_at = now
        trade = Trade.from_position(position.position_id, position)
        self.ledger.append(trade)
        self.position = None
        logger.info(
            f"[{self.config.id}] {position.instrument} position {position.position_id} closed: "
            f"{reason} | pnl {trade.pnl:+.2f}"
        )
        return trade

    async def _finish_close(self, position: Position, reason: str, now: datetime) -> None:
        snapshot = position.to_dict()
        if self.persistence:
            self.persistence.enqueue_close(snapshot, reason)
        await self._publish(EventType.POSITION_CLOSED, now, reason, snapshot=snapshot)

    # =========================================================================
    # Adjustments
    # =========================================================================

    def can_roll(self, kind: AdjustmentType) -> bool:
        position = self.position
        if position is None or not position.is_open:
            return False
        cfg = self.config
        if position.total_rolls >= cfg.max_rolls:
            return False
        if kind == AdjustmentType.ROLL_SYSTEM:
            return position.system_rolls < cfg.max_system_rolls
        return position.discretionary_rolls < cfg.max_discretionary_rolls

    async def begin_adjustment(self, now: datetime) -> None:
        if self.position is None:
            return
        self.position.status = PositionStatus.ADJUSTING
        await self._emit(EventType.POSITION_UPDATE, now, "Adjustment in progress")

    async def end_adjustment(self, now: datetime) -> None:
        position = self.position
        if position is None or position.status != PositionStatus.ADJUSTING:
            return
        position.status = PositionStatus.PARTIAL if position.last_leg and len(position.legs) > 1 else PositionStatus.ACTIVE
        await self._emit(EventType.POSITION_UPDATE, now)

    async def record_roll(
        self,
        kind: AdjustmentType,
        side: OptionType,
        new_legs: Iterable[Leg],
        credit: float,
        now: datetime,
        details: Optional[Dict] = None,
    ) -> bool:
        """Attach replacement legs and count the roll against its budget."""
        position = self.position
        if position is None:
            logger.warning(f"[{self.config.id}] roll on empty slot ignored")
            return False
        if not self.can_roll(kind):
            logger.warning(
                f"[{self.config.id}] roll budget exhausted "
                f"({position.system_rolls}+{position.discretionary_rolls}/{self.config.max_rolls}), not recording"
            )
            return False

        for leg in new_legs:
            leg.opened_at = now
            position.legs.append(leg)

        if kind == AdjustmentType.ROLL_SYSTEM:
            position.system_rolls += 1
        else:
            position.discretionary_rolls += 1
        position.total_credit = round(position.total_credit + credit, 2)
        position.adjustments.append(AdjustmentRecord(now, kind, side, credit, details or {}))

        message = (
            f"{kind.value} {side.value} side, credit {credit:+.2f} "
            f"(rolls {position.total_rolls}/{self.config.max_rolls})"
        )
        logger.info(f"[{self.config.id}] {message}")
        await self._emit(EventType.ROLL_RECORDED, now, message)
        return True

    async def convert_to_iron_fly(
        self,
        new_legs: Iterable[Leg],
        credit: float,
        now: datetime,
        details: Optional[Dict] = None,
    ) -> bool:
        position = self.position
        if position is None or position.is_iron_fly:
            logger.warning(f"[{self.config.id}] iron fly conversion not applicable")
            return False

        for leg in new_legs:
            leg.opened_at = now
            position.legs.append(leg)
        position.is_iron_fly = True
        position.total_credit = round(position.total_credit + credit, 2)
        position.adjustments.append(
            AdjustmentRecord(now, AdjustmentType.IRON_FLY_CONVERSION, None, credit, details or {})
        )
        logger.info(f"[{self.config.id}] converted to iron butterfly, credit {credit:+.2f}")
        await self._emit(EventType.POSITION_UPDATE, now, "Converted to iron butterfly")
        return True

    async def apply_trail_lock(self, lock: float, floor: float, now: datetime) -> bool:
        """Raise the locked profit. Lower or equal locks are ignored."""
        position = self.position
        if position is None or lock <= position.locked_profit:
            return False
        position.locked_profit = lock
        position.trail_floor = round(floor, 2)
        logger.info(f"[{self.config.id}] trail locked {lock:.0f}, floor premium {position.trail_floor}")
        await self._emit(EventType.POSITION_UPDATE, now, f"Locked {lock:.0f}, trail SL {position.trail_floor}")
        return True

    async def record_alert(
        self,
        severity: AlertSeverity,
        code: str,
        message: str,
        now: datetime,
    ) -> None:
        position = self.position
        if position is not None:
            position.alerts.append({
                "timestamp": now.isoformat(),
                "severity": severity.value,
                "code": code,
                "message": message,
            })
        log = logger.warning if severity != AlertSeverity.INFO else logger.info
        log(f"[{self.config.id}] {severity.value} {code}: {message}")
        await self._publish(EventType.ALERT, now, message, severity=severity)

    # =========================================================================
    # Notifications
    # =========================================================================

    async def _emit(self, event_type: EventType, now: datetime, message: str = "") -> None:
        snapshot = self.position.to_dict() if self.position else None
        await self._publish(event_type, now, message, snapshot=snapshot)

    async def _publish(
        self,
        event_type: EventType,
        now: datetime,
        message: str,
        severity: Optional[AlertSeverity] = None,
        snapshot: Optional[Dict] = None,
    ) -> None:
        if self.notifier is None:
            return
        if snapshot is None and self.position is not None:
            snapshot = self.position.to_dict()
        await safe_publish(self.notifier, NotificationEvent(
            event_type=event_type,
            timestamp=now,
            instance_id=self.config.id,
            instrument=self.config.instrument,
            message=message,
            severity=severity,
            position=snapshot,
        ))
