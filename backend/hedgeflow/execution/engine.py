"""
Strategy Engine
Hedgeflow Options Engine

One engine per strategy instance. Exposes the time-triggered entry points
`check_entry`, `monitor` and `expiry_exit`, plus operator actions (manual
close, discretionary roll, iron fly conversion). Every entry point takes
`now` from its caller and serializes on the instrument lock, so live
scheduling and backtest replay run the same code.

Features:
- Bounded market feed calls; a failed lookup skips the tick
- Hedge-first entry and sell-first exit through the OrderSequencer
- Firefight decisions from the RiskEngine applied in priority order
- Resting protective stops kept in step with the trailing lock
"""

import asyncio
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from loguru import logger

from hedgeflow.brokers.base import ExecutionGateway, MarketFeed
from hedgeflow.core.config import StrategyInstanceConfig, StrategyKind
from hedgeflow.core.events import (
    AlertSeverity,
    EventType,
    NotificationChannel,
    NotificationEvent,
    safe_publish,
)
from hedgeflow.core.exceptions import ConfigurationError, ExternalFeedError
from hedgeflow.execution.models import AdjustmentType, Leg, Position, Trade, net_credit
from hedgeflow.execution.position_state import PositionStateMachine
from hedgeflow.execution.risk import ActionType, RiskAction, RiskDecision, RiskEngine
from hedgeflow.execution.sequencer import OrderSequencer
from hedgeflow.schemas.broker import OptionContract, OptionType, ProductType
from hedgeflow.services.persistence import WriteBehindQueue
from hedgeflow.strategies.base import TopologyBuilder
from hedgeflow.strategies.registry import StrategyRegistry


def quote_key(exchange: str, symbol: str) -> str:
    return f"{exchange}:{symbol}"


class StrategyEngine:
    """Decision loop of one strategy instance."""

    def __init__(
        self,
        config: StrategyInstanceConfig,
        feed: MarketFeed,
        gateway: ExecutionGateway,
        builder: Optional[TopologyBuilder] = None,
        notifier: Optional[NotificationChannel] = None,
        persistence: Optional[WriteBehindQueue] = None,
        settle_delay: float = 1.0,
        quote_timeout: float = 5.0,
        order_timeout: float = 10.0,
        lock: Optional[asyncio.Lock] = None,
    ):
        self.config = config
        self.feed = feed
        self.builder = builder or StrategyRegistry.create(config)
        self.notifier = notifier
        self.quote_timeout = quote_timeout
        self.state = PositionStateMachine(config, notifier, persistence)
        self.sequencer = OrderSequencer(
            gateway,
            settle_delay=settle_delay,
            order_timeout=order_timeout,
            product=ProductType(config.product),
            tag=config.id,
        )
        self.risk = RiskEngine(config)
        self._lock = lock or asyncio.Lock()
        self._last_entry_day: Optional[date] = None
        self._last_spot: Optional[float] = None

    @property
    def position(self) -> Optional[Position]:
        return self.state.position

    @property
    def ledger(self) -> List[Trade]:
        return self.state.ledger

    # =========================================================================
    # Market data
    # =========================================================================

    async def _bounded(self, coro, what: str):
        try:
            return await asyncio.wait_for(coro, timeout=self.quote_timeout)
        except asyncio.TimeoutError as e:
            raise ExternalFeedError(f"{what} timed out after {self.quote_timeout}s") from e
        except ExternalFeedError:
            raise
        except Exception as e:
            raise ExternalFeedError(f"{what} failed: {e}") from e

    async def _spot(self) -> float:
        symbol = self.config.underlying_symbol
        prices = await self._bounded(self.feed.get_ltp([symbol]), f"spot {symbol}")
        spot = prices.get(symbol)
        if not spot:
            raise ExternalFeedError(f"No spot quote for {symbol}")
        self._last_spot = spot
        return spot

    async def _chain(self) -> List[OptionContract]:
        chain = await self._bounded(
            self.feed.get_option_chain(self.config.exchange, self.config.instrument),
            f"option chain {self.config.instrument}",
        )
        if not chain:
            raise ExternalFeedError(f"Empty option chain for {self.config.instrument}")
        return chain

    async def _contract_quotes(self, contracts: List[OptionContract]) -> Dict[str, float]:
        keys = {quote_key(c.exchange, c.symbol): c.symbol for c in contracts}
        prices = await self._bounded(self.feed.get_ltp(list(keys)), "option quotes")
        return {symbol: prices[key] for key, symbol in keys.items() if key in prices}

    async def _leg_quotes(self, legs: List[Leg]) -> Dict[str, float]:
        keys = {quote_key(l.exchange, l.symbol): l.leg_id for l in legs}
        prices = await self._bounded(self.feed.get_ltp(list(keys)), "leg quotes")
        missing = [leg_id for key, leg_id in keys.items() if key not in prices]
        if missing:
            logger.warning(f"[{self.config.id}] no quote for {', '.join(missing)}, keeping last premium")
        return {leg_id: prices[key] for key, leg_id in keys.items() if key in prices}

    # =========================================================================
    # Entry points
    # =========================================================================

    async def check_entry(self, instrument: str, now: datetime) -> Optional[Position]:
        """Open a position if the slot is idle and the entry window is open."""
        if instrument != self.config.instrument:
            return None
        async with self._lock:
            return await self._check_entry(now)

    async def _check_entry(self, now: datetime) -> Optional[Position]:
        cfg = self.config
        if self.state.position is not None:
            return None
        if self._last_entry_day == now.date():
            return None
        if not self.builder.in_entry_window(now):
            return None

        try:
            self.builder.validate()
        except ConfigurationError as e:
            logger.error(f"[{cfg.id}] entry blocked by configuration: {e.message}")
            return None

        try:
            spot = await self._spot()
            chain = await self._chain()
            candidate = await self.builder.build_entry(spot, chain, self._contract_quotes, now)
        except ExternalFeedError as e:
            logger.warning(f"[{cfg.id}] entry check skipped: {e.message}")
            return None
        if candidate is None:
            return None

        position = self.state.propose(candidate.legs, spot, candidate.expiry, now)
        if position is None:
            return None

        result = await self.sequencer.enter(position.legs)
        if not result.ok:
            await self._alert_without_position(
                AlertSeverity.CRITICAL,
                f"Entry failed on {', '.join(result.failed)}; unwound {', '.join(result.unwound) or 'nothing'}",
                now,
            )
            return None

        self._last_entry_day = now.date()
        opened = await self.state.open_position(position, now)
        if opened is not None:
            await self._place_protective_stops(opened)
        return opened

    async def monitor(self, now: datetime) -> Optional[RiskDecision]:
        """Refresh premiums, evaluate firefight rules and apply the resulting actions."""
        async with self._lock:
            position = self.state.position
            if position is None:
                return None
            try:
                prices = await self._leg_quotes(position.active_legs())
            except ExternalFeedError as e:
                logger.warning(f"[{self.config.id}] monitor tick skipped: {e.message}")
                return None

            await self.state.mark(prices, now)
            decision = self.risk.evaluate(self.state.position, now)
            await self._apply(decision, now)
            return decision

    async def expiry_exit(self, instrument: str, now: datetime) -> Optional[Trade]:
        """Force-close everything at the configured cutoff."""
        if instrument != self.config.instrument:
            return None
        async with self._lock:
            position = self.state.position
            if position is None:
                return None
            try:
                prices = await self._leg_quotes(position.active_legs())
                await self.state.mark(prices, now)
            except ExternalFeedError as e:
                logger.warning(f"[{self.config.id}] exiting on last known premiums: {e.message}")

            reason = "Expiry Exit" if self.config.exit_weekday == "expiry" else "Time Exit"
            return await self._exit_all(reason, now)

    # =========================================================================
    # Operator actions
    # =========================================================================

    async def close_position(self, now: datetime, reason: str = "Manual Exit") -> Optional[Trade]:
        async with self._lock:
            if self.state.position is None:
                logger.info(f"[{self.config.id}] close requested on idle slot")
                return None
            return await self._exit_all(reason, now)

    async def discretionary_roll(self, side: OptionType, now: datetime) -> bool:
        async with self._lock:
            if not self.state.can_roll(AdjustmentType.ROLL_DISCRETIONARY):
                logger.warning(f"[{self.config.id}] discretionary roll refused: budget exhausted or no position")
                return False
            return await self._roll(side, AdjustmentType.ROLL_DISCRETIONARY, now)

    async def convert_to_iron_fly(self, now: datetime) -> bool:
        """
        Re-centre the untested spread's short strike at the money, turning
        the condor into an iron butterfly.
        """
        async with self._lock:
            position = self.state.position
            if position is None or self.config.kind != StrategyKind.SPREAD or position.is_iron_fly:
                return False
            try:
                spot = await self._spot()
            except ExternalFeedError as e:
                logger.warning(f"[{self.config.id}] iron fly conversion skipped: {e.message}")
                return False
            # Untested side: the one further from spot
            untested = OptionType.PUT if spot >= position.spot_at_entry else OptionType.CALL
            return await self._replace_side(
                untested, None, now, at_the_money=True, spot=spot,
            )

    def get_status(self) -> Dict[str, Any]:
        return {
            "instance_id": self.config.id,
            "instrument": self.config.instrument,
            "kind": self.config.kind.value,
            "status": self.state.status.value,
            "position": self.state.position.to_dict() if self.state.position else None,
            "trades": len(self.state.ledger),
            "realized_pnl": round(sum(t.pnl for t in self.state.ledger), 2),
            "config": self.config.model_dump(mode="json"),
        }

    # =========================================================================
    # Applying decisions
    # =========================================================================

    async def _apply(self, decision: RiskDecision, now: datetime) -> None:
        for alert in decision.alerts:
            await self.state.record_alert(alert.severity, alert.code, alert.message, now)

        for action in decision.actions:
            if self.state.position is None:
                break
            if action.type == ActionType.EXIT_ALL:
                await self._exit_all(action.reason, now)
                break
            if action.type == ActionType.EXIT_LEGS:
                await self._exit_legs(action, now)
            elif action.type == ActionType.ROLL:
                await self._roll(action.side, action.roll_kind, now)
            elif action.type == ActionType.TRAIL_LOCK:
                await self._raise_trail(action, now)

    async def _exit_legs(self, action: RiskAction, now: datetime) -> None:
        position = self.state.position
        legs = [position.leg(i) for i in action.leg_ids]
        legs = [l for l in legs if l is not None and l.is_active]
        if not legs:
            return
        result = await self.sequencer.exit(legs)
        closes = {
            leg_id: action.exit_prices.get(leg_id) or fill or position.leg(leg_id).current_premium
            for leg_id, fill in result.exited.items()
        }
        await self.state.close_legs(closes, action.reason, now)

    async def _exit_all(self, reason: str, now: datetime) -> Optional[Trade]:
        position = self.state.position
        result = await self.sequencer.exit(position.active_legs())
        closes = {
            leg_id: fill or position.leg(leg_id).current_premium
            for leg_id, fill in result.exited.items()
        }
        ledger_size = len(self.state.ledger)
        await self.state.close_legs(closes, reason, now)
        if result.failed:
            await self.state.record_alert(
                AlertSeverity.CRITICAL, "EXIT_INCOMPLETE",
                f"{reason}: {', '.join(result.failed)} still open, retrying on next trigger", now,
            )
            return None
        return self.state.ledger[-1] if len(self.state.ledger) > ledger_size else None

    async def _raise_trail(self, action: RiskAction, now: datetime) -> None:
        if not await self.state.apply_trail_lock(action.lock, action.floor, now):
            return
        leg = self.state.position.last_leg
        if leg is None:
            return
        filled_at = await self.sequencer.replace_stop(leg, action.floor)
        if filled_at is not None:
            await self.state.close_legs({leg.leg_id: filled_at}, "Trail SL Hit", now)

    async def _place_protective_stops(self, position: Position) -> None:
        fraction = self.config.leg_stop_fraction
        if not fraction or self.config.kind == StrategyKind.SPREAD:
            return
        for leg in position.active_legs():
            factor = (1 - fraction) if leg.is_buy else (1 + fraction)
            await self.sequencer.place_stop(leg, leg.entry_premium * factor)

    # =========================================================================
    # Rolls
    # =========================================================================

    async def _roll(self, side: OptionType, kind: AdjustmentType, now: datetime) -> bool:
        if self.config.kind != StrategyKind.SPREAD:
            return False
        if not self.state.can_roll(kind):
            return False
        try:
            spot = await self._spot()
        except ExternalFeedError as e:
            logger.warning(f"[{self.config.id}] roll of {side.value} skipped: {e.message}")
            return False
        return await self._replace_side(side, kind, now, spot=spot)

    async def _replace_side(
        self,
        side: OptionType,
        kind: Optional[AdjustmentType],
        now: datetime,
        spot: float,
        at_the_money: bool = False,
    ) -> bool:
        """Close one side's spread and reopen it from current spot. `kind` None means iron fly."""
        cfg = self.config
        position = self.state.position
        old = position.side_legs(side)
        other = OptionType.PUT if side == OptionType.CALL else OptionType.CALL
        if not old or not position.side_legs(other):
            logger.warning(f"[{cfg.id}] {side.value} replacement needs both spreads open")
            return False

        n = len(position.adjustments) + 1
        try:
            chain = await self._chain()
            new_legs = await self.builder.build_side(
                side, spot, chain, position.expiry_date, self._contract_quotes,
                suffix=f"_R{n}", at_the_money=at_the_money,
            )
        except ExternalFeedError as e:
            logger.warning(f"[{cfg.id}] replacement {side.value} spread unavailable: {e.message}")
            return False
        if not new_legs:
            return False

        await self.state.begin_adjustment(now)
        reason = "Iron Fly" if kind is None else "Roll"

        exit_result = await self.sequencer.exit(old)
        closing_cost = sum(
            (l.current_premium if not l.is_buy else -l.current_premium)
            for l in old if l.leg_id in exit_result.exited
        )
        await self.state.close_legs(
            {leg_id: fill or position.leg(leg_id).current_premium for leg_id, fill in exit_result.exited.items()},
            reason, now,
        )
        if not exit_result.complete:
            await self.state.end_adjustment(now)
            await self.state.record_alert(
                AlertSeverity.HIGH, f"ROLL_ABORTED_{side.name}",
                f"{reason} of {side.name} aborted: {', '.join(exit_result.failed)} could not be closed", now,
            )
            return False

        entry = await self.sequencer.enter(new_legs)
        if not entry.ok:
            await self.state.end_adjustment(now)
            await self.state.record_alert(
                AlertSeverity.HIGH, f"ROLL_FAILED_{side.name}",
                f"{reason} of {side.name}: old spread closed but replacement failed", now,
            )
            return False

        new_credit = net_credit(new_legs)
        incremental = round(new_credit - closing_cost, 2)
        details = {
            "closed": [l.leg_id for l in old],
            "opened": [l.leg_id for l in new_legs],
            "closing_cost": round(closing_cost, 2),
            "new_credit": round(new_credit, 2),
            "spot": spot,
        }
        if kind is None:
            done = await self.state.convert_to_iron_fly(new_legs, incremental, now, details)
        else:
            done = await self.state.record_roll(kind, side, new_legs, incremental, now, details)
        await self.state.end_adjustment(now)
        return done

    async def _alert_without_position(self, severity: AlertSeverity, message: str, now: datetime) -> None:
        logger.error(f"[{self.config.id}] {message}")
        await safe_publish(self.notifier, NotificationEvent(
            event_type=EventType.ALERT,
            timestamp=now,
            instance_id=self.config.id,
            instrument=self.config.instrument,
            message=message,
            severity=severity,
        ))
