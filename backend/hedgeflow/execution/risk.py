"""
Risk & Adjustment Engine
Hedgeflow Options Engine

Firefight rules evaluated once per monitor tick. The engine is pure: it
reads a Position and returns the actions and alerts to apply, in priority
order:

1. Combined stop (more than one leg active): exit everything
2. Iron fly stop: exit everything at the configured % of capital
3. Spread firefight per side, CALL side first:
   4x exit of the tested spread, 3x roll of the decayed spread,
   discretionary suggestion on expiry day
4. Max-loss hold: alert once, never exit
5. Leg stops (delta-neutral and single-leg topologies)
6. Trailing lock on the last surviving BUY leg
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Set

from hedgeflow.core.config import StrategyInstanceConfig, StrategyKind, TrailStep
from hedgeflow.core.events import AlertSeverity
from hedgeflow.execution.models import AdjustmentType, Leg, Position
from hedgeflow.schemas.broker import OptionType, OrderSide


class ActionType(str, Enum):
    EXIT_ALL = "EXIT_ALL"
    EXIT_LEGS = "EXIT_LEGS"
    ROLL = "ROLL"
    TRAIL_LOCK = "TRAIL_LOCK"


@dataclass
class RiskAction:
    type: ActionType
    reason: str = ""
    leg_ids: List[str] = field(default_factory=list)
    side: Optional[OptionType] = None
    roll_kind: Optional[AdjustmentType] = None
    exit_prices: Dict[str, float] = field(default_factory=dict)
    lock: float = 0.0
    floor: float = 0.0


@dataclass
class RiskAlert:
    severity: AlertSeverity
    code: str
    message: str


@dataclass
class RiskDecision:
    actions: List[RiskAction] = field(default_factory=list)
    alerts: List[RiskAlert] = field(default_factory=list)

    @property
    def exits_all(self) -> bool:
        return any(a.type == ActionType.EXIT_ALL for a in self.actions)

    def reasons(self) -> List[str]:
        return [a.reason for a in self.actions if a.reason]


@dataclass
class SpreadView:
    """Vertical spread of one side, values per unit."""
    option_type: OptionType
    sell: Leg
    buy: Leg

    @property
    def leg_ids(self) -> List[str]:
        return [self.sell.leg_id, self.buy.leg_id]

    @property
    def credit(self) -> float:
        return self.sell.entry_premium - self.buy.entry_premium

    @property
    def cost(self) -> float:
        return self.sell.current_premium - self.buy.current_premium

    @property
    def expansion(self) -> float:
        return self.cost / self.credit if self.credit > 0 else 0.0

    @property
    def decay(self) -> float:
        return (self.credit - self.cost) / self.credit if self.credit > 0 else 0.0


def spread_view(position: Position, option_type: OptionType) -> Optional[SpreadView]:
    legs = position.side_legs(option_type)
    sells = [l for l in legs if l.side == OrderSide.SELL]
    buys = [l for l in legs if l.side == OrderSide.BUY]
    if len(sells) != 1 or len(buys) != 1:
        return None
    return SpreadView(option_type, sells[0], buys[0])


def trail_lock_for(profit: float, table: List[TrailStep]) -> float:
    """Highest lock whose trigger the profit has reached, 0 if none."""
    lock = 0.0
    for step in table:
        if profit >= step.trigger:
            lock = max(lock, step.lock)
    return lock


def _other(option_type: OptionType) -> OptionType:
    return OptionType.PUT if option_type == OptionType.CALL else OptionType.CALL


class RiskEngine:
    """Stateless evaluation of one instance's firefight rules."""

    def __init__(self, config: StrategyInstanceConfig):
        self.config = config

    def is_expiry_day(self, position: Position, now: datetime) -> bool:
        if position.expiry_date is not None:
            return now.date() == position.expiry_date
        return now.weekday() == self.config.expiry_weekday

    def evaluate(self, position: Optional[Position], now: datetime) -> RiskDecision:
        decision = RiskDecision()
        if position is None or not position.is_open:
            return decision

        # 1. Combined stop
        if self._combined_stop(position, decision):
            return decision

        # 2. Iron fly stop
        if self._iron_fly_stop(position, decision):
            return decision

        # 3. Spread firefight
        if self.config.kind == StrategyKind.SPREAD:
            self._firefight(position, now, decision)

        # 4. Max-loss hold
        self._max_loss_hold(position, decision)

        # 5. Leg stops
        if self.config.leg_stop_fraction and self.config.kind != StrategyKind.SPREAD:
            self._leg_stops(position, decision)

        # 6. Trailing lock
        if self.config.trail_enabled:
            self._trailing_lock(position, decision)

        return decision

    # -------------------------------------------------------------------------

    def _combined_stop(self, position: Position, decision: RiskDecision) -> bool:
        fraction = self.config.combined_stop_fraction
        if not fraction or len(position.active_legs()) <= 1:
            return False
        threshold = fraction * position.entry_value()
        pnl = position.pnl
        if threshold <= 0 or pnl > -threshold:
            return False
        decision.actions.append(RiskAction(ActionType.EXIT_ALL, reason="Combined SL"))
        decision.alerts.append(RiskAlert(
            AlertSeverity.CRITICAL, "COMBINED_SL",
            f"Combined {fraction:.0%} SL hit: pnl {pnl:.0f} <= -{threshold:.0f}, exiting all legs",
        ))
        return True

    def _iron_fly_stop(self, position: Position, decision: RiskDecision) -> bool:
        if not position.is_iron_fly:
            return False
        limit = self.config.capital * self.config.iron_fly_exit_pct / 100
        pnl = position.pnl
        if pnl > -limit:
            return False
        decision.actions.append(RiskAction(ActionType.EXIT_ALL, reason="Iron Fly SL"))
        decision.alerts.append(RiskAlert(
            AlertSeverity.CRITICAL, "IRON_FLY_SL",
            f"Iron butterfly loss {pnl:.0f} reached {self.config.iron_fly_exit_pct}% of capital, exiting",
        ))
        return True

    def _firefight(self, position: Position, now: datetime, decision: RiskDecision) -> None:
        cfg = self.config
        rolls_used = position.total_rolls
        system_used = position.system_rolls
        expiry_day = self.is_expiry_day(position, now)

        for side in (OptionType.CALL, OptionType.PUT):
            spread = spread_view(position, side)
            if spread is None:
                continue
            opposing = spread_view(position, _other(side))
            opp_credit = opposing.credit if opposing else 0.0
            opp_decay = opposing.decay if opposing else 0.0

            expansion = spread.expansion
            effective_sl = cfg.exit_expansion * spread.credit - opp_credit * opp_decay

            # 4x exit, independent of the roll budget
            if expansion >= cfg.exit_expansion and spread.cost >= effective_sl:
                decision.actions.append(RiskAction(ActionType.EXIT_LEGS, reason="4x SL", leg_ids=spread.leg_ids, side=side))
                decision.alerts.append(RiskAlert(
                    AlertSeverity.CRITICAL, f"EXIT_SPREAD_{side.name}",
                    f"{side.name} spread at {expansion:.2f}x (cost {spread.cost:.2f} >= {effective_sl:.2f}), exiting spread",
                ))
                continue

            # 3x roll of the decayed side
            if (
                opposing is not None
                and not position.is_iron_fly
                and expansion >= cfg.roll_expansion
                and opp_decay >= cfg.roll_decay
                and rolls_used < cfg.max_rolls
                and system_used < cfg.max_system_rolls
            ):
                rolls_used += 1
                system_used += 1
                decision.actions.append(RiskAction(
                    ActionType.ROLL,
                    reason="3x Roll",
                    leg_ids=opposing.leg_ids,
                    side=opposing.option_type,
                    roll_kind=AdjustmentType.ROLL_SYSTEM,
                ))
                decision.alerts.append(RiskAlert(
                    AlertSeverity.HIGH, f"SYSTEM_ROLL_{opposing.option_type.name}",
                    f"{side.name} at {expansion:.2f}x and {opposing.option_type.name} decayed "
                    f"{opp_decay:.0%}: rolling {opposing.option_type.name} closer to spot",
                ))

        if not expiry_day:
            return

        # Discretionary suggestion, never executed automatically
        for side in (OptionType.CALL, OptionType.PUT):
            spread = spread_view(position, side)
            if spread is None or spread.decay < cfg.discretionary_decay:
                continue
            if position.discretionary_rolls >= cfg.max_discretionary_rolls or rolls_used >= cfg.max_rolls:
                continue
            code = f"DISCRETIONARY_ROLL_{side.name}"
            if self._alerted(position, code):
                continue
            decision.alerts.append(RiskAlert(
                AlertSeverity.INFO, code,
                f"{side.name} decayed {spread.decay:.0%} on expiry day: discretionary roll available",
            ))

    def _max_loss_hold(self, position: Position, decision: RiskDecision) -> None:
        pct = self.config.max_loss_pct
        if not pct or self._alerted(position, "MAX_LOSS_HOLD"):
            return
        limit = self.config.capital * pct / 100
        if position.pnl <= -limit:
            decision.alerts.append(RiskAlert(
                AlertSeverity.HIGH, "MAX_LOSS_HOLD",
                f"Loss {position.pnl:.0f} reached {pct}% of capital: holding to expiry, hedges bound the risk",
            ))

    def _leg_stops(self, position: Position, decision: RiskDecision) -> None:
        fraction = self.config.leg_stop_fraction
        trailing = position.last_leg is not None and self.config.kind != StrategyKind.SINGLE_LEG
        if trailing or position.locked_profit > 0:
            return

        taken: Set[str] = set()
        for leg in sorted(position.active_legs(), key=lambda l: l.exit_priority):
            if leg.leg_id in taken:
                continue
            if leg.is_buy and leg.current_premium <= leg.entry_premium * (1 - fraction):
                ids = [leg.leg_id]
                # The short of the same side hedges this leg's gamma and must go with it
                ids += [
                    l.leg_id for l in position.side_legs(leg.option_type)
                    if l.side == OrderSide.SELL and l.leg_id not in taken
                ]
                taken.update(ids)
                decision.actions.append(RiskAction(
                    ActionType.EXIT_LEGS, reason=f"{leg.option_type.value} Buy SL", leg_ids=ids, side=leg.option_type,
                ))
                decision.alerts.append(RiskAlert(
                    AlertSeverity.HIGH, f"BUY_SL_{leg.leg_id}",
                    f"{leg.leg_id} down {fraction:.0%} @ {leg.current_premium:.2f}: exiting {', '.join(ids)}",
                ))
            elif not leg.is_buy and leg.current_premium >= leg.entry_premium * (1 + fraction):
                taken.add(leg.leg_id)
                decision.actions.append(RiskAction(
                    ActionType.EXIT_LEGS, reason=f"{leg.option_type.value} Sell SL", leg_ids=[leg.leg_id], side=leg.option_type,
                ))
                decision.alerts.append(RiskAlert(
                    AlertSeverity.HIGH, f"SELL_SL_{leg.leg_id}",
                    f"{leg.leg_id} up {fraction:.0%} @ {leg.current_premium:.2f}: exiting it alone",
                ))

    def _trailing_lock(self, position: Position, decision: RiskDecision) -> None:
        leg = position.last_leg
        if leg is None:
            return
        # Legs already leaving this tick are not trailed
        if any(leg.leg_id in a.leg_ids for a in decision.actions):
            return

        floor = position.trail_floor
        lock = trail_lock_for(leg.pnl, self.config.trail_table)
        if lock > position.locked_profit:
            floor = leg.entry_premium + lock / leg.quantity
            decision.actions.append(RiskAction(ActionType.TRAIL_LOCK, reason="", lock=lock, floor=floor, leg_ids=[leg.leg_id]))
            decision.alerts.append(RiskAlert(
                AlertSeverity.INFO, f"TRAIL_{int(lock)}",
                f"Profit {leg.pnl:.0f} locks {lock:.0f}, trail SL {floor:.2f}",
            ))

        if floor is not None and leg.current_premium <= floor:
            decision.actions.append(RiskAction(
                ActionType.EXIT_LEGS,
                reason="Trail SL Hit",
                leg_ids=[leg.leg_id],
                exit_prices={leg.leg_id: round(floor, 2)},
            ))
            decision.alerts.append(RiskAlert(
                AlertSeverity.HIGH, "TRAIL_SL_HIT",
                f"{leg.leg_id} fell to {leg.current_premium:.2f} <= trail SL {floor:.2f}, exiting at floor",
            ))

    @staticmethod
    def _alerted(position: Position, code: str) -> bool:
        return any(a.get("code") == code for a in position.alerts)
