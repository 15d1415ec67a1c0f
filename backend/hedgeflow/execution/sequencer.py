"""
Order Sequencer
Hedgeflow Options Engine

Enforces the order-placement protocol against an ExecutionGateway:
- Entry: hedge (BUY) legs first, best-effort fill confirmation, then SELL legs
- Exit: cancel resting stops, buy back SELL legs, then sell BUY legs,
  each group in ascending exit priority
- Placements are sequential with a fixed settle delay, never parallel
- A failing leg is logged and skipped; the rest of the sequence continues
"""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from loguru import logger

from hedgeflow.brokers.base import ExecutionGateway
from hedgeflow.core.exceptions import OrderExecutionError
from hedgeflow.execution.models import Leg
from hedgeflow.schemas.broker import (
    OrderRequest,
    OrderSide,
    OrderStatus,
    OrderType,
    ProductType,
)


TERMINAL_STATUSES = (OrderStatus.COMPLETE, OrderStatus.CANCELLED, OrderStatus.REJECTED)


@dataclass
class EntryResult:
    ok: bool
    placed: Dict[str, str] = field(default_factory=dict)     # leg_id -> order_id
    failed: List[str] = field(default_factory=list)
    unwound: List[str] = field(default_factory=list)


@dataclass
class ExitResult:
    exited: Dict[str, Optional[float]] = field(default_factory=dict)  # leg_id -> fill price if known
    failed: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed


def _opposite(side: OrderSide) -> OrderSide:
    return OrderSide.SELL if side == OrderSide.BUY else OrderSide.BUY


class OrderSequencer:
    """Sequential, hedge-safe order placement for multi-leg positions."""

    def __init__(
        self,
        gateway: ExecutionGateway,
        settle_delay: float = 1.0,
        order_timeout: float = 10.0,
        product: ProductType = ProductType.NRML,
        tag: Optional[str] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.settle_delay = settle_delay
        self.order_timeout = order_timeout
        self.product = product
        self.tag = tag
        self._sleep = sleep

    async def _pause(self) -> None:
        if self.settle_delay > 0:
            await self._sleep(self.settle_delay)

    async def _place(
        self,
        leg: Leg,
        side: OrderSide,
        order_type: OrderType = OrderType.MARKET,
        trigger: Optional[float] = None,
    ) -> str:
        request = OrderRequest(
            symbol=leg.symbol,
            exchange=leg.exchange,
            quantity=leg.quantity,
            side=side,
            order_type=order_type,
            product=self.product,
            trigger_price=round(trigger, 1) if trigger is not None else None,
            tag=self.tag,
        )
        try:
            return await asyncio.wait_for(self.gateway.place_order(request), timeout=self.order_timeout)
        except OrderExecutionError:
            raise
        except asyncio.TimeoutError as e:
            raise OrderExecutionError(f"Order for {leg.symbol} timed out after {self.order_timeout}s") from e
        except Exception as e:
            raise OrderExecutionError(f"Order for {leg.symbol} failed: {e}") from e

    async def _cancel(self, order_id: str) -> None:
        try:
            await asyncio.wait_for(self.gateway.cancel_order(order_id), timeout=self.order_timeout)
        except OrderExecutionError:
            raise
        except asyncio.TimeoutError as e:
            raise OrderExecutionError(f"Cancel of {order_id} timed out", order_id=order_id) from e
        except Exception as e:
            raise OrderExecutionError(f"Cancel of {order_id} failed: {e}", order_id=order_id) from e

    async def _status(self, order_id: str):
        try:
            return await asyncio.wait_for(self.gateway.get_order_status(order_id), timeout=self.order_timeout)
        except Exception as e:
            logger.warning(f"Status of {order_id} unavailable: {e}")
            return None

    # =========================================================================
    # Entry
    # =========================================================================

    async def enter(self, legs: List[Leg]) -> EntryResult:
        """
        Open legs hedge-first. A failed hedge aborts before any SELL is sent;
        any failure unwinds the legs already placed so no partial structure
        is left at the broker. Confirmed fills replace the quoted premiums.
        """
        result = EntryResult(ok=True)
        hedges = sorted((l for l in legs if l.is_buy), key=lambda l: l.exit_priority)
        shorts = sorted((l for l in legs if not l.is_buy), key=lambda l: l.exit_priority)
        confirmed: List[str] = []

        # 1. Hedges
        for i, leg in enumerate(hedges):
            if i:
                await self._pause()
            if not await self._open_leg(leg, result):
                break

        # 2. Confirm hedge fills before exposing shorts
        if result.ok and hedges and shorts:
            await self._pause()
            for leg in hedges:
                confirmed.append(leg.leg_id)
                if not await self._confirm(leg, result):
                    result.ok = False

        # 3. Shorts
        if result.ok:
            for i, leg in enumerate(shorts):
                if i:
                    await self._pause()
                if not await self._open_leg(leg, result):
                    break
        elif shorts:
            logger.error(f"Hedge placement failed, skipping {len(shorts)} SELL leg(s)")

        # 4. Fill prices of the legs not yet confirmed
        if result.ok:
            for leg in legs:
                if leg.leg_id in confirmed:
                    continue
                if not await self._confirm(leg, result):
                    result.ok = False

        if not result.ok and result.placed:
            placed = [l for l in legs if l.leg_id in result.placed]
            unwind = await self.exit(placed)
            result.unwound = list(unwind.exited)
            if unwind.failed:
                logger.critical(f"Unwind incomplete, legs still open at broker: {unwind.failed}")
        return result

    async def _open_leg(self, leg: Leg, result: EntryResult) -> bool:
        try:
            order_id = await self._place(leg, leg.side)
        except OrderExecutionError as e:
            logger.error(f"Entry {leg.side.value} {leg.symbol} failed: {e.message}")
            result.ok = False
            result.failed.append(leg.leg_id)
            return False
        leg.entry_order_id = order_id
        result.placed[leg.leg_id] = order_id
        return True

    async def _confirm(self, leg: Leg, result: EntryResult) -> bool:
        status = await self._status(leg.entry_order_id)
        if status is None:
            logger.warning(f"No fill confirmation for {leg.symbol} ({leg.entry_order_id}), proceeding optimistically")
            return True
        if status.status in (OrderStatus.REJECTED, OrderStatus.CANCELLED):
            # Never filled, so nothing to unwind for this leg
            logger.error(f"Entry {leg.symbol} {status.status.value}: {status.message}")
            result.placed.pop(leg.leg_id, None)
            result.failed.append(leg.leg_id)
            return False
        if status.status == OrderStatus.COMPLETE and status.average_price > 0:
            leg.entry_premium = status.average_price
            leg.current_premium = status.average_price
            leg.peak_premium = status.average_price
        elif status.status != OrderStatus.COMPLETE:
            logger.warning(f"Entry {leg.symbol} still {status.status.value}, proceeding optimistically")
        return True

    # =========================================================================
    # Exit
    # =========================================================================

    async def exit(self, legs: List[Leg]) -> ExitResult:
        """
        Close legs: cancel every resting order first, then SELL legs, then
        BUY legs. A resting stop found already filled counts as the exit; one
        that could not be cancelled keeps its leg out of this sequence.
        """
        result = ExitResult()
        active = [l for l in legs if l.is_active]

        # 1. Cancel resting stops / trails
        for leg in active:
            if not leg.pending_order_id:
                continue
            cleared, filled_at = await self._cancel_resting(leg)
            if filled_at is not None:
                result.exited[leg.leg_id] = filled_at
            elif not cleared:
                result.failed.append(leg.leg_id)

        remaining = [l for l in active if l.leg_id not in result.exited and l.leg_id not in result.failed]
        shorts = sorted((l for l in remaining if not l.is_buy), key=lambda l: l.exit_priority)
        hedges = sorted((l for l in remaining if l.is_buy), key=lambda l: l.exit_priority)

        # 2. Shorts first, 3. then hedges
        for i, leg in enumerate(shorts + hedges):
            if i:
                await self._pause()
            try:
                await self._place(leg, _opposite(leg.side))
            except OrderExecutionError as e:
                logger.error(f"Exit {leg.symbol} failed, leg stays open for retry: {e.message}")
                result.failed.append(leg.leg_id)
                continue
            result.exited[leg.leg_id] = None
        return result

    async def _cancel_resting(self, leg: Leg) -> Tuple[bool, Optional[float]]:
        """
        Cancel the leg's resting order. Returns (cleared, fill price). A stop
        still live at the broker after a failed cancel is not cleared and
        stays on the leg for the next attempt.
        """
        order_id = leg.pending_order_id
        cancelled = True
        try:
            await self._cancel(order_id)
        except OrderExecutionError as e:
            cancelled = False
            logger.warning(f"Cancel of resting order {order_id} for {leg.symbol} failed: {e.message}")
        status = await self._status(order_id)

        if status is not None and status.status == OrderStatus.COMPLETE:
            leg.pending_order_id = None
            logger.info(f"Resting order {order_id} for {leg.symbol} already filled @ {status.average_price}")
            return True, status.average_price or leg.current_premium
        if not cancelled and (status is None or status.status not in TERMINAL_STATUSES):
            logger.error(f"Resting order {order_id} for {leg.symbol} may still be live, not sending a market exit")
            return False, None
        leg.pending_order_id = None
        return True, None

    # =========================================================================
    # Resting orders
    # =========================================================================

    async def place_stop(self, leg: Leg, trigger: float) -> Optional[str]:
        """Rest a stop-market order that would close the leg at `trigger`."""
        try:
            order_id = await self._place(leg, _opposite(leg.side), OrderType.STOP_LOSS_MARKET, trigger)
        except OrderExecutionError as e:
            logger.error(f"Protective stop for {leg.symbol} @ {trigger:.2f} failed: {e.message}")
            return None
        leg.pending_order_id = order_id
        return order_id

    async def replace_stop(self, leg: Leg, trigger: float) -> Optional[float]:
        """
        Move the leg's resting stop to `trigger`. Returns the fill price when
        the old stop turns out to have filled already, in which case the leg
        is flat at the broker and no new stop is placed. A stop that cannot
        be cancelled is left where it is.
        """
        if leg.pending_order_id:
            cleared, filled_at = await self._cancel_resting(leg)
            if filled_at is not None:
                return filled_at
            if not cleared:
                return None
        await self.place_stop(leg, trigger)
        return None
