"""
Execution Module

Position lifecycle components:
- Position domain model and state machine
- Order sequencer (hedge-first entry, sell-first exit)
- Risk and adjustment engine

StrategyEngine and TradingDesk are imported from
hedgeflow.execution.engine and hedgeflow.execution.orchestrator.
"""

from hedgeflow.execution.models import (
    AdjustmentRecord,
    AdjustmentType,
    Leg,
    LegStatus,
    Position,
    PositionStatus,
    Trade,
)
from hedgeflow.execution.position_state import PositionStateMachine
from hedgeflow.execution.sequencer import EntryResult, ExitResult, OrderSequencer
from hedgeflow.execution.risk import ActionType, RiskAction, RiskAlert, RiskDecision, RiskEngine

__all__ = [
    # Model
    "AdjustmentRecord",
    "AdjustmentType",
    "Leg",
    "LegStatus",
    "Position",
    "PositionStatus",
    "Trade",
    "PositionStateMachine",
    # Orders
    "EntryResult",
    "ExitResult",
    "OrderSequencer",
    # Risk
    "ActionType",
    "RiskAction",
    "RiskAlert",
    "RiskDecision",
    "RiskEngine",
]
