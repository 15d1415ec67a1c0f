"""
Error Taxonomy
Hedgeflow Options Engine

Exceptions raised at the engine's external boundaries:
- ExternalFeedError: quote/chain/candle lookup failed, tick is skipped
- OrderExecutionError: placement/cancel failed, sequencer continues
- ConfigurationError: invalid instance config, entry fails closed
- InvariantViolation: illegal state transition, logged and ignored
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(str, Enum):
    """Error categories for routing and handling."""
    DATA_FEED = "data_feed"     # Market data errors
    EXECUTION = "execution"     # Order execution errors
    VALIDATION = "validation"   # Configuration errors
    SYSTEM = "system"           # State machine errors


class HedgeflowError(Exception):
    """Base class for engine errors."""

    category: ErrorCategory = ErrorCategory.SYSTEM

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": type(self).__name__,
            "category": self.category.value,
            "message": self.message,
            "details": self.details,
        }


class ExternalFeedError(HedgeflowError):
    category = ErrorCategory.DATA_FEED


class OrderExecutionError(HedgeflowError):
    category = ErrorCategory.EXECUTION

    def __init__(
        self,
        message: str,
        order_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.order_id = order_id


class ConfigurationError(HedgeflowError):
    category = ErrorCategory.VALIDATION


class InvariantViolation(HedgeflowError):
    category = ErrorCategory.SYSTEM
