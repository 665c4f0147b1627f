"""
Shared Execution Enums
======================

Enumerations shared by the gate, the cost analyzer, the policy,
the venue layer and the atomic engine.
"""

from __future__ import annotations

from enum import Enum


class OrderSide(str, Enum):
    """Order side."""
    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY

    @classmethod
    def parse(cls, value: "OrderSide | str") -> "OrderSide":
        if isinstance(value, OrderSide):
            return value
        return cls(str(value).strip().upper())


class OrderType(str, Enum):
    """Order kind sent to a venue."""
    MARKET = "MARKET"
    LIMIT = "LIMIT"


class Urgency(str, Enum):
    """Caller urgency for an execution request."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def tier(self) -> "Urgency":
        """Three-tier urgency used by cost analysis and the policy."""
        return Urgency.HIGH if self is Urgency.CRITICAL else self


class ExecutionMode(str, Enum):
    """How an order is worked at the venue."""
    DIRECT = "DIRECT"
    TWAP = "TWAP"
    ICEBERG = "ICEBERG"


class RequestMode(str, Enum):
    """Execution mode a caller can force on a request."""
    MARKET = "MARKET"
    LIMIT = "LIMIT"
    TWAP = "TWAP"
    VWAP = "VWAP"  # worked as TWAP
    ICEBERG = "ICEBERG"


class FillStatus(str, Enum):
    """Outcome of a single venue submission."""
    FILLED = "FILLED"
    PARTIAL = "PARTIAL"
    REJECTED = "REJECTED"
