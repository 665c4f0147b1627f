"""
Execution Faults
================

Exception taxonomy for the execution core.

- ValidationFault: bad order parameters, rejected before any venue call
- CircularDependencyFault: dependency cycle between transaction legs
- VenueRejection: venue refused an order after bounded retry
- DataUnavailableFault: missing market inputs (never leaves the gate)
- RiskVeto: the risk gate recommends cancellation
- RollbackPartialFailure: compensation itself failed for some legs
"""

from __future__ import annotations

from typing import Any


class ExecutionCoreError(Exception):
    """Base class for execution core faults."""


class ValidationFault(ExecutionCoreError, ValueError):
    """Order parameters failed validation. Lists every violation."""

    def __init__(self, violations: list[str], message: str | None = None):
        self.violations = list(violations)
        super().__init__(message or "Validation failed: " + "; ".join(self.violations))


class CircularDependencyFault(ValidationFault):
    """Dependency graph of a transaction contains a cycle."""

    def __init__(self, cycle: list[str], transaction_id: str | None = None):
        self.cycle = list(cycle)
        self.transaction_id = transaction_id
        path = " -> ".join(self.cycle)
        super().__init__(
            [f"Circular dependency detected: {path}"],
            f"Circular dependency in transaction {transaction_id}: {path}",
        )


class VenueRejection(ExecutionCoreError):
    """Venue refused an order after all retry attempts."""

    def __init__(self, venue: str, symbol: str, attempts: int, reason: str):
        self.venue = venue
        self.symbol = symbol
        self.attempts = attempts
        self.reason = reason
        super().__init__(
            f"{venue} rejected {symbol} after {attempts} attempt(s): {reason}"
        )


class DataUnavailableFault(ExecutionCoreError):
    """Market inputs required for analysis are missing."""

    def __init__(self, symbol: str, missing: list[str]):
        self.symbol = symbol
        self.missing = list(missing)
        super().__init__(f"Missing market data for {symbol}: {', '.join(self.missing)}")


class RiskVeto(ExecutionCoreError):
    """Risk gate refused the order."""

    def __init__(self, symbol: str, reason: str, details: dict[str, Any] | None = None):
        self.symbol = symbol
        self.reason = reason
        self.details = details or {}
        super().__init__(f"Risk veto on {symbol}: {reason}")


class RollbackPartialFailure(ExecutionCoreError):
    """Some compensating orders did not fill. Needs manual reconciliation."""

    def __init__(self, transaction_id: str, failed_order_ids: list[str]):
        self.transaction_id = transaction_id
        self.failed_order_ids = list(failed_order_ids)
        super().__init__(
            f"Rollback of {transaction_id} incomplete, "
            f"unresolved legs: {', '.join(self.failed_order_ids)}"
        )


class UnknownTransactionError(ExecutionCoreError, KeyError):
    """No transaction with the given id is known."""

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction not found: {transaction_id}")

    def __str__(self) -> str:
        return f"Transaction not found: {self.transaction_id}"
