"""
Atomic Transaction Engine
=========================

All-or-compensate execution of multi-leg order sets.

Features:
- Leg validation with a full violation list
- Topological ordering of dependent legs, cycles rejected
- Strictly sequential leg execution with a live market check per leg
- Rollback on critical-leg failure, high failure rate or time budget
- Concurrent compensating orders with partial-rollback reporting
- Hash-chained audit of every leg attempt and compensation

Compensation is best-effort: ROLLED_BACK is a reporting state, not an
exchange-side guarantee. A partial rollback needs manual reconciliation.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from execution_core.audit_ledger import AuditLedger
from execution_core.enums import FillStatus, OrderSide, OrderType
from execution_core.errors import (
    CircularDependencyFault,
    RollbackPartialFailure,
    UnknownTransactionError,
    ValidationFault,
)
from execution_core.logging_config import correlation_scope
from execution_core.market_validator import MarketValidator
from execution_core.notifications import AlertCategory, AlertSeverity, NotificationManager
from execution_core.state_store import StateStore
from execution_core.venue import VenueGateway, VenueOrderRequest

logger = logging.getLogger(__name__)


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    EXECUTING = "EXECUTING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    ROLLED_BACK = "ROLLED_BACK"
    CANCELLED = "CANCELLED"


class LegStatus(str, Enum):
    PENDING = "PENDING"
    EXECUTING = "EXECUTING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    ROLLED_BACK = "ROLLED_BACK"


class RiskTier(str, Enum):
    ZERO = "ZERO"
    MINIMAL = "MINIMAL"
    LOW = "LOW"
    MEDIUM = "MEDIUM"


class RollbackStrategy(str, Enum):
    IMMEDIATE = "IMMEDIATE"
    GRACEFUL = "GRACEFUL"
    MANUAL = "MANUAL"


ROLLBACK_STRATEGY_BY_TIER = {
    RiskTier.ZERO: RollbackStrategy.IMMEDIATE,
    RiskTier.MINIMAL: RollbackStrategy.IMMEDIATE,
    RiskTier.LOW: RollbackStrategy.GRACEFUL,
    RiskTier.MEDIUM: RollbackStrategy.MANUAL,
}


def _order_type_name(value: OrderType | str) -> str:
    if isinstance(value, OrderType):
        return value.value
    return str(value).strip().upper()


def classify_risk(total_value: float, dependency_count: int) -> RiskTier:
    if total_value < 10_000 and dependency_count == 0:
        return RiskTier.ZERO
    if total_value < 50_000 and dependency_count < 2:
        return RiskTier.MINIMAL
    if total_value < 200_000 and dependency_count < 5:
        return RiskTier.LOW
    return RiskTier.MEDIUM


@dataclass
class LegSpec:
    """Caller input for one leg. dependencies name other legs' leg_id."""
    symbol: str
    side: OrderSide | str
    amount: float
    venue: str
    order_type: OrderType | str = OrderType.MARKET
    price: float | None = None
    dependencies: list[str] = field(default_factory=list)
    leg_id: str | None = None


@dataclass
class AtomicOrder:
    id: str
    symbol: str
    side: OrderSide
    amount: float
    venue: str
    order_type: OrderType
    price: float | None = None
    dependencies: list[str] = field(default_factory=list)
    status: LegStatus = LegStatus.PENDING
    rollback_data: dict | None = None
    error: str | None = None

    @property
    def notional(self) -> float:
        return self.amount * self.price if self.price else 0.0

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'symbol': self.symbol,
            'side': self.side.value,
            'amount': self.amount,
            'venue': self.venue,
            'order_type': self.order_type.value,
            'price': self.price,
            'dependencies': list(self.dependencies),
            'status': self.status.value,
            'rollback_data': self.rollback_data,
            'error': self.error,
        }


@dataclass
class AtomicTransaction:
    id: str
    orders: list[AtomicOrder]
    total_value: float
    expected_profit: float
    risk_tier: RiskTier
    rollback_strategy: RollbackStrategy
    status: TransactionStatus = TransactionStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    start_time: float | None = None
    end_time: float | None = None
    cancel_requested: bool = False
    errors: list[str] = field(default_factory=list)

    def get_order(self, order_id: str) -> AtomicOrder | None:
        for order in self.orders:
            if order.id == order_id:
                return order
        return None

    def dependents_of(self, order_id: str) -> list[AtomicOrder]:
        return [o for o in self.orders if order_id in o.dependencies]

    @property
    def elapsed_seconds(self) -> float:
        if self.start_time is None:
            return 0.0
        return (self.end_time or time.monotonic()) - self.start_time

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'status': self.status.value,
            'orders': [o.to_dict() for o in self.orders],
            'total_value': self.total_value,
            'expected_profit': self.expected_profit,
            'risk_tier': self.risk_tier.value,
            'rollback_strategy': self.rollback_strategy.value,
            'created_at': self.created_at.isoformat(),
            'elapsed_seconds': self.elapsed_seconds,
            'cancel_requested': self.cancel_requested,
            'errors': list(self.errors),
        }


@dataclass
class TransactionResult:
    transaction_id: str
    status: TransactionStatus
    executed_orders: list[str] = field(default_factory=list)
    failed_orders: list[str] = field(default_factory=list)
    skipped_orders: list[str] = field(default_factory=list)
    rollback_required: bool = False
    rollback_completed: bool = False
    rollback_partial: bool = False
    unresolved_orders: list[str] = field(default_factory=list)
    actual_profit: float = 0.0
    execution_time_ms: float = 0.0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == TransactionStatus.COMPLETED

    @property
    def requires_manual_reconciliation(self) -> bool:
        return self.rollback_partial

    def to_dict(self) -> dict:
        return {
            'transaction_id': self.transaction_id,
            'status': self.status.value,
            'success': self.success,
            'executed_orders': list(self.executed_orders),
            'failed_orders': list(self.failed_orders),
            'skipped_orders': list(self.skipped_orders),
            'rollback_required': self.rollback_required,
            'rollback_completed': self.rollback_completed,
            'rollback_partial': self.rollback_partial,
            'unresolved_orders': list(self.unresolved_orders),
            'actual_profit': self.actual_profit,
            'execution_time_ms': self.execution_time_ms,
            'errors': list(self.errors),
        }


class AtomicExecutionEngine:
    """
    Saga-style executor for dependent multi-leg transactions.

    Legs run one at a time in dependency order. A qualifying failure
    triggers opposite-side compensating orders for every completed leg,
    submitted concurrently.
    """

    def __init__(
        self,
        gateway: VenueGateway,
        validator: MarketValidator,
        ledger: AuditLedger | None = None,
        notifier: NotificationManager | None = None,
        max_execution_time_seconds: float = 30.0,
        rollback_timeout_seconds: float = 10.0,
        min_validation_score: float = 0.7,
        max_order_value: float = 1_000_000.0,
        failure_rate_threshold: float = 0.3,
        result_history: int = 1000,
    ):
        self._gateway = gateway
        self._validator = validator
        self._ledger = ledger
        self._notifier = notifier
        self.max_execution_time_seconds = max_execution_time_seconds
        self.rollback_timeout_seconds = rollback_timeout_seconds
        self.min_validation_score = min_validation_score
        self.max_order_value = max_order_value
        self.failure_rate_threshold = failure_rate_threshold

        self._transactions: StateStore[str, AtomicTransaction] = StateStore("active_transactions")
        self._results: StateStore[str, TransactionResult] = StateStore(
            "transaction_results", max_items=result_history
        )
        self._execution_times: deque[float] = deque(maxlen=1000)
        self._stats = {
            "total_transactions": 0,
            "completed": 0,
            "failed": 0,
            "rolled_back": 0,
            "rollback_partial": 0,
            "cancelled": 0,
        }

    # =========================================================================
    # Creation and validation
    # =========================================================================

    async def create_transaction(self, legs: list[LegSpec | dict[str, Any]]) -> str:
        """
        Validate legs and register a PENDING transaction.

        Returns:
            The transaction id

        Raises:
            ValidationFault: Listing every violation across all legs
        """
        if not legs:
            raise ValidationFault(["Transaction must contain at least one order"])

        transaction_id = f"ATOMIC_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"
        specs = [leg if isinstance(leg, LegSpec) else LegSpec(**leg) for leg in legs]
        violations: list[str] = []
        validation_scores: dict[str, float | Exception] = {}
        leg_ids: list[str] = []

        for index, spec in enumerate(specs):
            leg_id = spec.leg_id or f"{transaction_id}_{index}"
            if leg_id in leg_ids:
                violations.append(f"Order {index}: duplicate leg id {leg_id}")
            leg_ids.append(leg_id)
            for problem in await self._validate_leg(spec, validation_scores):
                violations.append(f"Order {index} ({leg_id}): {problem}")

        for index, spec in enumerate(specs):
            for dependency in spec.dependencies:
                if dependency not in leg_ids:
                    violations.append(f"Order {index} ({leg_ids[index]}): unknown dependency {dependency}")

        if violations:
            logger.warning(f"Transaction rejected with {len(violations)} violation(s): {violations}")
            raise ValidationFault(violations)

        orders = [
            AtomicOrder(
                id=leg_id,
                symbol=spec.symbol.strip(),
                side=OrderSide.parse(spec.side),
                amount=float(spec.amount),
                venue=spec.venue,
                order_type=OrderType(_order_type_name(spec.order_type)),
                price=spec.price,
                dependencies=list(spec.dependencies),
            )
            for leg_id, spec in zip(leg_ids, specs)
        ]
        total_value = sum(o.notional for o in orders)
        expected_profit = sum(o.notional if o.side == OrderSide.SELL else -o.notional for o in orders)
        dependency_count = sum(len(o.dependencies) for o in orders)
        risk_tier = classify_risk(total_value, dependency_count)

        transaction = AtomicTransaction(
            id=transaction_id,
            orders=orders,
            total_value=total_value,
            expected_profit=expected_profit,
            risk_tier=risk_tier,
            rollback_strategy=ROLLBACK_STRATEGY_BY_TIER[risk_tier],
        )
        self._transactions.put(transaction_id, transaction)
        logger.info(
            f"Created transaction {transaction_id}: {len(orders)} legs, "
            f"value={total_value:.2f}, risk={risk_tier.value}, "
            f"rollback={transaction.rollback_strategy.value}"
        )
        return transaction_id

    async def _validate_leg(
        self,
        spec: LegSpec,
        validation_scores: dict[str, float | Exception],
    ) -> list[str]:
        problems = []
        symbol = spec.symbol.strip() if isinstance(spec.symbol, str) else ""
        if not symbol:
            problems.append("symbol is required")

        try:
            OrderSide.parse(spec.side)
        except ValueError:
            problems.append(f"invalid side {spec.side!r}")

        if not spec.venue:
            problems.append("venue is required")

        amount_ok = isinstance(spec.amount, (int, float)) and math.isfinite(spec.amount) and spec.amount > 0
        if not amount_ok:
            problems.append(f"amount must be positive, got {spec.amount}")

        order_type = _order_type_name(spec.order_type)
        if order_type not in (OrderType.MARKET.value, OrderType.LIMIT.value):
            problems.append(f"invalid order type {spec.order_type!r}")
        if spec.price is not None and spec.price <= 0:
            problems.append(f"price must be positive, got {spec.price}")
        elif order_type == OrderType.LIMIT.value and spec.price is None:
            problems.append("limit orders require a price")

        if amount_ok:
            value = spec.amount * spec.price if spec.price and spec.price > 0 else spec.amount
            if value > self.max_order_value:
                problems.append(f"order value {value:.2f} exceeds maximum {self.max_order_value:.2f}")

        if symbol:
            if symbol not in validation_scores:
                try:
                    validation = await self._validator.cross_validate_prices(symbol)
                    validation_scores[symbol] = validation.validation_score
                except Exception as e:
                    logger.warning(f"Cross-venue price validation failed for {symbol}: {e}")
                    validation_scores[symbol] = e
            score = validation_scores[symbol]
            if isinstance(score, Exception):
                problems.append(f"price validation error: {score}")
            elif score < self.min_validation_score:
                problems.append(
                    f"cross-venue validation score {score:.2f} below minimum {self.min_validation_score:.2f}"
                )
        return problems

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute(self, transaction_id: str) -> TransactionResult:
        """
        Execute a PENDING transaction.

        Raises:
            UnknownTransactionError: If the id is not active
            CircularDependencyFault: If the legs form a cycle (nothing is sent)
            ValueError: If the transaction is not PENDING
        """
        transaction = self._transactions.get(transaction_id)
        if transaction is None:
            raise UnknownTransactionError(transaction_id)
        if transaction.status != TransactionStatus.PENDING:
            raise ValueError(
                f"Transaction {transaction_id} is {transaction.status.value}, only PENDING can execute"
            )

        with correlation_scope(transaction_id):
            transaction.status = TransactionStatus.EXECUTING
            transaction.start_time = time.monotonic()
            self._stats["total_transactions"] += 1

            try:
                sequence = self.topological_order(transaction)
            except CircularDependencyFault as fault:
                transaction.status = TransactionStatus.FAILED
                transaction.end_time = time.monotonic()
                transaction.errors.append(str(fault))
                self._stats["failed"] += 1
                self._audit("transaction_rejected", transaction, None, {"reason": str(fault)})
                logger.error(f"Transaction {transaction_id} aborted before execution: {fault}")
                raise

            result = await self._run(transaction, sequence)
            self._finish(transaction, result)
            return result

    def topological_order(self, transaction: AtomicTransaction) -> list[AtomicOrder]:
        """
        Depth-first ordering where every dependency precedes its dependents.

        Raises:
            CircularDependencyFault: If a leg is reached while still being visited
        """
        by_id = {o.id: o for o in transaction.orders}
        visited: set[str] = set()
        visiting: list[str] = []
        ordered: list[AtomicOrder] = []

        def visit(order_id: str) -> None:
            if order_id in visited:
                return
            if order_id in visiting:
                cycle = visiting[visiting.index(order_id):] + [order_id]
                raise CircularDependencyFault(cycle, transaction.id)
            visiting.append(order_id)
            for dependency in by_id[order_id].dependencies:
                visit(dependency)
            visiting.pop()
            visited.add(order_id)
            ordered.append(by_id[order_id])

        for order in transaction.orders:
            visit(order.id)
        return ordered

    async def _run(self, transaction: AtomicTransaction, sequence: list[AtomicOrder]) -> TransactionResult:
        result = TransactionResult(transaction_id=transaction.id, status=TransactionStatus.EXECUTING)
        attempted = 0

        for order in sequence:
            if transaction.cancel_requested:
                result.errors.append("Cancelled by caller before all legs ran")
                result.rollback_required = bool(result.executed_orders)
                logger.warning(f"Transaction {transaction.id} cancelled during execution")
                break

            unmet = [
                d for d in order.dependencies
                if transaction.get_order(d).status != LegStatus.COMPLETED
            ]
            if unmet:
                result.skipped_orders.append(order.id)
                logger.warning(f"Leg {order.id} skipped, prerequisites not completed: {unmet}")
                continue

            attempted += 1
            if await self._execute_leg(transaction, order):
                result.executed_orders.append(order.id)
                continue

            result.failed_orders.append(order.id)
            result.errors.append(f"Leg {order.id} failed: {order.error}")
            reasons = self._rollback_reasons(transaction, order, attempted, len(result.failed_orders))
            if reasons:
                result.rollback_required = True
                result.errors.append("Rollback triggered: " + "; ".join(reasons))
                logger.warning(f"Transaction {transaction.id} rolling back: {reasons}")
                break

        handled = set(result.executed_orders) | set(result.failed_orders) | set(result.skipped_orders)
        result.skipped_orders.extend(o.id for o in sequence if o.id not in handled)

        if result.rollback_required:
            result.rollback_completed, result.unresolved_orders = await self._rollback(transaction)
            result.rollback_partial = not result.rollback_completed

        if transaction.cancel_requested and not result.executed_orders and not result.failed_orders:
            result.status = TransactionStatus.CANCELLED
        elif not result.failed_orders and not transaction.cancel_requested:
            result.status = TransactionStatus.COMPLETED
        elif result.rollback_required and result.rollback_completed:
            result.status = TransactionStatus.ROLLED_BACK
        else:
            result.status = TransactionStatus.FAILED

        if result.status != TransactionStatus.ROLLED_BACK and transaction.orders:
            result.actual_profit = (
                transaction.expected_profit * len(result.executed_orders) / len(transaction.orders)
            )
        return result

    async def _execute_leg(self, transaction: AtomicTransaction, order: AtomicOrder) -> bool:
        order.status = LegStatus.EXECUTING
        try:
            market_ok = await self._validator.emergency_validation(order.symbol, order.price or 0.0, order.venue)
        except Exception as e:
            logger.warning(f"Live market check errored for leg {order.id} ({order.symbol} on {order.venue}): {e}")
            market_ok = False

        if not market_ok:
            order.status = LegStatus.FAILED
            order.error = "live market validation failed"
            self._audit("leg_attempt", transaction, order, {"outcome": "VALIDATION_FAILED"})
            logger.warning(
                f"Leg {order.id} aborted before submission: {order.side.value} {order.amount} "
                f"{order.symbol} @ {order.price} on {order.venue}"
            )
            return False

        request = VenueOrderRequest(
            symbol=order.symbol,
            side=order.side,
            amount=order.amount,
            order_type=order.order_type,
            price=order.price,
        )
        try:
            fill = await self._gateway.place_order(order.venue, request)
        except Exception as e:
            logger.exception(f"Leg {order.id} submission raised on {order.venue}: {e}")
            order.status = LegStatus.FAILED
            order.error = str(e)
            self._audit("leg_attempt", transaction, order, {"outcome": "ERROR"})
            return False

        if fill.success:
            order.status = LegStatus.COMPLETED
            order.rollback_data = {
                "venue_order_id": fill.order_id,
                "filled": fill.filled,
                "avg_price": fill.avg_price,
                "executed_at": datetime.now(timezone.utc).isoformat(),
            }
        else:
            order.status = LegStatus.FAILED
            order.error = fill.error or f"venue returned {fill.status.value}"
        self._audit("leg_attempt", transaction, order, {"outcome": fill.status.value, "fill": fill.to_dict()})
        return order.status == LegStatus.COMPLETED

    def _rollback_reasons(
        self,
        transaction: AtomicTransaction,
        order: AtomicOrder,
        attempted: int,
        failed: int,
    ) -> list[str]:
        """Any single reason triggers rollback."""
        reasons = []
        dependents = transaction.dependents_of(order.id)
        if dependents:
            reasons.append(f"critical leg {order.id} has {len(dependents)} dependent(s)")
        failure_rate = failed / attempted if attempted else 0.0
        if failure_rate > self.failure_rate_threshold:
            reasons.append(f"failure rate {failure_rate:.0%} exceeds {self.failure_rate_threshold:.0%}")
        if transaction.elapsed_seconds > self.max_execution_time_seconds:
            reasons.append(
                f"elapsed {transaction.elapsed_seconds:.1f}s exceeds budget {self.max_execution_time_seconds:.1f}s"
            )
        return reasons

    # =========================================================================
    # Rollback
    # =========================================================================

    async def _rollback(self, transaction: AtomicTransaction) -> tuple[bool, list[str]]:
        """
        Submit one compensating order per completed leg, all concurrently.

        Returns:
            (all compensations filled, ids of legs left unresolved)
        """
        completed = [o for o in transaction.orders if o.status == LegStatus.COMPLETED]
        if not completed:
            logger.info(f"Transaction {transaction.id}: no completed legs to compensate")
            return True, []

        if transaction.rollback_strategy == RollbackStrategy.MANUAL:
            self._alert(
                AlertSeverity.CRITICAL,
                f"Manual-review rollback for {transaction.id}",
                f"Compensating {len(completed)} legs of a {transaction.risk_tier.value} risk transaction",
                transaction,
                requires_acknowledgment=True,
            )

        logger.warning(f"Transaction {transaction.id}: compensating {len(completed)} legs")
        tasks = [asyncio.create_task(self._compensate(transaction, o)) for o in completed]
        done, pending = await asyncio.wait(tasks, timeout=self.rollback_timeout_seconds)
        for task in done:
            if task.exception() is not None:
                logger.error(f"Compensation task failed in {transaction.id}: {task.exception()}")
        if pending:
            logger.error(
                f"Transaction {transaction.id}: cancelling {len(pending)} compensation(s) still in flight "
                f"after {self.rollback_timeout_seconds}s"
            )
            for task in pending:
                task.cancel()
            # No leg may change state after the result is reported
            await asyncio.gather(*pending, return_exceptions=True)

        unresolved = [o.id for o in completed if o.status != LegStatus.ROLLED_BACK]
        if unresolved:
            fault = RollbackPartialFailure(transaction.id, unresolved)
            transaction.errors.append(str(fault))
            self._stats["rollback_partial"] += 1
            logger.critical(str(fault))
            self._alert(
                AlertSeverity.CRITICAL,
                f"Partial rollback {transaction.id}",
                str(fault),
                transaction,
                requires_acknowledgment=True,
            )
            return False, unresolved

        logger.info(f"Transaction {transaction.id}: all {len(completed)} legs compensated")
        return True, []

    async def _compensate(self, transaction: AtomicTransaction, order: AtomicOrder) -> bool:
        amount = (order.rollback_data or {}).get("filled") or order.amount
        request = VenueOrderRequest(
            symbol=order.symbol,
            side=order.side.opposite,
            amount=amount,
            order_type=OrderType.MARKET,
        )
        compensation_id = f"{order.id}_ROLLBACK"
        try:
            fill = await self._gateway.place_order(order.venue, request)
        except asyncio.CancelledError:
            logger.error(
                f"Compensation {compensation_id} timed out: {request.side.value} {amount} "
                f"{order.symbol} on {order.venue} may still reach the venue"
            )
            self._audit("leg_compensation", transaction, order, {
                "compensation_id": compensation_id, "outcome": "TIMED_OUT",
            })
            raise
        except Exception as e:
            logger.exception(f"Compensation {compensation_id} raised on {order.venue}: {e}")
            self._audit("leg_compensation", transaction, order, {
                "compensation_id": compensation_id, "outcome": "ERROR", "error": str(e),
            })
            return False

        filled_ok = fill.status == FillStatus.FILLED
        if filled_ok:
            order.status = LegStatus.ROLLED_BACK
        else:
            logger.error(
                f"Compensation {compensation_id} not filled: {request.side.value} {amount} "
                f"{order.symbol} on {order.venue} -> {fill.status.value} ({fill.error})"
            )
        self._audit("leg_compensation", transaction, order, {
            "compensation_id": compensation_id,
            "compensation_side": request.side.value,
            "outcome": fill.status.value,
            "fill": fill.to_dict(),
        })
        return filled_ok

    # =========================================================================
    # Bookkeeping
    # =========================================================================

    def _finish(self, transaction: AtomicTransaction, result: TransactionResult) -> None:
        transaction.status = result.status
        transaction.end_time = time.monotonic()
        transaction.errors.extend(e for e in result.errors if e not in transaction.errors)
        result.execution_time_ms = transaction.elapsed_seconds * 1000
        if transaction.start_time is not None:
            self._execution_times.append(result.execution_time_ms)
        self._results.put(transaction.id, result)

        if result.status == TransactionStatus.COMPLETED:
            self._stats["completed"] += 1
        elif result.status == TransactionStatus.ROLLED_BACK:
            self._stats["rolled_back"] += 1
        elif result.status == TransactionStatus.CANCELLED:
            self._stats["cancelled"] += 1
        else:
            self._stats["failed"] += 1

        self._audit("transaction_finished", transaction, None, result.to_dict())
        if result.status in (
            TransactionStatus.COMPLETED,
            TransactionStatus.ROLLED_BACK,
            TransactionStatus.CANCELLED,
        ):
            self._transactions.delete(transaction.id)

        log = logger.info if result.success else logger.warning
        log(
            f"Transaction {transaction.id} {result.status.value}: "
            f"executed={len(result.executed_orders)} failed={len(result.failed_orders)} "
            f"skipped={len(result.skipped_orders)} in {result.execution_time_ms:.0f}ms"
        )

    def _audit(
        self,
        event_type: str,
        transaction: AtomicTransaction,
        order: AtomicOrder | None,
        data: dict[str, Any],
    ) -> None:
        if self._ledger is None:
            return
        payload = {"transaction_id": transaction.id, **data}
        if order is not None:
            payload["order"] = order.to_dict()
        self._ledger.append(event_type, "atomic_engine", payload)

    def _alert(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        transaction: AtomicTransaction,
        requires_acknowledgment: bool = False,
    ) -> None:
        if self._notifier is None:
            return
        self._notifier.send_alert(
            severity=severity,
            category=AlertCategory.ROLLBACK,
            title=title,
            message=message,
            source="atomic_engine",
            details={
                "transaction_id": transaction.id,
                "risk_tier": transaction.risk_tier.value,
                "rollback_strategy": transaction.rollback_strategy.value,
            },
            requires_acknowledgment=requires_acknowledgment,
        )

    # =========================================================================
    # Queries and control
    # =========================================================================

    def get_transaction(self, transaction_id: str) -> AtomicTransaction | None:
        return self._transactions.get(transaction_id)

    def get_result(self, transaction_id: str) -> TransactionResult | None:
        return self._results.get(transaction_id)

    def get_transaction_status(self, transaction_id: str) -> dict | None:
        transaction = self._transactions.get(transaction_id)
        if transaction is not None:
            return transaction.to_dict()
        result = self._results.get(transaction_id)
        return result.to_dict() if result else None

    def cancel_transaction(self, transaction_id: str) -> bool:
        """
        Cancel a PENDING transaction, or ask an EXECUTING one to stop
        before its next leg. Returns False otherwise.
        """
        transaction = self._transactions.get(transaction_id)
        if transaction is None:
            return False
        if transaction.status == TransactionStatus.PENDING:
            self._stats["total_transactions"] += 1
            result = TransactionResult(
                transaction_id=transaction_id,
                status=TransactionStatus.CANCELLED,
                skipped_orders=[o.id for o in transaction.orders],
                errors=["Cancelled by caller before execution"],
            )
            self._finish(transaction, result)
            return True
        if transaction.status == TransactionStatus.EXECUTING:
            transaction.cancel_requested = True
            logger.info(f"Transaction {transaction_id} cancellation requested")
            return True
        return False

    def get_execution_stats(self) -> dict:
        total = self._stats["total_transactions"]
        times = list(self._execution_times)
        return {
            **self._stats,
            "active_transactions": len(self._transactions),
            "success_rate": self._stats["completed"] / total if total else 0.0,
            "rollback_rate": self._stats["rolled_back"] / total if total else 0.0,
            "avg_execution_time_ms": sum(times) / len(times) if times else 0.0,
        }


def create_atomic_engine(
    gateway: VenueGateway,
    validator: MarketValidator,
    config: dict[str, Any] | None = None,
    ledger: AuditLedger | None = None,
    notifier: NotificationManager | None = None,
) -> AtomicExecutionEngine:
    """Build an AtomicExecutionEngine from the `atomic` config section."""
    config = config or {}
    return AtomicExecutionEngine(
        gateway=gateway,
        validator=validator,
        ledger=ledger,
        notifier=notifier,
        max_execution_time_seconds=config.get("max_execution_time_seconds", 30.0),
        rollback_timeout_seconds=config.get("rollback_timeout_seconds", 10.0),
        min_validation_score=config.get("min_validation_score", 0.7),
        max_order_value=config.get("max_order_value", 1_000_000.0),
        failure_rate_threshold=config.get("failure_rate_threshold", 0.3),
    )
