"""
Execution Orchestrator
======================

Single entry point for order execution.

Flow of execute(request):
1. Validate the request
2. Apply the slippage gate verdict (veto, reduce, split, delay)
3. Pick venue and mode: TCA when confident, otherwise the RL policy
4. Work the order (direct, TWAP, iceberg or split)
5. Feed the realized cost back into TCA and the RL policy

Multi-leg trades go through execute_atomic(), which delegates to the
atomic engine for all-or-compensate semantics.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field, fields
from typing import Any

from execution_core.atomic_engine import (
    AtomicExecutionEngine,
    LegSpec,
    TransactionResult,
    create_atomic_engine,
)
from execution_core.audit_ledger import AuditLedger, create_audit_ledger
from execution_core.enums import (
    ExecutionMode,
    FillStatus,
    OrderSide,
    OrderType,
    RequestMode,
    Urgency,
)
from execution_core.errors import ExecutionCoreError, RiskVeto, ValidationFault
from execution_core.execution_rl import (
    ExecutionAction,
    ExecutionPolicy,
    ExecutionReward,
    ExecutionState,
    create_execution_policy,
)
from execution_core.logging_config import correlation_scope
from execution_core.market_validator import create_market_validator
from execution_core.notifications import NotificationManager, create_notification_manager
from execution_core.slippage_gate import (
    TERMINAL_STATUSES,
    RecommendationAction,
    SlippageAnalysis,
    SlippageGate,
    create_slippage_gate,
    split_sizes,
)
from execution_core.tca_analyzer import (
    ExecutionRecommendation,
    TCAAnalyzer,
    TransactionCost,
    create_tca_analyzer,
)
from execution_core.venue import VenueGateway, VenueOrderRequest, VenueOrderResult, create_venue_gateway

logger = logging.getLogger(__name__)


# =============================================================================
# Request / result
# =============================================================================

@dataclass
class ExecutionRequest:
    """
    Caller order intent.

    amount is a base-unit quantity. max_slippage is in percent.
    """
    symbol: str
    side: OrderSide | str
    amount: float
    urgency: Urgency | str = Urgency.MEDIUM
    max_slippage: float | None = None
    min_liquidity: float | None = None
    execution_mode: RequestMode | str | None = None
    target_price: float | None = None
    market_volatility: float | None = None
    liquidity: float | None = None


@dataclass
class ExecutionResult:
    success: bool
    order_ids: list[str] = field(default_factory=list)
    filled_amount: float = 0.0
    avg_price: float | None = None
    actual_slippage: float = 0.0
    execution_time_ms: float = 0.0
    venues: list[str] = field(default_factory=list)
    cost: float = 0.0
    errors: list[str] = field(default_factory=list)
    execution_mode: str | None = None
    cancelled: bool = False

    def to_dict(self) -> dict:
        return {
            'success': self.success,
            'order_ids': list(self.order_ids),
            'filled_amount': self.filled_amount,
            'avg_price': self.avg_price,
            'actual_slippage': self.actual_slippage,
            'execution_time_ms': self.execution_time_ms,
            'venues': list(self.venues),
            'cost': self.cost,
            'errors': list(self.errors),
            'execution_mode': self.execution_mode,
            'cancelled': self.cancelled,
        }


@dataclass
class OrchestratorConfig:
    tca_confidence_threshold: float = 0.7
    fee_rate: float = 0.001
    fill_threshold: float = 0.9
    twap_slices: int = 3
    twap_interval_seconds: float | None = None  # None: use the policy's interval
    iceberg_peak_fraction: float = 1 / 3
    iceberg_refresh_seconds: float = 1.0
    max_iceberg_slices: int = 100
    split_delay_seconds: float = 0.2
    max_split_slices: int = 20
    max_delay_seconds: float = 60.0
    max_delay_retries: int = 1
    latency_cost_per_second: float = 0.0001


def _parse_enum(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    return enum_cls(str(value).strip().upper())


@dataclass
class _ExecutionPlan:
    venue: str
    mode: str  # DIRECT, TWAP, ICEBERG or SPLIT
    action: ExecutionAction
    source: str
    order_type: OrderType
    amount: float
    slice_size: float | None = None


# =============================================================================
# Orchestrator
# =============================================================================

class ExecutionOrchestrator:
    """
    Coordinates the gate, TCA, the RL policy, the venue gateway and the
    atomic engine.
    """

    def __init__(
        self,
        gateway: VenueGateway,
        gate: SlippageGate,
        tca: TCAAnalyzer,
        policy: ExecutionPolicy,
        engine: AtomicExecutionEngine,
        notifier: NotificationManager | None = None,
        ledger: AuditLedger | None = None,
        config: OrchestratorConfig | None = None,
    ):
        self.gateway = gateway
        self.gate = gate
        self.tca = tca
        self.policy = policy
        self.engine = engine
        self.notifier = notifier
        self.ledger = ledger
        self.config = config or OrchestratorConfig()

        self._stats = {
            "requests": 0,
            "successful": 0,
            "failed": 0,
            "vetoed": 0,
            "tca_decisions": 0,
            "rl_decisions": 0,
            "explicit_decisions": 0,
        }

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def initialize(self) -> None:
        """Load venue markets and start the gate monitor."""
        loaded = await self.gateway.load_all_markets()
        await self.gate.start()
        logger.info(f"Execution orchestrator initialized: markets={loaded}")

    async def shutdown(self) -> None:
        await self.gate.stop()
        await self.gateway.close()
        if self.notifier is not None:
            await self.notifier.flush()
        if self.ledger is not None:
            flushed = self.ledger.flush_to_disk()
            logger.info(f"Flushed {flushed} audit entries")
        logger.info("Execution orchestrator shut down")

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """
        Execute a single order request.

        Faults are reported in the result: a risk veto comes back with
        cancelled=True and its reason, validation problems as errors.
        """
        start = time.perf_counter()
        self._stats["requests"] += 1
        with correlation_scope() as correlation_id:
            logger.info(
                f"Execution request {correlation_id}: {request.side} {request.amount} "
                f"{request.symbol} urgency={request.urgency} mode={request.execution_mode}"
            )
            try:
                result = await self._execute(request, start)
            except RiskVeto as veto:
                self._stats["vetoed"] += 1
                logger.warning(f"{veto} (request {request.side} {request.amount} {request.symbol})")
                result = ExecutionResult(success=False, cancelled=True, errors=[str(veto)])
            except ValidationFault as fault:
                logger.warning(f"Rejected request for {request.symbol}: {fault.violations}")
                result = ExecutionResult(success=False, errors=list(fault.violations))
            except ExecutionCoreError as e:
                logger.error(f"Execution of {request.symbol} failed: {e}")
                result = ExecutionResult(success=False, errors=[str(e)])

            result.execution_time_ms = (time.perf_counter() - start) * 1000
            self._stats["successful" if result.success else "failed"] += 1
            return result

    async def execute_atomic(self, legs: list[LegSpec | dict[str, Any]]) -> TransactionResult:
        """Create and run an atomic multi-leg transaction."""
        transaction_id = await self.engine.create_transaction(legs)
        return await self.engine.execute(transaction_id)

    # -------------------------------------------------------------------------
    # Request pipeline
    # -------------------------------------------------------------------------

    def _validate_request(self, request: ExecutionRequest) -> tuple[OrderSide, Urgency, RequestMode | None]:
        violations = []
        side = urgency = mode = None
        if not isinstance(request.symbol, str) or not request.symbol.strip():
            violations.append("symbol is required")
        try:
            side = OrderSide.parse(request.side)
        except ValueError:
            violations.append(f"invalid side {request.side!r}")
        if not isinstance(request.amount, (int, float)) or not math.isfinite(request.amount) or request.amount <= 0:
            violations.append(f"amount must be positive, got {request.amount}")
        try:
            urgency = _parse_enum(Urgency, request.urgency)
        except ValueError:
            violations.append(f"invalid urgency {request.urgency!r}")
        if request.execution_mode is not None:
            try:
                mode = _parse_enum(RequestMode, request.execution_mode)
            except ValueError:
                violations.append(f"invalid execution mode {request.execution_mode!r}")
        if request.target_price is not None and request.target_price <= 0:
            violations.append(f"target price must be positive, got {request.target_price}")
        if mode == RequestMode.LIMIT and request.target_price is None:
            violations.append("limit execution requires a target price")
        if request.max_slippage is not None and request.max_slippage < 0:
            violations.append(f"max slippage must be non-negative, got {request.max_slippage}")
        if not self.gateway.venues:
            violations.append("no venues configured")
        if violations:
            raise ValidationFault(violations)
        return side, urgency, mode

    async def _execute(self, request: ExecutionRequest, start: float) -> ExecutionResult:
        side, urgency, request_mode = self._validate_request(request)
        symbol = request.symbol.strip()
        reference_price = await self._refresh_price(symbol)

        analysis = await self._gate_verdict(request, symbol, side)
        amount = request.amount
        slice_size = None
        recommendation = analysis.recommendation
        if recommendation.action == RecommendationAction.REDUCE_SIZE and recommendation.suggested_size:
            if recommendation.suggested_size < amount:
                logger.warning(
                    f"Gate reduced {symbol} order from {amount} to {recommendation.suggested_size}: "
                    f"{recommendation.reason}"
                )
                amount = recommendation.suggested_size
        elif recommendation.action == RecommendationAction.SPLIT_ORDER and recommendation.suggested_size:
            if recommendation.suggested_size < amount:
                slice_size = recommendation.suggested_size
                logger.info(f"Gate split {symbol} order into {slice_size} slices: {recommendation.reason}")

        price = request.target_price or reference_price or analysis.current_price
        notional = amount * price
        state = ExecutionState.capture(
            symbol=symbol,
            size=notional,
            urgency=urgency,
            market_volatility=request.market_volatility if request.market_volatility is not None else 0.02,
            liquidity=request.liquidity if request.liquidity is not None else analysis.liquidity.available,
        )
        recommendation_tca = self.tca.recommend(symbol, notional, self.gateway.venues, urgency)
        plan = self._plan(request, request_mode, state, recommendation_tca, amount, slice_size)

        protection_id = None
        if plan.mode != ExecutionMode.DIRECT.value:
            protection_id = await self.gate.create_protection(symbol, side, amount)
        try:
            fills = await self._work(plan, symbol, side, price, request.target_price, protection_id)
        finally:
            if protection_id is not None:
                self.gate.cancel_protection(protection_id)

        result = self._summarize(plan, fills, reference_price or analysis.current_price, start)
        self._learn(plan, state, symbol, notional, recommendation_tca, result)
        return result

    async def _refresh_price(self, symbol: str) -> float | None:
        """Push the first available venue last price into the gate."""
        for venue in self.gateway.venues:
            try:
                ticker = await self.gateway.fetch_ticker(venue, symbol)
            except Exception as e:
                logger.debug(f"No {symbol} ticker from {venue}: {e}")
                continue
            last = ticker.get('last')
            if last and last > 0:
                self.gate.update_price(symbol, float(last))
                return float(last)
        logger.warning(f"No live price for {symbol} on any venue")
        return None

    async def _gate_verdict(self, request: ExecutionRequest, symbol: str, side: OrderSide) -> SlippageAnalysis:
        """Analyse, honouring DELAY up to max_delay_retries times."""
        for attempt in range(self.config.max_delay_retries + 1):
            analysis = self.gate.analyze_slippage(symbol, side, request.amount)
            recommendation = analysis.recommendation

            if recommendation.action == RecommendationAction.CANCEL:
                raise RiskVeto(symbol, recommendation.reason, analysis.to_dict())
            if request.max_slippage is not None and analysis.slippage.expected_pct > request.max_slippage:
                raise RiskVeto(
                    symbol,
                    f"expected slippage {analysis.slippage.expected_pct:.3f}% exceeds "
                    f"requested maximum {request.max_slippage:.3f}%",
                    analysis.to_dict(),
                )
            if (
                request.min_liquidity is not None
                and not analysis.is_fallback
                and analysis.liquidity.available < request.min_liquidity
            ):
                raise RiskVeto(
                    symbol,
                    f"available liquidity {analysis.liquidity.available:.2f} below "
                    f"requested minimum {request.min_liquidity:.2f}",
                    analysis.to_dict(),
                )
            if recommendation.action != RecommendationAction.DELAY:
                return analysis
            if attempt == self.config.max_delay_retries:
                break

            delay = min(recommendation.suggested_delay_seconds or 0.0, self.config.max_delay_seconds)
            logger.info(f"Gate delayed {symbol} by {delay}s ({attempt + 1}/{self.config.max_delay_retries})")
            await asyncio.sleep(delay)

        raise RiskVeto(
            symbol,
            f"still delayed after {self.config.max_delay_retries} re-check(s): {recommendation.reason}",
            analysis.to_dict(),
        )

    def _plan(
        self,
        request: ExecutionRequest,
        request_mode: RequestMode | None,
        state: ExecutionState,
        recommendation: ExecutionRecommendation,
        amount: float,
        slice_size: float | None,
    ) -> _ExecutionPlan:
        available = self.policy.generate_available_actions(state, self.gateway.venues)
        rl_action = self.policy.select_action(state, available)

        if request_mode is not None:
            mode = {
                RequestMode.MARKET: ExecutionMode.DIRECT,
                RequestMode.LIMIT: ExecutionMode.DIRECT,
                RequestMode.TWAP: ExecutionMode.TWAP,
                RequestMode.VWAP: ExecutionMode.TWAP,
                RequestMode.ICEBERG: ExecutionMode.ICEBERG,
            }[request_mode]
            action = self._matching_action(available, mode, recommendation.venue)
            source = "explicit"
        elif recommendation.confidence > self.config.tca_confidence_threshold:
            action = self._matching_action(available, recommendation.mode, recommendation.venue)
            source = "tca"
        else:
            action = rl_action
            source = "rl"
        self._stats[f"{source}_decisions"] += 1

        if request_mode == RequestMode.MARKET or request.target_price is None:
            order_type = OrderType.MARKET
        else:
            order_type = OrderType.LIMIT

        mode_name = "SPLIT" if slice_size else action.mode.value
        logger.info(
            f"Plan for {state.symbol}: {mode_name} on {action.venue} via {source} "
            f"(tca confidence {recommendation.confidence:.2f}, {recommendation.reasoning})"
        )
        return _ExecutionPlan(
            venue=action.venue,
            mode=mode_name,
            action=action,
            source=source,
            order_type=order_type,
            amount=amount,
            slice_size=slice_size,
        )

    @staticmethod
    def _matching_action(available: list[ExecutionAction], mode: ExecutionMode, venue: str) -> ExecutionAction:
        for action in available:
            if action.mode == mode and action.venue == venue:
                return action
        return ExecutionAction(mode=mode, venue=venue)

    # -------------------------------------------------------------------------
    # Execution algorithms
    # -------------------------------------------------------------------------

    async def _work(
        self,
        plan: _ExecutionPlan,
        symbol: str,
        side: OrderSide,
        price: float | None,
        target_price: float | None,
        protection_id: str | None,
    ) -> list[VenueOrderResult]:
        if plan.mode == "SPLIT":
            return await self._execute_split(plan, symbol, side, target_price, protection_id)
        if plan.mode == ExecutionMode.TWAP.value:
            return await self._execute_twap(plan, symbol, side, target_price, protection_id)
        if plan.mode == ExecutionMode.ICEBERG.value:
            return await self._execute_iceberg(plan, symbol, side, price, target_price, protection_id)
        return [await self._submit(plan, symbol, side, plan.amount, target_price)]

    async def _submit(
        self,
        plan: _ExecutionPlan,
        symbol: str,
        side: OrderSide,
        amount: float,
        price: float | None,
    ) -> VenueOrderResult:
        request = VenueOrderRequest(
            symbol=symbol,
            side=side,
            amount=amount,
            order_type=plan.order_type,
            price=price if plan.order_type == OrderType.LIMIT else None,
        )
        return await self.gateway.place_order(plan.venue, request)

    def _halted(self, protection_id: str | None, symbol: str, done: int, total: int | None) -> bool:
        if protection_id is None:
            return False
        protection = self.gate.get_protection(protection_id)
        if protection is not None and protection.status in TERMINAL_STATUSES:
            logger.warning(
                f"{symbol} run halted after {done}/{total or '?'} slices: "
                f"protection {protection_id} is {protection.status.value}"
            )
            return True
        return False

    async def _requote(self, venue: str, symbol: str, side: OrderSide, target_price: float | None) -> float | None:
        """Limit price against the live book: BUY min(target, ask), SELL max(target, bid)."""
        try:
            ticker = await self.gateway.fetch_ticker(venue, symbol)
        except Exception as e:
            logger.warning(f"Re-quote of {symbol} on {venue} failed, keeping {target_price}: {e}")
            return target_price
        bid, ask, last = ticker.get('bid'), ticker.get('ask'), ticker.get('last')
        mid = (bid + ask) / 2 if bid and ask else last
        anchor = target_price or mid
        if side == OrderSide.BUY:
            return min(anchor, ask) if ask else anchor
        return max(anchor, bid) if bid else anchor

    async def _execute_twap(
        self,
        plan: _ExecutionPlan,
        symbol: str,
        side: OrderSide,
        target_price: float | None,
        protection_id: str | None,
    ) -> list[VenueOrderResult]:
        slices = max(1, plan.action.slices or self.config.twap_slices)
        if self.config.twap_interval_seconds is not None:
            interval = self.config.twap_interval_seconds
        else:
            interval = (plan.action.interval_ms or 200) / 1000
        slice_amount = plan.amount / slices
        logger.info(f"TWAP {side.value} {plan.amount} {symbol} on {plan.venue}: {slices} x {slice_amount} every {interval}s")

        fills = []
        for i in range(slices):
            if self._halted(protection_id, symbol, i, slices):
                break
            price = target_price
            if plan.order_type == OrderType.LIMIT:
                price = await self._requote(plan.venue, symbol, side, target_price)
            fill = await self._submit(plan, symbol, side, slice_amount, price)
            fills.append(fill)
            if not fill.success:
                logger.warning(f"TWAP slice {i + 1}/{slices} on {plan.venue} not filled: {fill.error}")
            if i < slices - 1:
                await asyncio.sleep(interval)
        return fills

    async def _execute_iceberg(
        self,
        plan: _ExecutionPlan,
        symbol: str,
        side: OrderSide,
        price: float | None,
        target_price: float | None,
        protection_id: str | None,
    ) -> list[VenueOrderResult]:
        if plan.action.peak_size and price:
            peak = plan.action.peak_size / price
        else:
            peak = plan.amount * self.config.iceberg_peak_fraction
        peak = min(peak, plan.amount)

        fills = []
        remaining = plan.amount
        while remaining > plan.amount * 1e-9 and len(fills) < self.config.max_iceberg_slices:
            if self._halted(protection_id, symbol, len(fills), None):
                break
            fill = await self._submit(plan, symbol, side, min(peak, remaining), target_price)
            fills.append(fill)
            if not fill.success:
                logger.warning(f"Iceberg on {plan.venue} stopped after {len(fills)} peaks: {fill.error}")
                break
            remaining -= fill.filled
            if remaining > plan.amount * 1e-9:
                await asyncio.sleep(self.config.iceberg_refresh_seconds)
        return fills

    async def _execute_split(
        self,
        plan: _ExecutionPlan,
        symbol: str,
        side: OrderSide,
        target_price: float | None,
        protection_id: str | None,
    ) -> list[VenueOrderResult]:
        slice_size = plan.slice_size or plan.amount
        if math.ceil(plan.amount / slice_size) > self.config.max_split_slices:
            slice_size = plan.amount / self.config.max_split_slices
        sizes = split_sizes(plan.amount, slice_size)
        count = len(sizes)

        fills = []
        for i, size in enumerate(sizes):
            if self._halted(protection_id, symbol, i, count):
                break
            fill = await self._submit(plan, symbol, side, size, target_price)
            fills.append(fill)
            if not fill.success:
                logger.warning(f"Split slice {i + 1}/{count} on {plan.venue} not filled: {fill.error}")
            if i < count - 1:
                await asyncio.sleep(self.config.split_delay_seconds)
        return fills

    # -------------------------------------------------------------------------
    # Outcome
    # -------------------------------------------------------------------------

    def _summarize(
        self,
        plan: _ExecutionPlan,
        fills: list[VenueOrderResult],
        reference_price: float | None,
        start: float,
    ) -> ExecutionResult:
        filled = [f for f in fills if f.filled > 0 and f.status != FillStatus.REJECTED]
        filled_amount = sum(f.filled for f in filled)
        priced = [f for f in filled if f.avg_price]
        avg_price = None
        if priced:
            avg_price = sum(f.filled * f.avg_price for f in priced) / sum(f.filled for f in priced)

        slippage = 0.0
        if avg_price and reference_price:
            slippage = abs(avg_price - reference_price) / reference_price

        if plan.mode == ExecutionMode.DIRECT.value:
            success = bool(filled)
        else:
            success = filled_amount >= plan.amount * self.config.fill_threshold

        elapsed = time.perf_counter() - start
        errors = [f.error for f in fills if f.error]
        if not success and not errors:
            errors.append(f"filled {filled_amount} of {plan.amount}")
        return ExecutionResult(
            success=success,
            order_ids=[f.order_id for f in filled if f.order_id],
            filled_amount=filled_amount,
            avg_price=avg_price,
            actual_slippage=slippage,
            execution_time_ms=elapsed * 1000,
            venues=sorted({f.venue for f in fills}),
            cost=(slippage + self.config.fee_rate + elapsed * self.config.latency_cost_per_second) if filled else 0.0,
            errors=errors,
            execution_mode=plan.mode,
        )

    def _learn(
        self,
        plan: _ExecutionPlan,
        state: ExecutionState,
        symbol: str,
        notional: float,
        recommendation: ExecutionRecommendation,
        result: ExecutionResult,
    ) -> None:
        impact = min(0.01, notional / 1_000_000)
        fees = self.config.fee_rate if result.filled_amount > 0 else 0.0
        self.tca.record(TransactionCost(
            venue=plan.venue,
            symbol=symbol,
            size=notional,
            mode=plan.action.mode,
            expected_cost=recommendation.expected_cost,
            actual_cost=result.cost,
            slippage=result.actual_slippage,
            fees=fees,
            latency_ms=result.execution_time_ms,
            success=result.success,
            market_impact=impact,
        ))

        reward = ExecutionReward(
            cost=result.cost,
            slippage=result.actual_slippage,
            latency_ms=result.execution_time_ms,
            success=result.success,
            market_impact=impact,
        )
        next_state = ExecutionState.capture(
            symbol=state.symbol,
            size=state.size,
            urgency=state.urgency,
            market_volatility=state.market_volatility,
            liquidity=state.liquidity,
        )
        self.policy.update(
            state,
            plan.action,
            reward,
            next_state,
            self.policy.generate_available_actions(next_state, self.gateway.venues),
        )

    # -------------------------------------------------------------------------
    # Stats
    # -------------------------------------------------------------------------

    def get_stats(self) -> dict:
        return {
            'orchestrator': dict(self._stats),
            'venue_performance': [p.to_dict() for p in self.tca.get_venue_performance()],
            'q_table': self.policy.get_q_table_stats(),
            'exploration_phase': self.policy.exploration_phase,
            'learning': self.policy.get_learning_progress(),
            'tca': self.tca.get_tca_stats(),
            'atomic': self.engine.get_execution_stats(),
            'slippage': self.gate.get_stats(),
            'gateway': self.gateway.get_stats(),
            'notifications': self.notifier.get_statistics() if self.notifier else None,
        }


def build_orchestrator(config: dict[str, Any] | None = None) -> ExecutionOrchestrator:
    """Wire every component from a full config dict."""
    config = config or {}
    notifier = create_notification_manager(config.get("notifications"))
    ledger = create_audit_ledger(config.get("audit"))
    gateway = create_venue_gateway(config.get("venues"), config.get("gateway"))
    validator = create_market_validator(gateway, config.get("validator"))
    gate = create_slippage_gate(config.get("slippage"), notifier)
    tca = create_tca_analyzer(config.get("tca"))
    policy = create_execution_policy(config.get("rl"))
    engine = create_atomic_engine(gateway, validator, config.get("atomic"), ledger, notifier)

    settings = config.get("orchestrator") or {}
    valid = {f.name for f in fields(OrchestratorConfig)}
    unknown = set(settings) - valid
    if unknown:
        logger.warning(f"Ignoring unknown orchestrator settings: {sorted(unknown)}")

    return ExecutionOrchestrator(
        gateway=gateway,
        gate=gate,
        tca=tca,
        policy=policy,
        engine=engine,
        notifier=notifier,
        ledger=ledger,
        config=OrchestratorConfig(**{k: v for k, v in settings.items() if k in valid}),
    )
