"""
Slippage / Risk Gate
====================

Pre-trade slippage analysis and continuous protection monitoring.

Features:
- Weighted expected-slippage model per symbol
- Square-root market impact split into immediate/permanent/temporary
- Order book liquidity snapshot and utilization
- Four-tier risk scoring with a deterministic recommendation table
- Conservative fallback analysis when market inputs are missing
- Protections re-analysed by a cancelable background monitor
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
import uuid
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any

from execution_core.enums import OrderSide
from execution_core.errors import DataUnavailableFault
from execution_core.notifications import AlertCategory, AlertSeverity, NotificationManager
from execution_core.state_store import StateStore

logger = logging.getLogger(__name__)


DEFAULT_MODEL_SYMBOLS = ("BTC/USDT", "ETH/USDT", "BNB/USDT", "ADA/USDT", "SOL/USDT")

DEFAULT_VOLUME_24H = 1_000_000.0
DEFAULT_VOLATILITY = 0.02
DEFAULT_LIQUIDITY_RATIO = 0.8
DEFAULT_SPREAD = 0.001

# Square-root impact model: immediate = sqrt(notional / scale) * coefficient
IMPACT_NOTIONAL_SCALE = 1_000_000.0
IMPACT_COEFFICIENT = 0.001
PERMANENT_IMPACT_SHARE = 0.3
TEMPORARY_IMPACT_SHARE = 0.7

REDUCE_SIZE_LIQUIDITY_FRACTION = 0.10
SPLIT_ORDER_LIQUIDITY_FRACTION = 0.05
DEFAULT_DELAY_SECONDS = 60.0


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class RecommendationAction(str, Enum):
    PROCEED = "PROCEED"
    REDUCE_SIZE = "REDUCE_SIZE"
    SPLIT_ORDER = "SPLIT_ORDER"
    DELAY = "DELAY"
    CANCEL = "CANCEL"


class ProtectionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    TRIGGERED = "TRIGGERED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class ProtectionActionType(str, Enum):
    ALERT = "ALERT"
    REDUCE_SIZE = "REDUCE_SIZE"
    SPLIT_ORDER = "SPLIT_ORDER"
    DELAY = "DELAY"
    CANCEL = "CANCEL"
    EMERGENCY_STOP = "EMERGENCY_STOP"


TERMINAL_STATUSES = (ProtectionStatus.EXPIRED, ProtectionStatus.CANCELLED)


# =============================================================================
# Configuration and model
# =============================================================================

@dataclass
class SlippageConfig:
    """Gate thresholds. Slippage and impact caps are percentages."""
    max_slippage: float = 0.5
    max_market_impact: float = 0.3
    liquidity_threshold: float = 10_000.0
    emergency_stop: bool = True
    monitor_interval_seconds: float = 1.0
    protection_ttl_seconds: float = 3600.0
    fallback_slippage_pct: float = 0.2


@dataclass
class SlippageModel:
    """Per-symbol coefficients of the expected-slippage sum."""
    symbol: str
    base_slippage: float = 0.05
    size_impact: float = 0.1
    time_impact: float = 0.01
    volatility_impact: float = 0.2
    liquidity_impact: float = 0.05
    spread_impact: float = 0.1
    accuracy: float = 0.85
    last_updated: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            'symbol': self.symbol,
            'base_slippage': self.base_slippage,
            'size_impact': self.size_impact,
            'time_impact': self.time_impact,
            'volatility_impact': self.volatility_impact,
            'liquidity_impact': self.liquidity_impact,
            'spread_impact': self.spread_impact,
            'accuracy': self.accuracy,
            'last_updated': self.last_updated.isoformat(),
        }


@dataclass
class OrderBookSnapshot:
    """Price levels as (price, size) tuples, best first."""
    bids: list[tuple[float, float]]
    asks: list[tuple[float, float]]
    volume_24h: float = DEFAULT_VOLUME_24H
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def mid(self) -> float | None:
        if not self.bids or not self.asks:
            return None
        return (self.bids[0][0] + self.asks[0][0]) / 2

    @property
    def spread(self) -> float:
        """Relative spread (fraction of mid)."""
        mid = self.mid
        if not mid:
            return DEFAULT_SPREAD
        return (self.asks[0][0] - self.bids[0][0]) / mid

    def available_notional(self, side: OrderSide) -> float:
        levels = self.asks if side == OrderSide.BUY else self.bids
        return sum(price * size for price, size in levels)


# =============================================================================
# Analysis result
# =============================================================================

@dataclass
class SlippageBreakdown:
    absolute: float
    relative_pct: float
    expected_pct: float
    max_allowed_pct: float
    actual_pct: float | None = None


@dataclass
class MarketImpact:
    """All components in percent."""
    immediate: float
    permanent: float
    temporary: float
    total: float


@dataclass
class LiquiditySnapshot:
    available: float  # quote notional on the consumed side
    utilization_pct: float
    depth: int
    spread: float


@dataclass
class RiskAssessment:
    level: RiskLevel
    score: float
    factors: list[str] = field(default_factory=list)


@dataclass
class Recommendation:
    action: RecommendationAction
    reason: str
    suggested_size: float | None = None
    suggested_delay_seconds: float | None = None
    alternative_routes: list[str] = field(default_factory=list)


@dataclass
class SlippageAnalysis:
    """Full pre-trade verdict for one (symbol, side, size) intent."""
    symbol: str
    side: OrderSide
    size: float
    current_price: float
    expected_price: float
    slippage: SlippageBreakdown
    market_impact: MarketImpact
    liquidity: LiquiditySnapshot
    risk: RiskAssessment
    recommendation: Recommendation
    is_fallback: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            'symbol': self.symbol,
            'side': self.side.value,
            'size': self.size,
            'current_price': self.current_price,
            'expected_price': self.expected_price,
            'slippage': {
                'absolute': self.slippage.absolute,
                'relative_pct': self.slippage.relative_pct,
                'expected_pct': self.slippage.expected_pct,
                'actual_pct': self.slippage.actual_pct,
                'max_allowed_pct': self.slippage.max_allowed_pct,
            },
            'market_impact': {
                'immediate': self.market_impact.immediate,
                'permanent': self.market_impact.permanent,
                'temporary': self.market_impact.temporary,
                'total': self.market_impact.total,
            },
            'liquidity': {
                'available': self.liquidity.available,
                'utilization_pct': self.liquidity.utilization_pct,
                'depth': self.liquidity.depth,
                'spread': self.liquidity.spread,
            },
            'risk': {
                'level': self.risk.level.value,
                'score': self.risk.score,
                'factors': list(self.risk.factors),
            },
            'recommendation': {
                'action': self.recommendation.action.value,
                'reason': self.recommendation.reason,
                'suggested_size': self.recommendation.suggested_size,
                'suggested_delay_seconds': self.recommendation.suggested_delay_seconds,
                'alternative_routes': list(self.recommendation.alternative_routes),
            },
            'is_fallback': self.is_fallback,
            'timestamp': self.timestamp.isoformat(),
        }


# =============================================================================
# Protections
# =============================================================================

@dataclass
class ProtectionAction:
    """One entry of a protection's action log. Frozen once executed."""
    action_id: str
    action_type: ProtectionActionType
    reason: str
    details: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    executed: bool = False

    def __setattr__(self, name: str, value: Any) -> None:
        if self.__dict__.get('executed', False):
            raise AttributeError(f"Protection action {self.action_id} is executed and immutable")
        super().__setattr__(name, value)

    def mark_executed(self) -> None:
        self.details = MappingProxyType(dict(self.details))
        self.executed = True

    def to_dict(self) -> dict:
        return {
            'action_id': self.action_id,
            'action_type': self.action_type.value,
            'reason': self.reason,
            'details': dict(self.details),
            'timestamp': self.timestamp.isoformat(),
            'executed': self.executed,
        }


@dataclass
class SlippageProtection:
    protection_id: str
    symbol: str
    side: OrderSide
    size: float
    config: SlippageConfig
    analysis: SlippageAnalysis
    status: ProtectionStatus = ProtectionStatus.ACTIVE
    actions: list[ProtectionAction] = field(default_factory=list)
    parent_id: str | None = None
    created_at: float = field(default_factory=time.monotonic)

    def to_dict(self) -> dict:
        return {
            'protection_id': self.protection_id,
            'symbol': self.symbol,
            'side': self.side.value,
            'size': self.size,
            'status': self.status.value,
            'parent_id': self.parent_id,
            'analysis': self.analysis.to_dict(),
            'actions': [a.to_dict() for a in self.actions],
        }


# =============================================================================
# Pure scoring helpers
# =============================================================================

def normalize_symbol(symbol: str) -> str:
    """Upper-case and drop repeated quote segments ("BTC/USDT/USDT" -> "BTC/USDT")."""
    parts = [p for p in symbol.strip().upper().split('/') if p]
    deduped: list[str] = []
    for part in parts:
        if not deduped or deduped[-1] != part:
            deduped.append(part)
    return '/'.join(deduped)


def split_sizes(total: float, slice_size: float) -> list[float]:
    """
    Pieces of at most slice_size that add up to total.

    Floating-point dust below a billionth of the total is dropped, so no
    piece is ever zero.
    """
    if slice_size <= 0:
        raise ValueError(f"slice size must be positive, got {slice_size}")
    sizes: list[float] = []
    remaining = total
    tolerance = abs(total) * 1e-9
    while remaining > tolerance:
        piece = min(slice_size, remaining)
        sizes.append(piece)
        remaining -= piece
    return sizes


def risk_level_for_score(score: float) -> RiskLevel:
    if score >= 0.7:
        return RiskLevel.CRITICAL
    if score >= 0.5:
        return RiskLevel.HIGH
    if score >= 0.3:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def assess_risk(
    expected_slippage_pct: float,
    impact_pct: float,
    liquidity: LiquiditySnapshot,
    config: SlippageConfig,
) -> RiskAssessment:
    score = 0.0
    factors: list[str] = []

    if expected_slippage_pct > config.max_slippage:
        score += 0.4
        factors.append(f"Expected slippage {expected_slippage_pct:.3f}% exceeds max {config.max_slippage}%")
    elif expected_slippage_pct > config.max_slippage * 0.5:
        score += 0.2
        factors.append(f"Expected slippage {expected_slippage_pct:.3f}% above half of max")

    if impact_pct > config.max_market_impact:
        score += 0.3
        factors.append(f"Market impact {impact_pct:.3f}% exceeds max {config.max_market_impact}%")
    elif impact_pct > config.max_market_impact * 0.5:
        score += 0.15
        factors.append(f"Market impact {impact_pct:.3f}% above half of max")

    if liquidity.utilization_pct > 50:
        score += 0.2
        factors.append(f"High liquidity utilization {liquidity.utilization_pct:.1f}%")
    elif liquidity.utilization_pct > 25:
        score += 0.1
        factors.append(f"Moderate liquidity utilization {liquidity.utilization_pct:.1f}%")

    if liquidity.available < config.liquidity_threshold:
        score += 0.1
        factors.append(f"Available liquidity {liquidity.available:.0f} below {config.liquidity_threshold:.0f}")

    return RiskAssessment(level=risk_level_for_score(score), score=score, factors=factors)


def recommend(
    expected_slippage_pct: float,
    impact_pct: float,
    liquidity: LiquiditySnapshot,
    risk: RiskAssessment,
    config: SlippageConfig,
    price: float,
) -> Recommendation:
    """Decision table, first matching row wins. Suggested sizes are base units."""
    if risk.level == RiskLevel.CRITICAL:
        return Recommendation(
            action=RecommendationAction.CANCEL,
            reason=f"Critical slippage risk (score {risk.score:.2f})",
            alternative_routes=[
                "Use a different venue",
                "Wait for better liquidity",
                "Reduce order size",
            ],
        )

    if risk.level == RiskLevel.HIGH:
        if expected_slippage_pct > config.max_slippage:
            return Recommendation(
                action=RecommendationAction.REDUCE_SIZE,
                reason=f"Expected slippage {expected_slippage_pct:.3f}% exceeds max {config.max_slippage}%",
                suggested_size=liquidity.available * REDUCE_SIZE_LIQUIDITY_FRACTION / price,
            )
        if impact_pct > config.max_market_impact:
            return Recommendation(
                action=RecommendationAction.SPLIT_ORDER,
                reason=f"Market impact {impact_pct:.3f}% exceeds max {config.max_market_impact}%",
                suggested_size=liquidity.available * SPLIT_ORDER_LIQUIDITY_FRACTION / price,
            )

    if risk.level == RiskLevel.MEDIUM and liquidity.utilization_pct > 25:
        return Recommendation(
            action=RecommendationAction.DELAY,
            reason=f"Liquidity utilization {liquidity.utilization_pct:.1f}%, wait for the book to refill",
            suggested_delay_seconds=DEFAULT_DELAY_SECONDS,
        )

    return Recommendation(
        action=RecommendationAction.PROCEED,
        reason=f"Risk {risk.level.value} within limits",
    )


# =============================================================================
# Gate
# =============================================================================

class SlippageGate:
    """
    Pre-trade slippage analysis and protection registry.

    Market inputs are pushed in with update_price / update_order_book /
    update_volatility / update_liquidity_ratio. analyze_slippage() never
    raises for missing inputs: it returns a fallback analysis instead.
    """

    def __init__(
        self,
        config: SlippageConfig | None = None,
        notifier: NotificationManager | None = None,
        model_symbols: tuple[str, ...] | list[str] = DEFAULT_MODEL_SYMBOLS,
        max_protections: int = 10_000,
    ):
        self.config = config or SlippageConfig()
        self._notifier = notifier

        self._models: dict[str, SlippageModel] = {}
        self._prices: dict[str, float] = {}
        self._order_books: dict[str, OrderBookSnapshot] = {}
        self._volatility: dict[str, float] = {}
        self._liquidity_ratio: dict[str, float] = {}

        self._protections: StateStore[str, SlippageProtection] = StateStore(
            "slippage_protections", max_items=max_protections
        )
        self._monitor_task: asyncio.Task | None = None
        self._delay_tasks: dict[str, asyncio.Task] = {}

        self._stats = {
            "analyses": 0,
            "fallbacks": 0,
            "protections_created": 0,
            "actions_triggered": 0,
        }

        for symbol in model_symbols:
            self._models[normalize_symbol(symbol)] = SlippageModel(symbol=normalize_symbol(symbol))

        logger.info(
            f"SlippageGate initialized: max_slippage={self.config.max_slippage}%, "
            f"max_impact={self.config.max_market_impact}%, models={len(self._models)}"
        )

    # -------------------------------------------------------------------------
    # Market inputs and models
    # -------------------------------------------------------------------------

    def update_price(self, symbol: str, price: float) -> None:
        if price > 0:
            self._prices[normalize_symbol(symbol)] = price

    def update_order_book(
        self,
        symbol: str,
        bids: list[tuple[float, float]],
        asks: list[tuple[float, float]],
        volume_24h: float | None = None,
    ) -> None:
        self._order_books[normalize_symbol(symbol)] = OrderBookSnapshot(
            bids=[(float(p), float(s)) for p, s in bids],
            asks=[(float(p), float(s)) for p, s in asks],
            volume_24h=volume_24h if volume_24h and volume_24h > 0 else DEFAULT_VOLUME_24H,
        )

    def update_volatility(self, symbol: str, volatility: float) -> None:
        self._volatility[normalize_symbol(symbol)] = max(0.0, volatility)

    def update_liquidity_ratio(self, symbol: str, ratio: float) -> None:
        self._liquidity_ratio[normalize_symbol(symbol)] = min(1.0, max(0.0, ratio))

    def get_model(self, symbol: str) -> SlippageModel | None:
        return self._models.get(normalize_symbol(symbol))

    def update_model(self, symbol: str, **params: float) -> SlippageModel:
        """Create or update a symbol's model coefficients."""
        symbol = normalize_symbol(symbol)
        model = self._models.get(symbol) or SlippageModel(symbol=symbol)
        valid = {f.name for f in fields(SlippageModel)} - {"symbol", "last_updated"}
        unknown = set(params) - valid
        if unknown:
            raise ValueError(f"Unknown model parameters: {sorted(unknown)}")
        model = replace(model, last_updated=datetime.now(timezone.utc), **params)
        self._models[symbol] = model
        logger.info(f"Updated slippage model for {symbol}: {params}")
        return model

    def update_config(self, **changes: Any) -> SlippageConfig:
        """Replace gate-wide thresholds. Existing protections keep their snapshot."""
        valid = {f.name for f in fields(SlippageConfig)}
        unknown = set(changes) - valid
        if unknown:
            raise ValueError(f"Unknown slippage config keys: {sorted(unknown)}")
        self.config = replace(self.config, **changes)
        logger.info(f"Slippage config updated: {changes}")
        return self.config

    # -------------------------------------------------------------------------
    # Analysis
    # -------------------------------------------------------------------------

    def analyze_slippage(
        self,
        symbol: str,
        side: OrderSide | str,
        size: float,
        config: SlippageConfig | None = None,
    ) -> SlippageAnalysis:
        """
        Analyse expected slippage, impact, liquidity and risk for an order.

        Missing price, order book or model yields a fallback analysis
        flagged with is_fallback=True.

        Raises:
            ValueError: If size is negative or not finite
        """
        if not math.isfinite(size) or size < 0:
            raise ValueError(f"Order size must be a non-negative number, got {size}")

        symbol = normalize_symbol(symbol)
        side = OrderSide.parse(side)
        config = config or self.config
        self._stats["analyses"] += 1
        try:
            return self._analyze(symbol, side, size, config)
        except DataUnavailableFault as e:
            logger.warning(f"{e}, using fallback analysis")
            return self._fallback_analysis(symbol, side, size, config, e.missing)

    def _analyze(
        self,
        symbol: str,
        side: OrderSide,
        size: float,
        config: SlippageConfig,
    ) -> SlippageAnalysis:
        model = self._models.get(symbol)
        book = self._order_books.get(symbol)
        price = self._prices.get(symbol) or (book.mid if book else None)

        missing = []
        if not price:
            missing.append("price")
        if book is None:
            missing.append("order_book")
        if model is None:
            missing.append("model")
        if missing:
            raise DataUnavailableFault(symbol, missing)

        notional = size * price
        volatility = self._volatility.get(symbol, DEFAULT_VOLATILITY)
        liquidity_ratio = self._liquidity_ratio.get(symbol, DEFAULT_LIQUIDITY_RATIO)
        spread = book.spread

        expected_pct = (
            model.base_slippage
            + model.size_impact * (notional / book.volume_24h) * 100
            + model.time_impact * 1.0
            + model.volatility_impact * volatility
            + model.liquidity_impact * (1 - liquidity_ratio) * 10
            + model.spread_impact * spread * 10
        )

        immediate = math.sqrt(notional / IMPACT_NOTIONAL_SCALE) * IMPACT_COEFFICIENT
        impact = MarketImpact(
            immediate=immediate * 100,
            permanent=immediate * PERMANENT_IMPACT_SHARE * 100,
            temporary=immediate * TEMPORARY_IMPACT_SHARE * 100,
            total=immediate * (1 + PERMANENT_IMPACT_SHARE + TEMPORARY_IMPACT_SHARE) * 100,
        )

        available = book.available_notional(side)
        liquidity = LiquiditySnapshot(
            available=available,
            utilization_pct=(notional / available * 100) if available > 0 else 100.0,
            depth=len(book.bids) + len(book.asks),
            spread=spread,
        )

        risk = assess_risk(expected_pct, impact.total, liquidity, config)
        recommendation = recommend(expected_pct, impact.total, liquidity, risk, config, price)

        direction = 1 if side == OrderSide.BUY else -1
        expected_price = price * (1 + direction * expected_pct / 100)

        analysis = SlippageAnalysis(
            symbol=symbol,
            side=side,
            size=size,
            current_price=price,
            expected_price=expected_price,
            slippage=SlippageBreakdown(
                absolute=abs(expected_price - price),
                relative_pct=expected_pct,
                expected_pct=expected_pct,
                max_allowed_pct=config.max_slippage,
            ),
            market_impact=impact,
            liquidity=liquidity,
            risk=risk,
            recommendation=recommendation,
        )
        logger.debug(
            f"Slippage {symbol} {side.value} {size}: expected={expected_pct:.4f}% "
            f"impact={impact.total:.4f}% risk={risk.level.value} -> {recommendation.action.value}"
        )
        return analysis

    def _fallback_analysis(
        self,
        symbol: str,
        side: OrderSide,
        size: float,
        config: SlippageConfig,
        missing: list[str],
    ) -> SlippageAnalysis:
        self._stats["fallbacks"] += 1
        price = self._prices.get(symbol) or 1.0
        slippage_pct = config.fallback_slippage_pct
        direction = 1 if side == OrderSide.BUY else -1
        expected_price = price * (1 + direction * slippage_pct / 100)

        return SlippageAnalysis(
            symbol=symbol,
            side=side,
            size=size,
            current_price=price,
            expected_price=expected_price,
            slippage=SlippageBreakdown(
                absolute=abs(expected_price - price),
                relative_pct=slippage_pct,
                expected_pct=slippage_pct,
                max_allowed_pct=config.max_slippage,
            ),
            market_impact=MarketImpact(immediate=0.05, permanent=0.02, temporary=0.03, total=0.1),
            liquidity=LiquiditySnapshot(
                available=size * price * 10,
                utilization_pct=10.0,
                depth=0,
                spread=0.1,
            ),
            risk=RiskAssessment(
                level=RiskLevel.MEDIUM,
                score=0.4,
                factors=[f"Missing market data: {', '.join(missing)}"],
            ),
            recommendation=Recommendation(
                action=RecommendationAction.PROCEED,
                reason="Fallback analysis (missing data), proceed with caution",
            ),
            is_fallback=True,
        )

    # -------------------------------------------------------------------------
    # Protections
    # -------------------------------------------------------------------------

    async def create_protection(
        self,
        symbol: str,
        side: OrderSide | str,
        size: float,
        parent_id: str | None = None,
        config: SlippageConfig | None = None,
    ) -> str:
        """
        Register a protection for an order intent.

        The protection keeps its own copy of config, the gate config by
        default. A CANCEL verdict immediately triggers an ALERT action.

        Returns:
            The protection id
        """
        config = replace(config or self.config)
        analysis = self.analyze_slippage(symbol, side, size, config)
        protection = SlippageProtection(
            protection_id=f"SLIPPAGE_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}",
            symbol=analysis.symbol,
            side=analysis.side,
            size=size,
            config=config,
            analysis=analysis,
            parent_id=parent_id,
        )
        self._protections.put(protection.protection_id, protection)
        self._stats["protections_created"] += 1
        logger.info(
            f"Protection {protection.protection_id} created for {protection.side.value} "
            f"{size} {protection.symbol}: {analysis.recommendation.action.value}"
        )

        if analysis.recommendation.action == RecommendationAction.CANCEL:
            await self.trigger_protection(
                protection.protection_id,
                ProtectionActionType.ALERT,
                analysis.recommendation.reason,
                {"risk_score": analysis.risk.score, "factors": list(analysis.risk.factors)},
            )
        return protection.protection_id

    def get_protection(self, protection_id: str) -> SlippageProtection | None:
        return self._protections.get(protection_id)

    def get_active_protections(self) -> list[SlippageProtection]:
        return [p for p in self._protections.values() if p.status == ProtectionStatus.ACTIVE]

    def get_child_protections(self, protection_id: str) -> list[str]:
        """Ids of the protections a SPLIT_ORDER action created from this one."""
        protection = self._protections.get(protection_id)
        if protection is None:
            return []
        children = []
        for action in protection.actions:
            children.extend(action.details.get("child_protections", ()))
        return children

    def cancel_protection(self, protection_id: str) -> bool:
        """
        Abandon a protection and every protection split from it.

        Returns False if the protection is unknown or already terminal.
        """
        protection = self._protections.get(protection_id)
        if protection is None:
            return False
        for child_id in self.get_child_protections(protection_id):
            self.cancel_protection(child_id)
        if protection.status in TERMINAL_STATUSES:
            return False
        protection.status = ProtectionStatus.CANCELLED
        self._cancel_delay_task(protection_id)
        logger.info(f"Protection {protection_id} cancelled by caller")
        return True

    async def trigger_protection(
        self,
        protection_id: str,
        action_type: ProtectionActionType,
        reason: str,
        details: dict[str, Any] | None = None,
    ) -> ProtectionAction | None:
        """
        Append an action to the protection's log and execute it.

        Returns:
            The executed action, or None if the protection is unknown or terminal
        """
        protection = self._protections.get(protection_id)
        if protection is None:
            logger.warning(f"Cannot trigger unknown protection {protection_id}")
            return None
        if protection.status in TERMINAL_STATUSES:
            logger.warning(
                f"Cannot trigger {action_type.value} on protection {protection_id} "
                f"in status {protection.status.value}"
            )
            return None

        action = ProtectionAction(
            action_id=f"ACTION_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}",
            action_type=action_type,
            reason=reason,
            details=dict(details or {}),
        )
        protection.actions.append(action)
        protection.status = ProtectionStatus.TRIGGERED
        self._stats["actions_triggered"] += 1
        logger.warning(
            f"Protection {protection_id} triggered {action_type.value} "
            f"({protection.side.value} {protection.size} {protection.symbol}): {reason}"
        )

        await self._execute_action(protection, action)
        action.mark_executed()
        return action

    async def _execute_action(self, protection: SlippageProtection, action: ProtectionAction) -> None:
        recommendation = protection.analysis.recommendation

        if action.action_type == ProtectionActionType.ALERT:
            self._notify(
                AlertSeverity.WARNING,
                f"Slippage alert {protection.symbol}",
                action.reason,
                protection,
            )

        elif action.action_type == ProtectionActionType.REDUCE_SIZE:
            new_size = action.details.get("suggested_size", recommendation.suggested_size)
            if new_size and 0 < new_size < protection.size:
                action.details["previous_size"] = protection.size
                action.details["new_size"] = new_size
                protection.size = new_size
                protection.analysis = self.analyze_slippage(
                    protection.symbol, protection.side, new_size, protection.config
                )
            else:
                logger.info(f"Protection {protection.protection_id}: no smaller size suggested, size kept")

        elif action.action_type == ProtectionActionType.SPLIT_ORDER:
            slice_size = action.details.get("suggested_size", recommendation.suggested_size)
            if slice_size and 0 < slice_size < protection.size:
                sizes = split_sizes(protection.size, slice_size)
                children = []
                for child_size in sizes:
                    children.append(await self.create_protection(
                        protection.symbol, protection.side, child_size,
                        parent_id=protection.protection_id,
                        config=protection.config,
                    ))
                action.details["child_protections"] = children
                action.details["child_sizes"] = sizes
            else:
                logger.info(f"Protection {protection.protection_id}: split size invalid, not split")

        elif action.action_type == ProtectionActionType.DELAY:
            delay = action.details.get("delay_seconds", recommendation.suggested_delay_seconds)
            delay = DEFAULT_DELAY_SECONDS if delay is None else delay
            action.details["delay_seconds"] = delay
            self._cancel_delay_task(protection.protection_id)
            self._delay_tasks[protection.protection_id] = asyncio.create_task(
                self._delayed_recheck(protection.protection_id, delay)
            )

        elif action.action_type == ProtectionActionType.CANCEL:
            protection.status = ProtectionStatus.CANCELLED
            self._cancel_delay_task(protection.protection_id)
            self._notify(
                AlertSeverity.WARNING,
                f"Order cancelled by slippage gate {protection.symbol}",
                action.reason,
                protection,
            )

        elif action.action_type == ProtectionActionType.EMERGENCY_STOP:
            protection.status = ProtectionStatus.CANCELLED
            self._cancel_delay_task(protection.protection_id)
            self._notify(
                AlertSeverity.EMERGENCY,
                f"Emergency stop {protection.symbol}",
                action.reason,
                protection,
            )

    async def _delayed_recheck(self, protection_id: str, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            protection = self._protections.get(protection_id)
            if protection is None or protection.status != ProtectionStatus.TRIGGERED:
                return
            protection.analysis = self.analyze_slippage(
                protection.symbol, protection.side, protection.size, protection.config
            )
            if protection.analysis.recommendation.action == RecommendationAction.PROCEED:
                protection.status = ProtectionStatus.ACTIVE
                logger.info(f"Protection {protection_id} reactivated after {delay}s delay")
            else:
                logger.info(
                    f"Protection {protection_id} still "
                    f"{protection.analysis.recommendation.action.value} after delay"
                )
        finally:
            if self._delay_tasks.get(protection_id) is asyncio.current_task():
                del self._delay_tasks[protection_id]

    def _cancel_delay_task(self, protection_id: str) -> None:
        task = self._delay_tasks.pop(protection_id, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def emergency_stop_all(self, reason: str) -> int:
        """Apply EMERGENCY_STOP to every live protection. Returns the count."""
        if not self.config.emergency_stop:
            logger.warning(f"Emergency stop requested but disabled by config: {reason}")
            return 0
        live = [
            p.protection_id for p in self._protections.values()
            if p.status not in TERMINAL_STATUSES
        ]
        for protection_id in live:
            await self.trigger_protection(protection_id, ProtectionActionType.EMERGENCY_STOP, reason)
        logger.critical(f"Emergency stop applied to {len(live)} protections: {reason}")
        return len(live)

    def _notify(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        protection: SlippageProtection,
    ) -> None:
        if self._notifier is None:
            return
        self._notifier.send_alert(
            severity=severity,
            category=AlertCategory.RISK,
            title=title,
            message=message,
            source="slippage_gate",
            details={
                "protection_id": protection.protection_id,
                "symbol": protection.symbol,
                "side": protection.side.value,
                "size": protection.size,
                "risk_level": protection.analysis.risk.level.value,
            },
            throttle_key=f"slippage:{protection.symbol}:{title}",
        )

    # -------------------------------------------------------------------------
    # Monitoring
    # -------------------------------------------------------------------------

    @property
    def is_monitoring(self) -> bool:
        return self._monitor_task is not None and not self._monitor_task.done()

    async def start(self) -> None:
        """Start the background monitor."""
        if self.is_monitoring:
            return
        self._monitor_task = asyncio.create_task(self._monitor_loop())
        logger.info(f"Slippage monitor started (interval {self.config.monitor_interval_seconds}s)")

    async def stop(self) -> None:
        """Stop the monitor and any pending delay re-checks."""
        tasks = list(self._delay_tasks.values())
        self._delay_tasks.clear()
        if self._monitor_task is not None:
            tasks.append(self._monitor_task)
            self._monitor_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Slippage monitor stopped")

    async def _monitor_loop(self) -> None:
        while True:
            try:
                await self.monitor_once()
                await asyncio.sleep(self.config.monitor_interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Slippage monitor iteration failed: {e}")
                await asyncio.sleep(self.config.monitor_interval_seconds)

    async def monitor_once(self) -> int:
        """
        Expire stale protections and re-analyse every ACTIVE one.

        Returns:
            Number of protections that escalated
        """
        now = time.monotonic()
        for protection in self._protections.values():
            if (
                protection.status not in TERMINAL_STATUSES
                and now - protection.created_at > protection.config.protection_ttl_seconds
            ):
                protection.status = ProtectionStatus.EXPIRED
                self._cancel_delay_task(protection.protection_id)
                logger.info(f"Protection {protection.protection_id} expired")

        escalated = 0
        for protection in self.get_active_protections():
            protection.analysis = self.analyze_slippage(
                protection.symbol, protection.side, protection.size, protection.config
            )
            recommendation = protection.analysis.recommendation
            if recommendation.action == RecommendationAction.PROCEED:
                continue
            details: dict[str, Any] = {}
            if recommendation.suggested_size is not None:
                details["suggested_size"] = recommendation.suggested_size
            if recommendation.suggested_delay_seconds is not None:
                details["delay_seconds"] = recommendation.suggested_delay_seconds
            await self.trigger_protection(
                protection.protection_id,
                ProtectionActionType(recommendation.action.value),
                recommendation.reason,
                details,
            )
            escalated += 1
        return escalated

    def get_stats(self) -> dict:
        by_status: dict[str, int] = {s.value: 0 for s in ProtectionStatus}
        for protection in self._protections.values():
            by_status[protection.status.value] += 1
        return {
            **self._stats,
            "protections": by_status,
            "pending_delays": len(self._delay_tasks),
            "models": len(self._models),
            "monitoring": self.is_monitoring,
        }


def create_slippage_gate(
    config: dict[str, Any] | None = None,
    notifier: NotificationManager | None = None,
) -> SlippageGate:
    """Build a SlippageGate from the `slippage` config section."""
    config = dict(config or {})
    model_symbols = config.pop("model_symbols", DEFAULT_MODEL_SYMBOLS)
    models = config.pop("models", {}) or {}
    max_protections = config.pop("max_protections", 10_000)
    valid = {f.name for f in fields(SlippageConfig)}
    gate = SlippageGate(
        config=SlippageConfig(**{k: v for k, v in config.items() if k in valid}),
        notifier=notifier,
        model_symbols=model_symbols,
        max_protections=max_protections,
    )
    for symbol, params in models.items():
        gate.update_model(symbol, **params)
    return gate
