"""
Transaction Cost Analysis
=========================

Learns per-venue execution quality and recommends the cheapest
venue and execution mode for an order.

Features:
- Bounded history of realized execution costs
- Exponentially smoothed VenuePerformance per (venue, symbol)
- Default cost estimates for venues without enough history
- Greedy minimization over venues x execution modes
"""

from __future__ import annotations

import logging
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import numpy as np

from execution_core.enums import ExecutionMode, Urgency
from execution_core.state_store import StateStore

logger = logging.getLogger(__name__)


DEFAULT_VENUE_COSTS = {
    "binance": 0.001,
    "okx": 0.0012,
    "coinbase": 0.0015,
    "kraken": 0.0018,
}
FALLBACK_VENUE_COST = 0.002

# Expected-cost multipliers for seasoned venues
MODE_COST_FACTORS = {
    ExecutionMode.DIRECT: 1.0,
    ExecutionMode.TWAP: 0.8,
    ExecutionMode.ICEBERG: 0.9,
}
URGENCY_COST_FACTORS = {
    Urgency.LOW: 0.9,
    Urgency.MEDIUM: 1.0,
    Urgency.HIGH: 1.2,
}
# Predictability discount applied to confidence
MODE_CONFIDENCE_FACTORS = {
    ExecutionMode.DIRECT: 1.0,
    ExecutionMode.TWAP: 0.9,
    ExecutionMode.ICEBERG: 0.8,
}
# Urgency factors for the default cost of new venues
NEW_VENUE_URGENCY_FACTORS = {
    Urgency.LOW: 0.8,
    Urgency.MEDIUM: 1.0,
    Urgency.HIGH: 1.5,
}


@dataclass
class TransactionCost:
    """Realized outcome of one execution."""
    venue: str
    symbol: str
    size: float
    mode: ExecutionMode
    expected_cost: float
    actual_cost: float
    slippage: float
    fees: float
    latency_ms: float
    success: bool
    market_impact: float = 0.0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            'venue': self.venue,
            'symbol': self.symbol,
            'size': self.size,
            'mode': self.mode.value,
            'expected_cost': self.expected_cost,
            'actual_cost': self.actual_cost,
            'slippage': self.slippage,
            'fees': self.fees,
            'latency_ms': self.latency_ms,
            'success': self.success,
            'market_impact': self.market_impact,
            'timestamp': self.timestamp.isoformat(),
        }


@dataclass
class VenuePerformance:
    """Smoothed execution quality for one (venue, symbol)."""
    venue: str
    symbol: str
    avg_slippage: float = 0.0
    avg_fees: float = 0.0
    avg_latency_ms: float = 0.0
    success_rate: float = 0.0
    total_trades: int = 0
    last_updated: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def cost_efficiency(self) -> float:
        """Lower is better."""
        return (self.avg_slippage + self.avg_fees) / max(0.1, self.success_rate)

    def update(self, cost: TransactionCost, alpha: float) -> None:
        success = 1.0 if cost.success else 0.0
        if self.total_trades == 0:
            self.avg_slippage = cost.slippage
            self.avg_fees = cost.fees
            self.avg_latency_ms = cost.latency_ms
            self.success_rate = success
        else:
            self.avg_slippage = self.avg_slippage * (1 - alpha) + cost.slippage * alpha
            self.avg_fees = self.avg_fees * (1 - alpha) + cost.fees * alpha
            self.avg_latency_ms = self.avg_latency_ms * (1 - alpha) + cost.latency_ms * alpha
            self.success_rate = self.success_rate * (1 - alpha) + success * alpha
        self.total_trades += 1
        self.last_updated = cost.timestamp

    def to_dict(self) -> dict:
        return {
            'venue': self.venue,
            'symbol': self.symbol,
            'avg_slippage': self.avg_slippage,
            'avg_fees': self.avg_fees,
            'avg_latency_ms': self.avg_latency_ms,
            'success_rate': self.success_rate,
            'total_trades': self.total_trades,
            'cost_efficiency': self.cost_efficiency,
            'last_updated': self.last_updated.isoformat(),
        }


@dataclass
class ExecutionRecommendation:
    venue: str
    mode: ExecutionMode
    expected_cost: float
    expected_slippage: float
    confidence: float
    reasoning: str
    alternatives: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'venue': self.venue,
            'mode': self.mode.value,
            'expected_cost': self.expected_cost,
            'expected_slippage': self.expected_slippage,
            'confidence': self.confidence,
            'reasoning': self.reasoning,
            'alternatives': self.alternatives,
        }


class TCAAnalyzer:
    """
    Transaction cost analyzer.

    record() feeds realized costs; recommend() returns the (venue, mode)
    with the lowest expected cost.
    """

    def __init__(
        self,
        smoothing_factor: float = 0.01,
        min_samples: int = 10,
        history_size: int = 1000,
        new_venue_confidence: float = 0.3,
        venue_costs: dict[str, float] | None = None,
        small_order_threshold: float = 10_000.0,
        large_order_threshold: float = 100_000.0,
        size_scale: float = 100_000.0,
    ):
        if not 0 < smoothing_factor <= 1:
            raise ValueError(f"smoothing_factor must be in (0, 1], got {smoothing_factor}")
        self.smoothing_factor = smoothing_factor
        self.min_samples = min_samples
        self.new_venue_confidence = new_venue_confidence
        self.venue_costs = {**DEFAULT_VENUE_COSTS, **(venue_costs or {})}
        self.small_order_threshold = small_order_threshold
        self.large_order_threshold = large_order_threshold
        self.size_scale = size_scale

        self._history: deque[TransactionCost] = deque(maxlen=history_size)
        self._performance: StateStore[str, VenuePerformance] = StateStore("venue_performance")

    @staticmethod
    def _key(venue: str, symbol: str) -> str:
        return f"{venue}_{symbol}"

    def record(self, cost: TransactionCost) -> VenuePerformance:
        """Append a realized cost and update the venue's smoothed performance."""
        self._history.append(cost)
        key = self._key(cost.venue, cost.symbol)
        performance = self._performance.get(key)
        if performance is None:
            performance = VenuePerformance(venue=cost.venue, symbol=cost.symbol)
            self._performance.put(key, performance)
        performance.update(cost, self.smoothing_factor)

        logger.debug(
            f"TCA recorded {cost.venue} {cost.symbol} {cost.mode.value}: "
            f"cost={cost.actual_cost:.6f} slippage={cost.slippage:.6f} "
            f"success={cost.success} efficiency={performance.cost_efficiency:.6f}"
        )
        return performance

    def recommend(
        self,
        symbol: str,
        size: float,
        venues: list[str],
        urgency: Urgency | str = Urgency.MEDIUM,
    ) -> ExecutionRecommendation:
        """
        Pick the (venue, mode) with the lowest expected cost.

        Raises:
            ValueError: If no venues are given
        """
        if not venues:
            raise ValueError("At least one venue is required for a recommendation")
        urgency = Urgency(urgency).tier

        candidates: list[tuple[float, str, ExecutionMode, float, str]] = []
        for venue in venues:
            performance = self._performance.get(self._key(venue, symbol))
            if performance is None or performance.total_trades < self.min_samples:
                trades = performance.total_trades if performance else 0
                candidates.append((
                    self._default_cost(venue, size, urgency),
                    venue,
                    self._mode_for_new_venue(size, urgency),
                    self.new_venue_confidence,
                    f"default estimate ({trades}/{self.min_samples} samples)",
                ))
                continue

            for mode in ExecutionMode:
                candidates.append((
                    self._expected_cost(performance, mode, size, urgency),
                    venue,
                    mode,
                    self._confidence(performance, mode),
                    f"historical ({performance.total_trades} trades, "
                    f"success {performance.success_rate:.1%})",
                ))

        ranked = sorted(candidates, key=lambda c: c[0])
        cost, venue, mode, confidence, basis = ranked[0]
        recommendation = ExecutionRecommendation(
            venue=venue,
            mode=mode,
            expected_cost=cost,
            expected_slippage=0.0005 + min(0.01, size / 1_000_000),
            confidence=confidence,
            reasoning=f"{venue} {mode.value} lowest expected cost {cost:.6f} from {basis}",
            alternatives=[
                {'venue': v, 'mode': m.value, 'expected_cost': c, 'confidence': conf}
                for c, v, m, conf, _ in ranked[1:4]
            ],
        )
        logger.debug(f"TCA recommendation for {symbol} size={size}: {recommendation.reasoning}")
        return recommendation

    def _size_multiplier(self, size: float) -> float:
        return min(2.0, 1.0 + size / self.size_scale)

    def _default_cost(self, venue: str, size: float, urgency: Urgency) -> float:
        base = self.venue_costs.get(venue.lower(), FALLBACK_VENUE_COST)
        return base * NEW_VENUE_URGENCY_FACTORS[urgency] * self._size_multiplier(size)

    def _mode_for_new_venue(self, size: float, urgency: Urgency) -> ExecutionMode:
        if urgency == Urgency.HIGH or size < self.small_order_threshold:
            return ExecutionMode.DIRECT
        if size > self.large_order_threshold:
            return ExecutionMode.ICEBERG
        return ExecutionMode.TWAP

    def _expected_cost(
        self,
        performance: VenuePerformance,
        mode: ExecutionMode,
        size: float,
        urgency: Urgency,
    ) -> float:
        return (
            (performance.avg_slippage + performance.avg_fees)
            * MODE_COST_FACTORS[mode]
            * URGENCY_COST_FACTORS[urgency]
            * self._size_multiplier(size)
        )

    def _confidence(self, performance: VenuePerformance, mode: ExecutionMode) -> float:
        confidence = (
            min(0.95, performance.total_trades / 100)
            * performance.success_rate
            * MODE_CONFIDENCE_FACTORS[mode]
        )
        return max(0.1, confidence)

    def get_venue_performance(self, venue: str | None = None, symbol: str | None = None) -> list[VenuePerformance]:
        return [
            p for p in self._performance.values()
            if (venue is None or p.venue == venue) and (symbol is None or p.symbol == symbol)
        ]

    def reset_venue(self, venue: str, symbol: str) -> bool:
        """Forget the smoothed performance of one (venue, symbol)."""
        removed = self._performance.delete(self._key(venue, symbol))
        if removed:
            logger.info(f"TCA performance reset for {venue} {symbol}")
        return removed

    def get_history(self, limit: int | None = None) -> list[TransactionCost]:
        history = list(self._history)
        return history[-limit:] if limit else history

    def get_tca_stats(self) -> dict:
        history = list(self._history)
        performances = [p for p in self._performance.values() if p.total_trades > 0]
        ranked = sorted(performances, key=lambda p: p.cost_efficiency)

        return {
            'total_records': len(history),
            'avg_cost': float(np.mean([c.actual_cost for c in history])) if history else 0.0,
            'avg_slippage': float(np.mean([c.slippage for c in history])) if history else 0.0,
            'success_rate': float(np.mean([c.success for c in history])) if history else 0.0,
            'best_venue': ranked[0].venue if ranked else None,
            'worst_venue': ranked[-1].venue if ranked else None,
            'mode_distribution': dict(Counter(c.mode.value for c in history)),
            'tracked_venues': len(performances),
        }


def create_tca_analyzer(config: dict[str, Any] | None = None) -> TCAAnalyzer:
    """Build a TCAAnalyzer from the `tca` config section."""
    config = config or {}
    return TCAAnalyzer(
        smoothing_factor=config.get("smoothing_factor", 0.01),
        min_samples=config.get("min_samples", 10),
        history_size=config.get("history_size", 1000),
        new_venue_confidence=config.get("new_venue_confidence", 0.3),
        venue_costs=config.get("venue_costs"),
        small_order_threshold=config.get("small_order_threshold", 10_000.0),
        large_order_threshold=config.get("large_order_threshold", 100_000.0),
        size_scale=config.get("size_scale", 100_000.0),
    )
