"""
Tests for Transaction Cost Analysis
===================================

Tests cover:
- Default estimates for venues without enough history
- Exponential smoothing of venue performance
- Mode and urgency multipliers for seasoned venues
- Aggregate statistics
"""

import pytest

from execution_core.enums import ExecutionMode, Urgency
from execution_core.tca_analyzer import (
    FALLBACK_VENUE_COST,
    TCAAnalyzer,
    TransactionCost,
    VenuePerformance,
    create_tca_analyzer,
)


def _cost(venue="binance", symbol="BTC/USDT", slippage=0.001, fees=0.001, success=True,
          mode=ExecutionMode.DIRECT, latency_ms=100.0):
    return TransactionCost(
        venue=venue,
        symbol=symbol,
        size=5000.0,
        mode=mode,
        expected_cost=0.002,
        actual_cost=slippage + fees,
        slippage=slippage,
        fees=fees,
        latency_ms=latency_ms,
        success=success,
    )


@pytest.fixture
def tca():
    return TCAAnalyzer(min_samples=10)


class TestNewVenues:
    """Tests for venues below the sample threshold."""

    def test_new_venue_confidence_is_low(self, tca):
        rec = tca.recommend("BTC/USDT", 5000.0, ["binance"])
        assert rec.confidence <= 0.3
        assert rec.mode == ExecutionMode.DIRECT
        assert rec.expected_cost == pytest.approx(0.001 * 1.0 * 1.05)
        assert "default estimate" in rec.reasoning

    def test_unknown_venue_uses_fallback_cost(self, tca):
        rec = tca.recommend("BTC/USDT", 0.0, ["smallex"])
        assert rec.expected_cost == pytest.approx(FALLBACK_VENUE_COST)

    def test_mode_by_size(self, tca):
        assert tca.recommend("BTC/USDT", 50_000.0, ["binance"]).mode == ExecutionMode.TWAP
        assert tca.recommend("BTC/USDT", 200_000.0, ["binance"]).mode == ExecutionMode.ICEBERG

    def test_high_urgency_is_direct_and_costlier(self, tca):
        medium = tca.recommend("BTC/USDT", 50_000.0, ["binance"], Urgency.MEDIUM)
        high = tca.recommend("BTC/USDT", 50_000.0, ["binance"], Urgency.HIGH)
        critical = tca.recommend("BTC/USDT", 50_000.0, ["binance"], "CRITICAL")

        assert high.mode == ExecutionMode.DIRECT
        assert high.expected_cost == pytest.approx(medium.expected_cost * 1.5)
        assert critical.expected_cost == pytest.approx(high.expected_cost)

    def test_size_multiplier_capped(self, tca):
        rec = tca.recommend("BTC/USDT", 10_000_000.0, ["binance"], Urgency.LOW)
        assert rec.expected_cost == pytest.approx(0.001 * 0.8 * 2.0)

    def test_cheapest_venue_wins(self, tca):
        rec = tca.recommend("BTC/USDT", 5000.0, ["kraken", "binance", "coinbase"])
        assert rec.venue == "binance"
        assert [a["venue"] for a in rec.alternatives] == ["coinbase", "kraken"]

    def test_no_venues_rejected(self, tca):
        with pytest.raises(ValueError):
            tca.recommend("BTC/USDT", 5000.0, [])


class TestSmoothing:
    """Tests for VenuePerformance updates."""

    def test_first_sample_seeds_averages(self, tca):
        perf = tca.record(_cost(slippage=0.002, fees=0.001, latency_ms=80.0))
        assert perf.avg_slippage == pytest.approx(0.002)
        assert perf.avg_fees == pytest.approx(0.001)
        assert perf.avg_latency_ms == pytest.approx(80.0)
        assert perf.success_rate == 1.0
        assert perf.total_trades == 1

    def test_subsequent_samples_are_smoothed(self, tca):
        tca.record(_cost(slippage=0.002))
        perf = tca.record(_cost(slippage=0.004, success=False))
        assert perf.avg_slippage == pytest.approx(0.002 * 0.99 + 0.004 * 0.01)
        assert perf.success_rate == pytest.approx(0.99)
        assert perf.total_trades == 2

    def test_cost_efficiency_floors_success_rate(self):
        perf = VenuePerformance(venue="okx", symbol="BTC/USDT", avg_slippage=0.001, avg_fees=0.001)
        assert perf.cost_efficiency == pytest.approx(0.002 / 0.1)

    def test_invalid_smoothing_factor(self):
        with pytest.raises(ValueError):
            TCAAnalyzer(smoothing_factor=0.0)

    def test_reset_venue(self, tca):
        tca.record(_cost())
        assert tca.reset_venue("binance", "BTC/USDT") is True
        assert tca.reset_venue("binance", "BTC/USDT") is False
        assert tca.get_venue_performance("binance") == []


class TestSeasonedVenues:
    """Tests for venues with enough history."""

    def _season(self, tca, venue, trades, slippage):
        for _ in range(trades):
            tca.record(_cost(venue=venue, slippage=slippage, fees=0.001))

    def test_twap_is_cheapest_mode(self, tca):
        self._season(tca, "binance", 50, 0.001)
        rec = tca.recommend("BTC/USDT", 0.0, ["binance"])

        assert rec.mode == ExecutionMode.TWAP
        assert rec.expected_cost == pytest.approx(0.002 * 0.8)
        assert rec.confidence == pytest.approx(0.5 * 1.0 * 0.9)
        assert "historical" in rec.reasoning

    def test_confidence_floor(self, tca):
        self._season(tca, "binance", 10, 0.001)
        rec = tca.recommend("BTC/USDT", 0.0, ["binance"])
        assert rec.confidence == pytest.approx(0.1)

    def test_history_beats_default(self, tca):
        self._season(tca, "kraken", 20, 0.0001)
        rec = tca.recommend("BTC/USDT", 0.0, ["kraken", "binance"])
        assert rec.venue == "kraken"

    def test_symbols_tracked_separately(self, tca):
        self._season(tca, "binance", 20, 0.001)
        rec = tca.recommend("ETH/USDT", 0.0, ["binance"])
        assert rec.confidence == pytest.approx(0.3)


class TestStats:
    """Tests for get_tca_stats and history."""

    def test_empty_stats(self, tca):
        stats = tca.get_tca_stats()
        assert stats["total_records"] == 0
        assert stats["best_venue"] is None

    def test_stats_rank_venues(self, tca):
        tca.record(_cost(venue="binance", slippage=0.001))
        tca.record(_cost(venue="kraken", slippage=0.005, mode=ExecutionMode.TWAP))

        stats = tca.get_tca_stats()
        assert stats["total_records"] == 2
        assert stats["best_venue"] == "binance"
        assert stats["worst_venue"] == "kraken"
        assert stats["mode_distribution"] == {"DIRECT": 1, "TWAP": 1}
        assert stats["success_rate"] == pytest.approx(1.0)

    def test_history_is_bounded(self):
        tca = TCAAnalyzer(history_size=3)
        for _ in range(5):
            tca.record(_cost())
        assert len(tca.get_history()) == 3
        assert len(tca.get_history(limit=2)) == 2

    def test_factory(self):
        tca = create_tca_analyzer({"min_samples": 2, "venue_costs": {"paper": 0.0005}})
        assert tca.min_samples == 2
        assert tca.venue_costs["paper"] == 0.0005
        assert tca.venue_costs["binance"] == 0.001
