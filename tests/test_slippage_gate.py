"""
Tests for Slippage / Risk Gate
==============================

Tests cover:
- Expected slippage, impact and liquidity analysis
- Fallback analysis when market inputs are missing
- Risk tiers and the recommendation decision table
- Protection registry and action log
- Split sizing and child protections
- Background monitoring, expiry and emergency stop
"""

import asyncio

import pytest

from execution_core.enums import OrderSide
from execution_core.slippage_gate import (
    LiquiditySnapshot,
    ProtectionActionType,
    ProtectionStatus,
    RecommendationAction,
    RiskLevel,
    SlippageConfig,
    SlippageGate,
    assess_risk,
    create_slippage_gate,
    normalize_symbol,
    recommend,
    risk_level_for_score,
    split_sizes,
)


DEEP_ASKS = [(50010.0, 100.0)]
DEEP_BIDS = [(49990.0, 100.0)]


@pytest.fixture
def gate(notifier):
    gate = SlippageGate(notifier=notifier)
    gate.update_price("BTC/USDT", 50000.0)
    gate.update_order_book("BTC/USDT", DEEP_BIDS, DEEP_ASKS)
    return gate


def _liquidity(available=1_000_000.0, utilization=5.0):
    return LiquiditySnapshot(available=available, utilization_pct=utilization, depth=10, spread=0.001)


class TestScoring:
    """Tests for the pure risk and recommendation helpers."""

    def test_tier_thresholds(self):
        assert risk_level_for_score(0.0) == RiskLevel.LOW
        assert risk_level_for_score(0.29) == RiskLevel.LOW
        assert risk_level_for_score(0.3) == RiskLevel.MEDIUM
        assert risk_level_for_score(0.5) == RiskLevel.HIGH
        assert risk_level_for_score(0.7) == RiskLevel.CRITICAL
        assert risk_level_for_score(1.5) == RiskLevel.CRITICAL

    def test_tier_monotonic_in_score(self):
        """Increasing the score never lowers the tier."""
        order = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]
        ranks = [order.index(risk_level_for_score(i / 100)) for i in range(0, 120)]
        assert ranks == sorted(ranks)

    def test_high_risk_slippage_over_cap_reduces(self):
        """0.8% expected against a 0.5% cap at HIGH risk is REDUCE_SIZE, never PROCEED."""
        config = SlippageConfig()
        liquidity = _liquidity(utilization=30.0)
        risk = assess_risk(0.8, 0.1, liquidity, config)
        assert risk.level == RiskLevel.HIGH

        rec = recommend(0.8, 0.1, liquidity, risk, config, price=50000.0)
        assert rec.action == RecommendationAction.REDUCE_SIZE
        assert rec.suggested_size == pytest.approx(1_000_000.0 * 0.10 / 50000.0)

    def test_high_risk_impact_over_cap_splits(self):
        config = SlippageConfig()
        liquidity = _liquidity(utilization=30.0)
        risk = assess_risk(0.3, 0.5, liquidity, config)
        assert risk.level == RiskLevel.HIGH

        rec = recommend(0.3, 0.5, liquidity, risk, config, price=100.0)
        assert rec.action == RecommendationAction.SPLIT_ORDER
        assert rec.suggested_size == pytest.approx(1_000_000.0 * 0.05 / 100.0)

    def test_medium_risk_busy_book_delays(self):
        config = SlippageConfig()
        liquidity = _liquidity(utilization=30.0)
        risk = assess_risk(0.3, 0.0, liquidity, config)
        assert risk.level == RiskLevel.MEDIUM

        rec = recommend(0.3, 0.0, liquidity, risk, config, price=100.0)
        assert rec.action == RecommendationAction.DELAY
        assert rec.suggested_delay_seconds == 60.0

    def test_critical_cancels(self):
        config = SlippageConfig()
        liquidity = _liquidity(available=5000.0, utilization=80.0)
        risk = assess_risk(1.0, 0.0, liquidity, config)
        assert risk.level == RiskLevel.CRITICAL
        assert recommend(1.0, 0.0, liquidity, risk, config, 100.0).action == RecommendationAction.CANCEL

    def test_low_risk_proceeds(self):
        config = SlippageConfig()
        liquidity = _liquidity()
        risk = assess_risk(0.1, 0.01, liquidity, config)
        assert risk.level == RiskLevel.LOW
        assert recommend(0.1, 0.01, liquidity, risk, config, 100.0).action == RecommendationAction.PROCEED

    def test_normalize_symbol(self):
        assert normalize_symbol("btc/usdt/usdt") == "BTC/USDT"
        assert normalize_symbol(" ETH/USDT ") == "ETH/USDT"


class TestAnalysis:
    """Tests for analyze_slippage."""

    def test_small_order_proceeds(self, gate):
        analysis = gate.analyze_slippage("BTC/USDT", "BUY", 0.1)
        assert analysis.is_fallback is False
        assert analysis.recommendation.action == RecommendationAction.PROCEED
        assert analysis.expected_price > analysis.current_price
        assert analysis.liquidity.available == pytest.approx(50010.0 * 100.0)
        assert analysis.market_impact.permanent == pytest.approx(analysis.market_impact.immediate * 0.3)
        assert analysis.market_impact.temporary == pytest.approx(analysis.market_impact.immediate * 0.7)

    def test_sell_uses_bids(self, gate):
        analysis = gate.analyze_slippage("BTC/USDT", OrderSide.SELL, 0.1)
        assert analysis.liquidity.available == pytest.approx(49990.0 * 100.0)
        assert analysis.expected_price < analysis.current_price

    def test_expected_slippage_components(self, gate):
        """Default model: base + size + time + volatility + liquidity + spread terms."""
        analysis = gate.analyze_slippage("BTC/USDT", "BUY", 1.0)
        spread = 20.0 / 50000.0
        expected = (
            0.05
            + 0.1 * (50000.0 / 1_000_000.0) * 100
            + 0.01
            + 0.2 * 0.02
            + 0.05 * (1 - 0.8) * 10
            + 0.1 * spread * 10
        )
        assert analysis.slippage.expected_pct == pytest.approx(expected)

    def test_large_order_against_thin_book_reduces(self, gate):
        """Expected slippage above the cap with HIGH risk recommends REDUCE_SIZE."""
        gate.update_order_book("BTC/USDT", [(49990.0, 2.0)], [(50010.0, 2.0)])
        analysis = gate.analyze_slippage("BTC/USDT", "BUY", 1.3)

        assert analysis.slippage.expected_pct > 0.5
        assert analysis.risk.level == RiskLevel.HIGH
        assert analysis.recommendation.action == RecommendationAction.REDUCE_SIZE
        assert analysis.recommendation.suggested_size < 1.3

    def test_missing_everything_falls_back(self, gate):
        analysis = gate.analyze_slippage("DOGE/USDT", "BUY", 1000)

        assert analysis is not None
        assert analysis.is_fallback is True
        assert analysis.slippage.expected_pct == 0.2
        assert analysis.risk.level == RiskLevel.MEDIUM
        assert analysis.risk.score == pytest.approx(0.4)
        assert analysis.recommendation.action == RecommendationAction.PROCEED
        assert "missing data" in analysis.recommendation.reason
        assert analysis.current_price == 1.0
        assert gate.get_stats()["fallbacks"] == 1

    def test_missing_model_keeps_price(self, gate):
        gate.update_price("XRP/USDT", 0.5)
        gate.update_order_book("XRP/USDT", [(0.49, 1000)], [(0.51, 1000)])
        analysis = gate.analyze_slippage("XRP/USDT", "SELL", 10)
        assert analysis.is_fallback is True
        assert analysis.current_price == 0.5
        assert "model" in analysis.risk.factors[0]

    def test_book_mid_used_without_price(self):
        gate = SlippageGate()
        gate.update_order_book("ETH/USDT", [(2999.0, 50)], [(3001.0, 50)])
        analysis = gate.analyze_slippage("ETH/USDT", "BUY", 0.1)
        assert analysis.is_fallback is False
        assert analysis.current_price == pytest.approx(3000.0)

    def test_invalid_size_rejected(self, gate):
        with pytest.raises(ValueError):
            gate.analyze_slippage("BTC/USDT", "BUY", -1)
        with pytest.raises(ValueError):
            gate.analyze_slippage("BTC/USDT", "BUY", float("nan"))

    def test_model_updates(self, gate):
        assert gate.get_model("BTC/USDT/USDT").accuracy == 0.85
        model = gate.update_model("BTC/USDT", base_slippage=0.5)
        assert model.base_slippage == 0.5
        with pytest.raises(ValueError):
            gate.update_model("BTC/USDT", bogus=1.0)


class TestProtections:
    """Tests for the protection registry and action log."""

    @pytest.mark.asyncio
    async def test_create_active_protection(self, gate):
        protection_id = await gate.create_protection("BTC/USDT", "BUY", 0.1)
        protection = gate.get_protection(protection_id)

        assert protection_id.startswith("SLIPPAGE_")
        assert protection.status == ProtectionStatus.ACTIVE
        assert protection.actions == []
        assert gate.get_active_protections() == [protection]

    @pytest.mark.asyncio
    async def test_cancel_verdict_alerts_immediately(self, gate, notifier):
        gate.update_order_book("BTC/USDT", [(49990.0, 0.1)], [(50010.0, 0.1)])
        protection_id = await gate.create_protection("BTC/USDT", "BUY", 1.3)
        protection = gate.get_protection(protection_id)

        assert protection.analysis.recommendation.action == RecommendationAction.CANCEL
        assert protection.actions[0].action_type == ProtectionActionType.ALERT
        assert protection.actions[0].executed is True
        assert protection.status == ProtectionStatus.TRIGGERED
        assert len(notifier.outbox) == 1

    @pytest.mark.asyncio
    async def test_executed_action_is_immutable(self, gate):
        protection_id = await gate.create_protection("BTC/USDT", "BUY", 0.1)
        action = await gate.trigger_protection(protection_id, ProtectionActionType.ALERT, "manual check")

        with pytest.raises(AttributeError):
            action.reason = "rewritten"
        with pytest.raises(TypeError):
            action.details["extra"] = 1

    @pytest.mark.asyncio
    async def test_split_creates_children_summing_to_size(self, gate):
        protection_id = await gate.create_protection("BTC/USDT", "BUY", 1.0)
        action = await gate.trigger_protection(
            protection_id, ProtectionActionType.SPLIT_ORDER, "impact", {"suggested_size": 0.4}
        )

        children = [gate.get_protection(c) for c in action.details["child_protections"]]
        assert len(children) == 3
        assert sum(c.size for c in children) == pytest.approx(1.0)
        assert children[-1].size == pytest.approx(0.2)
        assert all(c.parent_id == protection_id for c in children)

    def test_split_sizes_drop_float_dust(self):
        sizes = split_sizes(0.07, 0.01)
        assert len(sizes) == 7
        assert all(size == pytest.approx(0.01) for size in sizes)
        assert sum(sizes) == pytest.approx(0.07)
        assert split_sizes(1.0, 0.4)[-1] == pytest.approx(0.2)
        with pytest.raises(ValueError):
            split_sizes(1.0, 0.0)

    @pytest.mark.asyncio
    async def test_split_never_creates_empty_child(self, gate):
        protection_id = await gate.create_protection("BTC/USDT", "BUY", 0.07)
        action = await gate.trigger_protection(
            protection_id, ProtectionActionType.SPLIT_ORDER, "impact", {"suggested_size": 0.01}
        )

        children = [gate.get_protection(c) for c in action.details["child_protections"]]
        assert len(children) == 7
        assert all(c.size > 0 for c in children)
        assert sum(c.size for c in children) == pytest.approx(0.07)

    @pytest.mark.asyncio
    async def test_split_children_keep_parent_config(self, gate):
        protection_id = await gate.create_protection("BTC/USDT", "BUY", 1.0)
        gate.update_config(max_slippage=0.9)
        action = await gate.trigger_protection(
            protection_id, ProtectionActionType.SPLIT_ORDER, "impact", {"suggested_size": 0.5}
        )

        for child_id in action.details["child_protections"]:
            assert gate.get_protection(child_id).config.max_slippage == 0.5
        late = await gate.create_protection("BTC/USDT", "BUY", 1.0)
        assert gate.get_protection(late).config.max_slippage == 0.9

    @pytest.mark.asyncio
    async def test_cancel_protection_cancels_children(self, gate):
        protection_id = await gate.create_protection("BTC/USDT", "BUY", 1.0)
        await gate.trigger_protection(
            protection_id, ProtectionActionType.SPLIT_ORDER, "impact", {"suggested_size": 0.5}
        )
        children = gate.get_child_protections(protection_id)
        assert len(children) == 2

        assert gate.cancel_protection(protection_id) is True
        assert gate.get_protection(protection_id).status == ProtectionStatus.CANCELLED
        assert all(gate.get_protection(c).status == ProtectionStatus.CANCELLED for c in children)
        assert gate.get_active_protections() == []

    @pytest.mark.asyncio
    async def test_reduce_size(self, gate):
        protection_id = await gate.create_protection("BTC/USDT", "BUY", 1.0)
        await gate.trigger_protection(
            protection_id, ProtectionActionType.REDUCE_SIZE, "slippage", {"suggested_size": 0.5}
        )
        protection = gate.get_protection(protection_id)
        assert protection.size == 0.5
        assert protection.analysis.size == 0.5
        assert protection.actions[0].details["previous_size"] == 1.0

    @pytest.mark.asyncio
    async def test_delay_reactivates_on_proceed(self, gate):
        protection_id = await gate.create_protection("BTC/USDT", "BUY", 0.1)
        await gate.trigger_protection(
            protection_id, ProtectionActionType.DELAY, "busy book", {"delay_seconds": 0.01}
        )
        assert gate.get_protection(protection_id).status == ProtectionStatus.TRIGGERED

        await asyncio.sleep(0.1)
        assert gate.get_protection(protection_id).status == ProtectionStatus.ACTIVE
        assert gate.get_stats()["pending_delays"] == 0

    @pytest.mark.asyncio
    async def test_cancel_action_is_terminal(self, gate):
        protection_id = await gate.create_protection("BTC/USDT", "BUY", 0.1)
        await gate.trigger_protection(protection_id, ProtectionActionType.CANCEL, "risk")

        assert gate.get_protection(protection_id).status == ProtectionStatus.CANCELLED
        assert await gate.trigger_protection(protection_id, ProtectionActionType.ALERT, "late") is None

    @pytest.mark.asyncio
    async def test_cancel_protection(self, gate):
        protection_id = await gate.create_protection("BTC/USDT", "BUY", 0.1)
        assert gate.cancel_protection(protection_id) is True
        assert gate.cancel_protection(protection_id) is False
        assert gate.cancel_protection("SLIPPAGE_unknown") is False

    @pytest.mark.asyncio
    async def test_emergency_stop_all(self, gate, notifier):
        ids = [await gate.create_protection("BTC/USDT", "BUY", 0.1) for _ in range(3)]
        gate.cancel_protection(ids[0])

        stopped = await gate.emergency_stop_all("venue outage")
        assert stopped == 2
        assert all(gate.get_protection(i).status == ProtectionStatus.CANCELLED for i in ids)
        emergency = [a for a in notifier.get_recent_alerts() if a.severity.value == "EMERGENCY"]
        assert len(emergency) == 2

    @pytest.mark.asyncio
    async def test_emergency_stop_disabled(self, notifier):
        gate = SlippageGate(config=SlippageConfig(emergency_stop=False), notifier=notifier)
        await gate.create_protection("BTC/USDT", "BUY", 0.1)
        assert await gate.emergency_stop_all("test") == 0
        assert len(gate.get_active_protections()) == 1


class TestMonitoring:
    """Tests for the background monitor."""

    @pytest.mark.asyncio
    async def test_monitor_escalates_when_book_thins(self, gate):
        protection_id = await gate.create_protection("BTC/USDT", "BUY", 1.3)
        assert gate.get_protection(protection_id).status == ProtectionStatus.ACTIVE

        assert await gate.monitor_once() == 0

        gate.update_order_book("BTC/USDT", [(49990.0, 0.1)], [(50010.0, 0.1)])
        assert await gate.monitor_once() == 1

        protection = gate.get_protection(protection_id)
        assert protection.actions[-1].action_type == ProtectionActionType.CANCEL
        assert protection.status == ProtectionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_monitor_expires_old_protections(self):
        gate = SlippageGate(config=SlippageConfig(protection_ttl_seconds=0.001))
        protection_id = await gate.create_protection("BTC/USDT", "BUY", 0.1)
        await asyncio.sleep(0.01)

        await gate.monitor_once()
        assert gate.get_protection(protection_id).status == ProtectionStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_start_stop(self, gate):
        gate.update_config(monitor_interval_seconds=0.01)
        await gate.start()
        assert gate.is_monitoring is True

        await asyncio.sleep(0.03)
        await gate.stop()
        assert gate.is_monitoring is False

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_delay(self, gate):
        protection_id = await gate.create_protection("BTC/USDT", "BUY", 0.1)
        await gate.trigger_protection(
            protection_id, ProtectionActionType.DELAY, "wait", {"delay_seconds": 60}
        )
        assert gate.get_stats()["pending_delays"] == 1

        await gate.stop()
        assert gate.get_stats()["pending_delays"] == 0

    def test_factory(self, notifier):
        gate = create_slippage_gate(
            {
                "max_slippage": 1.0,
                "model_symbols": ["BTC/USDT"],
                "models": {"BTC/USDT": {"base_slippage": 0.1}},
            },
            notifier,
        )
        assert gate.config.max_slippage == 1.0
        assert gate.get_model("ETH/USDT") is None
        assert gate.get_model("BTC/USDT").base_slippage == 0.1
