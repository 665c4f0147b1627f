"""
Tests for Venue Connectivity
============================

Tests cover:
- Precision rounding (decimal places and tick sizes)
- Minimum amount preflight
- Bounded retry with backoff
- Order status mapping
- Gateway pass-through operations and factory
"""

from unittest.mock import AsyncMock

import ccxt.async_support as ccxt
import pytest

from execution_core.enums import FillStatus, OrderSide, OrderType
from execution_core.venue import (
    PaperVenueClient,
    VenueGateway,
    VenueOrderRequest,
    create_venue_gateway,
    round_amount,
    round_price,
    split_symbol,
)


def _buy(amount=1.0, symbol="BTC/USDT", **kwargs):
    return VenueOrderRequest(symbol=symbol, side=OrderSide.BUY, amount=amount, **kwargs)


class TestPrecision:
    """Tests for the rounding helpers."""

    def test_amount_rounds_down_to_decimals(self):
        assert round_amount(1.23456789, 4) == 1.2345
        assert round_amount(0.3, 6) == 0.3

    def test_amount_rounds_down_to_tick(self):
        assert round_amount(1.2378, 0.01, "tick") == pytest.approx(1.23)
        assert round_amount(7, 5, "tick") == 5

    def test_price_rounds_to_nearest(self):
        assert round_price(100.127, 2) == 100.13
        assert round_price(100.26, 0.5, "tick") == pytest.approx(100.5)

    def test_missing_precision_uses_defaults(self):
        assert round_amount(1.1234567, None) == 1.123456
        assert round_price(1.237, None) == 1.24

    def test_split_symbol(self):
        assert split_symbol("BTC/USDT") == ("BTC", "USDT")
        assert split_symbol("BTC/USDT:USDT") == ("BTC", "USDT")
        assert split_symbol("BTCUSDT") == ("BTCUSDT", "")


class TestPlaceOrder:
    """Tests for VenueGateway.place_order."""

    @pytest.mark.asyncio
    async def test_filled_market_order(self, gateway, paper_venue):
        result = await gateway.place_order("paper", _buy(0.5))

        assert result.status == FillStatus.FILLED
        assert result.success is True
        assert result.filled == 0.5
        assert result.avg_price == 50000.0
        assert result.attempts == 1
        assert paper_venue.submitted[0]["side"] == "buy"
        assert paper_venue.submitted[0]["type"] == "market"

    @pytest.mark.asyncio
    async def test_partial_fill(self, gateway, paper_venue):
        paper_venue.queue_outcomes(0.4)
        result = await gateway.place_order("paper", _buy(1.0))
        assert result.status == FillStatus.PARTIAL
        assert result.filled == pytest.approx(0.4)
        assert result.success is True

    @pytest.mark.asyncio
    async def test_zero_fill_is_rejected(self, gateway, paper_venue):
        paper_venue.queue_outcomes(0.0)
        result = await gateway.place_order("paper", _buy(1.0))
        assert result.status == FillStatus.REJECTED
        assert result.success is False
        assert result.attempts == 1

    @pytest.mark.asyncio
    async def test_amount_is_rounded_before_submission(self, gateway, paper_venue):
        paper_venue.set_market("BTC/USDT", {
            "symbol": "BTC/USDT",
            "precision": {"amount": 3, "price": 1},
            "limits": {"amount": {"min": 0.001}},
        })
        await gateway.place_order(
            "paper", _buy(1.23456, order_type=OrderType.LIMIT, price=49999.97)
        )
        assert paper_venue.submitted[0]["amount"] == 1.234
        assert paper_venue.submitted[0]["price"] == 50000.0

    @pytest.mark.asyncio
    async def test_below_minimum_refused_without_submission(self, gateway, paper_venue):
        paper_venue.set_market("BTC/USDT", {
            "symbol": "BTC/USDT",
            "precision": {"amount": 3},
            "limits": {"amount": {"min": 0.01}},
        })
        result = await gateway.place_order("paper", _buy(0.005))

        assert result.status == FillStatus.REJECTED
        assert result.attempts == 0
        assert "below venue minimum" in result.error
        assert paper_venue.submitted == []

    @pytest.mark.asyncio
    async def test_limit_without_price_refused(self, gateway):
        result = await gateway.place_order("paper", _buy(1.0, order_type=OrderType.LIMIT))
        assert result.status == FillStatus.REJECTED
        assert "positive price" in result.error

    @pytest.mark.asyncio
    async def test_unknown_venue(self, gateway):
        result = await gateway.place_order("nowhere", _buy())
        assert result.status == FillStatus.REJECTED
        assert "Unknown venue" in result.error

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, gateway, paper_venue):
        paper_venue.queue_outcomes(ccxt.NetworkError("timeout"), 1.0)
        result = await gateway.place_order("paper", _buy())

        assert result.status == FillStatus.FILLED
        assert result.attempts == 2
        assert gateway.get_stats()["retries"] == 1

    @pytest.mark.asyncio
    async def test_rejected_after_max_attempts(self, gateway, paper_venue):
        paper_venue.queue_outcomes(*(ccxt.ExchangeNotAvailable("down") for _ in range(3)))
        result = await gateway.place_order("paper", _buy())

        assert result.status == FillStatus.REJECTED
        assert result.attempts == 3
        assert "after 3 attempt(s)" in result.error
        assert "down" in result.error
        assert paper_venue.submitted == []

    @pytest.mark.asyncio
    async def test_backoff_grows_linearly(self, paper_venue, monkeypatch):
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        monkeypatch.setattr("execution_core.venue.asyncio.sleep", fake_sleep)
        gateway = VenueGateway({"paper": paper_venue}, max_attempts=3, backoff_seconds=0.5)
        paper_venue.queue_outcomes(*(ccxt.NetworkError("x") for _ in range(3)))

        await gateway.place_order("paper", _buy())
        assert sleeps == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_markets_unavailable_uses_defaults(self, gateway, paper_venue):
        paper_venue.load_markets = AsyncMock(side_effect=ccxt.NetworkError("no markets"))
        result = await gateway.place_order("paper", _buy(0.12345678))
        assert result.status == FillStatus.FILLED
        assert paper_venue.submitted[0]["amount"] == 0.123456

    @pytest.mark.asyncio
    async def test_insufficient_balance_only_warns(self, caplog):
        venue = PaperVenueClient(prices={"BTC/USDT": 50000.0}, balances={"BTC": 0.0}, spread_pct=0.0)
        gateway = VenueGateway({"paper": venue}, backoff_seconds=0.0)
        request = VenueOrderRequest(symbol="BTC/USDT", side=OrderSide.SELL, amount=1.0)

        result = await gateway.place_order("paper", request)
        assert result.status == FillStatus.FILLED
        assert "Insufficient BTC" in caplog.text


class TestGateway:
    """Tests for pass-through operations and construction."""

    @pytest.mark.asyncio
    async def test_load_all_markets_reports_failures(self, paper_venue):
        broken = PaperVenueClient(name="broken")
        broken.load_markets = AsyncMock(side_effect=ccxt.NetworkError("down"))
        gateway = VenueGateway({"paper": paper_venue, "broken": broken})

        assert await gateway.load_all_markets() == {"paper": True, "broken": False}

    @pytest.mark.asyncio
    async def test_leverage_and_sandbox(self, gateway, paper_venue):
        await gateway.set_leverage("paper", "BTC/USDT", 3)
        assert paper_venue.leverage["BTC/USDT"] == 3

        gateway.set_sandbox_mode("paper", False)
        assert paper_venue.sandbox is False

        with pytest.raises(ValueError):
            await gateway.set_leverage("paper", "BTC/USDT", 0)

    @pytest.mark.asyncio
    async def test_fetch_and_cancel_order(self, gateway, paper_venue):
        paper_venue.queue_outcomes(0.5)
        result = await gateway.place_order("paper", _buy())

        order = await gateway.fetch_order("paper", result.order_id, "BTC/USDT")
        assert order["status"] == "open"
        cancelled = await gateway.cancel_order("paper", result.order_id, "BTC/USDT")
        assert cancelled["status"] == "canceled"

    @pytest.mark.asyncio
    async def test_unknown_venue_pass_through_raises(self, gateway):
        with pytest.raises(KeyError):
            await gateway.fetch_ticker("nowhere", "BTC/USDT")

    def test_factory_builds_paper_venues(self):
        gateway = create_venue_gateway(
            {"sim": {"type": "paper", "prices": {"ETH/USDT": 3000.0}}},
            {"max_attempts": 5, "backoff_seconds": 0.1},
        )
        assert gateway.venues == ["sim"]
        assert gateway.max_attempts == 5
        assert isinstance(gateway.get_client("sim"), PaperVenueClient)

    def test_factory_defaults_to_paper(self):
        gateway = create_venue_gateway()
        assert gateway.venues == ["paper"]
