"""
Pytest Configuration
====================

Shared fixtures for testing.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from execution_core.market_validator import MarketValidator, PriceValidation
from execution_core.notifications import NotificationManager, OutboxChannel
from execution_core.venue import PaperVenueClient, VenueGateway


@pytest.fixture
def paper_venue():
    """Paper venue quoting BTC and ETH with no spread."""
    return PaperVenueClient(
        name="paper",
        prices={"BTC/USDT": 50000.0, "ETH/USDT": 3000.0},
        balances={"USDT": 10_000_000.0, "BTC": 100.0, "ETH": 1000.0},
        spread_pct=0.0,
    )


@pytest.fixture
def gateway(paper_venue):
    """Gateway over the paper venue with zero retry backoff."""
    return VenueGateway({"paper": paper_venue}, max_attempts=3, backoff_seconds=0.0)


@pytest.fixture
def permissive_validator():
    """Validator that accepts every symbol and every live check."""
    validator = MagicMock(spec=MarketValidator)
    validator.cross_validate_prices = AsyncMock(
        side_effect=lambda symbol: PriceValidation(symbol=symbol, validation_score=1.0)
    )
    validator.emergency_validation = AsyncMock(return_value=True)
    return validator


@pytest.fixture
def notifier():
    """Notification manager with only the in-memory outbox."""
    return NotificationManager(channels=[OutboxChannel(max_size=100)])


@pytest.fixture
def test_config():
    """Minimal test configuration with near-zero delays."""
    return {
        "logging": {"level": "DEBUG"},
        "venues": {
            "paper": {
                "type": "paper",
                "prices": {"BTC/USDT": 50000.0, "ETH/USDT": 3000.0},
                "balances": {"USDT": 10_000_000.0, "BTC": 100.0},
                "spread_pct": 0.0,
            },
        },
        "gateway": {"max_attempts": 2, "backoff_seconds": 0.0},
        "slippage": {"monitor_interval_seconds": 0.05},
        "tca": {"min_samples": 10},
        "rl": {"epsilon": 0.2, "epsilon_min": 0.05, "seed": 7},
        "atomic": {"max_execution_time_seconds": 30, "rollback_timeout_seconds": 1},
        "orchestrator": {
            "twap_interval_seconds": 0.0,
            "iceberg_refresh_seconds": 0.0,
            "split_delay_seconds": 0.0,
            "max_delay_seconds": 0.0,
        },
    }
