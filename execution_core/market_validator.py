"""
Market Validation
=================

Cross-venue price consensus used before orders reach a venue.

The MarketValidator interface is what the atomic engine consumes.
ConsensusMarketValidator implements it over the gateway's venue tickers.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from execution_core.venue import VenueGateway

logger = logging.getLogger(__name__)


@dataclass
class PriceValidation:
    """Result of a cross-venue price check."""
    symbol: str
    validation_score: float  # 0..1, 1 = full agreement
    prices: dict[str, float] = field(default_factory=dict)
    consensus_price: float | None = None
    max_deviation_pct: float = 0.0

    def to_dict(self) -> dict:
        return {
            'symbol': self.symbol,
            'validation_score': self.validation_score,
            'prices': self.prices,
            'consensus_price': self.consensus_price,
            'max_deviation_pct': self.max_deviation_pct,
        }


class MarketValidator(ABC):
    """Supplies price-consensus checks for order validation."""

    @abstractmethod
    async def cross_validate_prices(self, symbol: str) -> PriceValidation:
        pass

    @abstractmethod
    async def emergency_validation(self, symbol: str, price: float, venue: str) -> bool:
        """Last-moment check before a leg is sent. False aborts the leg."""
        pass


class ConsensusMarketValidator(MarketValidator):
    """
    Scores agreement between venue last prices around their median.

    score = max(0, 1 - max_deviation_pct / tolerance_pct). A single
    quoting venue scores single_source_score, no quotes score 0.
    """

    def __init__(
        self,
        gateway: VenueGateway,
        tolerance_pct: float = 1.0,
        single_source_score: float = 0.8,
        max_emergency_deviation_pct: float = 2.0,
    ):
        self._gateway = gateway
        self.tolerance_pct = tolerance_pct
        self.single_source_score = single_source_score
        self.max_emergency_deviation_pct = max_emergency_deviation_pct

    async def _collect_prices(self, symbol: str) -> dict[str, float]:
        venues = self._gateway.venues
        tickers = await asyncio.gather(
            *(self._gateway.fetch_ticker(v, symbol) for v in venues),
            return_exceptions=True,
        )
        prices = {}
        for venue, ticker in zip(venues, tickers):
            if isinstance(ticker, Exception):
                logger.debug(f"No {symbol} quote from {venue}: {ticker}")
                continue
            last = ticker.get('last') or ticker.get('close')
            if last and last > 0:
                prices[venue] = float(last)
        return prices

    async def cross_validate_prices(self, symbol: str) -> PriceValidation:
        prices = await self._collect_prices(symbol)
        if not prices:
            logger.warning(f"No venue quotes available to validate {symbol}")
            return PriceValidation(symbol=symbol, validation_score=0.0)

        values = np.array(list(prices.values()), dtype=float)
        consensus = float(np.median(values))
        if len(values) == 1:
            return PriceValidation(
                symbol=symbol,
                validation_score=self.single_source_score,
                prices=prices,
                consensus_price=consensus,
            )

        max_deviation_pct = float(np.max(np.abs(values - consensus)) / consensus * 100)
        score = max(0.0, 1.0 - max_deviation_pct / self.tolerance_pct)
        if score < 0.7:
            logger.warning(
                f"Low price consensus for {symbol}: score={score:.2f}, "
                f"max deviation {max_deviation_pct:.3f}% across {prices}"
            )
        return PriceValidation(
            symbol=symbol,
            validation_score=score,
            prices=prices,
            consensus_price=consensus,
            max_deviation_pct=max_deviation_pct,
        )

    async def emergency_validation(self, symbol: str, price: float, venue: str) -> bool:
        try:
            ticker = await self._gateway.fetch_ticker(venue, symbol)
        except Exception as e:
            logger.warning(f"Emergency validation failed for {symbol} on {venue}: {e}")
            return False

        last = ticker.get('last')
        if not last or last <= 0:
            logger.warning(f"Emergency validation: no live price for {symbol} on {venue}")
            return False
        if not price or price <= 0:
            return True

        deviation_pct = abs(price - last) / last * 100
        if deviation_pct > self.max_emergency_deviation_pct:
            logger.warning(
                f"Emergency validation rejected {symbol} on {venue}: "
                f"order price {price} is {deviation_pct:.2f}% from live {last}"
            )
            return False
        return True


def create_market_validator(
    gateway: VenueGateway,
    config: dict[str, Any] | None = None,
) -> ConsensusMarketValidator:
    """Build a ConsensusMarketValidator from the `validator` config section."""
    config = config or {}
    return ConsensusMarketValidator(
        gateway=gateway,
        tolerance_pct=config.get("tolerance_pct", 1.0),
        single_source_score=config.get("single_source_score", 0.8),
        max_emergency_deviation_pct=config.get("max_emergency_deviation_pct", 2.0),
    )
