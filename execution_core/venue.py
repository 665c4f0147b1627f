"""
Venue Connectivity
==================

Venue client interface plus the gateway every order submission goes
through.

Features:
- VenueClient interface mirroring the exchange REST surface
- ccxt-backed client (ccxt.async_support) for live venues
- Paper client with scripted outcomes for paper trading and tests
- Amount/price precision and minimum size preflight
- Balance preflight (warnings only)
- Bounded retry with linear backoff before an order is reported REJECTED
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any

import ccxt.async_support as ccxt
from ccxt.base.decimal_to_precision import TICK_SIZE

from execution_core.enums import FillStatus, OrderSide, OrderType
from execution_core.errors import VenueRejection

logger = logging.getLogger(__name__)


DEFAULT_AMOUNT_DECIMALS = 6
DEFAULT_PRICE_DECIMALS = 2


# =============================================================================
# Client interface
# =============================================================================

class VenueClient(ABC):
    """Exchange connectivity used by the execution core."""

    name: str = "venue"

    # "decimals" when precision values are decimal places, "tick" for step sizes
    precision_mode: str = "decimals"

    @abstractmethod
    async def load_markets(self) -> dict[str, dict]:
        pass

    @abstractmethod
    async def fetch_ticker(self, symbol: str) -> dict:
        pass

    @abstractmethod
    async def fetch_balance(self) -> dict:
        pass

    @abstractmethod
    async def create_order(
        self,
        symbol: str,
        order_type: str,
        side: str,
        amount: float,
        price: float | None = None,
        params: dict | None = None,
    ) -> dict:
        pass

    @abstractmethod
    async def fetch_order(self, order_id: str, symbol: str) -> dict:
        pass

    @abstractmethod
    async def cancel_order(self, order_id: str, symbol: str) -> dict:
        pass

    @abstractmethod
    async def set_leverage(self, symbol: str, leverage: float) -> Any:
        pass

    @abstractmethod
    def set_sandbox_mode(self, enabled: bool) -> None:
        pass

    async def close(self) -> None:
        pass


class CcxtVenueClient(VenueClient):
    """
    Live venue backed by a ccxt async exchange.

    Args:
        name: Venue name used for routing and cost tracking
        exchange_id: ccxt exchange id (e.g. "binance", "okx")
        config: api_key, secret, password, sandbox, options
    """

    def __init__(self, name: str, exchange_id: str, config: dict[str, Any] | None = None):
        config = config or {}
        exchange_class = getattr(ccxt, exchange_id, None)
        if exchange_class is None:
            raise ValueError(f"Unknown ccxt exchange id: {exchange_id}")

        self.name = name
        self.exchange_id = exchange_id
        self._exchange = exchange_class({
            'apiKey': config.get('api_key', ''),
            'secret': config.get('secret', ''),
            'password': config.get('password', ''),
            'enableRateLimit': True,
            'options': config.get('options', {}),
        })
        if config.get('sandbox', False):
            self._exchange.set_sandbox_mode(True)

    @property
    def precision_mode(self) -> str:  # type: ignore[override]
        return "tick" if self._exchange.precisionMode == TICK_SIZE else "decimals"

    async def load_markets(self) -> dict[str, dict]:
        return await self._exchange.load_markets()

    async def fetch_ticker(self, symbol: str) -> dict:
        return await self._exchange.fetch_ticker(symbol)

    async def fetch_balance(self) -> dict:
        return await self._exchange.fetch_balance()

    async def create_order(
        self,
        symbol: str,
        order_type: str,
        side: str,
        amount: float,
        price: float | None = None,
        params: dict | None = None,
    ) -> dict:
        return await self._exchange.create_order(symbol, order_type, side, amount, price, params or {})

    async def fetch_order(self, order_id: str, symbol: str) -> dict:
        return await self._exchange.fetch_order(order_id, symbol)

    async def cancel_order(self, order_id: str, symbol: str) -> dict:
        return await self._exchange.cancel_order(order_id, symbol)

    async def set_leverage(self, symbol: str, leverage: float) -> Any:
        return await self._exchange.set_leverage(leverage, symbol)

    def set_sandbox_mode(self, enabled: bool) -> None:
        self._exchange.set_sandbox_mode(enabled)

    async def close(self) -> None:
        await self._exchange.close()


class PaperVenueClient(VenueClient):
    """
    In-memory venue that fills at the ticker price.

    Outcomes can be scripted with queue_outcomes(): each queued item is
    either a fill ratio (0.0 to 1.0) or an exception to raise.
    """

    def __init__(
        self,
        name: str = "paper",
        prices: dict[str, float] | None = None,
        balances: dict[str, float] | None = None,
        markets: dict[str, dict] | None = None,
        spread_pct: float = 0.0005,
        latency_seconds: float = 0.0,
    ):
        self.name = name
        self._prices: dict[str, float] = dict(prices or {})
        self._balances: dict[str, float] = dict(balances or {})
        self._markets: dict[str, dict] = dict(markets or {})
        self.spread_pct = spread_pct
        self.latency_seconds = latency_seconds
        self.sandbox = True
        self.leverage: dict[str, float] = {}
        self.orders: dict[str, dict] = {}
        self.submitted: list[dict] = []
        self._outcomes: deque[float | Exception] = deque()

    def set_price(self, symbol: str, price: float) -> None:
        self._prices[symbol] = price

    def set_market(self, symbol: str, market: dict) -> None:
        self._markets[symbol] = market

    def queue_outcomes(self, *outcomes: float | Exception) -> None:
        self._outcomes.extend(outcomes)

    async def load_markets(self) -> dict[str, dict]:
        for symbol in self._prices:
            self._markets.setdefault(symbol, {
                'symbol': symbol,
                'precision': {'amount': DEFAULT_AMOUNT_DECIMALS, 'price': DEFAULT_PRICE_DECIMALS},
                'limits': {'amount': {'min': None}},
            })
        return self._markets

    async def fetch_ticker(self, symbol: str) -> dict:
        price = self._prices.get(symbol)
        if price is None:
            raise ccxt.BadSymbol(f"{self.name} has no price for {symbol}")
        half_spread = price * self.spread_pct / 2
        return {
            'symbol': symbol,
            'last': price,
            'bid': price - half_spread,
            'ask': price + half_spread,
            'timestamp': int(time.time() * 1000),
        }

    async def fetch_balance(self) -> dict:
        return {
            'free': dict(self._balances),
            'total': dict(self._balances),
        }

    async def create_order(
        self,
        symbol: str,
        order_type: str,
        side: str,
        amount: float,
        price: float | None = None,
        params: dict | None = None,
    ) -> dict:
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)

        fill_ratio = 1.0
        if self._outcomes:
            outcome = self._outcomes.popleft()
            if isinstance(outcome, Exception):
                raise outcome
            fill_ratio = outcome

        if order_type.lower() == 'limit':
            if price is None:
                raise ccxt.InvalidOrder("Limit order requires a price")
            fill_price = price
        else:
            ticker = await self.fetch_ticker(symbol)
            fill_price = ticker['ask'] if side.lower() == 'buy' else ticker['bid']

        filled = amount * max(0.0, min(1.0, fill_ratio))
        if filled >= amount:
            status = 'closed'
        elif filled > 0:
            status = 'open'
        else:
            status = 'canceled'

        order = {
            'id': f"{self.name}-{uuid.uuid4().hex[:12]}",
            'symbol': symbol,
            'type': order_type.lower(),
            'side': side.lower(),
            'amount': amount,
            'price': price if price is not None else fill_price,
            'average': fill_price if filled > 0 else None,
            'filled': filled,
            'remaining': amount - filled,
            'status': status,
            'params': dict(params or {}),
        }
        self.orders[order['id']] = order
        self.submitted.append(order)
        return order

    async def fetch_order(self, order_id: str, symbol: str) -> dict:
        order = self.orders.get(order_id)
        if order is None:
            raise ccxt.OrderNotFound(f"{self.name} has no order {order_id}")
        return order

    async def cancel_order(self, order_id: str, symbol: str) -> dict:
        order = await self.fetch_order(order_id, symbol)
        if order['status'] == 'open':
            order['status'] = 'canceled'
        return order

    async def set_leverage(self, symbol: str, leverage: float) -> Any:
        self.leverage[symbol] = leverage
        return {'symbol': symbol, 'leverage': leverage}

    def set_sandbox_mode(self, enabled: bool) -> None:
        self.sandbox = enabled


# =============================================================================
# Gateway
# =============================================================================

@dataclass
class VenueOrderRequest:
    """Order as submitted to a single venue."""
    symbol: str
    side: OrderSide
    amount: float
    order_type: OrderType = OrderType.MARKET
    price: float | None = None
    params: dict = field(default_factory=dict)


@dataclass
class VenueOrderResult:
    """Outcome of one venue submission (after retries)."""
    venue: str
    symbol: str
    side: OrderSide
    requested_amount: float
    status: FillStatus
    order_id: str | None = None
    filled: float = 0.0
    avg_price: float | None = None
    attempts: int = 0
    latency_ms: float = 0.0
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status != FillStatus.REJECTED and self.filled > 0

    def to_dict(self) -> dict:
        return {
            'venue': self.venue,
            'symbol': self.symbol,
            'side': self.side.value,
            'requested_amount': self.requested_amount,
            'status': self.status.value,
            'order_id': self.order_id,
            'filled': self.filled,
            'avg_price': self.avg_price,
            'attempts': self.attempts,
            'latency_ms': self.latency_ms,
            'error': self.error,
        }


def round_amount(value: float, precision: float | int | None, mode: str = "decimals") -> float:
    """Round an amount down to the venue step."""
    if precision is None:
        precision = DEFAULT_AMOUNT_DECIMALS
        mode = "decimals"
    if mode == "tick":
        step = float(precision)
        return round(math.floor(value / step + 1e-9) * step, 12)
    factor = 10 ** int(precision)
    return math.floor(value * factor + 1e-9) / factor


def round_price(value: float, precision: float | int | None, mode: str = "decimals") -> float:
    """Round a price to the nearest venue tick."""
    if precision is None:
        precision = DEFAULT_PRICE_DECIMALS
        mode = "decimals"
    if mode == "tick":
        step = float(precision)
        return round(round(value / step) * step, 12)
    return round(value, int(precision))


def split_symbol(symbol: str) -> tuple[str, str]:
    """"BTC/USDT" or "BTC/USDT:USDT" -> ("BTC", "USDT")."""
    pair = symbol.split(':')[0]
    if '/' not in pair:
        return pair, ""
    base, quote = pair.split('/', 1)
    return base, quote


class VenueGateway:
    """
    Submits orders to venues with precision preflight and bounded retry.

    Every submission is retried up to max_attempts times, sleeping
    backoff_seconds * attempt between attempts, before the order is
    reported REJECTED.
    """

    def __init__(
        self,
        clients: dict[str, VenueClient] | None = None,
        max_attempts: int = 3,
        backoff_seconds: float = 0.2,
        balance_preflight: bool = True,
    ):
        self._clients: dict[str, VenueClient] = dict(clients or {})
        self._markets: dict[str, dict[str, dict]] = {}
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.balance_preflight = balance_preflight
        self._stats = {
            "submitted": 0,
            "filled": 0,
            "partial": 0,
            "rejected": 0,
            "retries": 0,
        }

    @property
    def venues(self) -> list[str]:
        return list(self._clients.keys())

    def add_client(self, client: VenueClient) -> None:
        self._clients[client.name] = client
        self._markets.pop(client.name, None)

    def get_client(self, venue: str) -> VenueClient | None:
        return self._clients.get(venue)

    # -------------------------------------------------------------------------
    # Markets
    # -------------------------------------------------------------------------

    async def load_markets(self, venue: str) -> dict[str, dict]:
        client = self._require_client(venue)
        markets = await client.load_markets()
        self._markets[venue] = markets or {}
        logger.info(f"Loaded {len(self._markets[venue])} markets for {venue}")
        return self._markets[venue]

    async def load_all_markets(self) -> dict[str, bool]:
        """Load markets on every venue. Failures are logged, not raised."""
        venues = self.venues
        results = await asyncio.gather(
            *(self.load_markets(v) for v in venues), return_exceptions=True
        )
        status = {}
        for venue, result in zip(venues, results):
            if isinstance(result, Exception):
                logger.warning(f"Failed to load markets for {venue}: {result}")
                status[venue] = False
            else:
                status[venue] = True
        return status

    async def get_market(self, venue: str, symbol: str) -> dict | None:
        if venue not in self._markets:
            await self.load_markets(venue)
        return self._markets.get(venue, {}).get(symbol)

    def format_amount(self, venue: str, amount: float, market: dict | None) -> float:
        mode = self._clients[venue].precision_mode
        precision = ((market or {}).get('precision') or {}).get('amount')
        return round_amount(amount, precision, mode)

    def format_price(self, venue: str, price: float, market: dict | None) -> float:
        mode = self._clients[venue].precision_mode
        precision = ((market or {}).get('precision') or {}).get('price')
        return round_price(price, precision, mode)

    # -------------------------------------------------------------------------
    # Orders
    # -------------------------------------------------------------------------

    async def place_order(self, venue: str, request: VenueOrderRequest) -> VenueOrderResult:
        """
        Submit an order with preflight checks and bounded retry.

        Never raises for venue errors: a refused order comes back REJECTED
        with the last error message.
        """
        start = time.perf_counter()
        client = self._clients.get(venue)
        if client is None:
            return self._rejected(venue, request, f"Unknown venue: {venue}", 0, start)

        try:
            market = await self.get_market(venue, request.symbol)
        except Exception as e:
            logger.warning(f"Markets unavailable on {venue} for {request.symbol}, using default precision: {e}")
            market = None

        amount = self.format_amount(venue, request.amount, market)
        price = None
        if request.price is not None and request.price > 0:
            price = self.format_price(venue, request.price, market)

        min_amount = (((market or {}).get('limits') or {}).get('amount') or {}).get('min')
        if amount <= 0 or (min_amount and amount < min_amount):
            return self._rejected(
                venue, request,
                f"Amount {request.amount} below venue minimum {min_amount or 0} after precision rounding",
                0, start,
            )
        if request.order_type == OrderType.LIMIT and price is None:
            return self._rejected(venue, request, "Limit order requires a positive price", 0, start)

        if self.balance_preflight:
            await self._check_balance(client, request, amount, price)

        last_error = ""
        for attempt in range(1, self.max_attempts + 1):
            try:
                self._stats["submitted"] += 1
                order = await client.create_order(
                    request.symbol,
                    request.order_type.value.lower(),
                    request.side.value.lower(),
                    amount,
                    price if request.order_type == OrderType.LIMIT else None,
                    request.params,
                )
                result = self._to_result(venue, request, amount, price, order, attempt, start)
                self._stats[result.status.value.lower()] += 1
                logger.info(
                    f"{venue} {request.side.value} {amount} {request.symbol}: "
                    f"{result.status.value} filled={result.filled} avg={result.avg_price}"
                )
                return result
            except Exception as e:
                last_error = str(e) or type(e).__name__
                logger.warning(
                    f"Order attempt {attempt}/{self.max_attempts} failed on {venue} "
                    f"({request.side.value} {amount} {request.symbol} "
                    f"{request.order_type.value} @ {price}): {last_error}"
                )
                if attempt < self.max_attempts:
                    self._stats["retries"] += 1
                    await asyncio.sleep(self.backoff_seconds * attempt)

        rejection = VenueRejection(venue, request.symbol, self.max_attempts, last_error)
        logger.error(str(rejection))
        return self._rejected(venue, request, str(rejection), self.max_attempts, start)

    async def _check_balance(
        self,
        client: VenueClient,
        request: VenueOrderRequest,
        amount: float,
        price: float | None,
    ) -> None:
        base, quote = split_symbol(request.symbol)
        try:
            balance = await client.fetch_balance()
        except Exception as e:
            logger.warning(f"Balance preflight skipped on {client.name}: {e}")
            return

        free = balance.get('free') or {}
        if request.side == OrderSide.BUY:
            if price is None or not quote:
                return
            needed, currency = amount * price, quote
        else:
            needed, currency = amount, base
        available = free.get(currency)
        if available is not None and available < needed:
            logger.warning(
                f"Insufficient {currency} on {client.name} for {request.side.value} "
                f"{amount} {request.symbol}: need {needed:.8f}, free {available:.8f}"
            )

    def _to_result(
        self,
        venue: str,
        request: VenueOrderRequest,
        amount: float,
        price: float | None,
        order: dict,
        attempts: int,
        start: float,
    ) -> VenueOrderResult:
        status_text = str(order.get('status') or '').lower()
        filled = order.get('filled')
        if filled is None:
            filled = amount if status_text == 'closed' else 0.0
        filled = float(filled)

        if filled <= 0 and status_text in ('canceled', 'cancelled', 'rejected', 'expired'):
            status = FillStatus.REJECTED
        elif status_text == 'closed' or filled >= amount * (1 - 1e-9):
            status = FillStatus.FILLED
        else:
            status = FillStatus.PARTIAL

        avg_price = order.get('average') or order.get('price') or price
        return VenueOrderResult(
            venue=venue,
            symbol=request.symbol,
            side=request.side,
            requested_amount=amount,
            status=status,
            order_id=order.get('id'),
            filled=filled,
            avg_price=float(avg_price) if avg_price else None,
            attempts=attempts,
            latency_ms=(time.perf_counter() - start) * 1000,
            error=f"Order {status_text} with no fill" if status == FillStatus.REJECTED else None,
        )

    def _rejected(
        self,
        venue: str,
        request: VenueOrderRequest,
        reason: str,
        attempts: int,
        start: float,
    ) -> VenueOrderResult:
        if attempts == 0:
            logger.warning(f"Order refused before submission on {venue}: {reason}")
        self._stats["rejected"] += 1
        return VenueOrderResult(
            venue=venue,
            symbol=request.symbol,
            side=request.side,
            requested_amount=request.amount,
            status=FillStatus.REJECTED,
            attempts=attempts,
            latency_ms=(time.perf_counter() - start) * 1000,
            error=reason,
        )

    # -------------------------------------------------------------------------
    # Pass-through operations
    # -------------------------------------------------------------------------

    async def fetch_ticker(self, venue: str, symbol: str) -> dict:
        return await self._require_client(venue).fetch_ticker(symbol)

    async def fetch_order(self, venue: str, order_id: str, symbol: str) -> dict:
        return await self._require_client(venue).fetch_order(order_id, symbol)

    async def cancel_order(self, venue: str, order_id: str, symbol: str) -> dict:
        return await self._require_client(venue).cancel_order(order_id, symbol)

    async def set_leverage(self, venue: str, symbol: str, leverage: float) -> Any:
        if leverage <= 0:
            raise ValueError(f"Leverage must be positive, got {leverage}")
        result = await self._require_client(venue).set_leverage(symbol, leverage)
        logger.info(f"Set leverage {leverage}x for {symbol} on {venue}")
        return result

    def set_sandbox_mode(self, venue: str, enabled: bool) -> None:
        self._require_client(venue).set_sandbox_mode(enabled)
        logger.info(f"Sandbox mode {'enabled' if enabled else 'disabled'} on {venue}")

    async def close(self) -> None:
        for venue, client in self._clients.items():
            try:
                await client.close()
            except Exception as e:
                logger.warning(f"Error closing venue {venue}: {e}")

    def _require_client(self, venue: str) -> VenueClient:
        client = self._clients.get(venue)
        if client is None:
            raise KeyError(f"Unknown venue: {venue}")
        return client

    def get_stats(self) -> dict:
        return {"venues": self.venues, **self._stats}


def create_venue_client(name: str, config: dict[str, Any]) -> VenueClient:
    """Build one venue client from its `venues.<name>` config entry."""
    if config.get("type", "ccxt") == "paper":
        return PaperVenueClient(
            name=name,
            prices=config.get("prices"),
            balances=config.get("balances"),
            spread_pct=config.get("spread_pct", 0.0005),
        )
    return CcxtVenueClient(name, config.get("exchange", name), config)


def create_venue_gateway(
    venues_config: dict[str, Any] | None = None,
    gateway_config: dict[str, Any] | None = None,
) -> VenueGateway:
    """Build the gateway from the `venues` and `gateway` config sections."""
    gateway_config = gateway_config or {}
    clients: dict[str, VenueClient] = {}
    for name, venue_config in (venues_config or {}).items():
        clients[name] = create_venue_client(name, venue_config or {})
    if not clients:
        clients["paper"] = PaperVenueClient("paper")
        logger.warning("No venues configured, using paper venue")

    return VenueGateway(
        clients=clients,
        max_attempts=gateway_config.get("max_attempts", 3),
        backoff_seconds=gateway_config.get("backoff_seconds", 0.2),
        balance_preflight=gateway_config.get("balance_preflight", True),
    )
