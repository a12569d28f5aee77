"""
Futures Session - Client.

============================================================
PURPOSE
============================================================
Facade wiring one exchange service to:

- SymbolRuleCache
- PositionView
- ConnectionSupervisor
- OrderCoordinator

plus account settings (position mode, leverage) and history.

============================================================
USAGE
============================================================
```python
async with FuturesSessionClient.binance(SessionConfig.from_env()) as client:
    await client.connect()
    await client.wait_for_state(ConnectionState.CONNECTED, timeout=30)
    await client.place_market_order(
        OrderIntent("BTCUSDT", OrderSide.BUY, Decimal("100"))
    )
```

============================================================
"""

import logging
from typing import List, Optional

from .adapters.base import ExchangeService
from .adapters.binance import BinanceFuturesService
from .config import SessionConfig
from .coordinator import OrderCoordinator
from .errors import (
    ExchangeRejectedError,
    InvalidOrderInput,
    LEVERAGE_NOT_AVAILABLE,
    NO_CHANGE_NEEDED,
)
from .observable import Observable
from .positions import PositionView, Snapshot
from .quantity import Number
from .supervisor import ConnectionSupervisor
from .symbol_rules import SymbolRuleCache
from .types import (
    Candle,
    ConnectionState,
    OrderAck,
    OrderIntent,
    OrderRef,
    Position,
    PositionSide,
    StrategyResult,
    SymbolRule,
)


logger = logging.getLogger(__name__)

MIN_LEVERAGE = 1
MAX_LEVERAGE = 125


class FuturesSessionClient:
    """
    Stateful trading session for one exchange.
    """

    def __init__(self, service: ExchangeService, config: Optional[SessionConfig] = None):
        self._config = config or SessionConfig()
        self._service = service

        self.rules = SymbolRuleCache(service)
        self.positions = PositionView(service)
        self.supervisor = ConnectionSupervisor(
            service,
            self.positions,
            retry=self._config.retry,
            keepalive_interval_seconds=self._config.keepalive_interval_seconds,
        )
        self.orders = OrderCoordinator(
            service,
            self.rules,
            self.positions,
            lambda: self.supervisor.order_channel,
        )

    @classmethod
    def binance(cls, config: Optional[SessionConfig] = None) -> "FuturesSessionClient":
        """Client bound to Binance Futures (credentials from env)."""
        config = config or SessionConfig.from_env()
        service = BinanceFuturesService(
            config.exchange,
            config.timeout,
            heartbeat_seconds=config.heartbeat_seconds,
        )
        return cls(service, config)

    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------

    @property
    def service(self) -> ExchangeService:
        return self._service

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def status(self) -> Observable[ConnectionState]:
        return self.supervisor.state

    @property
    def candles(self) -> Observable[Optional[Candle]]:
        return self.supervisor.candles

    @property
    def latest_candle(self) -> Optional[Candle]:
        return self.supervisor.latest_candle

    @property
    def position_updates(self) -> Observable[Snapshot]:
        return self.positions.observable

    def current_positions(self) -> Snapshot:
        return self.positions.current()

    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------

    async def connect(self, symbol: Optional[str] = None, interval: Optional[str] = None) -> None:
        await self.supervisor.connect(symbol or self._config.symbol, interval or self._config.interval)

    async def wait_for_state(self, state: ConnectionState, timeout: Optional[float] = None) -> ConnectionState:
        return await self.supervisor.wait_for_state(state, timeout)

    async def destroy(self) -> None:
        """Tear down the session; the HTTP session stays usable."""
        await self.supervisor.destroy()

    async def close(self) -> None:
        """Destroy the session and release the exchange service."""
        await self.destroy()
        await self._service.close()

    async def __aenter__(self) -> "FuturesSessionClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # --------------------------------------------------------
    # ORDERS
    # --------------------------------------------------------

    async def get_symbol_rules(self, symbol: str) -> SymbolRule:
        return await self.rules.get_rules(symbol)

    async def refresh_positions(self) -> Snapshot:
        return await self.positions.refresh()

    def find_position(self, symbol: str, side: PositionSide) -> Optional[Position]:
        return self.positions.find(symbol, side)

    async def place_market_order(self, intent: OrderIntent) -> OrderAck:
        return await self.orders.place_market_order(intent)

    async def place_limit_order(self, intent: OrderIntent, limit_price: Number) -> OrderAck:
        return await self.orders.place_limit_order(intent, limit_price)

    async def place_bracket_strategy(
        self,
        intent: OrderIntent,
        entry_price: Number,
        stop_loss: Number,
        take_profit: Number,
    ) -> StrategyResult:
        return await self.orders.place_bracket_strategy(intent, entry_price, stop_loss, take_profit)

    async def modify_limit_order(self, order_ref: OrderRef, new_price: Number, new_notional: Number) -> OrderAck:
        return await self.orders.modify_limit_order(order_ref, new_price, new_notional)

    async def close_position(self, symbol: str, side: PositionSide) -> Optional[OrderAck]:
        return await self.orders.close_position(symbol, side)

    # --------------------------------------------------------
    # ACCOUNT SETTINGS
    # --------------------------------------------------------

    async def enable_hedge_mode(self) -> None:
        """Switch to dual-side (LONG/SHORT) position mode."""
        try:
            await self._service.set_position_mode(True)
            logger.info("Hedge mode enabled")
        except ExchangeRejectedError as e:
            if e.code != NO_CHANGE_NEEDED:
                raise
            logger.info("Hedge mode already enabled")

    async def disable_hedge_mode(self) -> None:
        """
        Switch to one-way (NET) position mode.

        On testnet a failure is logged and suppressed; the testnet
        account stays in hedge mode.
        """
        try:
            await self._service.set_position_mode(False)
            logger.info("Hedge mode disabled")
        except ExchangeRejectedError as e:
            if e.code == NO_CHANGE_NEEDED:
                logger.info("Hedge mode already disabled")
                return
            if self._service.is_testnet:
                logger.warning(f"Could not disable hedge mode on testnet, keeping it: {e}")
                return
            raise

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        """
        Set initial leverage for a symbol.

        Raises:
            InvalidOrderInput: leverage outside 1..125
        """
        if not isinstance(leverage, int) or not MIN_LEVERAGE <= leverage <= MAX_LEVERAGE:
            raise InvalidOrderInput(
                f"Leverage must be an integer in {MIN_LEVERAGE}..{MAX_LEVERAGE}, got {leverage!r}"
            )

        try:
            await self._service.set_leverage(symbol.upper(), leverage)
            logger.info(f"Leverage for {symbol} set to {leverage}x")
        except ExchangeRejectedError as e:
            if e.code == LEVERAGE_NOT_AVAILABLE:
                logger.warning(f"Leverage {leverage}x not available for {symbol}: {e}")
            elif e.code == NO_CHANGE_NEEDED:
                logger.info(f"Leverage for {symbol} already {leverage}x")
            else:
                raise

    async def get_klines(self, symbol: str, interval: str, limit: int = 500) -> List[Candle]:
        return await self._service.fetch_klines(symbol.upper(), interval, limit)
