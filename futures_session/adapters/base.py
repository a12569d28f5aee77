"""
Futures Session - Exchange Service Base.

============================================================
PURPOSE
============================================================
Abstract interface the session core uses to talk to an
exchange.

DESIGN PRINCIPLES:
- The core never sees HTTP, WebSocket frames or signatures
- Quantities and prices cross the boundary as exact strings
- Fully testable with the in-memory mock service

============================================================
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from ..types import (
    Candle,
    ConditionalOrderSpec,
    OrderAck,
    OrderRef,
    OrderSpec,
    OrderStatusReport,
    SymbolMetadata,
)


logger = logging.getLogger(__name__)

MessageHandler = Callable[[Dict[str, Any]], None]
"""Receives decoded combined-stream envelopes: {"stream": ..., "data": ...}."""


# ============================================================
# CHANNELS
# ============================================================

class Channel(ABC):
    """
    A long-lived connection that can end on its own.

    Subclasses call `_mark_closed()` when the underlying socket
    ends; the supervisor awaits `wait_closed()` to notice.
    """

    def __init__(self, name: str):
        self.name = name
        self._closed_event = asyncio.Event()
        self._close_reason: Optional[str] = None

    @property
    def closed(self) -> bool:
        return self._closed_event.is_set()

    @property
    def close_reason(self) -> Optional[str]:
        return self._close_reason

    def _mark_closed(self, reason: str) -> None:
        if not self._closed_event.is_set():
            self._close_reason = reason
            self._closed_event.set()
            logger.debug(f"{self.name} closed: {reason}")

    async def wait_closed(self) -> Optional[str]:
        """Block until the channel ends; returns the close reason."""
        await self._closed_event.wait()
        return self._close_reason

    @abstractmethod
    async def close(self) -> None:
        """Close the channel. Safe to call more than once."""
        pass


class StreamChannel(Channel):
    """Combined market-data + user-event stream."""


class OrderChannel(Channel):
    """Low-latency order submission channel."""

    @abstractmethod
    async def submit(self, spec: OrderSpec) -> OrderAck:
        """
        Place a new order.

        Raises:
            ExchangeRejectedError: Exchange refused the order
            TransportError: Channel failed before a reply arrived
        """
        pass

    @abstractmethod
    async def modify(self, spec: OrderSpec) -> OrderAck:
        """Change price/quantity of an open order (spec.order_id set)."""
        pass

    @abstractmethod
    async def query_status(self, ref: OrderRef) -> OrderStatusReport:
        """Fetch the current status of an order."""
        pass


# ============================================================
# ABSTRACT EXCHANGE SERVICE
# ============================================================

class ExchangeService(ABC):
    """
    Abstract interface for exchange bindings.

    Implementations:
    - BinanceFuturesService: Real Binance USD-M Futures API
    - MockExchangeService: In-memory, for tests and dry runs
    """

    @property
    @abstractmethod
    def exchange_id(self) -> str:
        """Get exchange identifier."""
        pass

    @property
    def is_testnet(self) -> bool:
        return False

    # --------------------------------------------------------
    # MARKET METADATA
    # --------------------------------------------------------

    @abstractmethod
    async def fetch_symbol_metadata(self) -> List[SymbolMetadata]:
        """Filters for every listed symbol (one bulk call)."""
        pass

    @abstractmethod
    async def fetch_reference_price(self, symbol: str) -> Decimal:
        """Last traded price as Decimal."""
        pass

    @abstractmethod
    async def fetch_klines(self, symbol: str, interval: str, limit: int = 500) -> List[Candle]:
        """Historical candles, oldest first."""
        pass

    # --------------------------------------------------------
    # ACCOUNT
    # --------------------------------------------------------

    @abstractmethod
    async def fetch_account_positions(self) -> List[Dict[str, Any]]:
        """
        Raw position rows from a full account snapshot.

        Rows carry symbol, positionAmt, entryPrice, markPrice,
        unrealizedProfit, leverage and positionSide.
        """
        pass

    @abstractmethod
    async def set_position_mode(self, hedge: bool) -> None:
        """Switch dual-side (hedge) position mode on or off."""
        pass

    @abstractmethod
    async def set_leverage(self, symbol: str, leverage: int) -> Dict[str, Any]:
        """Set initial leverage for a symbol."""
        pass

    # --------------------------------------------------------
    # SESSION TOKEN
    # --------------------------------------------------------

    @abstractmethod
    async def open_session_token(self) -> str:
        """
        Obtain a user-stream session token.

        Raises:
            SessionTokenFetchFailed: Credentials or IP rejected
        """
        pass

    @abstractmethod
    async def keepalive_session_token(self, token: str) -> None:
        pass

    @abstractmethod
    async def close_session_token(self, token: str) -> None:
        pass

    # --------------------------------------------------------
    # STREAMS AND CHANNELS
    # --------------------------------------------------------

    def market_stream_id(self, symbol: str, interval: str) -> str:
        """Stream name carrying candles for symbol/interval."""
        return f"{symbol.lower()}@kline_{interval}"

    def user_stream_id(self, token: str) -> str:
        """Stream name carrying user events for a session token."""
        return token

    @abstractmethod
    async def open_market_and_user_stream(
        self,
        symbol: str,
        interval: str,
        token: str,
        on_message: MessageHandler,
    ) -> StreamChannel:
        """Open the combined candle + user-event stream."""
        pass

    @abstractmethod
    async def open_order_channel(self) -> OrderChannel:
        """Open the order submission channel."""
        pass

    # --------------------------------------------------------
    # CONDITIONAL ORDERS
    # --------------------------------------------------------

    @abstractmethod
    async def submit_conditional_order(self, spec: ConditionalOrderSpec) -> OrderAck:
        """Place a trigger order (stop-loss / take-profit)."""
        pass

    @abstractmethod
    async def cancel_conditional_order(self, ref: OrderRef) -> None:
        pass

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def close(self) -> None:
        """Release HTTP sessions and other resources."""
        pass
