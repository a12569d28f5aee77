"""
Futures Session - Mock Exchange Service.

============================================================
PURPOSE
============================================================
In-memory exchange for tests and dry runs.

FEATURES:
- Configurable latency
- Per-method failure injection
- Call counters for every service method
- Streams that tests can push messages into or drop
- Market orders fill immediately and move positions

============================================================
"""

import asyncio
import logging
import uuid
from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from ..errors import (
    ExchangeRejectedError,
    LEVERAGE_NOT_AVAILABLE,
    NO_CHANGE_NEEDED,
    SessionTokenFetchFailed,
    TransportError,
)
from ..types import (
    Candle,
    ConditionalOrderSpec,
    OrderAck,
    OrderRef,
    OrderSide,
    OrderSpec,
    OrderStatusReport,
    OrderType,
    PositionSide,
    SymbolMetadata,
)
from .base import ExchangeService, MessageHandler, OrderChannel, StreamChannel


logger = logging.getLogger(__name__)

_UNSET = object()


# ============================================================
# MOCK CONFIGURATION
# ============================================================

def _default_metadata() -> List[SymbolMetadata]:
    return [
        SymbolMetadata("BTCUSDT", Decimal("0.001"), Decimal("0.001"), Decimal("0.10")),
        SymbolMetadata("ETHUSDT", Decimal("0.001"), Decimal("0.001"), Decimal("0.01")),
        SymbolMetadata("SOLUSDT", Decimal("1"), Decimal("1"), Decimal("0.0100")),
    ]


@dataclass
class MockConfig:
    """Configuration for the mock exchange."""

    latency_ms: float = 0.0
    """Simulated latency per call."""

    testnet: bool = True
    """Reported testnet flag (affects hedge-mode handling)."""

    default_price: Decimal = Decimal("50000")
    """Price for symbols without an explicit price."""

    symbols: List[SymbolMetadata] = field(default_factory=_default_metadata)
    """Metadata returned by fetch_symbol_metadata."""

    max_leverage: int = 125
    """Leverage above this is rejected with -4141."""

    hedge_mode: bool = False
    """Initial dual-side position mode."""


# ============================================================
# MOCK ORDERS
# ============================================================

@dataclass
class MockOrder:
    """Mock order state."""

    order_id: str
    client_order_id: Optional[str]
    symbol: str
    side: OrderSide
    order_type: OrderType
    quantity: Decimal
    price: Optional[Decimal]
    position_side: PositionSide
    reduce_only: bool
    status: str = "NEW"
    executed_quantity: Decimal = Decimal("0")


# ============================================================
# MOCK CHANNELS
# ============================================================

class MockStreamChannel(StreamChannel):
    """Stream whose messages are pushed by the test."""

    def __init__(self, streams: List[str], on_message: MessageHandler):
        super().__init__("mock-stream")
        self.streams = streams
        self._on_message = on_message

    def push(self, stream: str, data: Dict[str, Any]) -> None:
        """Deliver one combined-stream envelope."""
        if not self.closed:
            self._on_message({"stream": stream, "data": data})

    def push_raw(self, message: Any) -> None:
        """Deliver an arbitrary (possibly malformed) message."""
        if not self.closed:
            self._on_message(message)

    def drop(self, reason: str = "dropped by test") -> None:
        """Simulate the server closing the socket."""
        self._mark_closed(reason)

    async def close(self) -> None:
        self._mark_closed("closed by client")


class MockOrderChannel(OrderChannel):
    """Order channel backed by the mock exchange state."""

    def __init__(self, exchange: "MockExchangeService"):
        super().__init__("mock-order-channel")
        self._exchange = exchange

    def drop(self, reason: str = "dropped by test") -> None:
        self._mark_closed(reason)

    async def submit(self, spec: OrderSpec) -> OrderAck:
        self._ensure_open()
        return await self._exchange._place(spec)

    async def modify(self, spec: OrderSpec) -> OrderAck:
        self._ensure_open()
        return await self._exchange._modify(spec)

    async def query_status(self, ref: OrderRef) -> OrderStatusReport:
        self._ensure_open()
        return await self._exchange._query(ref)

    async def close(self) -> None:
        self._mark_closed("closed by client")

    def _ensure_open(self) -> None:
        if self.closed:
            raise TransportError("Order channel is closed")


# ============================================================
# MOCK EXCHANGE SERVICE
# ============================================================

class MockExchangeService(ExchangeService):
    """
    In-memory exchange service.

    Failure injection:
        mock.fail_next("open_session_token", SessionTokenFetchFailed("bad key"))
        mock.fail_next("fetch_account_positions", TransportError("x"), times=None)
    """

    def __init__(self, config: Optional[MockConfig] = None):
        self._config = config or MockConfig()

        # Counters and injected failures
        self.calls: Counter = Counter()
        self._failures: Dict[str, List[Optional[BaseException]]] = {}
        self._sticky_failures: Dict[str, BaseException] = {}

        # Exchange state
        self._metadata: List[SymbolMetadata] = list(self._config.symbols)
        self._prices: Dict[str, Decimal] = {}
        self._positions: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._raw_account: Any = _UNSET
        self._orders: Dict[str, MockOrder] = {}
        self._hedge_mode = self._config.hedge_mode
        self._leverage: Dict[str, int] = {}
        self._tokens: List[str] = []

        # Recorded traffic
        self.submitted: List[OrderSpec] = []
        self.modified: List[OrderSpec] = []
        self.conditional_orders: Dict[str, ConditionalOrderSpec] = {}
        self.streams: List[MockStreamChannel] = []
        self.order_channels: List[MockOrderChannel] = []
        self.closed_tokens: List[str] = []
        self.closed = False

    @property
    def exchange_id(self) -> str:
        return "mock"

    @property
    def is_testnet(self) -> bool:
        return self._config.testnet

    # --------------------------------------------------------
    # TEST CONTROLS
    # --------------------------------------------------------

    def fail_next(self, method: str, error: BaseException, times: Optional[int] = 1) -> None:
        """
        Make `method` raise `error`.

        Args:
            method: Service method name
            error: Exception to raise
            times: Number of calls to fail; None fails every call
        """
        if times is None:
            self._sticky_failures[method] = error
            return
        self._failures.setdefault(method, []).extend([error] * times)

    def clear_failures(self) -> None:
        self._failures.clear()
        self._sticky_failures.clear()

    def set_price(self, symbol: str, price: Decimal) -> None:
        self._prices[symbol] = Decimal(price)

    def set_metadata(self, metadata: List[SymbolMetadata]) -> None:
        self._metadata = list(metadata)

    def set_position(
        self,
        symbol: str,
        signed_amount: Decimal,
        position_side: PositionSide = PositionSide.NET,
        entry_price: Optional[Decimal] = None,
        leverage: int = 20,
    ) -> None:
        """Place a position directly into the account snapshot."""
        key = (symbol, position_side.wire_value)
        amount = Decimal(signed_amount)
        if amount == 0:
            self._positions.pop(key, None)
            return
        price = entry_price if entry_price is not None else self._get_price(symbol)
        self._positions[key] = {
            "symbol": symbol,
            "positionAmt": str(amount),
            "entryPrice": str(price),
            "markPrice": str(self._get_price(symbol)),
            "unrealizedProfit": "0",
            "leverage": str(leverage),
            "positionSide": position_side.wire_value,
        }

    def set_raw_account(self, rows: Any) -> None:
        """Return `rows` verbatim from fetch_account_positions."""
        self._raw_account = rows

    @property
    def hedge_mode(self) -> bool:
        return self._hedge_mode

    @property
    def active_tokens(self) -> List[str]:
        return [t for t in self._tokens if t not in self.closed_tokens]

    def get_order(self, order_id: str) -> Optional[MockOrder]:
        return self._orders.get(order_id)

    def set_order_status(self, order_id: str, status: str) -> None:
        self._orders[order_id].status = status

    # --------------------------------------------------------
    # MARKET METADATA
    # --------------------------------------------------------

    async def fetch_symbol_metadata(self) -> List[SymbolMetadata]:
        await self._enter("fetch_symbol_metadata")
        return list(self._metadata)

    async def fetch_reference_price(self, symbol: str) -> Decimal:
        await self._enter("fetch_reference_price")
        return self._get_price(symbol)

    async def fetch_klines(self, symbol: str, interval: str, limit: int = 500) -> List[Candle]:
        await self._enter("fetch_klines")
        price = self._get_price(symbol)
        candles = []
        for i in range(limit):
            open_time = 1_700_000_000_000 + i * 60_000
            candles.append(Candle(
                open_time=open_time,
                open=str(price),
                high=str(price),
                low=str(price),
                close=str(price),
                volume="0",
                close_time=open_time + 59_999,
            ))
        return candles

    # --------------------------------------------------------
    # ACCOUNT
    # --------------------------------------------------------

    async def fetch_account_positions(self) -> List[Dict[str, Any]]:
        await self._enter("fetch_account_positions")
        if self._raw_account is not _UNSET:
            return self._raw_account

        rows = [dict(row) for row in self._positions.values()]
        # The real endpoint also lists every flat symbol
        held = {row["symbol"] for row in rows}
        for meta in self._metadata:
            if meta.symbol not in held:
                rows.append({
                    "symbol": meta.symbol,
                    "positionAmt": "0.000",
                    "entryPrice": "0.0",
                    "markPrice": "0.0",
                    "unrealizedProfit": "0",
                    "leverage": "20",
                    "positionSide": "BOTH",
                })
        return rows

    async def set_position_mode(self, hedge: bool) -> None:
        await self._enter("set_position_mode")
        if hedge == self._hedge_mode:
            raise ExchangeRejectedError(
                "No need to change position side.",
                code=NO_CHANGE_NEEDED,
                http_status=400,
            )
        self._hedge_mode = hedge

    async def set_leverage(self, symbol: str, leverage: int) -> Dict[str, Any]:
        await self._enter("set_leverage")
        if leverage > self._config.max_leverage:
            raise ExchangeRejectedError(
                "Leverage is not valid for this symbol.",
                code=LEVERAGE_NOT_AVAILABLE,
                http_status=400,
            )
        self._leverage[symbol] = leverage
        return {"symbol": symbol, "leverage": leverage, "maxNotionalValue": "1000000"}

    def leverage_for(self, symbol: str) -> Optional[int]:
        return self._leverage.get(symbol)

    # --------------------------------------------------------
    # SESSION TOKEN
    # --------------------------------------------------------

    async def open_session_token(self) -> str:
        await self._enter("open_session_token")
        token = f"mock-listen-key-{len(self._tokens) + 1}"
        self._tokens.append(token)
        return token

    async def keepalive_session_token(self, token: str) -> None:
        await self._enter("keepalive_session_token")
        if token not in self._tokens:
            raise SessionTokenFetchFailed(f"Unknown session token {token}")

    async def close_session_token(self, token: str) -> None:
        await self._enter("close_session_token")
        self.closed_tokens.append(token)

    # --------------------------------------------------------
    # STREAMS AND CHANNELS
    # --------------------------------------------------------

    async def open_market_and_user_stream(
        self,
        symbol: str,
        interval: str,
        token: str,
        on_message: MessageHandler,
    ) -> MockStreamChannel:
        await self._enter("open_market_and_user_stream")
        channel = MockStreamChannel(
            [self.market_stream_id(symbol, interval), self.user_stream_id(token)],
            on_message,
        )
        self.streams.append(channel)
        return channel

    async def open_order_channel(self) -> MockOrderChannel:
        await self._enter("open_order_channel")
        channel = MockOrderChannel(self)
        self.order_channels.append(channel)
        return channel

    # --------------------------------------------------------
    # CONDITIONAL ORDERS
    # --------------------------------------------------------

    async def submit_conditional_order(self, spec: ConditionalOrderSpec) -> OrderAck:
        await self._enter("submit_conditional_order")
        algo_id = str(len(self.conditional_orders) + 1000)
        self.conditional_orders[algo_id] = spec
        return OrderAck(
            order_id=algo_id,
            client_order_id=spec.client_order_id,
            symbol=spec.symbol,
            status="NEW",
            raw={"algoId": algo_id, "algoStatus": "NEW"},
        )

    async def cancel_conditional_order(self, ref: OrderRef) -> None:
        await self._enter("cancel_conditional_order")
        if ref.order_id not in self.conditional_orders:
            raise ExchangeRejectedError("Unknown order sent.", code=-2011, http_status=400)
        del self.conditional_orders[ref.order_id]

    async def close(self) -> None:
        self.calls["close"] += 1
        self.closed = True

    # --------------------------------------------------------
    # ORDER CHANNEL BACKEND
    # --------------------------------------------------------

    async def _place(self, spec: OrderSpec) -> OrderAck:
        await self._enter("submit")
        self.submitted.append(spec)

        order = MockOrder(
            order_id=str(uuid.uuid4().int % 10 ** 10),
            client_order_id=spec.client_order_id,
            symbol=spec.symbol,
            side=spec.side,
            order_type=spec.order_type,
            quantity=Decimal(spec.quantity),
            price=Decimal(spec.price) if spec.price else None,
            position_side=spec.position_side,
            reduce_only=spec.reduce_only,
        )
        self._orders[order.order_id] = order

        if spec.order_type == OrderType.MARKET:
            order.status = "FILLED"
            order.executed_quantity = order.quantity
            self._apply_fill(order)

        return self._ack(order)

    async def _modify(self, spec: OrderSpec) -> OrderAck:
        await self._enter("modify")
        self.modified.append(spec)

        order = self._orders.get(spec.order_id or "")
        if order is None:
            raise ExchangeRejectedError("Unknown order sent.", code=-2011, http_status=400)
        if order.status not in ("NEW", "PARTIALLY_FILLED"):
            raise ExchangeRejectedError(
                f"Order is {order.status}", code=-2013, http_status=400
            )
        order.quantity = Decimal(spec.quantity)
        if spec.price is not None:
            order.price = Decimal(spec.price)
        return self._ack(order)

    async def _query(self, ref: OrderRef) -> OrderStatusReport:
        await self._enter("query_status")
        order = self._find(ref)
        if order is None:
            raise ExchangeRejectedError("Order does not exist.", code=-2013, http_status=400)
        return OrderStatusReport(
            order_id=order.order_id,
            client_order_id=order.client_order_id,
            symbol=order.symbol,
            side=order.side,
            position_side=order.position_side,
            order_type=order.order_type.value,
            status=order.status,
            price=order.price or Decimal("0"),
            quantity=order.quantity,
            executed_quantity=order.executed_quantity,
        )

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    async def _enter(self, method: str) -> None:
        self.calls[method] += 1
        await asyncio.sleep(self._config.latency_ms / 1000.0)

        if method in self._sticky_failures:
            raise self._sticky_failures[method]
        queued = self._failures.get(method)
        if queued:
            error = queued.pop(0)
            if error is not None:
                raise error

    def _get_price(self, symbol: str) -> Decimal:
        return self._prices.get(symbol, self._config.default_price)

    def _find(self, ref: OrderRef) -> Optional[MockOrder]:
        if ref.order_id:
            return self._orders.get(ref.order_id)
        for order in self._orders.values():
            if order.client_order_id == ref.client_order_id:
                return order
        return None

    def _apply_fill(self, order: MockOrder) -> None:
        key = (order.symbol, order.position_side.wire_value)
        current = Decimal(self._positions.get(key, {}).get("positionAmt", "0"))
        delta = order.executed_quantity if order.side == OrderSide.BUY else -order.executed_quantity
        self.set_position(
            order.symbol,
            current + delta,
            order.position_side,
        )

    def _ack(self, order: MockOrder) -> OrderAck:
        return OrderAck(
            order_id=order.order_id,
            client_order_id=order.client_order_id,
            symbol=order.symbol,
            status=order.status,
            raw={
                "orderId": order.order_id,
                "clientOrderId": order.client_order_id,
                "status": order.status,
                "origQty": str(order.quantity),
                "price": str(order.price or "0"),
            },
        )
