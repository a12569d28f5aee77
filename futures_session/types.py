"""
Futures Session - Types.

============================================================
PURPOSE
============================================================
All type definitions for the futures trading session.

PRINCIPLES:
- Quantities and prices are Decimal internally
- They cross the exchange boundary only as exact strings
- Snapshots handed to readers are immutable

============================================================
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


# ============================================================
# ENUMS
# ============================================================

class OrderSide(Enum):
    """Order side."""

    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class OrderType(Enum):
    """Order type."""

    MARKET = "MARKET"
    """Execute at current market price."""

    LIMIT = "LIMIT"
    """Execute at specified price or better."""

    STOP_MARKET = "STOP_MARKET"
    """Market order triggered at stop price."""

    TAKE_PROFIT_MARKET = "TAKE_PROFIT_MARKET"
    """Market order triggered at take profit price."""


class TimeInForce(Enum):
    """Time in force for orders."""

    GTC = "GTC"
    """Good Till Canceled."""

    IOC = "IOC"
    """Immediate Or Cancel."""

    FOK = "FOK"
    """Fill Or Kill."""


class PositionSide(Enum):
    """
    Position side.

    LONG/SHORT in hedge mode, NET in one-way mode.
    The exchange calls NET "BOTH" on the wire.
    """

    LONG = "LONG"
    SHORT = "SHORT"
    NET = "NET"

    @property
    def wire_value(self) -> str:
        return "BOTH" if self is PositionSide.NET else self.value

    @classmethod
    def from_wire(cls, value: str) -> "PositionSide":
        """Parse an exchange position side ("BOTH" means NET)."""
        value = (value or "").upper()
        if value == "BOTH":
            return cls.NET
        return cls(value)


class WorkingType(Enum):
    """Price used to evaluate a conditional trigger."""

    MARK_PRICE = "MARK_PRICE"
    CONTRACT_PRICE = "CONTRACT_PRICE"


class ConnectionState(Enum):
    """
    Connection lifecycle state.

    State Machine:

    DISCONNECTED ──connect()──► CONNECTING ──success──► CONNECTED
         ▲                          │    ▲                  │
         │                          │    └── channel lost ──┘
         └── exhausted / destroy ───┘
    """

    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"


OPEN_ORDER_STATUSES = frozenset({"NEW", "PARTIALLY_FILLED"})


# ============================================================
# SYMBOL RULES
# ============================================================

@dataclass(frozen=True)
class SymbolMetadata:
    """Raw per-symbol filters as listed by the metadata endpoint."""

    symbol: str
    min_quantity: Decimal
    quantity_step: Decimal
    price_step: Decimal


@dataclass(frozen=True)
class SymbolRule:
    """Exchange trading constraints for one symbol."""

    symbol: str
    """Trading symbol."""

    min_quantity: Decimal
    """Minimum order quantity."""

    quantity_step: Decimal
    """Quantity step size, always positive."""

    price_step: Decimal
    """Price tick size."""

    quantity_precision: int
    """Fractional digits implied by the quantity step."""

    price_precision: int
    """Fractional digits implied by the price step."""


# ============================================================
# POSITIONS
# ============================================================

@dataclass(frozen=True)
class Position:
    """One open position as last reported by the exchange."""

    symbol: str
    signed_amount: Decimal
    """Positive for long exposure, negative for short. Never zero."""

    entry_price: Decimal
    mark_price: Decimal
    unrealized_pnl: Decimal
    leverage: int
    side: PositionSide

    @property
    def abs_amount(self) -> Decimal:
        return abs(self.signed_amount)

    @property
    def is_long(self) -> bool:
        return self.signed_amount > 0


# ============================================================
# ORDER REQUESTS
# ============================================================

@dataclass
class OrderIntent:
    """What the caller wants to trade, before sizing."""

    symbol: str
    side: OrderSide
    notional: Decimal
    """Order size in quote currency."""

    reference_price: Optional[Decimal] = None
    """Price used for sizing; fetched from the exchange when None."""

    position_side: PositionSide = PositionSide.NET


@dataclass
class OrderSpec:
    """Wire-neutral order request for the order channel."""

    symbol: str
    side: OrderSide
    order_type: OrderType
    quantity: str
    position_side: PositionSide = PositionSide.NET
    price: Optional[str] = None
    time_in_force: Optional[TimeInForce] = None
    reduce_only: bool = False
    client_order_id: Optional[str] = None
    order_id: Optional[str] = None
    """Only set when modifying an existing order."""


@dataclass
class ConditionalOrderSpec:
    """Trigger order (stop-loss / take-profit) for the algo endpoint."""

    symbol: str
    side: OrderSide
    order_type: OrderType
    quantity: str
    trigger_price: str
    position_side: PositionSide = PositionSide.NET
    working_type: WorkingType = WorkingType.MARK_PRICE
    client_order_id: Optional[str] = None


@dataclass(frozen=True)
class OrderRef:
    """Identifies an existing order by exchange id or client id."""

    symbol: str
    order_id: Optional[str] = None
    client_order_id: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.order_id and not self.client_order_id:
            raise ValueError("OrderRef needs order_id or client_order_id")


# ============================================================
# ORDER RESULTS
# ============================================================

@dataclass
class OrderAck:
    """Exchange acknowledgement of a submission."""

    order_id: str
    client_order_id: Optional[str]
    symbol: str
    status: str
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class OrderStatusReport:
    """Current exchange view of a single order."""

    order_id: str
    client_order_id: Optional[str]
    symbol: str
    side: OrderSide
    position_side: PositionSide
    order_type: str
    status: str
    price: Decimal = Decimal("0")
    quantity: Decimal = Decimal("0")
    executed_quantity: Decimal = Decimal("0")

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_ORDER_STATUSES


@dataclass
class StrategyResult:
    """Outcome of a bracket strategy (entry + stop-loss + take-profit)."""

    entry_order_id: str
    stop_loss_order_id: str
    take_profit_order_id: str
    quantity: str
    entry_price: str
    stop_loss: str
    take_profit: str
    position_side: PositionSide


# ============================================================
# MARKET DATA
# ============================================================

@dataclass(frozen=True)
class Candle:
    """OHLCV candle; prices kept as the exchange's exact strings."""

    open_time: int
    open: str
    high: str
    low: str
    close: str
    volume: str
    close_time: int
    quote_volume: str = "0"
