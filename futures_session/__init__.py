"""
Futures Session Package.

============================================================
PURPOSE
============================================================
Stateful trading-session client for Binance USD-M Futures.

Maintains a live connection, tracks account positions and
places orders whose quantities are sized from a notional
amount and rounded to exchange rules before submission.

============================================================
MODULES
============================================================
- types: Orders, positions, symbol rules, candles
- config: Retry, timeout, exchange and session configuration
- errors: Error taxonomy and Binance error mapping
- quantity: Notional -> quantity / price rounding
- symbol_rules: Per-symbol rule cache
- positions: Position view refreshed from account snapshots
- supervisor: Connection lifecycle and reconnect
- coordinator: Order orchestration (single, bracket, close)
- client: Facade wiring everything to one exchange service
- adapters: Binance and in-memory exchange services
- cli: Command-line runner

============================================================
"""

# ============================================================
# TYPES
# ============================================================
from .types import (
    # Enums
    OrderSide,
    OrderType,
    TimeInForce,
    PositionSide,
    WorkingType,
    ConnectionState,
    # Rules and positions
    SymbolMetadata,
    SymbolRule,
    Position,
    # Orders
    OrderIntent,
    OrderSpec,
    ConditionalOrderSpec,
    OrderRef,
    OrderAck,
    OrderStatusReport,
    StrategyResult,
    # Market data
    Candle,
)

# ============================================================
# CONFIG
# ============================================================
from .config import (
    RetryPolicy,
    TimeoutConfig,
    ExchangeConfig,
    SessionConfig,
)

# ============================================================
# ERRORS
# ============================================================
from .errors import (
    FuturesSessionError,
    TransportError,
    NotConnectedError,
    AuthError,
    SessionTokenFetchFailed,
    ExchangeRejectedError,
    SymbolNotFound,
    MetadataFetchFailed,
    InvalidOrderInput,
    OrderTooSmall,
    OrderNotModifiable,
    BracketPartialFailure,
    map_binance_error,
)

# ============================================================
# COMPONENTS
# ============================================================
from .observable import Observable
from .quantity import resolve_quantity, resolve_price
from .symbol_rules import SymbolRuleCache
from .positions import PositionView
from .supervisor import ConnectionSupervisor
from .coordinator import OrderCoordinator
from .client import FuturesSessionClient

# ============================================================
# ADAPTERS
# ============================================================
from .adapters import (
    ExchangeService,
    StreamChannel,
    OrderChannel,
    BinanceFuturesService,
    MockExchangeService,
    MockConfig,
)


__all__ = [
    # Types
    "OrderSide",
    "OrderType",
    "TimeInForce",
    "PositionSide",
    "WorkingType",
    "ConnectionState",
    "SymbolMetadata",
    "SymbolRule",
    "Position",
    "OrderIntent",
    "OrderSpec",
    "ConditionalOrderSpec",
    "OrderRef",
    "OrderAck",
    "OrderStatusReport",
    "StrategyResult",
    "Candle",
    # Config
    "RetryPolicy",
    "TimeoutConfig",
    "ExchangeConfig",
    "SessionConfig",
    # Errors
    "FuturesSessionError",
    "TransportError",
    "NotConnectedError",
    "AuthError",
    "SessionTokenFetchFailed",
    "ExchangeRejectedError",
    "SymbolNotFound",
    "MetadataFetchFailed",
    "InvalidOrderInput",
    "OrderTooSmall",
    "OrderNotModifiable",
    "BracketPartialFailure",
    "map_binance_error",
    # Components
    "Observable",
    "resolve_quantity",
    "resolve_price",
    "SymbolRuleCache",
    "PositionView",
    "ConnectionSupervisor",
    "OrderCoordinator",
    "FuturesSessionClient",
    # Adapters
    "ExchangeService",
    "StreamChannel",
    "OrderChannel",
    "BinanceFuturesService",
    "MockExchangeService",
    "MockConfig",
]

__version__ = "1.0.0"
