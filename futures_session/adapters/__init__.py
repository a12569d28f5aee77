"""
Futures Session - Adapters Package.

============================================================
PURPOSE
============================================================
Exchange service implementations.

AVAILABLE SERVICES:
- BinanceFuturesService: Binance USD-M Futures
- MockExchangeService: In-memory, for tests and dry runs

UTILITIES:
- ExchangeLogger: Request/response logging with masking

============================================================
"""

# Base types
from .base import (
    Channel,
    ExchangeService,
    MessageHandler,
    OrderChannel,
    StreamChannel,
)

# Services
from .binance import BinanceFuturesService
from .mock import MockConfig, MockExchangeService

# Logging
from .logging_utils import ExchangeLogger, mask_params, mask_url, mask_value


__all__ = [
    # Base
    "Channel",
    "ExchangeService",
    "MessageHandler",
    "OrderChannel",
    "StreamChannel",
    # Services
    "BinanceFuturesService",
    "MockConfig",
    "MockExchangeService",
    # Logging
    "ExchangeLogger",
    "mask_params",
    "mask_url",
    "mask_value",
]
