"""
Futures Session - Error Taxonomy.

============================================================
PURPOSE
============================================================
Exception hierarchy for the trading session and the mapping of
exchange error codes onto it.

ERROR CLASSES:
1. Transport      - Network/timeout, retryable
2. Auth           - Bad credentials/IP, fatal to the attempt
3. Rejected       - Exchange refused a well-formed request
4. Metadata       - Symbol rules unavailable or unknown symbol
5. Order sizing   - Quantity below exchange minimum
6. Order state    - Order can no longer be modified

PROPAGATION:
- User-initiated order operations raise these unchanged
- Background refresh/keepalive logs them and degrades

============================================================
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


# ============================================================
# BASE
# ============================================================

class FuturesSessionError(Exception):
    """Base exception for the futures session."""

    is_retryable: bool = False


# ============================================================
# TRANSPORT / AUTH
# ============================================================

class TransportError(FuturesSessionError):
    """Network failure, timeout or temporary exchange outage."""

    is_retryable = True


class NotConnectedError(TransportError):
    """No live order channel is available."""


class AuthError(FuturesSessionError):
    """Credentials, IP whitelist or permissions rejected."""


class SessionTokenFetchFailed(AuthError):
    """
    User-stream session token could not be obtained.

    Fatal for the current connection attempt only; the
    supervisor retries the whole connect sequence.
    """

    is_retryable = True


# ============================================================
# EXCHANGE REJECTION
# ============================================================

class ExchangeRejectedError(FuturesSessionError):
    """Exchange refused the request."""

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        http_status: Optional[int] = None,
    ):
        super().__init__(message)
        self.code = code
        self.http_status = http_status


# ============================================================
# SYMBOL METADATA
# ============================================================

class SymbolNotFound(FuturesSessionError):
    """Metadata service does not list the symbol."""

    def __init__(self, symbol: str):
        super().__init__(f"Symbol not found on exchange: {symbol}")
        self.symbol = symbol


class MetadataFetchFailed(FuturesSessionError):
    """Symbol metadata could not be fetched or parsed."""

    is_retryable = True


# ============================================================
# ORDER ERRORS
# ============================================================

class InvalidOrderInput(FuturesSessionError, ValueError):
    """Caller supplied a non-positive amount, price or leverage."""


class OrderTooSmall(FuturesSessionError):
    """Rounded quantity is below the symbol's minimum quantity."""

    def __init__(self, computed: Decimal, minimum: Decimal, symbol: str = ""):
        where = f" for {symbol}" if symbol else ""
        super().__init__(
            f"Order too small{where}: {computed} < {minimum}"
        )
        self.computed = computed
        self.minimum = minimum
        self.symbol = symbol


class OrderNotModifiable(FuturesSessionError):
    """Order is no longer open and cannot be modified."""

    def __init__(self, order_ref: Any, status: str):
        super().__init__(f"Order {order_ref} is not modifiable (status={status})")
        self.order_ref = order_ref
        self.status = status


class BracketPartialFailure(FuturesSessionError):
    """
    A bracket strategy stopped after the entry was placed.

    The entry (and possibly one protective leg) is live on the
    exchange. Nothing is rolled back; the caller must react.

    Attributes:
        completed: Leg name -> order id for legs that were placed
        failed_leg: Name of the leg whose submission failed
    """

    def __init__(self, completed: Dict[str, str], failed_leg: str, cause: BaseException):
        legs = ", ".join(f"{name}={oid}" for name, oid in completed.items()) or "none"
        super().__init__(
            f"Bracket strategy failed at {failed_leg} leg "
            f"(placed: {legs}): {cause}"
        )
        self.completed = dict(completed)
        self.failed_leg = failed_leg
        self.cause = cause


# ============================================================
# BINANCE ERROR MAPPING
# ============================================================

class ErrorCategory(Enum):
    """Classification of an exchange error."""

    TRANSPORT = "TRANSPORT"
    AUTH = "AUTH"
    REJECTED = "REJECTED"


@dataclass(frozen=True)
class ErrorCodeInfo:
    """Registry entry for a known exchange error code."""

    code: int
    category: ErrorCategory
    description: str


BINANCE_ERROR_CODES: Dict[int, ErrorCodeInfo] = {
    info.code: info for info in [
        # Exchange internal / throttling
        ErrorCodeInfo(-1000, ErrorCategory.TRANSPORT, "Unknown error while processing"),
        ErrorCodeInfo(-1001, ErrorCategory.TRANSPORT, "Internal error, unable to process"),
        ErrorCodeInfo(-1003, ErrorCategory.TRANSPORT, "Too many requests"),
        ErrorCodeInfo(-1007, ErrorCategory.TRANSPORT, "Timeout waiting for backend"),
        ErrorCodeInfo(-1008, ErrorCategory.TRANSPORT, "Server overloaded"),
        # Authentication
        ErrorCodeInfo(-1022, ErrorCategory.AUTH, "Signature for this request is not valid"),
        ErrorCodeInfo(-2008, ErrorCategory.AUTH, "Invalid API key id"),
        ErrorCodeInfo(-2014, ErrorCategory.AUTH, "API key format invalid"),
        ErrorCodeInfo(-2015, ErrorCategory.AUTH, "Invalid API key, IP, or permissions"),
        # Order / account rejections
        ErrorCodeInfo(-1100, ErrorCategory.REJECTED, "Illegal characters in parameter"),
        ErrorCodeInfo(-1111, ErrorCategory.REJECTED, "Precision over the maximum"),
        ErrorCodeInfo(-1121, ErrorCategory.REJECTED, "Invalid symbol"),
        ErrorCodeInfo(-2011, ErrorCategory.REJECTED, "Unknown order"),
        ErrorCodeInfo(-2013, ErrorCategory.REJECTED, "Order does not exist"),
        ErrorCodeInfo(-2019, ErrorCategory.REJECTED, "Margin is insufficient"),
        ErrorCodeInfo(-4059, ErrorCategory.REJECTED, "No need to change position side"),
        ErrorCodeInfo(-4061, ErrorCategory.REJECTED, "Position side does not match user setting"),
        ErrorCodeInfo(-4136, ErrorCategory.REJECTED, "closePosition not allowed with this order"),
        ErrorCodeInfo(-4141, ErrorCategory.REJECTED, "Leverage exceeds tier maximum"),
        ErrorCodeInfo(-4164, ErrorCategory.REJECTED, "Order notional below minimum"),
    ]
}

# Codes that the account-settings calls treat as "already in that state"
NO_CHANGE_NEEDED = -4059
LEVERAGE_NOT_AVAILABLE = -4141


def classify_binance_error(code: Optional[int], http_status: Optional[int] = None) -> ErrorCategory:
    """
    Classify a Binance error code.

    Args:
        code: Binance error code (may be None for bare HTTP errors)
        http_status: HTTP status code

    Returns:
        ErrorCategory
    """
    if code is not None and code in BINANCE_ERROR_CODES:
        return BINANCE_ERROR_CODES[code].category
    if http_status in (401, 403):
        return ErrorCategory.AUTH
    if http_status in (418, 429) or (http_status is not None and http_status >= 500):
        return ErrorCategory.TRANSPORT
    return ErrorCategory.REJECTED


def map_binance_error(
    code: Optional[int],
    message: str,
    http_status: Optional[int] = None,
) -> FuturesSessionError:
    """
    Build the exception for a Binance error response.

    Args:
        code: Binance error code
        message: Binance error message
        http_status: HTTP status code

    Returns:
        Exception instance (not raised)
    """
    category = classify_binance_error(code, http_status)
    text = f"Binance error {code}: {message}" if code is not None else f"Binance HTTP {http_status}: {message}"

    if category == ErrorCategory.AUTH:
        return AuthError(text)
    if category == ErrorCategory.TRANSPORT:
        return TransportError(text)
    return ExchangeRejectedError(text, code=code, http_status=http_status)


def error_code_of(error: BaseException) -> Optional[int]:
    """Exchange code carried by an error, if any."""
    return getattr(error, "code", None)


__all__: List[str] = [
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
    "ErrorCategory",
    "ErrorCodeInfo",
    "BINANCE_ERROR_CODES",
    "NO_CHANGE_NEEDED",
    "LEVERAGE_NOT_AVAILABLE",
    "classify_binance_error",
    "map_binance_error",
    "error_code_of",
]
