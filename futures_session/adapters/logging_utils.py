"""
Futures Session - Exchange Traffic Logging.

============================================================
PURPOSE
============================================================
Log every REST call and order-channel request with the
credentials blanked out:

- API key (header or WebSocket API param)
- Request signature
- Session token (listenKey), including inside stream URLs

============================================================
"""

import json
import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)


# ============================================================
# SENSITIVE NAMES
# ============================================================

SENSITIVE_HEADERS = frozenset({"x-mbx-apikey", "authorization"})

SENSITIVE_PARAMS = frozenset({
    "apikey",
    "api_key",
    "secret",
    "signature",
    "listenkey",
    "listen_key",
    "token",
})

_QUERY_SECRET = re.compile(
    r"(?P<name>" + "|".join(sorted(SENSITIVE_PARAMS)) + r")=(?P<value>[^&]+)",
    re.IGNORECASE,
)

# /stream?streams=btcusdt@kline_1m/<listenKey>
_STREAM_TOKEN = re.compile(r"(?P<prefix>streams=[^&]*?/)[A-Za-z0-9]{32,}")


# ============================================================
# MASKING
# ============================================================

def mask_value(value: str, show_chars: int = 4) -> str:
    """Keep the first `show_chars` characters: "abcdefgh" -> "abcd...***"."""
    if not value or len(value) <= show_chars:
        return "***"
    return value[:show_chars] + "...***"


def mask_headers(headers: Optional[Dict[str, str]]) -> Dict[str, str]:
    return {
        name: mask_value(str(value)) if name.lower() in SENSITIVE_HEADERS else value
        for name, value in (headers or {}).items()
    }


def mask_params(params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Copy of `params` with credential values masked, nested dicts included."""
    def _mask(name: str, value: Any) -> Any:
        if name.lower() in SENSITIVE_PARAMS:
            return mask_value(str(value)) if value else value
        if isinstance(value, dict):
            return mask_params(value)
        return value

    return {name: _mask(name, value) for name, value in (params or {}).items()}


def mask_url(url: str) -> str:
    """Blank credential query params and a listenKey in a combined-stream path."""
    if not url:
        return url
    url = _QUERY_SECRET.sub(lambda m: f"{m.group('name')}=***", url)
    return _STREAM_TOKEN.sub(lambda m: f"{m.group('prefix')}***", url)


# ============================================================
# LOG RECORDS
# ============================================================

@dataclass
class TrafficRecord:
    """One exchange request or its outcome, serialised as a JSON log line."""

    exchange_id: str
    operation: str
    request_id: str
    timestamp: str = field(default_factory=lambda: datetime.utcnow().isoformat())

    # Request side
    transport: Optional[str] = None
    """HTTP method, or "WS" for the order channel."""
    endpoint: Optional[str] = None
    params: Optional[Dict[str, Any]] = None

    # Response side
    status: Any = None
    latency_ms: Optional[float] = None
    success: Optional[bool] = None
    error_code: Optional[int] = None
    error_message: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(
            {k: v for k, v in asdict(self).items() if v is not None},
            default=str,
        )


# ============================================================
# EXCHANGE LOGGER
# ============================================================

class ExchangeLogger:
    """
    Correlated request/response logging for one exchange service.

    Requests log at DEBUG. Failed responses log at WARNING so that
    rejected orders show up without enabling debug output.
    """

    def __init__(self, exchange_id: str, logger_name: Optional[str] = None):
        self._exchange_id = exchange_id
        self._logger = logging.getLogger(logger_name or f"futures_session.exchange.{exchange_id}")
        self._sequence = 0

    def log_request(
        self,
        operation: str,
        transport: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Log an outgoing request and return its correlation id."""
        self._sequence += 1
        request_id = f"{self._exchange_id}-{self._sequence}"

        record = TrafficRecord(
            exchange_id=self._exchange_id,
            operation=operation,
            request_id=request_id,
            transport=transport,
            endpoint=mask_url(endpoint),
            params=mask_params(params) or None,
        )
        self._logger.debug(f"REQUEST: {record.to_json()}")
        return request_id

    def log_response(
        self,
        operation: str,
        request_id: str,
        status: Any,
        latency_ms: float,
        success: bool,
        error_code: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> None:
        record = TrafficRecord(
            exchange_id=self._exchange_id,
            operation=operation,
            request_id=request_id,
            status=status,
            latency_ms=round(latency_ms, 2),
            success=success,
            error_code=error_code,
            error_message=error_message[:200] if error_message else None,
        )
        if success:
            self._logger.debug(f"RESPONSE: {record.to_json()}")
        else:
            self._logger.warning(f"RESPONSE_ERROR: {record.to_json()}")
