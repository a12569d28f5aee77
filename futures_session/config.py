"""
Futures Session - Configuration.

============================================================
PURPOSE
============================================================
All configuration for the futures trading session.

CRITICAL CONSTRAINTS:
- Bounded retries only
- Credentials come from the environment, never from code
- Testnet endpoints are selected by a single flag

============================================================
"""

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple


# ============================================================
# RETRY CONFIGURATION
# ============================================================

@dataclass
class RetryPolicy:
    """
    Reconnect policy for the connection supervisor.

    SAFETY: Bounded attempts with capped exponential backoff.
    """

    max_attempts: int = 10
    """Maximum number of connect attempts before giving up."""

    base_delay_seconds: float = 1.0
    """Delay after the first failed attempt."""

    max_delay_seconds: float = 60.0
    """Upper bound for any single delay."""

    backoff_multiplier: float = 2.0
    """Exponential backoff multiplier."""

    def delay_for(self, attempt: int) -> float:
        """
        Delay to wait after a failed attempt.

        Args:
            attempt: 1-based number of the attempt that just failed

        Returns:
            Seconds to sleep before the next attempt
        """
        if attempt < 1:
            return 0.0
        delay = self.base_delay_seconds * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_delay_seconds)

    def should_retry(self, attempt: int) -> bool:
        """Whether another attempt is allowed after `attempt` failed."""
        return attempt < self.max_attempts


# ============================================================
# TIMEOUT CONFIGURATION
# ============================================================

@dataclass
class TimeoutConfig:
    """
    Timeout configuration.
    """

    connection_timeout_seconds: float = 10.0
    """Connection timeout."""

    read_timeout_seconds: float = 30.0
    """Read timeout for responses."""

    request_timeout_seconds: float = 30.0
    """Total timeout for one REST request."""

    order_response_timeout_seconds: float = 10.0
    """Timeout for a reply on the order channel."""


# ============================================================
# EXCHANGE CONFIGURATION
# ============================================================

MAINNET_REST_URL = "https://fapi.binance.com"
MAINNET_STREAM_URL = "wss://fstream.binance.com"
MAINNET_WS_API_URL = "wss://ws-fapi.binance.com/ws-fapi/v1"

TESTNET_REST_URL = "https://testnet.binancefuture.com"
TESTNET_STREAM_URL = "wss://stream.binancefuture.com"
TESTNET_WS_API_URL = "wss://testnet.binancefuture.com/ws-fapi/v1"


@dataclass
class ExchangeConfig:
    """
    Exchange-specific configuration.

    Leaving a URL empty selects the mainnet or testnet default.
    """

    testnet: bool = False
    """Whether to use testnet."""

    # Endpoints
    rest_url: str = ""
    """REST API base URL."""

    stream_url: str = ""
    """Market/user data stream base URL."""

    ws_api_url: str = ""
    """WebSocket API (order channel) URL."""

    # Credentials (loaded from env)
    api_key_env: str = "BINANCE_API_KEY"
    """Environment variable for API key."""

    api_secret_env: str = "BINANCE_API_SECRET"
    """Environment variable for API secret."""

    recv_window: int = 5000
    """recvWindow sent with signed requests (ms)."""

    def __post_init__(self) -> None:
        if not self.rest_url:
            self.rest_url = TESTNET_REST_URL if self.testnet else MAINNET_REST_URL
        if not self.stream_url:
            self.stream_url = TESTNET_STREAM_URL if self.testnet else MAINNET_STREAM_URL
        if not self.ws_api_url:
            self.ws_api_url = TESTNET_WS_API_URL if self.testnet else MAINNET_WS_API_URL

    def load_credentials(self) -> Tuple[str, str]:
        """Read API key and secret from the configured env vars."""
        return (
            os.environ.get(self.api_key_env, ""),
            os.environ.get(self.api_secret_env, ""),
        )


# ============================================================
# MASTER CONFIGURATION
# ============================================================

def _env_flag(name: str) -> Optional[bool]:
    value = os.environ.get(name)
    if value is None or value == "":
        return None
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class SessionConfig:
    """
    Master configuration for a trading session.
    """

    symbol: str = "BTCUSDT"
    """Symbol whose candles are streamed."""

    interval: str = "1m"
    """Candle interval."""

    keepalive_interval_seconds: float = 25 * 60.0
    """How often the session token is kept alive."""

    heartbeat_seconds: float = 30.0
    """WebSocket ping interval."""

    # Sub-configs
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    """Reconnect policy."""

    timeout: TimeoutConfig = field(default_factory=TimeoutConfig)
    """Timeout configuration."""

    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    """Exchange configuration."""

    @classmethod
    def from_env(cls) -> "SessionConfig":
        """Build configuration from environment variables."""
        testnet = _env_flag("BINANCE_TESTNET")
        if testnet is None:
            testnet = _env_flag("TESTNET") or False

        retry = RetryPolicy()
        max_retries = os.environ.get("SESSION_MAX_RETRIES")
        if max_retries:
            retry.max_attempts = int(max_retries)

        return cls(
            symbol=os.environ.get("SESSION_SYMBOL", "BTCUSDT").upper(),
            interval=os.environ.get("SESSION_INTERVAL", "1m"),
            retry=retry,
            exchange=ExchangeConfig(testnet=testnet),
        )

    @classmethod
    def for_testing(cls) -> "SessionConfig":
        """Get configuration for testing."""
        return cls(
            exchange=ExchangeConfig(testnet=True),
            retry=RetryPolicy(
                max_attempts=3,
                base_delay_seconds=0.0,
                max_delay_seconds=0.0,
            ),
            keepalive_interval_seconds=3600.0,
        )

    @classmethod
    def for_production(cls) -> "SessionConfig":
        """Get configuration for production."""
        return cls(
            exchange=ExchangeConfig(testnet=False),
            retry=RetryPolicy(max_attempts=10),
        )
