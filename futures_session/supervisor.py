"""
Futures Session - Connection Supervisor.

============================================================
PURPOSE
============================================================
Own the lifecycle of the live connection:

1. Session token (listenKey)
2. Combined market + user stream
3. Order channel
4. Session token keepalive
5. Initial position refresh

Detect failures and reconnect with bounded backoff.

============================================================
STATE MACHINE
============================================================

DISCONNECTED ──connect()──► CONNECTING ──all steps ok──► CONNECTED
     ▲                          │   ▲                        │
     │                          │   └──── channel lost ──────┘
     └─ retries exhausted ──────┘
     └─ destroy() from any state

============================================================
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

from .adapters.base import ExchangeService, OrderChannel, StreamChannel
from .config import RetryPolicy
from .errors import NotConnectedError
from .observable import Observable
from .positions import PositionView
from .types import Candle, ConnectionState


logger = logging.getLogger(__name__)

POSITION_EVENTS = frozenset({"ACCOUNT_UPDATE", "ORDER_TRADE_UPDATE"})
TOKEN_EXPIRED_EVENT = "listenKeyExpired"

DEFAULT_KEEPALIVE_SECONDS = 25 * 60.0


def parse_kline(k: Dict[str, Any]) -> Candle:
    """Build a Candle from a kline event payload ("k" object)."""
    return Candle(
        open_time=int(k["t"]),
        open=str(k["o"]),
        high=str(k["h"]),
        low=str(k["l"]),
        close=str(k["c"]),
        volume=str(k["v"]),
        close_time=int(k["T"]),
        quote_volume=str(k.get("q", "0")),
    )


class ConnectionSupervisor:
    """
    Connection state machine with reconnect.

    Usage:
        supervisor = ConnectionSupervisor(service, positions)
        await supervisor.connect("BTCUSDT", "1m")
        await supervisor.wait_for_state(ConnectionState.CONNECTED, timeout=30)
        channel = supervisor.order_channel
        ...
        await supervisor.destroy()
    """

    def __init__(
        self,
        service: ExchangeService,
        positions: PositionView,
        retry: Optional[RetryPolicy] = None,
        keepalive_interval_seconds: float = DEFAULT_KEEPALIVE_SECONDS,
    ):
        self._service = service
        self._positions = positions
        self._retry = retry or RetryPolicy()
        self._keepalive_interval = keepalive_interval_seconds

        self.state = Observable[ConnectionState](ConnectionState.DISCONNECTED, name="connection-state")
        self.candles = Observable[Optional[Candle]](None, name="candles", notify_unchanged=True)

        self._symbol: Optional[str] = None
        self._interval: Optional[str] = None

        # Owned resources of the current attempt
        self._token: Optional[str] = None
        self._stream: Optional[StreamChannel] = None
        self._order_channel: Optional[OrderChannel] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._token_expired = asyncio.Event()

        self._supervise_task: Optional[asyncio.Task] = None
        self._attempts = 0

    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------

    @property
    def current_state(self) -> ConnectionState:
        return self.state.value

    @property
    def is_connected(self) -> bool:
        return self.state.value == ConnectionState.CONNECTED

    @property
    def latest_candle(self) -> Optional[Candle]:
        return self.candles.value

    @property
    def attempts(self) -> int:
        """Connect attempts made since this supervisor was created."""
        return self._attempts

    @property
    def supervision_task(self) -> Optional[asyncio.Task]:
        return self._supervise_task

    @property
    def order_channel(self) -> OrderChannel:
        """
        The live order channel.

        Raises:
            NotConnectedError: Not connected or channel closed
        """
        channel = self._order_channel
        if self.state.value != ConnectionState.CONNECTED or channel is None or channel.closed:
            raise NotConnectedError(f"No live order channel (state={self.state.value.value})")
        return channel

    def subscribe_state(self, callback: Callable[[ConnectionState], None]) -> Callable[[], None]:
        return self.state.subscribe(callback)

    def subscribe_candles(self, callback: Callable[[Candle], None]) -> Callable[[], None]:
        return self.candles.subscribe(callback)

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def connect(self, symbol: str, interval: str) -> None:
        """
        Start connecting in the background.

        No-op while CONNECTING or CONNECTED. Use `wait_for_state`
        to await the outcome.
        """
        if self.state.value in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            logger.debug(f"connect() ignored, already {self.state.value.value}")
            return

        self._symbol = symbol.upper()
        self._interval = interval
        self.state.set(ConnectionState.CONNECTING)
        self._supervise_task = asyncio.ensure_future(self._supervise())

    async def destroy(self) -> None:
        """
        Stop everything and force DISCONNECTED.

        Safe to call repeatedly and from any state.
        """
        task = self._supervise_task
        self._supervise_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self._teardown()
        self._positions.cancel_pending()
        self.state.set(ConnectionState.DISCONNECTED)
        logger.info("Connection supervisor destroyed")

    async def wait_for_state(self, state: ConnectionState, timeout: Optional[float] = None) -> ConnectionState:
        """
        Wait until the connection reaches `state`.

        Raises:
            asyncio.TimeoutError: State not reached within timeout
        """
        return await self.state.wait_for(lambda s: s == state, timeout)

    # --------------------------------------------------------
    # SUPERVISION
    # --------------------------------------------------------

    async def _supervise(self) -> None:
        while True:
            connected = await self._connect_with_retry()
            if not connected:
                self.state.set(ConnectionState.DISCONNECTED)
                return

            reason = await self._watch()
            logger.warning(f"Connection lost ({reason}), reconnecting")
            await self._teardown()
            self.state.set(ConnectionState.CONNECTING)

    async def _connect_with_retry(self) -> bool:
        attempt = 0
        while True:
            attempt += 1
            self._attempts += 1
            try:
                await self._connect_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    f"Connect attempt {attempt}/{self._retry.max_attempts} failed: "
                    f"{type(e).__name__}: {e}"
                )
                await self._teardown()

                if not self._retry.should_retry(attempt):
                    logger.error(f"Giving up after {attempt} connect attempts")
                    return False

                delay = self._retry.delay_for(attempt)
                logger.info(f"Reconnecting in {delay:.1f}s (attempt {attempt + 1})")
                await asyncio.sleep(delay)
                continue

            self.state.set(ConnectionState.CONNECTED)
            logger.info(f"Connected: {self._symbol}@{self._interval} (attempt {attempt})")
            return True

    async def _connect_once(self) -> None:
        self._token_expired.clear()

        self._token = await self._service.open_session_token()
        self._stream = await self._service.open_market_and_user_stream(
            self._symbol,
            self._interval,
            self._token,
            self._on_message,
        )
        self._order_channel = await self._service.open_order_channel()
        self._keepalive_task = asyncio.ensure_future(self._keepalive_loop(self._token))
        await self._positions.refresh()

    async def _watch(self) -> str:
        """Block until a channel closes or the session token expires."""
        waiters = {
            asyncio.ensure_future(self._stream.wait_closed()): "stream",
            asyncio.ensure_future(self._order_channel.wait_closed()): "order channel",
            asyncio.ensure_future(self._token_expired.wait()): "session token",
        }
        try:
            done, _ = await asyncio.wait(waiters.keys(), return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

        finished = next(iter(done))
        what = waiters[finished]
        if what == "session token":
            return "session token expired"
        return f"{what} closed: {finished.result()}"

    async def _keepalive_loop(self, token: str) -> None:
        while True:
            await asyncio.sleep(self._keepalive_interval)
            try:
                await self._service.keepalive_session_token(token)
                logger.debug("Session token kept alive")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Session token keepalive failed: {e}")

    async def _teardown(self) -> None:
        """Release everything the current attempt opened."""
        keepalive, self._keepalive_task = self._keepalive_task, None
        if keepalive is not None:
            keepalive.cancel()
            try:
                await keepalive
            except asyncio.CancelledError:
                pass

        stream, self._stream = self._stream, None
        if stream is not None:
            await self._close_quietly(stream.close(), "stream")

        channel, self._order_channel = self._order_channel, None
        if channel is not None:
            await self._close_quietly(channel.close(), "order channel")

        token, self._token = self._token, None
        if token is not None:
            await self._close_quietly(self._service.close_session_token(token), "session token")

    async def _close_quietly(self, closing, what: str) -> None:
        try:
            await closing
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Failed to release {what}: {e}")

    # --------------------------------------------------------
    # MESSAGE ROUTING
    # --------------------------------------------------------

    def _on_message(self, message: Dict[str, Any]) -> None:
        try:
            stream = message["stream"]
            data = message["data"]
            if not isinstance(data, dict):
                raise TypeError(f"data is {type(data).__name__}")

            if stream == self._service.market_stream_id(self._symbol, self._interval):
                self._handle_kline(data)
            elif self._token is not None and stream == self._service.user_stream_id(self._token):
                self._handle_user_event(data)
            else:
                logger.debug(f"Ignoring message for stream {stream}")
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Dropping malformed stream message: {e}")

    def _handle_kline(self, data: Dict[str, Any]) -> None:
        k = data["k"]
        if not isinstance(k, dict):
            raise TypeError(f"kline payload is {type(k).__name__}")
        if not k.get("x"):
            return
        candle = parse_kline(k)
        self.candles.set(candle)

    def _handle_user_event(self, data: Dict[str, Any]) -> None:
        event = data.get("e")
        if event in POSITION_EVENTS:
            logger.debug(f"{event} received, refreshing positions")
            self._positions.schedule_refresh()
        elif event == TOKEN_EXPIRED_EVENT:
            logger.warning("Session token expired")
            self._token_expired.set()
        else:
            logger.debug(f"Unhandled user event {event}")
