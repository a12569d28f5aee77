"""
Connection Supervisor Tests.

============================================================
PURPOSE
============================================================
Connect sequence, retry/backoff, reconnect on channel loss,
message routing and destroy.

============================================================
"""

import asyncio
from decimal import Decimal

import pytest

from futures_session.adapters.mock import MockExchangeService
from futures_session.config import RetryPolicy
from futures_session.errors import NotConnectedError, SessionTokenFetchFailed, TransportError
from futures_session.positions import PositionView
from futures_session.supervisor import ConnectionSupervisor
from futures_session.types import ConnectionState


MARKET = "btcusdt@kline_1m"


def fast_retry(max_attempts: int = 3) -> RetryPolicy:
    return RetryPolicy(max_attempts=max_attempts, base_delay_seconds=0.0, max_delay_seconds=0.0)


def make_supervisor(service=None, retry=None, keepalive=3600.0):
    service = service or MockExchangeService()
    positions = PositionView(service)
    supervisor = ConnectionSupervisor(
        service,
        positions,
        retry=retry or fast_retry(),
        keepalive_interval_seconds=keepalive,
    )
    return service, positions, supervisor


async def eventually(predicate, timeout: float = 1.0) -> None:
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.001)
    await asyncio.wait_for(_poll(), timeout)


def kline(closed: bool, close: str = "50010.5") -> dict:
    return {
        "e": "kline",
        "k": {
            "t": 1700000000000,
            "T": 1700000059999,
            "o": "50000.0",
            "h": "50020.0",
            "l": "49990.0",
            "c": close,
            "v": "12.345",
            "q": "617000.1",
            "x": closed,
        },
    }


# ============================================================
# RETRY POLICY
# ============================================================

class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_exponential_and_capped(self):
        policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=60.0, backoff_multiplier=2.0)

        assert [policy.delay_for(n) for n in range(1, 9)] == [1, 2, 4, 8, 16, 32, 60, 60]

    def test_should_retry_bounded(self):
        policy = RetryPolicy(max_attempts=3)

        assert policy.should_retry(1)
        assert policy.should_retry(2)
        assert not policy.should_retry(3)


# ============================================================
# CONNECT
# ============================================================

class TestConnect:
    """Tests for the connect sequence."""

    @pytest.mark.asyncio
    async def test_connect_runs_all_steps(self):
        service, _, supervisor = make_supervisor()

        await supervisor.connect("BTCUSDT", "1m")
        await supervisor.wait_for_state(ConnectionState.CONNECTED, timeout=1)

        assert service.calls["open_session_token"] == 1
        assert service.calls["open_market_and_user_stream"] == 1
        assert service.calls["open_order_channel"] == 1
        assert service.calls["fetch_account_positions"] == 1
        assert service.streams[0].streams == [MARKET, "mock-listen-key-1"]
        assert supervisor.order_channel is service.order_channels[0]

        await supervisor.destroy()

    @pytest.mark.asyncio
    async def test_connect_is_idempotent(self):
        """connect() while CONNECTING or CONNECTED sets nothing up."""
        service, _, supervisor = make_supervisor()

        await supervisor.connect("BTCUSDT", "1m")
        await supervisor.connect("BTCUSDT", "1m")
        await supervisor.wait_for_state(ConnectionState.CONNECTED, timeout=1)
        await supervisor.connect("BTCUSDT", "1m")
        await asyncio.sleep(0.01)

        assert service.calls["open_session_token"] == 1
        assert service.calls["open_market_and_user_stream"] == 1
        assert service.calls["open_order_channel"] == 1

        await supervisor.destroy()

    @pytest.mark.asyncio
    async def test_order_channel_unavailable_before_connect(self):
        _, _, supervisor = make_supervisor()

        with pytest.raises(NotConnectedError):
            supervisor.order_channel

    @pytest.mark.asyncio
    async def test_initial_refresh_loads_positions(self):
        service, positions, supervisor = make_supervisor()
        service.set_position("BTCUSDT", Decimal("0.010"))

        await supervisor.connect("BTCUSDT", "1m")
        await supervisor.wait_for_state(ConnectionState.CONNECTED, timeout=1)

        assert [p.symbol for p in positions.current()] == ["BTCUSDT"]

        await supervisor.destroy()


# ============================================================
# RETRY
# ============================================================

class TestRetry:
    """Tests for retry and exhaustion."""

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        service, _, supervisor = make_supervisor()
        service.fail_next("open_session_token", SessionTokenFetchFailed("bad key"), times=2)

        await supervisor.connect("BTCUSDT", "1m")
        await supervisor.wait_for_state(ConnectionState.CONNECTED, timeout=1)

        assert supervisor.attempts == 3
        assert service.calls["open_session_token"] == 3

        await supervisor.destroy()

    @pytest.mark.asyncio
    async def test_exhaustion_ends_disconnected(self):
        service, _, supervisor = make_supervisor(retry=fast_retry(3))
        service.fail_next("open_session_token", SessionTokenFetchFailed("bad key"), times=None)

        await supervisor.connect("BTCUSDT", "1m")
        await supervisor.supervision_task

        assert supervisor.current_state == ConnectionState.DISCONNECTED
        assert service.calls["open_session_token"] == 3

    @pytest.mark.asyncio
    async def test_connect_allowed_after_exhaustion(self):
        service, _, supervisor = make_supervisor(retry=fast_retry(2))
        service.fail_next("open_session_token", SessionTokenFetchFailed("bad key"), times=None)
        await supervisor.connect("BTCUSDT", "1m")
        await supervisor.supervision_task

        service.clear_failures()
        await supervisor.connect("BTCUSDT", "1m")
        await supervisor.wait_for_state(ConnectionState.CONNECTED, timeout=1)

        assert supervisor.is_connected
        await supervisor.destroy()

    @pytest.mark.asyncio
    async def test_failed_step_tears_down_attempt(self):
        """Stream and token opened by a failed attempt are released."""
        service, _, supervisor = make_supervisor()
        service.fail_next("open_order_channel", TransportError("ws down"))

        await supervisor.connect("BTCUSDT", "1m")
        await supervisor.wait_for_state(ConnectionState.CONNECTED, timeout=1)

        assert service.streams[0].closed
        assert service.closed_tokens == ["mock-listen-key-1"]
        assert not service.streams[1].closed

        await supervisor.destroy()

    @pytest.mark.asyncio
    async def test_destroy_cancels_pending_retry(self):
        service, _, supervisor = make_supervisor(
            retry=RetryPolicy(max_attempts=10, base_delay_seconds=60.0, max_delay_seconds=60.0),
        )
        service.fail_next("open_session_token", SessionTokenFetchFailed("bad key"), times=None)

        await supervisor.connect("BTCUSDT", "1m")
        await eventually(lambda: service.calls["open_session_token"] == 1)
        task = supervisor.supervision_task

        await supervisor.destroy()
        await asyncio.sleep(0.01)

        assert task.cancelled()
        assert supervisor.current_state == ConnectionState.DISCONNECTED
        assert service.calls["open_session_token"] == 1


# ============================================================
# RECONNECT
# ============================================================

class TestReconnect:
    """Tests for reconnection after channel loss."""

    @pytest.mark.asyncio
    async def test_stream_drop_reconnects(self):
        service, _, supervisor = make_supervisor()
        states = []
        supervisor.subscribe_state(states.append)
        await supervisor.connect("BTCUSDT", "1m")
        await supervisor.wait_for_state(ConnectionState.CONNECTED, timeout=1)

        service.streams[0].drop("server went away")
        await eventually(lambda: len(service.streams) == 2 and supervisor.is_connected)

        assert states == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
        ]
        assert service.order_channels[0].closed
        assert "mock-listen-key-1" in service.closed_tokens
        assert service.streams[1].streams[1] == "mock-listen-key-2"

        await supervisor.destroy()

    @pytest.mark.asyncio
    async def test_order_channel_drop_reconnects(self):
        service, _, supervisor = make_supervisor()
        await supervisor.connect("BTCUSDT", "1m")
        await supervisor.wait_for_state(ConnectionState.CONNECTED, timeout=1)

        service.order_channels[0].drop()
        await eventually(lambda: len(service.order_channels) == 2 and supervisor.is_connected)

        assert service.streams[0].closed
        await supervisor.destroy()

    @pytest.mark.asyncio
    async def test_token_expiry_reconnects(self):
        service, _, supervisor = make_supervisor()
        await supervisor.connect("BTCUSDT", "1m")
        await supervisor.wait_for_state(ConnectionState.CONNECTED, timeout=1)

        service.streams[0].push("mock-listen-key-1", {"e": "listenKeyExpired", "E": 1})
        await eventually(lambda: service.calls["open_session_token"] == 2 and supervisor.is_connected)

        await supervisor.destroy()


# ============================================================
# MESSAGE ROUTING
# ============================================================

class TestMessageRouting:
    """Tests for stream message routing."""

    @pytest.mark.asyncio
    async def test_closed_kline_updates_latest_candle(self):
        service, _, supervisor = make_supervisor()
        received = []
        supervisor.subscribe_candles(received.append)
        await supervisor.connect("BTCUSDT", "1m")
        await supervisor.wait_for_state(ConnectionState.CONNECTED, timeout=1)

        service.streams[0].push(MARKET, kline(closed=False, close="1"))
        assert supervisor.latest_candle is None

        service.streams[0].push(MARKET, kline(closed=True))

        assert supervisor.latest_candle.close == "50010.5"
        assert supervisor.latest_candle.quote_volume == "617000.1"
        assert len(received) == 1

        await supervisor.destroy()

    @pytest.mark.asyncio
    async def test_user_events_trigger_refresh(self):
        service, positions, supervisor = make_supervisor()
        await supervisor.connect("BTCUSDT", "1m")
        await supervisor.wait_for_state(ConnectionState.CONNECTED, timeout=1)
        service.set_position("ETHUSDT", Decimal("3"))

        service.streams[0].push("mock-listen-key-1", {"e": "ORDER_TRADE_UPDATE"})
        await eventually(lambda: service.calls["fetch_account_positions"] == 2)
        await eventually(lambda: positions.generation == 2)

        service.streams[0].push("mock-listen-key-1", {"e": "ACCOUNT_UPDATE"})
        await eventually(lambda: service.calls["fetch_account_positions"] == 3)

        assert [p.symbol for p in positions.current()] == ["ETHUSDT"]
        await supervisor.destroy()

    @pytest.mark.asyncio
    async def test_malformed_messages_dropped(self):
        service, _, supervisor = make_supervisor()
        await supervisor.connect("BTCUSDT", "1m")
        await supervisor.wait_for_state(ConnectionState.CONNECTED, timeout=1)
        stream = service.streams[0]

        stream.push_raw("not a dict")
        stream.push_raw({"stream": MARKET})
        stream.push_raw({"stream": MARKET, "data": "x"})
        stream.push(MARKET, {"e": "kline", "k": {"x": True}})
        stream.push(MARKET, {"e": "kline", "k": None})
        stream.push(MARKET, {"e": "kline", "k": [1, 2]})
        stream.push(MARKET, {"e": "kline", "k": "closed"})
        stream.push("somebody@else", {"e": "trade"})

        assert supervisor.is_connected
        assert supervisor.latest_candle is None

        stream.push(MARKET, kline(closed=True))
        assert supervisor.latest_candle.close == "50010.5"
        await supervisor.destroy()


# ============================================================
# KEEPALIVE AND DESTROY
# ============================================================

class TestKeepaliveAndDestroy:
    """Tests for keepalive and destroy."""

    @pytest.mark.asyncio
    async def test_keepalive_runs_and_failures_degrade(self):
        service, _, supervisor = make_supervisor(keepalive=0.005)
        service.fail_next("keepalive_session_token", TransportError("blip"))

        await supervisor.connect("BTCUSDT", "1m")
        await supervisor.wait_for_state(ConnectionState.CONNECTED, timeout=1)
        await eventually(lambda: service.calls["keepalive_session_token"] >= 2)

        assert supervisor.is_connected
        await supervisor.destroy()

    @pytest.mark.asyncio
    async def test_destroy_releases_everything(self):
        service, _, supervisor = make_supervisor()
        await supervisor.connect("BTCUSDT", "1m")
        await supervisor.wait_for_state(ConnectionState.CONNECTED, timeout=1)

        await supervisor.destroy()

        assert supervisor.current_state == ConnectionState.DISCONNECTED
        assert service.streams[0].closed
        assert service.order_channels[0].closed
        assert service.closed_tokens == ["mock-listen-key-1"]
        with pytest.raises(NotConnectedError):
            supervisor.order_channel

    @pytest.mark.asyncio
    async def test_destroy_is_repeatable(self):
        _, _, supervisor = make_supervisor()

        await supervisor.destroy()
        await supervisor.connect("BTCUSDT", "1m")
        await supervisor.destroy()
        await supervisor.destroy()

        assert supervisor.current_state == ConnectionState.DISCONNECTED
