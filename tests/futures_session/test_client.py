"""
Futures Session Client Tests.

============================================================
PURPOSE
============================================================
End-to-end behaviour of the client facade over the mock
exchange, plus account settings.

============================================================
"""

import logging
from decimal import Decimal

import pytest

from futures_session import FuturesSessionClient, SessionConfig
from futures_session.adapters.mock import MockConfig, MockExchangeService
from futures_session.errors import ExchangeRejectedError, InvalidOrderInput, NotConnectedError
from futures_session.types import ConnectionState, OrderIntent, OrderSide, PositionSide


def make_client(**mock_kwargs) -> FuturesSessionClient:
    service = MockExchangeService(MockConfig(**mock_kwargs))
    return FuturesSessionClient(service, SessionConfig.for_testing())


# ============================================================
# SESSION FLOW
# ============================================================

class TestSessionFlow:
    """Connect, trade, close and tear down."""

    @pytest.mark.asyncio
    async def test_orders_require_connection(self):
        client = make_client()

        with pytest.raises(NotConnectedError):
            await client.place_market_order(
                OrderIntent("BTCUSDT", OrderSide.BUY, Decimal("250"), reference_price=Decimal("50000"))
            )

    @pytest.mark.asyncio
    async def test_open_and_close_round_trip(self):
        client = make_client()
        service = client.service

        await client.connect()
        await client.wait_for_state(ConnectionState.CONNECTED, timeout=1)

        await client.place_market_order(OrderIntent("BTCUSDT", OrderSide.BUY, Decimal("500")))
        await client.refresh_positions()
        position = client.find_position("BTCUSDT", PositionSide.NET)
        assert position.signed_amount == Decimal("0.010")

        await client.close_position("BTCUSDT", PositionSide.NET)

        assert service.submitted[-1].side == OrderSide.SELL
        assert service.submitted[-1].quantity == "0.010"
        await client.refresh_positions()
        assert client.current_positions() == ()

        await client.close()
        assert client.status.value == ConnectionState.DISCONNECTED
        assert service.closed

    @pytest.mark.asyncio
    async def test_connect_uses_configured_stream(self):
        client = make_client()

        await client.connect()
        await client.wait_for_state(ConnectionState.CONNECTED, timeout=1)

        assert client.service.streams[0].streams[0] == "btcusdt@kline_1m"
        await client.close()

    @pytest.mark.asyncio
    async def test_context_manager_closes_service(self):
        async with make_client() as client:
            await client.connect("ETHUSDT", "5m")
            await client.wait_for_state(ConnectionState.CONNECTED, timeout=1)

        assert client.service.closed
        assert client.service.active_tokens == []

    @pytest.mark.asyncio
    async def test_get_symbol_rules(self):
        client = make_client()

        rules = await client.get_symbol_rules("btcusdt")

        assert rules.symbol == "BTCUSDT"
        assert rules.quantity_precision == 3


# ============================================================
# ACCOUNT SETTINGS
# ============================================================

class TestHedgeMode:
    """Tests for enable/disable hedge mode."""

    @pytest.mark.asyncio
    async def test_enable(self):
        client = make_client(hedge_mode=False)

        await client.enable_hedge_mode()

        assert client.service.hedge_mode

    @pytest.mark.asyncio
    async def test_enable_when_already_enabled(self):
        """-4059 means nothing to change."""
        client = make_client(hedge_mode=True)

        await client.enable_hedge_mode()

        assert client.service.hedge_mode
        assert client.service.calls["set_position_mode"] == 1

    @pytest.mark.asyncio
    async def test_disable_when_already_disabled(self):
        client = make_client(hedge_mode=False)

        await client.disable_hedge_mode()

        assert not client.service.hedge_mode

    @pytest.mark.asyncio
    async def test_disable_failure_suppressed_on_testnet(self, caplog):
        client = make_client(hedge_mode=True, testnet=True)
        client.service.fail_next(
            "set_position_mode",
            ExchangeRejectedError("Cannot change position side", code=-4068, http_status=400),
        )

        with caplog.at_level(logging.WARNING, logger="futures_session.client"):
            await client.disable_hedge_mode()

        assert client.service.hedge_mode
        assert "testnet" in caplog.text

    @pytest.mark.asyncio
    async def test_disable_failure_raised_on_mainnet(self):
        client = make_client(hedge_mode=True, testnet=False)
        client.service.fail_next(
            "set_position_mode",
            ExchangeRejectedError("Cannot change position side", code=-4068, http_status=400),
        )

        with pytest.raises(ExchangeRejectedError):
            await client.disable_hedge_mode()

    @pytest.mark.asyncio
    async def test_other_enable_errors_raised(self):
        client = make_client()
        client.service.fail_next("set_position_mode", ExchangeRejectedError("nope", code=-1100))

        with pytest.raises(ExchangeRejectedError):
            await client.enable_hedge_mode()


class TestLeverage:
    """Tests for set_leverage."""

    @pytest.mark.asyncio
    async def test_sets_leverage(self):
        client = make_client()

        await client.set_leverage("btcusdt", 20)

        assert client.service.leverage_for("BTCUSDT") == 20

    @pytest.mark.asyncio
    @pytest.mark.parametrize("leverage", [0, -1, 126, 1000, "10", 2.5])
    async def test_out_of_range_rejected_locally(self, leverage):
        client = make_client()

        with pytest.raises(InvalidOrderInput):
            await client.set_leverage("BTCUSDT", leverage)

        assert client.service.calls["set_leverage"] == 0

    @pytest.mark.asyncio
    async def test_bounds_accepted(self):
        client = make_client()

        await client.set_leverage("BTCUSDT", 1)
        await client.set_leverage("ETHUSDT", 125)

        assert client.service.leverage_for("ETHUSDT") == 125

    @pytest.mark.asyncio
    async def test_tier_limit_logged_not_raised(self, caplog):
        client = make_client(max_leverage=50)

        with caplog.at_level(logging.WARNING, logger="futures_session.client"):
            await client.set_leverage("BTCUSDT", 75)

        assert client.service.leverage_for("BTCUSDT") is None
        assert "not available" in caplog.text

    @pytest.mark.asyncio
    async def test_other_errors_raised(self):
        client = make_client()
        client.service.fail_next("set_leverage", ExchangeRejectedError("Invalid symbol.", code=-1121))

        with pytest.raises(ExchangeRejectedError):
            await client.set_leverage("NOPEUSDT", 10)


# ============================================================
# HISTORY
# ============================================================

class TestKlines:
    """Tests for get_klines."""

    @pytest.mark.asyncio
    async def test_returns_requested_count(self):
        client = make_client()
        client.service.set_price("BTCUSDT", Decimal("42000"))

        candles = await client.get_klines("btcusdt", "1m", limit=5)

        assert len(candles) == 5
        assert candles[0].close == "42000"
        assert candles[1].open_time - candles[0].open_time == 60_000
