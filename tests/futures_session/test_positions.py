"""
Position View Tests.

============================================================
PURPOSE
============================================================
Wholesale refresh, failure handling and ordering of
out-of-order refresh completions.

============================================================
"""

import asyncio
from decimal import Decimal

import pytest

from futures_session.adapters.mock import MockExchangeService
from futures_session.errors import TransportError
from futures_session.positions import PositionView, parse_positions
from futures_session.types import PositionSide


def row(symbol: str, amount: str, side: str = "BOTH", entry: str = "50000") -> dict:
    return {
        "symbol": symbol,
        "positionAmt": amount,
        "entryPrice": entry,
        "markPrice": entry,
        "unrealizedProfit": "0",
        "leverage": "20",
        "positionSide": side,
    }


# ============================================================
# PARSING
# ============================================================

class TestParsePositions:
    """Tests for snapshot parsing."""

    def test_filters_zero_rows(self):
        snapshot = parse_positions([row("BTCUSDT", "0.000"), row("ETHUSDT", "1.5")])

        assert [p.symbol for p in snapshot] == ["ETHUSDT"]

    def test_both_maps_to_net(self):
        (position,) = parse_positions([row("BTCUSDT", "-0.010")])

        assert position.side == PositionSide.NET
        assert position.signed_amount == Decimal("-0.010")
        assert position.abs_amount == Decimal("0.010")
        assert not position.is_long

    def test_ordered_by_symbol_then_side(self):
        snapshot = parse_positions([
            row("ETHUSDT", "1", "LONG"),
            row("BTCUSDT", "-1", "SHORT"),
            row("BTCUSDT", "1", "LONG"),
        ])

        assert [(p.symbol, p.side) for p in snapshot] == [
            ("BTCUSDT", PositionSide.LONG),
            ("BTCUSDT", PositionSide.SHORT),
            ("ETHUSDT", PositionSide.LONG),
        ]

    def test_snapshot_is_immutable(self):
        snapshot = parse_positions([row("BTCUSDT", "1")])

        assert isinstance(snapshot, tuple)


# ============================================================
# REFRESH
# ============================================================

class TestPositionViewRefresh:
    """Tests for PositionView.refresh."""

    @pytest.mark.asyncio
    async def test_refresh_replaces_set(self):
        service = MockExchangeService()
        service.set_position("BTCUSDT", Decimal("0.010"))
        view = PositionView(service)

        await view.refresh()
        assert len(view.current()) == 1

        service.set_position("BTCUSDT", Decimal("0"))
        service.set_position("ETHUSDT", Decimal("-2"), PositionSide.SHORT)
        await view.refresh()

        assert [(p.symbol, p.side) for p in view.current()] == [("ETHUSDT", PositionSide.SHORT)]

    @pytest.mark.asyncio
    async def test_find(self):
        service = MockExchangeService()
        service.set_position("BTCUSDT", Decimal("0.5"), PositionSide.LONG)
        view = PositionView(service)
        await view.refresh()

        assert view.find("BTCUSDT", PositionSide.LONG).signed_amount == Decimal("0.5")
        assert view.find("BTCUSDT", PositionSide.SHORT) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [None, {}, "garbage", [{"symbol": "BTCUSDT"}], []])
    async def test_malformed_or_empty_data_clears(self, payload):
        """Malformed or empty snapshot leaves an empty view and no exception."""
        service = MockExchangeService()
        service.set_position("BTCUSDT", Decimal("1"))
        view = PositionView(service)
        await view.refresh()
        assert view.current()

        service.set_raw_account(payload)
        result = await view.refresh()

        assert result == ()
        assert view.current() == ()

    @pytest.mark.asyncio
    async def test_fetch_failure_clears_without_raising(self):
        service = MockExchangeService()
        service.set_position("BTCUSDT", Decimal("1"))
        view = PositionView(service)
        await view.refresh()

        service.fail_next("fetch_account_positions", TransportError("down"))
        await view.refresh()

        assert view.current() == ()

    @pytest.mark.asyncio
    async def test_strict_refresh_raises_after_clearing(self):
        service = MockExchangeService()
        service.set_position("BTCUSDT", Decimal("1"))
        view = PositionView(service)
        await view.refresh()

        service.fail_next("fetch_account_positions", TransportError("down"))
        with pytest.raises(TransportError):
            await view.refresh(raise_errors=True)

        assert view.current() == ()

    @pytest.mark.asyncio
    async def test_subscribers_notified_per_refresh(self):
        service = MockExchangeService()
        view = PositionView(service)
        seen = []
        view.subscribe(seen.append)

        await view.refresh()
        await view.refresh()

        assert seen == [(), ()]
        assert view.generation == 2


# ============================================================
# ORDERING
# ============================================================

class TestRefreshOrdering:
    """Out-of-order refresh completions."""

    @pytest.mark.asyncio
    async def test_late_stale_response_discarded(self):
        service = MockExchangeService()
        release_first = asyncio.Event()
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            if calls == 1:
                await release_first.wait()
                return [row("OLDUSDT", "1")]
            return [row("NEWUSDT", "2")]

        service.fetch_account_positions = fetch
        view = PositionView(service)

        slow = asyncio.ensure_future(view.refresh())
        await asyncio.sleep(0)
        await view.refresh()
        release_first.set()
        await slow

        assert [p.symbol for p in view.current()] == ["NEWUSDT"]
        assert view.generation == 2

    @pytest.mark.asyncio
    async def test_late_stale_failure_does_not_clear(self):
        service = MockExchangeService()
        release_first = asyncio.Event()
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            if calls == 1:
                await release_first.wait()
                raise TransportError("late failure")
            return [row("NEWUSDT", "2")]

        service.fetch_account_positions = fetch
        view = PositionView(service)

        slow = asyncio.ensure_future(view.refresh())
        await asyncio.sleep(0)
        await view.refresh()
        release_first.set()
        await slow

        assert [p.symbol for p in view.current()] == ["NEWUSDT"]

    @pytest.mark.asyncio
    async def test_superseded_strict_failure_not_raised(self):
        service = MockExchangeService()
        release_first = asyncio.Event()
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            if calls == 1:
                await release_first.wait()
                raise TransportError("late failure")
            return [row("NEWUSDT", "2")]

        service.fetch_account_positions = fetch
        view = PositionView(service)

        slow = asyncio.ensure_future(view.refresh(raise_errors=True))
        await asyncio.sleep(0)
        await view.refresh()
        release_first.set()
        snapshot = await slow

        assert [p.symbol for p in snapshot] == ["NEWUSDT"]
        assert view.generation == 2

    @pytest.mark.asyncio
    async def test_cancel_pending(self):
        service = MockExchangeService()
        never = asyncio.Event()

        async def fetch():
            await never.wait()
            return []

        service.fetch_account_positions = fetch
        view = PositionView(service)

        task = view.schedule_refresh()
        await asyncio.sleep(0)
        view.cancel_pending()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert task.cancelled()
