"""
Symbol Rule Cache Tests.
"""

import asyncio
from decimal import Decimal

import pytest

from futures_session.adapters.mock import MockExchangeService
from futures_session.errors import MetadataFetchFailed, SymbolNotFound, TransportError
from futures_session.symbol_rules import SymbolRuleCache
from futures_session.types import SymbolMetadata


class TestSymbolRuleCache:
    """Tests for SymbolRuleCache."""

    @pytest.mark.asyncio
    async def test_derives_precision(self):
        cache = SymbolRuleCache(MockExchangeService())

        rules = await cache.get_rules("BTCUSDT")

        assert rules.symbol == "BTCUSDT"
        assert rules.quantity_step == Decimal("0.001")
        assert rules.quantity_precision == 3
        assert rules.price_precision == 1
        assert rules.min_quantity == Decimal("0.001")

    @pytest.mark.asyncio
    async def test_trailing_zeros_stripped(self):
        """SOLUSDT tick "0.0100" has precision 2."""
        cache = SymbolRuleCache(MockExchangeService())

        rules = await cache.get_rules("SOLUSDT")

        assert rules.price_precision == 2
        assert rules.quantity_precision == 0

    @pytest.mark.asyncio
    async def test_single_fetch_for_all_symbols(self):
        """Second lookup (any symbol) hits the cache."""
        service = MockExchangeService()
        cache = SymbolRuleCache(service)

        first = await cache.get_rules("BTCUSDT")
        second = await cache.get_rules("BTCUSDT")
        await cache.get_rules("ethusdt")

        assert first == second
        assert service.calls["fetch_symbol_metadata"] == 1
        assert cache.fetch_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_fetch(self):
        service = MockExchangeService()
        cache = SymbolRuleCache(service)

        results = await asyncio.gather(*(cache.get_rules("BTCUSDT") for _ in range(5)))

        assert len({id(r) for r in results}) == 1
        assert service.calls["fetch_symbol_metadata"] == 1

    @pytest.mark.asyncio
    async def test_unknown_symbol(self):
        service = MockExchangeService()
        cache = SymbolRuleCache(service)

        with pytest.raises(SymbolNotFound):
            await cache.get_rules("NOPEUSDT")

    @pytest.mark.asyncio
    async def test_unknown_symbol_refetches_known_does_not(self):
        service = MockExchangeService()
        cache = SymbolRuleCache(service)
        await cache.get_rules("BTCUSDT")

        with pytest.raises(SymbolNotFound):
            await cache.get_rules("NOPEUSDT")
        await cache.get_rules("ETHUSDT")

        assert service.calls["fetch_symbol_metadata"] == 2

    @pytest.mark.asyncio
    async def test_transport_failure_chained(self):
        service = MockExchangeService()
        cause = TransportError("boom")
        service.fail_next("fetch_symbol_metadata", cause)
        cache = SymbolRuleCache(service)

        with pytest.raises(MetadataFetchFailed) as exc_info:
            await cache.get_rules("BTCUSDT")

        assert exc_info.value.__cause__ is cause

    @pytest.mark.asyncio
    async def test_failure_then_recovery(self):
        service = MockExchangeService()
        service.fail_next("fetch_symbol_metadata", TransportError("boom"))
        cache = SymbolRuleCache(service)

        with pytest.raises(MetadataFetchFailed):
            await cache.get_rules("BTCUSDT")
        rules = await cache.get_rules("BTCUSDT")

        assert rules.symbol == "BTCUSDT"

    @pytest.mark.asyncio
    async def test_non_positive_step_skipped(self):
        service = MockExchangeService()
        service.set_metadata([
            SymbolMetadata("BADUSDT", Decimal("0"), Decimal("0"), Decimal("0.1")),
            SymbolMetadata("BTCUSDT", Decimal("0.001"), Decimal("0.001"), Decimal("0.1")),
        ])
        cache = SymbolRuleCache(service)

        with pytest.raises(SymbolNotFound):
            await cache.get_rules("BADUSDT")
        assert (await cache.get_rules("BTCUSDT")).quantity_step == Decimal("0.001")

    @pytest.mark.asyncio
    async def test_peek_does_not_fetch(self):
        service = MockExchangeService()
        cache = SymbolRuleCache(service)

        assert cache.peek("BTCUSDT") is None
        assert service.calls["fetch_symbol_metadata"] == 0
