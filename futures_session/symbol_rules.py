"""
Futures Session - Symbol Rule Cache.

============================================================
PURPOSE
============================================================
Fetch and cache per-symbol trading constraints.

BEHAVIOR:
- One bulk metadata fetch serves every symbol
- Concurrent callers on a cold cache share that fetch
- Known symbols never trigger another fetch
- An unknown symbol refetches once per lookup

STALENESS:
Rules are never invalidated during a session. If the exchange
changes a step size mid-session, restarting the process is the
refresh path.

============================================================
"""

import asyncio
import logging
from typing import Dict, Iterable, Optional

from .adapters.base import ExchangeService
from .errors import FuturesSessionError, MetadataFetchFailed, SymbolNotFound
from .quantity import step_precision
from .types import SymbolMetadata, SymbolRule


logger = logging.getLogger(__name__)


def build_rule(meta: SymbolMetadata) -> SymbolRule:
    """Derive a SymbolRule (with precisions) from raw metadata."""
    return SymbolRule(
        symbol=meta.symbol,
        min_quantity=meta.min_quantity,
        quantity_step=meta.quantity_step,
        price_step=meta.price_step,
        quantity_precision=step_precision(meta.quantity_step),
        price_precision=step_precision(meta.price_step) if meta.price_step > 0 else 0,
    )


class SymbolRuleCache:
    """
    Process-lifetime cache of symbol rules.

    Usage:
        cache = SymbolRuleCache(service)
        rules = await cache.get_rules("BTCUSDT")
    """

    def __init__(self, service: ExchangeService):
        self._service = service
        self._rules: Dict[str, SymbolRule] = {}
        self._lock = asyncio.Lock()
        self._fetch_count = 0

    # --------------------------------------------------------
    # PUBLIC
    # --------------------------------------------------------

    @property
    def fetch_count(self) -> int:
        """Number of bulk metadata fetches performed."""
        return self._fetch_count

    def peek(self, symbol: str) -> Optional[SymbolRule]:
        """Cached rules without fetching."""
        return self._rules.get(symbol.upper())

    async def get_rules(self, symbol: str) -> SymbolRule:
        """
        Get trading rules for a symbol.

        Raises:
            SymbolNotFound: Exchange does not list the symbol
            MetadataFetchFailed: Fetch or parse failed
        """
        key = symbol.upper()
        cached = self._rules.get(key)
        if cached is not None:
            return cached

        async with self._lock:
            # Another caller may have filled the cache while we waited
            cached = self._rules.get(key)
            if cached is not None:
                return cached

            await self._bulk_fetch()

        cached = self._rules.get(key)
        if cached is None:
            raise SymbolNotFound(key)
        return cached

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    async def _bulk_fetch(self) -> None:
        self._fetch_count += 1
        try:
            metadata = await self._service.fetch_symbol_metadata()
        except (FuturesSessionError, OSError, asyncio.TimeoutError) as e:
            raise MetadataFetchFailed(f"Symbol metadata fetch failed: {e}") from e
        except (KeyError, TypeError, ValueError, ArithmeticError) as e:
            raise MetadataFetchFailed(f"Symbol metadata could not be parsed: {e}") from e

        self._store(metadata)

    def _store(self, metadata: Iterable[SymbolMetadata]) -> None:
        stored = 0
        for meta in metadata:
            if meta.quantity_step <= 0:
                logger.warning(
                    f"Skipping {meta.symbol}: non-positive quantity step {meta.quantity_step}"
                )
                continue
            if meta.min_quantity < 0:
                logger.warning(
                    f"Skipping {meta.symbol}: negative minimum quantity {meta.min_quantity}"
                )
                continue
            self._rules[meta.symbol.upper()] = build_rule(meta)
            stored += 1

        logger.info(f"Loaded trading rules for {stored} symbols")
