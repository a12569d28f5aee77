"""
Futures Session - Position View.

============================================================
PURPOSE
============================================================
The process's cached belief about open positions.

RULES:
- Replaced wholesale from a full account snapshot
- Never patched from stream deltas
- Zero-amount rows are never represented
- Any failed refresh clears the view ("assume nothing open")
- A refresh that finishes after a newer one is discarded

============================================================
"""

import asyncio
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from .adapters.base import ExchangeService
from .observable import Observable
from .types import Position, PositionSide


logger = logging.getLogger(__name__)

Snapshot = Tuple[Position, ...]


class MalformedSnapshot(ValueError):
    """Account snapshot could not be parsed."""


# ============================================================
# PARSING
# ============================================================

def parse_position(row: Dict[str, Any]) -> Optional[Position]:
    """
    Parse one account position row.

    Returns:
        Position, or None for a flat (zero amount) row
    """
    try:
        amount = Decimal(str(row["positionAmt"]))
        if amount == 0:
            return None
        return Position(
            symbol=str(row["symbol"]),
            signed_amount=amount,
            entry_price=Decimal(str(row.get("entryPrice", "0"))),
            mark_price=Decimal(str(row.get("markPrice", "0"))),
            unrealized_pnl=Decimal(str(row.get("unrealizedProfit", "0"))),
            leverage=int(Decimal(str(row.get("leverage", "0")))),
            side=PositionSide.from_wire(str(row.get("positionSide", "BOTH"))),
        )
    except (KeyError, TypeError, ValueError, InvalidOperation) as e:
        raise MalformedSnapshot(f"Bad position row {row!r}: {e}") from e


def parse_positions(rows: Any) -> Snapshot:
    """Parse and order a full account snapshot."""
    if not isinstance(rows, list):
        raise MalformedSnapshot(f"Expected a list of positions, got {type(rows).__name__}")

    positions = [p for p in (parse_position(row) for row in rows) if p is not None]
    positions.sort(key=lambda p: (p.symbol, p.side.value))
    return tuple(positions)


# ============================================================
# POSITION VIEW
# ============================================================

class PositionView:
    """
    Cached set of open positions.

    Usage:
        view = PositionView(service)
        await view.refresh()
        pos = view.find("BTCUSDT", PositionSide.LONG)
    """

    def __init__(self, service: ExchangeService):
        self._service = service
        self._snapshot = Observable[Snapshot]((), name="positions", notify_unchanged=True)

        # Issued when a refresh starts / when its result was applied
        self._issued_generation = 0
        self._applied_generation = 0

        self._pending: Set[asyncio.Task] = set()

    # --------------------------------------------------------
    # READ
    # --------------------------------------------------------

    def current(self) -> Snapshot:
        """Immutable snapshot ordered by symbol then side."""
        return self._snapshot.value

    def find(self, symbol: str, side: PositionSide) -> Optional[Position]:
        for position in self._snapshot.value:
            if position.symbol == symbol and position.side == side:
                return position
        return None

    @property
    def generation(self) -> int:
        """Generation of the last applied refresh."""
        return self._applied_generation

    @property
    def observable(self) -> Observable[Snapshot]:
        return self._snapshot

    def subscribe(self, callback: Callable[[Snapshot], None]) -> Callable[[], None]:
        return self._snapshot.subscribe(callback)

    # --------------------------------------------------------
    # REFRESH
    # --------------------------------------------------------

    async def refresh(self, raise_errors: bool = False) -> Snapshot:
        """
        Replace the view from a fresh account snapshot.

        Args:
            raise_errors: Re-raise fetch/parse failures after
                clearing the view (user-initiated callers). A failure
                superseded by a newer refresh is not raised.

        Returns:
            The snapshot held after this call
        """
        self._issued_generation += 1
        generation = self._issued_generation

        try:
            rows = await self._service.fetch_account_positions()
            snapshot = parse_positions(rows)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Position refresh #{generation} failed, clearing positions: {e}")
            if self._apply(generation, ()) and raise_errors:
                raise
            return self.current()

        self._apply(generation, snapshot)
        return self.current()

    def schedule_refresh(self) -> asyncio.Task:
        """Start a background refresh; failures are logged only."""
        task = asyncio.ensure_future(self.refresh())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def cancel_pending(self) -> None:
        """Cancel every background refresh still in flight."""
        for task in list(self._pending):
            task.cancel()
        self._pending.clear()

    def clear(self) -> None:
        """Forget all positions without fetching."""
        self._issued_generation += 1
        self._apply(self._issued_generation, ())

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    def _apply(self, generation: int, snapshot: Snapshot) -> bool:
        """Install `snapshot` unless a newer refresh already landed."""
        if generation <= self._applied_generation:
            logger.debug(
                f"Discarding stale position refresh #{generation} "
                f"(applied #{self._applied_generation})"
            )
            return False
        self._applied_generation = generation
        self._snapshot.set(snapshot)
        logger.debug(f"Positions refreshed #{generation}: {len(snapshot)} open")
        return True


def describe(positions: Iterable[Position]) -> List[str]:
    """One-line summaries for logging."""
    return [
        f"{p.symbol} {p.side.value} {p.signed_amount} @ {p.entry_price} (uPnL {p.unrealized_pnl})"
        for p in positions
    ]
