"""
Futures Session - Order Coordinator.

============================================================
PURPOSE
============================================================
Size, round and submit orders through the live channel.

OPERATIONS:
- Market and limit orders from a notional amount
- Bracket strategy: limit entry + stop-loss + take-profit
- Modify an open limit order
- Close a position at its exact held amount

PROPAGATION:
Every failure surfaces to the caller unchanged. A bracket that
fails after its entry was placed raises BracketPartialFailure;
nothing is rolled back.

============================================================
"""

import logging
import time
from decimal import Decimal
from typing import Callable, Dict, Optional

from .adapters.base import ExchangeService, OrderChannel
from .errors import BracketPartialFailure, OrderNotModifiable
from .positions import PositionView
from .quantity import Number, resolve_price, resolve_quantity, to_decimal
from .symbol_rules import SymbolRuleCache
from .types import (
    ConditionalOrderSpec,
    OrderAck,
    OrderIntent,
    OrderRef,
    OrderSide,
    OrderSpec,
    OrderType,
    PositionSide,
    StrategyResult,
    TimeInForce,
    WorkingType,
)


logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class OrderCoordinator:
    """
    Orchestrates single orders and multi-leg strategies.

    Args:
        service: Exchange service (reference prices, conditional orders)
        rules: Symbol rule cache
        positions: Position view
        channel_provider: Returns the live order channel; raises
            NotConnectedError when there is none
    """

    def __init__(
        self,
        service: ExchangeService,
        rules: SymbolRuleCache,
        positions: PositionView,
        channel_provider: Callable[[], OrderChannel],
        clock_ms: Callable[[], int] = _now_ms,
    ):
        self._service = service
        self._rules = rules
        self._positions = positions
        self._channel_provider = channel_provider
        self._clock_ms = clock_ms

    # --------------------------------------------------------
    # SINGLE ORDERS
    # --------------------------------------------------------

    async def place_market_order(self, intent: OrderIntent) -> OrderAck:
        """Market order sized from the intent's notional."""
        rules = await self._rules.get_rules(intent.symbol)
        price = intent.reference_price
        if price is None:
            price = await self._service.fetch_reference_price(rules.symbol)

        quantity = resolve_quantity(intent.notional, price, rules)
        spec = OrderSpec(
            symbol=rules.symbol,
            side=intent.side,
            order_type=OrderType.MARKET,
            quantity=quantity,
            position_side=intent.position_side,
        )

        logger.info(f"Placing MARKET {intent.side.value} {quantity} {rules.symbol} ({intent.position_side.value})")
        return await self._channel_provider().submit(spec)

    async def place_limit_order(self, intent: OrderIntent, limit_price: Number) -> OrderAck:
        """GTC limit order; quantity is sized at the limit price."""
        rules = await self._rules.get_rules(intent.symbol)
        price = resolve_price(limit_price, rules)
        sizing_price = intent.reference_price if intent.reference_price is not None else Decimal(price)
        quantity = resolve_quantity(intent.notional, sizing_price, rules)

        spec = OrderSpec(
            symbol=rules.symbol,
            side=intent.side,
            order_type=OrderType.LIMIT,
            quantity=quantity,
            price=price,
            time_in_force=TimeInForce.GTC,
            position_side=intent.position_side,
        )

        logger.info(f"Placing LIMIT {intent.side.value} {quantity} {rules.symbol} @ {price}")
        return await self._channel_provider().submit(spec)

    # --------------------------------------------------------
    # BRACKET STRATEGY
    # --------------------------------------------------------

    async def place_bracket_strategy(
        self,
        intent: OrderIntent,
        entry_price: Number,
        stop_loss: Number,
        take_profit: Number,
    ) -> StrategyResult:
        """
        Limit entry with conditional stop-loss and take-profit.

        All three legs carry the same quantity, computed once from
        notional / entry_price. Legs are submitted in order and the
        sequence stops at the first failure.

        Raises:
            OrderTooSmall / InvalidOrderInput: Before anything is sent
            Any entry error: Unchanged, nothing was placed
            BracketPartialFailure: A protective leg failed
        """
        rules = await self._rules.get_rules(intent.symbol)

        entry_d = to_decimal(entry_price, "entry_price")
        quantity = resolve_quantity(intent.notional, entry_d, rules)
        entry_str = resolve_price(entry_d, rules)
        sl_str = resolve_price(stop_loss, rules)
        tp_str = resolve_price(take_profit, rules)

        base_id = f"s_{self._clock_ms()}"
        exit_side = intent.side.opposite

        logger.info(
            f"Bracket {intent.side.value} {quantity} {rules.symbol}: "
            f"entry={entry_str} sl={sl_str} tp={tp_str} ({intent.position_side.value})"
        )

        entry_ack = await self._channel_provider().submit(OrderSpec(
            symbol=rules.symbol,
            side=intent.side,
            order_type=OrderType.LIMIT,
            quantity=quantity,
            price=entry_str,
            time_in_force=TimeInForce.GTC,
            position_side=intent.position_side,
            client_order_id=base_id,
        ))
        completed: Dict[str, str] = {"entry": entry_ack.order_id}

        legs = (
            ("stop_loss", OrderType.STOP_MARKET, sl_str, f"sl_{base_id}"),
            ("take_profit", OrderType.TAKE_PROFIT_MARKET, tp_str, f"tp_{base_id}"),
        )
        for leg, order_type, trigger, client_id in legs:
            try:
                ack = await self._service.submit_conditional_order(ConditionalOrderSpec(
                    symbol=rules.symbol,
                    side=exit_side,
                    order_type=order_type,
                    quantity=quantity,
                    trigger_price=trigger,
                    position_side=intent.position_side,
                    working_type=WorkingType.MARK_PRICE,
                    client_order_id=client_id,
                ))
            except Exception as e:
                logger.error(f"Bracket {base_id} {leg} leg failed, placed so far: {completed}")
                raise BracketPartialFailure(completed, leg, e) from e
            completed[leg] = ack.order_id

        return StrategyResult(
            entry_order_id=completed["entry"],
            stop_loss_order_id=completed["stop_loss"],
            take_profit_order_id=completed["take_profit"],
            quantity=quantity,
            entry_price=entry_str,
            stop_loss=sl_str,
            take_profit=tp_str,
            position_side=intent.position_side,
        )

    # --------------------------------------------------------
    # MODIFY
    # --------------------------------------------------------

    async def modify_limit_order(
        self,
        order_ref: OrderRef,
        new_price: Number,
        new_notional: Number,
    ) -> OrderAck:
        """
        Re-price and re-size an open limit order.

        Raises:
            OrderNotModifiable: Order is filled, canceled or expired
        """
        channel = self._channel_provider()
        report = await channel.query_status(order_ref)
        if not report.is_open:
            raise OrderNotModifiable(order_ref, report.status)

        rules = await self._rules.get_rules(order_ref.symbol)
        price = resolve_price(new_price, rules)
        quantity = resolve_quantity(new_notional, Decimal(price), rules)

        spec = OrderSpec(
            symbol=rules.symbol,
            side=report.side,
            order_type=OrderType.LIMIT,
            quantity=quantity,
            price=price,
            time_in_force=TimeInForce.GTC,
            position_side=report.position_side,
            order_id=report.order_id,
            client_order_id=report.client_order_id,
        )

        logger.info(f"Modifying order {report.order_id}: {quantity} @ {price}")
        return await channel.modify(spec)

    # --------------------------------------------------------
    # CLOSE
    # --------------------------------------------------------

    async def close_position(self, symbol: str, side: PositionSide) -> Optional[OrderAck]:
        """
        Flatten a position with a MARKET order.

        Returns:
            OrderAck, or None when no matching position is open
        """
        await self._positions.refresh(raise_errors=True)

        position = self._positions.find(symbol.upper(), side)
        if position is None:
            logger.info(f"No open {side.value} position on {symbol}, nothing to close")
            return None

        close_side = OrderSide.SELL if position.is_long else OrderSide.BUY
        spec = OrderSpec(
            symbol=position.symbol,
            side=close_side,
            order_type=OrderType.MARKET,
            quantity=format(position.abs_amount, "f"),
            position_side=side,
            reduce_only=side == PositionSide.NET,
        )

        logger.info(f"Closing {side.value} {position.symbol}: {close_side.value} {spec.quantity}")
        return await self._channel_provider().submit(spec)
