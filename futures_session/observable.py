"""
Futures Session - Observable value.

============================================================
PURPOSE
============================================================
A single current value plus change subscribers. Used for the
connection state, the position snapshot and closed candles.

Subscribers run synchronously on the event loop. A failing
subscriber is logged and does not affect the others.

============================================================
"""

import asyncio
import logging
from typing import Callable, Generic, List, Optional, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")

Callback = Callable[[T], None]


class Observable(Generic[T]):
    """Holds a value and notifies subscribers when it is set."""

    def __init__(self, initial: T, name: str = "observable", notify_unchanged: bool = False):
        self._value = initial
        self._name = name
        self._notify_unchanged = notify_unchanged
        self._callbacks: List[Callback] = []
        self._waiters: List[asyncio.Future] = []

    @property
    def value(self) -> T:
        return self._value

    def set(self, value: T) -> None:
        """Replace the value and notify subscribers."""
        if value == self._value and not self._notify_unchanged:
            return
        self._value = value

        for waiter in list(self._waiters):
            if not waiter.done():
                waiter.set_result(value)
        self._waiters.clear()

        for callback in list(self._callbacks):
            try:
                callback(value)
            except Exception as e:
                logger.error(f"{self._name} subscriber failed: {e}", exc_info=True)

    def subscribe(self, callback: Callback) -> Callable[[], None]:
        """
        Register a change callback.

        Returns:
            Function that removes the subscription
        """
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    async def wait_for(
        self,
        predicate: Callable[[T], bool],
        timeout: Optional[float] = None,
    ) -> T:
        """
        Wait until the value satisfies `predicate`.

        Raises:
            asyncio.TimeoutError: predicate not met within timeout
        """
        async def _wait() -> T:
            value = self._value
            while not predicate(value):
                waiter = asyncio.get_running_loop().create_future()
                self._waiters.append(waiter)
                # The value that was set, even if it changed again since
                value = await waiter
            return value

        return await asyncio.wait_for(_wait(), timeout)
