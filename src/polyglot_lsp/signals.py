"""
Signals with ownership-tracked subscriptions.

Every ``Signal.connect`` returns a ``Subscription`` handle; the owner keeps
the handle (usually inside a ``SubscriptionGroup``) and closing the handle
is the only way to disconnect. Closing a group disconnects exactly what
the group connected, so teardown is always symmetric with setup.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Handler = Callable[..., Any]


class Subscription:
    """Handle for one connected handler."""

    def __init__(self, signal: Signal[Any], handler: Handler) -> None:
        self._signal: Signal[Any] | None = signal
        self.handler = handler

    @property
    def active(self) -> bool:
        return self._signal is not None

    def close(self) -> None:
        """Disconnect the handler. Safe to call more than once."""
        if self._signal is None:
            return
        self._signal._remove(self)
        self._signal = None


class Signal(Generic[T]):
    """A named event with any number of handlers.

    Handlers are called in connection order with the emitted arguments.
    Coroutine handlers are scheduled on the running event loop; with no
    running loop they are closed without being awaited and a warning is
    logged. A handler raising does not stop the remaining handlers.
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._subscriptions: list[Subscription] = []
        self._pending: set[asyncio.Task[Any]] = set()

    def __len__(self) -> int:
        return len(self._subscriptions)

    def connect(self, handler: Handler) -> Subscription:
        subscription = Subscription(self, handler)
        self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass

    def emit(self, *args: Any) -> None:
        # Copy so handlers may disconnect themselves while we iterate
        for subscription in list(self._subscriptions):
            if not subscription.active:
                continue
            try:
                result = subscription.handler(*args)
            except Exception:
                logger.exception(f"Handler for signal '{self.name}' failed")
                continue
            if inspect.isawaitable(result):
                self._schedule(result)

    def _schedule(self, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running loop for async handler of '{self.name}'")
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = loop.create_task(awaitable)
        self._pending.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Async handler for signal '{self.name}' failed: {exc}")

    async def drain(self) -> None:
        """Wait for async handlers scheduled by previous emits."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def clear(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.close()


class SubscriptionGroup:
    """Owns a set of subscriptions and closes them together."""

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def __len__(self) -> int:
        return sum(1 for s in self._subscriptions if s.active)

    def connect(self, signal: Signal[Any], handler: Handler) -> Subscription:
        subscription = signal.connect(handler)
        self._subscriptions.append(subscription)
        return subscription

    def close(self) -> None:
        while self._subscriptions:
            self._subscriptions.pop().close()
