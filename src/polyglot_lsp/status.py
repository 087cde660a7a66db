"""Transient status messages that clear themselves."""

from __future__ import annotations

import asyncio
import logging

from polyglot_lsp.signals import Signal

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 3.0


class StatusMessage:
    """Holds one user-visible message.

    ``set`` replaces the message and schedules it to be cleared after
    ``timeout`` seconds; a negative timeout keeps it until ``clear``.
    """

    def __init__(self) -> None:
        self.message = ""
        self._timer: asyncio.TimerHandle | None = None
        self.changed: Signal[str] = Signal("changed")

    def set(self, message: str, timeout: float = DEFAULT_TIMEOUT) -> None:
        self._cancel()
        self.message = message
        self.changed.emit(message)
        if timeout < 0:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop, status message '{message}' will not expire")
            return
        self._timer = loop.call_later(timeout, self.clear)

    def clear(self) -> None:
        self._cancel()
        if not self.message:
            return
        self.message = ""
        self.changed.emit("")

    def _cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
