"""Cooperative cancellation for turns.

A CancellationController owns a CancellationSignal. Providers poll
signal.aborted (or await signal.wait()) at their own boundaries; nothing
here interrupts a running coroutine.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)

Listener = Callable[[], None]


class CancellationSignal:
    """Read side of a cancellation controller."""

    def __init__(self) -> None:
        self._aborted = False
        self._listeners: list[Listener] = []
        self._event: asyncio.Event | None = None

    @property
    def aborted(self) -> bool:
        return self._aborted

    def add_listener(self, listener: Listener) -> None:
        """Call listener once when aborted. Fires immediately if already aborted."""
        if self._aborted:
            listener()
            return
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    async def wait(self) -> None:
        if self._aborted:
            return
        if self._event is None:
            self._event = asyncio.Event()
        await self._event.wait()

    def _fire(self) -> None:
        if self._aborted:
            return
        self._aborted = True
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            try:
                listener()
            except Exception:
                logger.exception("Cancellation listener failed")
        if self._event is not None:
            self._event.set()


class CancellationController:
    """Write side: abort() is idempotent."""

    def __init__(self) -> None:
        self.signal = CancellationSignal()

    def abort(self) -> None:
        self.signal._fire()

    def follow(self, external: CancellationSignal | None) -> None:
        """Propagate an external signal into this controller, once."""
        if external is None:
            return
        external.add_listener(self.abort)

    def unfollow(self, external: CancellationSignal | None) -> None:
        """Stop listening to an external signal; safe to call more than once."""
        if external is None:
            return
        external.remove_listener(self.abort)
