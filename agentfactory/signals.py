"""
Cancellation signals.

A small abort primitive modelled on controller/signal pairs: the controller
owns the right to fire, the signal is handed out to anything that should
react. Several signals can be combined into one that fires as soon as any of
its sources fires (first-fires-wins).

Listeners run synchronously on the thread that calls ``abort()``; in the
coordinator that is always the event loop thread.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Iterable, Optional

import structlog

logger = structlog.get_logger(__name__)

AbortListener = Callable[[], None]


class AbortSignal:
    """Read side of an abort: query it, listen to it, or wait for it."""

    def __init__(self) -> None:
        self._aborted = False
        self._reason: Optional[str] = None
        self._listeners: list[AbortListener] = []
        self._waiters: list[asyncio.Future[None]] = []

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def add_listener(self, listener: AbortListener) -> None:
        """Register *listener*; it is invoked at most once.

        Adding a listener to an already-aborted signal does not invoke it;
        callers check ``aborted`` first, as the launcher does.
        """
        if self._aborted:
            return
        self._listeners.append(listener)

    def remove_listener(self, listener: AbortListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    async def wait(self) -> None:
        """Suspend until the signal fires."""
        if self._aborted:
            return
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            await fut
        finally:
            if fut in self._waiters:
                self._waiters.remove(fut)

    def _fire(self, reason: Optional[str]) -> None:
        if self._aborted:
            return
        self._aborted = True
        self._reason = reason
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            try:
                listener()
            except Exception:
                logger.error("signals.listener_error", reason=reason, exc_info=True)
        waiters, self._waiters = self._waiters, []
        for fut in waiters:
            if not fut.done():
                fut.set_result(None)

    @staticmethod
    def any(signals: Iterable[Optional["AbortSignal"]]) -> "AbortController":
        """Return a controller whose signal fires when any source fires.

        The returned controller also detaches itself from every source once
        it fires, or when ``dispose()`` is called on it.
        """
        combined = AbortController()
        sources = [s for s in signals if s is not None]

        def relay() -> None:
            reason = next((s.reason for s in sources if s.aborted), None)
            combined.abort(reason)

        def detach() -> None:
            for source in sources:
                source.remove_listener(relay)

        for source in sources:
            source.add_listener(relay)
        combined._on_dispose = detach
        combined.signal.add_listener(detach)

        if any(s.aborted for s in sources):
            relay()
        return combined


class AbortController:
    """Write side of an abort."""

    def __init__(self) -> None:
        self.signal = AbortSignal()
        self._on_dispose: Optional[Callable[[], None]] = None

    def abort(self, reason: Optional[str] = None) -> None:
        self.signal._fire(reason)

    def dispose(self) -> None:
        """Detach from any source signals this controller was combined from."""
        if self._on_dispose is not None:
            self._on_dispose()
            self._on_dispose = None
