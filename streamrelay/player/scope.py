import asyncio
import logging
from contextlib import ExitStack
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class ResourceScope:
    """
    Owns the timers and listener registrations of one session or backend.

    Everything registered here is released by :meth:`close`, which may be called any number
    of times. Once closed, the scope refuses new registrations.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._stack = ExitStack()
        self._timers: set[asyncio.TimerHandle] = set()
        self.closed = False

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> asyncio.TimerHandle:
        """
        Schedule a callback owned by this scope.

        Args:
            delay (float): Seconds to wait.
            callback (Callable): Function to run on the event loop.
            *args: Arguments for the callback.

        Returns:
            asyncio.TimerHandle: Handle accepted by :meth:`cancel`.
        """
        if self.closed:
            raise RuntimeError("Cannot schedule a timer on a closed scope")

        def fire() -> None:
            self._timers.discard(handle)
            callback(*args)

        handle = self.loop.call_later(delay, fire)
        self._timers.add(handle)
        return handle

    def cancel(self, handle: Optional[asyncio.TimerHandle]) -> None:
        if handle is None:
            return
        handle.cancel()
        self._timers.discard(handle)

    def register(self, subscribe: Callable[..., Any], unsubscribe: Callable[..., Any], *args: Any) -> None:
        """
        Subscribe now and unsubscribe with the same arguments when the scope closes.

        Example:
            ``scope.register(media.add_event_listener, media.remove_event_listener, "pause", on_pause)``
        """
        if self.closed:
            raise RuntimeError("Cannot register a listener on a closed scope")
        subscribe(*args)
        self._stack.callback(unsubscribe, *args)

    def defer(self, callback: Callable[..., Any], *args: Any) -> None:
        """Run ``callback(*args)`` when the scope closes, in reverse registration order."""
        if self.closed:
            raise RuntimeError("Cannot defer on a closed scope")
        self._stack.callback(callback, *args)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for handle in list(self._timers):
            handle.cancel()
        self._timers.clear()
        self._stack.close()
