import asyncio
import logging
from dataclasses import replace
from typing import Callable, List, Optional, Sequence

from streamrelay.errors import ConfigurationError, StreamRelayError
from streamrelay.player.models import StreamSource
from streamrelay.player.session import PlaybackSession, SessionCallbacks

logger = logging.getLogger(__name__)

SessionFactory = Callable[[StreamSource, SessionCallbacks], PlaybackSession]


class FailoverOrchestrator:
    """
    Plays the first working source out of an ordered list of candidates.

    When the active session reports a fatal error the cursor moves to the next candidate,
    wrapping back to the first after the last, and a fresh session is started. With
    ``auto_failover`` disabled the error is only passed on and switching is left to :meth:`select`.
    """

    def __init__(
        self,
        candidates: Sequence[StreamSource],
        session_factory: SessionFactory,
        *,
        auto_failover: bool = True,
        callbacks: Optional[SessionCallbacks] = None,
        on_switch: Optional[Callable[[int, StreamSource], None]] = None,
    ):
        if not candidates:
            raise ConfigurationError("At least one stream source is required")
        self.candidates: List[StreamSource] = list(candidates)
        self.session_factory = session_factory
        self.auto_failover = auto_failover
        self.callbacks = callbacks or SessionCallbacks()
        self.on_switch = on_switch
        self.index = 0
        self.session: Optional[PlaybackSession] = None
        self.destroyed = False
        self._pending: Optional[asyncio.Task] = None

    @property
    def active_source(self) -> StreamSource:
        return self.candidates[self.index]

    async def start(self) -> None:
        await self._activate(self.index)

    async def select(self, index: int) -> None:
        """
        Switch to a candidate chosen by the user.

        Args:
            index (int): Position in the candidate list.

        Raises:
            IndexError: If the index is outside the candidate list.
        """
        if not 0 <= index < len(self.candidates):
            raise IndexError(f"No stream source at index {index}")
        self._cancel_pending()
        await self._activate(index)

    def next_index(self) -> int:
        return self.index + 1 if self.index < len(self.candidates) - 1 else 0

    async def _activate(self, index: int) -> None:
        if self.destroyed:
            return
        if self.session is not None:
            self.session.destroy()
            self.session = None

        self.index = index
        source = self.candidates[index]
        if self.on_switch:
            self.on_switch(index, source)
        logger.info(f"Activating stream source {index + 1}/{len(self.candidates)}: {source.label or source.raw_url[:80]}")

        session_holder: List[PlaybackSession] = []

        def on_error(error: StreamRelayError) -> None:
            if session_holder:
                self._on_session_error(session_holder[0], error)

        session = self.session_factory(source, replace(self.callbacks, on_error=on_error))
        session_holder.append(session)
        self.session = session
        await session.start()

    def _on_session_error(self, session: PlaybackSession, error: StreamRelayError) -> None:
        if session is not self.session or self.destroyed:
            return
        if self.callbacks.on_error:
            self.callbacks.on_error(error)
        if not self.auto_failover:
            logger.info("Automatic failover disabled, waiting for manual source selection")
            return

        next_index = self.next_index()
        logger.warning(f"Source {self.index} failed ({error}), failing over to source {next_index}")
        self._cancel_pending()
        self._pending = asyncio.get_running_loop().create_task(self._activate(next_index))

    def _cancel_pending(self) -> None:
        # A session can fail while its own activation task is still running it.
        if self._pending is not None and not self._pending.done() and self._pending is not asyncio.current_task():
            self._pending.cancel()
        self._pending = None

    def destroy(self) -> None:
        if self.destroyed:
            return
        self.destroyed = True
        self._cancel_pending()
        if self.session is not None:
            self.session.destroy()
            self.session = None
