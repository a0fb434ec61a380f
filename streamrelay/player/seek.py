import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from streamrelay.player.models import TimelineWindow
from streamrelay.player.session import PlaybackSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressBounds:
    """Horizontal extent of the progress bar in pointer coordinates."""

    left: float
    width: float


def pointer_to_time(client_x: float, bounds: ProgressBounds, window: TimelineWindow) -> Optional[float]:
    """
    Map a pointer position on the progress bar to an absolute media time.

    Args:
        client_x (float): Pointer x coordinate.
        bounds (ProgressBounds): Position and width of the progress bar.
        window (TimelineWindow): The current playable window.

    Returns:
        float | None: ``start + fraction * (duration - start)``, or None when the window is live,
        unbounded or the bar has no width.
    """
    if not window.seekable or bounds.width <= 0:
        return None
    offset = min(max(client_x - bounds.left, 0.0), bounds.width)
    fraction = offset / bounds.width
    return fraction * window.relative_duration + window.start


class FrameScheduler(Protocol):
    def request(self, callback: Callable[[], None]) -> Any: ...

    def cancel(self, handle: Any) -> None: ...


class LoopFrameScheduler:
    """Runs frame callbacks on the event loop, one frame interval after they are requested."""

    def __init__(self, interval: float, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.interval = interval
        self._loop = loop

    def request(self, callback: Callable[[], None]) -> asyncio.TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(self.interval, callback)

    def cancel(self, handle: asyncio.TimerHandle) -> None:
        handle.cancel()


class SeekController:
    """
    Turns progress-bar gestures into seeks on a session.

    A drag pauses playback, previews the pointer position at most once per frame and commits
    the last target on release, resuming playback if it was running. A tap seeks immediately.
    Nothing happens while the window is live or unbounded.
    """

    def __init__(
        self,
        session: PlaybackSession,
        bounds: ProgressBounds,
        scheduler: Optional[FrameScheduler] = None,
    ):
        self.session = session
        self.bounds = bounds
        self.scheduler = scheduler or LoopFrameScheduler(session.settings.frame_interval)
        self.dragging = False
        self.pending_time: Optional[float] = None
        self._was_playing = False
        self._frame = None
        self._frame_x: Optional[float] = None

    def _enabled(self) -> bool:
        return not self.session.destroyed and self.session.window.seekable

    def begin(self, client_x: Optional[float] = None) -> bool:
        if self.dragging or not self._enabled():
            return False
        media = self.session.media
        self._was_playing = not media.paused
        self.dragging = True
        self.pending_time = media.current_time
        if client_x is not None:
            target = pointer_to_time(client_x, self.bounds, self.session.window)
            if target is not None:
                self.pending_time = target
        self.session.set_seeking(True)
        media.pause()
        return True

    def move(self, client_x: float) -> None:
        """Track the pointer; the preview follows at most once per frame, using the latest position."""
        if not self.dragging:
            return
        self._frame_x = client_x
        if self._frame is None:
            self._frame = self.scheduler.request(self._apply_frame)

    def _apply_frame(self) -> None:
        client_x, self._frame, self._frame_x = self._frame_x, None, None
        if not self.dragging or client_x is None:
            return
        target = pointer_to_time(client_x, self.bounds, self.session.window)
        if target is not None:
            self.pending_time = target
            self.session.preview_position(target)

    def _cancel_frame(self) -> None:
        if self._frame is not None:
            self.scheduler.cancel(self._frame)
            self._frame = None

    def end(self) -> Optional[float]:
        """Commit the drag. Returns the committed position, or None if no drag was active."""
        if not self.dragging:
            return None
        if self._frame is not None:
            self._cancel_frame()
            self._apply_frame()
        self.dragging = False
        media = self.session.media
        target = self.pending_time
        if target is not None and not self.session.destroyed:
            media.current_time = target
            if self._was_playing:
                media.play()
        self.session.set_seeking(False)
        self.session.refresh_timeline()
        logger.debug(f"Drag seek committed at {target}")
        return target

    def tap(self, client_x: float) -> Optional[float]:
        if self.dragging or not self._enabled():
            return None
        target = pointer_to_time(client_x, self.bounds, self.session.window)
        if target is not None:
            self.session.seek_to(target)
        return target

    def cancel(self) -> None:
        """Abandon a drag without seeking."""
        if not self.dragging:
            return
        self._cancel_frame()
        self._frame_x = None
        self.dragging = False
        self.pending_time = None
        if self._was_playing and not self.session.destroyed:
            self.session.media.play()
        self.session.set_seeking(False)
        self.session.refresh_timeline()
