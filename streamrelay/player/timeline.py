import math
from typing import Optional

from streamrelay.player.backends import BackendAdapter
from streamrelay.player.engines import MediaElement
from streamrelay.player.models import TimelineSnapshot


def _finite_or_zero(value: Optional[float]) -> float:
    if value is None or not math.isfinite(value):
        return 0.0
    return value


def _usable_end(end: Optional[float]) -> bool:
    return end is not None and math.isfinite(end) and end > 0


def reconcile(adapter: Optional[BackendAdapter], media: MediaElement) -> TimelineSnapshot:
    """
    Work out the playable window of the current source.

    The adapter's own seek range wins when it has a finite, positive end. Otherwise the media
    element's seekable ranges are used under the same condition. As a last resort the raw
    media duration is taken, and the stream counts as live when that duration is not finite.

    Args:
        adapter (BackendAdapter, optional): The active backend, if any.
        media (MediaElement): The element being played.

    Returns:
        TimelineSnapshot: Absolute position, window start and end, live flag and buffered end.
    """
    current_time = _finite_or_zero(media.current_time)
    buffered_ranges = media.buffered_ranges()
    buffered = _finite_or_zero(buffered_ranges[-1][1]) if buffered_ranges else 0.0

    seek_range = adapter.seek_range() if adapter is not None else None
    seekable_ranges = media.seekable_ranges()

    if seek_range is not None and _usable_end(seek_range.end):
        start, duration, is_live = seek_range.start, seek_range.end, False
    elif seekable_ranges and _usable_end(seekable_ranges[-1][1]):
        start, duration = seekable_ranges[0][0], seekable_ranges[-1][1]
        is_live = False
    else:
        start = 0.0
        duration = media.duration
        is_live = duration is None or not math.isfinite(duration)

    if start is None or not math.isfinite(start) or start < 0:
        start = 0.0

    return TimelineSnapshot(
        current_time=current_time,
        duration=_finite_or_zero(duration),
        start=start,
        is_live=is_live,
        buffered=buffered,
    )


def format_clock(seconds: float) -> str:
    """Format seconds as ``M:SS`` or ``H:MM:SS``; anything non-finite or negative is ``0:00``."""
    if seconds is None or not math.isfinite(seconds) or seconds < 0:
        return "0:00"
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"
