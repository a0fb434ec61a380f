"""Pure transitions over :class:`SessionState`.

Each function takes the current state and returns the next one; none of them touch engines,
timers or callbacks. Terminal states (fatal error, destroyed) are returned unchanged.
"""

from dataclasses import replace
from enum import Enum
from typing import Optional

from streamrelay.errors import MediaDecodeError, StreamRelayError, UpstreamFetchError
from streamrelay.player.models import (
    PlaybackStatus,
    SessionState,
    TimelineSnapshot,
    TrackSet,
)

TERMINAL_STATUSES = (PlaybackStatus.ERROR_FATAL, PlaybackStatus.DESTROYED)


class ErrorClass(str, Enum):
    NETWORK = "network"
    MEDIA = "media"
    FATAL = "fatal"


def classify_error(error: StreamRelayError) -> ErrorClass:
    """Network errors are retried, media errors recovered in place, everything else is fatal."""
    if isinstance(error, UpstreamFetchError):
        return ErrorClass.NETWORK
    if isinstance(error, MediaDecodeError):
        return ErrorClass.MEDIA
    return ErrorClass.FATAL


def is_terminal(state: SessionState) -> bool:
    return state.status in TERMINAL_STATUSES


def begin_loading(state: SessionState) -> SessionState:
    if is_terminal(state):
        return state
    return replace(
        state,
        status=PlaybackStatus.LOADING,
        is_loading=True,
        is_playing=False,
        loaded=False,
        show_controls=False,
        error=None,
    )


def mark_ready(
    state: SessionState,
    tracks: TrackSet,
    timeline: TimelineSnapshot,
    *,
    is_playing: bool,
    is_muted: bool,
    current_audio: int = 0,
) -> SessionState:
    """
    Move a loading session to ready (or playing, when autoplay already started it).

    A session that already reached ready is returned unchanged, so repeated success events
    from an engine have no effect.
    """
    if is_terminal(state) or state.loaded:
        return state
    return replace(
        state,
        status=PlaybackStatus.PLAYING if is_playing else PlaybackStatus.READY,
        tracks=tracks,
        timeline=timeline,
        current_audio=current_audio,
        is_loading=False,
        is_playing=is_playing,
        is_muted=is_muted,
        loaded=True,
        show_controls=True,
        error=None,
    )


def _resting_status(state: SessionState) -> PlaybackStatus:
    return PlaybackStatus.PLAYING if state.is_playing else PlaybackStatus.PAUSED


def apply_media_event(state: SessionState, event: str) -> SessionState:
    """
    Fold a media element event into the state.

    Events before the first successful load only matter for ``playing``, which cannot happen
    before then anyway, so they are ignored.
    """
    if is_terminal(state) or not state.loaded:
        return state

    if event == "playing":
        return replace(state, status=PlaybackStatus.PLAYING, is_playing=True, is_loading=False, retry_count=0, error=None)
    if event == "pause":
        return replace(state, status=PlaybackStatus.PAUSED, is_playing=False)
    if event == "waiting":
        return replace(state, status=PlaybackStatus.BUFFERING, is_loading=True)
    if event == "canplay":
        status = _resting_status(state) if state.status == PlaybackStatus.BUFFERING else state.status
        return replace(state, status=status, is_loading=False)
    if event == "seeking":
        return replace(state, status=PlaybackStatus.SEEKING)
    if event == "seeked":
        return replace(state, status=_resting_status(state))
    return state


def apply_timeline(state: SessionState, timeline: TimelineSnapshot) -> SessionState:
    if is_terminal(state) or timeline == state.timeline:
        return state
    return replace(state, timeline=timeline)


def preview_position(state: SessionState, position: float) -> SessionState:
    """Show a pending seek target without touching the window."""
    if is_terminal(state):
        return state
    return replace(state, timeline=replace(state.timeline, current_time=position))


def select_quality(state: SessionState, quality_id: int) -> SessionState:
    if is_terminal(state):
        return state
    return replace(state, current_quality=quality_id, show_controls=True)


def select_audio(state: SessionState, track_id: int) -> SessionState:
    if is_terminal(state):
        return state
    return replace(state, current_audio=track_id, show_controls=True)


def select_subtitle(state: SessionState, subtitle_id: str) -> SessionState:
    if is_terminal(state):
        return state
    return replace(state, current_subtitle=subtitle_id, show_controls=True)


def set_playback_rate(state: SessionState, rate: float) -> SessionState:
    if is_terminal(state):
        return state
    return replace(state, playback_rate=rate, show_controls=True)


def set_muted(state: SessionState, muted: bool) -> SessionState:
    if is_terminal(state) or state.is_muted == muted:
        return state
    return replace(state, is_muted=muted)


def set_quality_height(state: SessionState, height: int) -> SessionState:
    if is_terminal(state) or state.current_quality_height == height:
        return state
    return replace(state, current_quality_height=height)


def set_seeking(state: SessionState, seeking: bool) -> SessionState:
    if is_terminal(state) or state.is_seeking == seeking:
        return state
    return replace(state, is_seeking=seeking, show_controls=True)


def set_controls_visible(state: SessionState, visible: bool) -> SessionState:
    if is_terminal(state) or state.show_controls == visible:
        return state
    return replace(state, show_controls=visible)


def mark_recoverable(state: SessionState, error: StreamRelayError, count_retry: bool) -> SessionState:
    """
    Record an error the session is going to recover from.

    Args:
        state (SessionState): Current state.
        error (StreamRelayError): The error being recovered.
        count_retry (bool): Whether this attempt counts against the network retry budget.

    Returns:
        SessionState: The state with the error recorded. A session still loading stays in loading.
    """
    if is_terminal(state):
        return state
    return replace(
        state,
        status=PlaybackStatus.ERROR_RECOVERABLE if state.loaded else state.status,
        retry_count=state.retry_count + 1 if count_retry else state.retry_count,
        error=error.message,
    )


def mark_fatal(state: SessionState, message: Optional[str]) -> SessionState:
    if is_terminal(state):
        return state
    return replace(
        state,
        status=PlaybackStatus.ERROR_FATAL,
        is_loading=False,
        is_playing=False,
        show_controls=False,
        error=message or "Playback error occurred",
    )


def mark_destroyed(state: SessionState) -> SessionState:
    if state.status == PlaybackStatus.DESTROYED:
        return state
    return replace(state, status=PlaybackStatus.DESTROYED, is_loading=False, is_playing=False)


def set_volume(state: SessionState, volume: float) -> SessionState:
    """Record a new volume; zero volume also counts as muted."""
    if is_terminal(state):
        return state
    return replace(state, volume=volume, is_muted=volume == 0, show_controls=True)


def set_viewport(state: SessionState, is_landscape: bool, is_fullscreen: bool) -> SessionState:
    if is_terminal(state) or (state.is_landscape, state.is_fullscreen) == (is_landscape, is_fullscreen):
        return state
    return replace(state, is_landscape=is_landscape, is_fullscreen=is_fullscreen)
