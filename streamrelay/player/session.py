import logging
import math
from dataclasses import dataclass
from typing import Callable, Optional, Union

from streamrelay.configs import PlayerSettings, settings as app_settings
from streamrelay.errors import ConfigurationError, LoadTimeoutError, MediaDecodeError, StreamRelayError
from streamrelay.player import state as transitions
from streamrelay.player.backends import BackendAdapter, create_backend
from streamrelay.player.classifier import classify_stream, proxy_source_url
from streamrelay.player.engines import EngineRegistry, MediaElement
from streamrelay.player.models import (
    SessionState,
    StreamSource,
    TimelineSnapshot,
    TimelineWindow,
    TrackSet,
)
from streamrelay.player.scope import ResourceScope
from streamrelay.player.state import ErrorClass
from streamrelay.player.timeline import reconcile

logger = logging.getLogger(__name__)

STATE_EVENTS = ("playing", "pause", "waiting", "canplay", "seeking", "seeked")
TIMELINE_EVENTS = ("timeupdate", "durationchange", "progress")


@dataclass
class SessionCallbacks:
    """Hooks a consumer can attach to a session. Every hook is optional."""

    on_loading_change: Optional[Callable[[bool], None]] = None
    on_error: Optional[Callable[[StreamRelayError], None]] = None
    on_timeline_change: Optional[Callable[[TimelineWindow], None]] = None
    on_track_list_change: Optional[Callable[[TrackSet], None]] = None
    on_state_change: Optional[Callable[[SessionState], None]] = None


class PlaybackSession:
    """
    Plays one source on one media element.

    The session owns exactly one backend adapter at a time, the load deadline, network retry
    timers and the controls auto-hide timer. Fatal errors tear the adapter down and are reported
    through ``on_error`` once. After :meth:`destroy` every call except another ``destroy`` is ignored.
    """

    def __init__(
        self,
        source: Union[StreamSource, str, None],
        media: MediaElement,
        engines: Optional[EngineRegistry] = None,
        *,
        autoplay: bool = True,
        muted: bool = True,
        callbacks: Optional[SessionCallbacks] = None,
        settings: Optional[PlayerSettings] = None,
    ):
        if isinstance(source, str):
            source = StreamSource(raw_url=source)
        self.source = source
        self.media = media
        self.engines = engines or EngineRegistry()
        self.autoplay = autoplay
        self.muted = muted
        self.callbacks = callbacks or SessionCallbacks()
        self.settings = settings or app_settings.player

        self.state = self._initial_state()
        self.adapter: Optional[BackendAdapter] = None
        self.destroyed = False

        self._scope = ResourceScope()
        self._load_scope: Optional[ResourceScope] = None
        self._window: Optional[TimelineWindow] = None
        self._error_reported = False
        self._controls_timer = None
        self._viewport_timer = None

        for event in STATE_EVENTS + TIMELINE_EVENTS + ("volumechange",):
            handler = self._make_media_handler(event)
            self._scope.register(media.add_event_listener, media.remove_event_listener, event, handler)

    def _initial_state(self) -> SessionState:
        return SessionState(is_muted=self.muted, current_quality_height=self.settings.default_quality_height)

    def _make_media_handler(self, event: str) -> Callable[[], None]:
        def handler() -> None:
            self._on_media_event(event)

        return handler

    @property
    def window(self) -> TimelineWindow:
        return self.state.timeline.window

    def _set_state(self, new_state: SessionState) -> None:
        old_state = self.state
        if new_state == old_state:
            return
        self.state = new_state
        if old_state.is_loading != new_state.is_loading and self.callbacks.on_loading_change:
            self.callbacks.on_loading_change(new_state.is_loading)
        if self.callbacks.on_state_change:
            self.callbacks.on_state_change(new_state)

    async def start(self) -> None:
        """
        Classify the source, build its backend and wait until it is ready.

        Failures are not raised: they move the session to the fatal state and are reported
        through ``on_error``.
        """
        if self.destroyed or transitions.is_terminal(self.state):
            return
        self._teardown_adapter()
        self._set_state(transitions.begin_loading(self.state))

        raw_url = self.source.raw_url.strip() if self.source and self.source.raw_url else ""
        if not raw_url:
            self._fail(ConfigurationError("No stream URL provided"))
            return

        classified = classify_stream(raw_url)
        url = proxy_source_url(classified.clean_url, self.settings.proxy_base_url)
        logger.info(f"Starting {classified.protocol_family.value} playback of {url[:120]}")

        self._load_scope = ResourceScope()
        self._load_scope.call_later(self.settings.load_timeout, self._on_load_timeout)

        try:
            adapter = create_backend(classified.protocol_family, self.media, self, self.engines)
        except StreamRelayError as e:
            self._fail(e)
            return
        self.adapter = adapter

        try:
            tracks = await adapter.load(url, classified.drm_info)
        except StreamRelayError as e:
            if self.adapter is adapter and not transitions.is_terminal(self.state):
                self._fail(e)
            return

        # The deadline may have fired, or the session been torn down, while the load was pending.
        if self.adapter is not adapter or transitions.is_terminal(self.state):
            return
        self._on_loaded(tracks)

    def _on_loaded(self, tracks: TrackSet) -> None:
        if self.state.loaded:
            return
        self.media.muted = self.muted
        if self.autoplay:
            try:
                self.media.play()
            except Exception as e:
                logger.warning(f"Autoplay was rejected: {e}")

        snapshot = reconcile(self.adapter, self.media)
        self._set_state(
            transitions.mark_ready(
                self.state,
                tracks,
                snapshot,
                is_playing=not self.media.paused,
                is_muted=self.media.muted,
                current_audio=tracks.audio[0].id if tracks.audio else 0,
            )
        )
        logger.info(
            f"Stream ready: {len(tracks.qualities)} qualities, {len(tracks.audio)} audio, "
            f"{len(tracks.subtitles)} subtitle tracks"
        )
        if self.callbacks.on_track_list_change:
            self.callbacks.on_track_list_change(tracks)
        self._emit_timeline(snapshot)
        self.quality_switched()
        self._arm_controls_timer()

    def _on_load_timeout(self) -> None:
        if self.state.loaded or transitions.is_terminal(self.state):
            return
        self._fail(LoadTimeoutError("Stream took too long to load. Please try again."))

    def backend_error(self, error: StreamRelayError) -> None:
        """Apply the error policy to an error reported by the active backend."""
        if self.destroyed or transitions.is_terminal(self.state):
            return

        error_class = transitions.classify_error(error)
        if error_class is ErrorClass.NETWORK:
            attempt = self.state.retry_count + 1
            if attempt > self.settings.max_network_retries:
                logger.error(f"Giving up after {self.state.retry_count} network retries")
                self._fail(error)
                return
            self._set_state(transitions.mark_recoverable(self.state, error, count_retry=True))
            delay = attempt * self.settings.retry_delay
            logger.warning(f"Network error, retry {attempt}/{self.settings.max_network_retries} in {delay:.1f}s")
            self._load_scope.call_later(delay, self._restart_load)
        elif error_class is ErrorClass.MEDIA:
            self._set_state(transitions.mark_recoverable(self.state, error, count_retry=False))
            logger.warning(f"Media error, attempting recovery: {error}")
            try:
                self.adapter.recover_media_error()
            except Exception as e:
                self._fail(e if isinstance(e, StreamRelayError) else MediaDecodeError(f"Media recovery failed: {e}"))
        else:
            self._fail(error)

    def quality_switched(self) -> None:
        if self.destroyed or self.adapter is None:
            return
        height = self.adapter.active_quality_height() or self.settings.default_quality_height
        self._set_state(transitions.set_quality_height(self.state, height))

    def _restart_load(self) -> None:
        if self.adapter is not None and not transitions.is_terminal(self.state):
            self.adapter.restart_load()

    def _fail(self, error: StreamRelayError) -> None:
        if transitions.is_terminal(self.state):
            return
        logger.error(f"Playback failed: {error}")
        self._set_state(transitions.mark_fatal(self.state, error.message))
        self._teardown_adapter()
        if not self._error_reported:
            self._error_reported = True
            if self.callbacks.on_error:
                self.callbacks.on_error(error)

    def _teardown_adapter(self) -> None:
        if self._load_scope is not None:
            self._load_scope.close()
            self._load_scope = None
        if self.adapter is not None:
            adapter, self.adapter = self.adapter, None
            adapter.destroy()

    def _on_media_event(self, event: str) -> None:
        if self.destroyed or transitions.is_terminal(self.state):
            return
        if event in TIMELINE_EVENTS:
            self.refresh_timeline()
            return
        if event == "volumechange":
            self._set_state(transitions.set_muted(self.state, self.media.muted))
            return

        self._set_state(transitions.apply_media_event(self.state, event))
        if event == "playing":
            self._arm_controls_timer()
        elif event == "pause":
            self._show_controls()

    def refresh_timeline(self) -> Optional[TimelineSnapshot]:
        """Reconcile the timeline with the backend and media element, emitting window changes."""
        if self.destroyed or not self.state.loaded or transitions.is_terminal(self.state):
            return None
        snapshot = reconcile(self.adapter, self.media)
        if self.state.is_seeking:
            # Keep the pending drag target visible until the seek is committed.
            snapshot = TimelineSnapshot(
                current_time=self.state.timeline.current_time,
                duration=snapshot.duration,
                start=snapshot.start,
                is_live=snapshot.is_live,
                buffered=snapshot.buffered,
            )
        self._set_state(transitions.apply_timeline(self.state, snapshot))
        self._emit_timeline(snapshot)
        return snapshot

    def _emit_timeline(self, snapshot: TimelineSnapshot) -> None:
        window = snapshot.window
        if window == self._window:
            return
        self._window = window
        if self.callbacks.on_timeline_change:
            self.callbacks.on_timeline_change(window)

    def select_quality(self, quality_id: int) -> None:
        """Pin a quality by id, or pass -1 to hand selection back to adaptive bitrate."""
        if self.destroyed:
            return
        if self.adapter is not None:
            self.adapter.select_variant(quality_id)
        self._set_state(transitions.select_quality(self.state, quality_id))
        self.notify_activity()

    def select_audio(self, track_id: int) -> None:
        if self.destroyed:
            return
        if self.adapter is not None:
            self.adapter.select_audio(track_id)
        self._set_state(transitions.select_audio(self.state, track_id))
        self.notify_activity()

    def select_subtitle(self, subtitle_id: str) -> None:
        if self.destroyed:
            return
        if self.adapter is not None:
            self.adapter.select_text(subtitle_id)
        self._set_state(transitions.select_subtitle(self.state, subtitle_id))
        self.notify_activity()

    def set_playback_rate(self, rate: float) -> None:
        if self.destroyed:
            return
        self.media.playback_rate = rate
        self._set_state(transitions.set_playback_rate(self.state, rate))
        self.notify_activity()

    def seek_to(self, position: float) -> None:
        """
        Move playback to an absolute position.

        Args:
            position (float): Target in absolute media time, clamped to the window when it is bounded.
        """
        if self.destroyed or transitions.is_terminal(self.state):
            return
        window = self.window
        if window.duration > 0:
            position = min(max(position, window.start), window.duration)
        self.media.current_time = position
        self.refresh_timeline()
        self.notify_activity()

    def seek_by(self, delta: Optional[float] = None) -> None:
        """
        Skip ``delta`` seconds (default ``seek_step``).

        Bounded windows clamp through :meth:`seek_to`. On a live stream the skip moves around the
        playhead inside the backend's DVR range, capped at the live edge; without such a range it
        does nothing.
        """
        if self.destroyed or transitions.is_terminal(self.state):
            return
        if delta is None:
            delta = self.settings.seek_step
        if not self.window.is_live:
            self.seek_to(self.media.current_time + delta)
            return

        dvr_range = self.adapter.seek_range() if self.adapter is not None else None
        if dvr_range is not None and math.isfinite(dvr_range.start) and math.isfinite(dvr_range.end):
            target = min(max(self.media.current_time + delta, dvr_range.start), dvr_range.end)
            self.media.current_time = target
            self.refresh_timeline()
            logger.debug(f"Live skip to {target} within {dvr_range.start}-{dvr_range.end}")
        self.notify_activity()

    def toggle_play(self) -> None:
        if self.destroyed or transitions.is_terminal(self.state):
            return
        if self.media.paused:
            self.media.play()
        else:
            self.media.pause()
        self.notify_activity()

    def set_muted(self, muted: bool) -> None:
        if self.destroyed:
            return
        self.muted = muted
        self.media.muted = muted
        self._set_state(transitions.set_muted(self.state, muted))
        self.notify_activity()

    def set_volume(self, volume: float) -> None:
        """
        Set the output volume.

        Args:
            volume (float): Level between 0 and 1; out-of-range values are clamped. Zero mutes.
        """
        if self.destroyed:
            return
        volume = min(max(volume, 0.0), 1.0)
        self.muted = volume == 0
        self.media.volume = volume
        self.media.muted = self.muted
        self._set_state(transitions.set_volume(self.state, volume))
        self.notify_activity()

    def notify_viewport_change(self, width: float, height: float, *, fullscreen: bool = False) -> None:
        """Record a resize or orientation change once it has settled for ``viewport_debounce`` seconds."""
        if self.destroyed:
            return
        self._scope.cancel(self._viewport_timer)
        self._viewport_timer = self._scope.call_later(
            self.settings.viewport_debounce, self._apply_viewport, width > height, fullscreen
        )

    def _apply_viewport(self, is_landscape: bool, is_fullscreen: bool) -> None:
        self._viewport_timer = None
        self._set_state(transitions.set_viewport(self.state, is_landscape, is_fullscreen))

    def set_seeking(self, seeking: bool) -> None:
        if self.destroyed:
            return
        self._set_state(transitions.set_seeking(self.state, seeking))
        if seeking:
            self._show_controls()
        else:
            self._arm_controls_timer()

    def preview_position(self, position: float) -> None:
        if self.destroyed:
            return
        self._set_state(transitions.preview_position(self.state, position))

    def notify_activity(self) -> None:
        """Show the controls and restart the auto-hide timer."""
        if self.destroyed:
            return
        self._show_controls()
        self._arm_controls_timer()

    def _show_controls(self) -> None:
        self._scope.cancel(self._controls_timer)
        self._controls_timer = None
        self._set_state(transitions.set_controls_visible(self.state, True))

    def _arm_controls_timer(self) -> None:
        self._scope.cancel(self._controls_timer)
        self._controls_timer = None
        if self.state.is_playing and not self.state.is_seeking:
            self._controls_timer = self._scope.call_later(self.settings.controls_hide_delay, self._hide_controls)

    def _hide_controls(self) -> None:
        self._controls_timer = None
        if self.state.is_playing and not self.state.is_seeking:
            self._set_state(transitions.set_controls_visible(self.state, False))

    async def reload(self) -> None:
        """Start the same source again on a fresh backend with counters reset."""
        if self.destroyed:
            return
        self._teardown_adapter()
        self.state = self._initial_state()
        self._window = None
        self._error_reported = False
        await self.start()

    def destroy(self) -> None:
        """Tear down the backend and release every timer and listener. Repeated calls do nothing."""
        if self.destroyed:
            return
        self._teardown_adapter()
        self._scope.close()
        self._set_state(transitions.mark_destroyed(self.state))
        self.destroyed = True
        logger.debug("Playback session destroyed")
