"""Backend adapters: one capability surface over the three playback engines.

A session only ever talks to a :class:`BackendAdapter`. Which concrete adapter is used is
decided once, by :func:`create_backend`, from the protocol family the classifier assigned.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional, Protocol, Tuple

from streamrelay.errors import (
    DrmError,
    ManifestParseError,
    MediaDecodeError,
    StreamRelayError,
    UnsupportedFormatError,
    UpstreamFetchError,
)
from streamrelay.player.engines import (
    MEDIA_ERR_DECODE,
    MEDIA_ERR_NETWORK,
    MEDIA_ERR_SRC_NOT_SUPPORTED,
    EngineRegistry,
    ManifestEngine,
    ManifestEngineError,
    MediaElement,
    SegmentedEngine,
    SegmentedEngineError,
)
from streamrelay.player.models import (
    AUTO_QUALITY,
    DEFAULT_AUDIO_TRACKS,
    NO_SUBTITLE,
    AudioTrack,
    DrmInfo,
    ProtocolFamily,
    QualityTrack,
    SeekRange,
    SubtitleTrack,
    TrackSet,
)
from streamrelay.player.scope import ResourceScope

logger = logging.getLogger(__name__)

NATIVE_HLS_MIME_TYPE = "application/vnd.apple.mpegurl"

SEGMENTED_ENGINE_CONFIG = {
    "enable_worker": True,
    "cap_level_to_player_size": True,
    "max_loading_delay": 4,
    "max_buffer_length": 30,
    "max_buffer_size": 60 * 1000 * 1000,
    "frag_loading_timeout": 20000,
    "manifest_loading_timeout": 10000,
    "start_level": -1,
    "start_position": -1,
}

_RETRY_PARAMETERS = {"timeout": 8000, "maxAttempts": 3, "baseDelay": 1000, "backoffFactor": 2}

MANIFEST_ENGINE_CONFIG = {
    "streaming": {
        "bufferingGoal": 15,
        "rebufferingGoal": 8,
        "bufferBehind": 30,
        "retryParameters": _RETRY_PARAMETERS,
        "jumpLargeGaps": True,
        "inbandTextTracks": True,
    },
    "manifest": {
        "retryParameters": _RETRY_PARAMETERS,
        "dash": {"ignoreDrmInfo": False, "timeShiftBufferDepth": 60},
    },
    "abr": {
        "enabled": True,
        "defaultBandwidthEstimate": 1500000,
        "bandwidthUpgradeSeconds": 5,
        "bandwidthDowngradeSeconds": 10,
    },
    "drm": {"retryParameters": {"timeout": 5000, "maxAttempts": 2}, "servers": {}},
}

# Manifest engine error categories, by thousand
NETWORK_CATEGORY = 1
MEDIA_CATEGORY = 3
MANIFEST_CATEGORY = 4
DRM_CATEGORY = 6
UNSUPPORTED_CONTENT_CODE = 4032


class BackendClosedError(StreamRelayError):
    """The adapter was destroyed before its load completed."""

    def __init__(self, message: str = "Backend destroyed before load completed"):
        super().__init__(message)


class BackendListener(Protocol):
    """Receiver of the asynchronous events an adapter reports after construction."""

    def backend_error(self, error: StreamRelayError) -> None: ...

    def quality_switched(self) -> None: ...


def map_segmented_error(error: SegmentedEngineError) -> StreamRelayError:
    if error.type == "network":
        return UpstreamFetchError(None, "Network error: Unable to load stream", error.details or None)
    if error.type == "media":
        return MediaDecodeError(error.details or "Media error")
    return StreamRelayError(error.details or "Playback error occurred")


def map_manifest_error(error: ManifestEngineError) -> StreamRelayError:
    """
    Translate a manifest engine error code into the error taxonomy.

    Args:
        error (ManifestEngineError): The engine error.

    Returns:
        StreamRelayError: ``UpstreamFetchError`` for network codes, ``MediaDecodeError`` for media
        codes, ``UnsupportedFormatError`` or ``ManifestParseError`` for manifest codes,
        ``DrmError`` for DRM codes and a plain ``StreamRelayError`` otherwise.
    """
    category = error.code // 1000
    details = error.message or str(error.code)
    if category == NETWORK_CATEGORY:
        return UpstreamFetchError(None, "Network error", details)
    if category == MEDIA_CATEGORY:
        return MediaDecodeError(f"Media error: {details}")
    if error.code == UNSUPPORTED_CONTENT_CODE:
        return UnsupportedFormatError("No playable streams")
    if category == MANIFEST_CATEGORY:
        return ManifestParseError(f"Manifest parse failed: {details}")
    if category == DRM_CATEGORY:
        return DrmError(f"DRM error: {details}")
    return StreamRelayError(f"Stream error occurred: {details}")


def map_media_element_error(code: Optional[int]) -> StreamRelayError:
    if code == MEDIA_ERR_NETWORK:
        return UpstreamFetchError(None, "Failed to load stream with native player")
    if code == MEDIA_ERR_DECODE:
        return MediaDecodeError("Native player could not decode the stream")
    if code == MEDIA_ERR_SRC_NOT_SUPPORTED:
        return UnsupportedFormatError("Stream format is not supported by the native player")
    return StreamRelayError("Failed to load stream with native player")


class BackendAdapter(ABC):
    """
    Common surface of the segmented, manifest and progressive backends.

    Subclasses start the engine in :meth:`_start_load` and call :meth:`_resolve` once tracks are
    known. Errors after construction go to the listener; :meth:`load` only fails when the engine
    rejects the load itself or the adapter is destroyed while waiting.
    """

    family: ProtocolFamily

    def __init__(self, media: MediaElement, listener: BackendListener):
        self.media = media
        self.listener = listener
        self.scope = ResourceScope()
        self.destroyed = False
        self._ready: Optional[asyncio.Future] = None

    async def load(self, url: str, drm_info: Optional[DrmInfo] = None) -> TrackSet:
        """
        Load a source and wait for its track list.

        Args:
            url (str): The playable URL.
            drm_info (DrmInfo, optional): DRM parameters of the source.

        Returns:
            TrackSet: The tracks available once the engine is ready.

        Raises:
            BackendClosedError: If the adapter is destroyed before the load completes.
            StreamRelayError: If the engine rejects the source.
        """
        if self.destroyed:
            raise BackendClosedError()
        self._ready = asyncio.get_running_loop().create_future()
        self._start_load(url, drm_info)
        return await self._ready

    @abstractmethod
    def _start_load(self, url: str, drm_info: Optional[DrmInfo]) -> None:
        pass

    def _resolve(self) -> None:
        if self._ready is not None and not self._ready.done():
            self._ready.set_result(self.tracks())

    def _reject(self, error: BaseException) -> None:
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(error)

    def _emit_error(self, error: StreamRelayError) -> None:
        if self.destroyed:
            return
        logger.warning(f"{self.family.value} backend error: {error}")
        self.listener.backend_error(error)

    def tracks(self) -> TrackSet:
        return TrackSet(
            qualities=self.current_variant_tracks(),
            audio=self.current_audio_tracks(),
            subtitles=self.current_text_tracks(),
        )

    @abstractmethod
    def current_variant_tracks(self) -> Tuple[QualityTrack, ...]:
        pass

    def current_audio_tracks(self) -> Tuple[AudioTrack, ...]:
        return DEFAULT_AUDIO_TRACKS

    def current_text_tracks(self) -> Tuple[SubtitleTrack, ...]:
        return ()

    @abstractmethod
    def select_variant(self, track_id: int) -> None:
        pass

    def select_audio(self, track_id: int) -> None:
        pass

    def select_text(self, track_id: str) -> None:
        pass

    def seek_range(self) -> Optional[SeekRange]:
        return None

    def active_quality_height(self) -> Optional[int]:
        return None

    @abstractmethod
    def restart_load(self) -> None:
        pass

    @abstractmethod
    def recover_media_error(self) -> None:
        pass

    @abstractmethod
    def _teardown(self) -> None:
        pass

    def destroy(self) -> None:
        """Release the engine, its listeners and the media element. Safe to call repeatedly."""
        if self.destroyed:
            return
        self.destroyed = True
        self._reject(BackendClosedError())
        self.scope.close()
        try:
            self._teardown()
        finally:
            self.media.pause()
            self.media.src = ""
            self.media.load()
        logger.debug(f"{self.family.value} backend destroyed")


class SegmentedBackend(BackendAdapter):
    """Adaptive HLS playback through a segmented engine."""

    family = ProtocolFamily.SEGMENTED

    def __init__(self, media: MediaElement, listener: BackendListener, engine: SegmentedEngine):
        super().__init__(media, listener)
        self.engine = engine

    def _start_load(self, url: str, drm_info: Optional[DrmInfo]) -> None:
        self.scope.register(self.engine.on, self.engine.off, "error", self._on_error)
        self.scope.register(self.engine.on, self.engine.off, "manifest_parsed", self._on_manifest_parsed)
        self.scope.register(self.engine.on, self.engine.off, "level_switched", self._on_level_switched)
        self.engine.load_source(url)
        self.engine.attach_media(self.media)

    def _on_manifest_parsed(self, *args: Any) -> None:
        logger.info(f"Manifest parsed with {len(self.engine.levels)} levels")
        self._resolve()

    def _on_level_switched(self, *args: Any) -> None:
        if not self.destroyed:
            self.listener.quality_switched()

    def _on_error(self, error: SegmentedEngineError) -> None:
        if not error.fatal:
            logger.debug(f"Ignoring non-fatal {error.type} error: {error.details}")
            return
        self._emit_error(map_segmented_error(error))

    def current_variant_tracks(self) -> Tuple[QualityTrack, ...]:
        return tuple(
            QualityTrack(id=index, height=level.height or 0, bitrate_kbps=round(level.bitrate / 1000))
            for index, level in enumerate(self.engine.levels)
        )

    def current_audio_tracks(self) -> Tuple[AudioTrack, ...]:
        if not self.engine.audio_tracks:
            return DEFAULT_AUDIO_TRACKS
        return tuple(
            AudioTrack(id=index, label=track.name or track.lang or f"Audio {index + 1}", language=track.lang or "unknown")
            for index, track in enumerate(self.engine.audio_tracks)
        )

    def select_variant(self, track_id: int) -> None:
        # -1 hands level selection back to the engine's ABR controller
        self.engine.current_level = track_id

    def select_audio(self, track_id: int) -> None:
        self.engine.audio_track = track_id

    def active_quality_height(self) -> Optional[int]:
        level = self.engine.current_level
        if 0 <= level < len(self.engine.levels):
            return self.engine.levels[level].height or None
        return None

    def restart_load(self) -> None:
        self.engine.start_load()

    def recover_media_error(self) -> None:
        self.engine.recover_media_error()

    def _teardown(self) -> None:
        self.engine.destroy()


class ManifestBackend(BackendAdapter):
    """DASH playback through a manifest engine, with clear-key and token DRM."""

    family = ProtocolFamily.MANIFEST

    def __init__(self, media: MediaElement, listener: BackendListener, engine: ManifestEngine):
        super().__init__(media, listener)
        self.engine = engine
        self._url: Optional[str] = None
        self._load_task: Optional[asyncio.Task] = None
        self._audio_languages: Tuple[str, ...] = ()

    def _start_load(self, url: str, drm_info: Optional[DrmInfo]) -> None:
        self._url = url
        self.engine.configure(MANIFEST_ENGINE_CONFIG)
        if drm_info:
            self._configure_drm(drm_info)
        self.scope.register(self.engine.add_event_listener, self.engine.remove_event_listener, "error", self._on_error)
        self._spawn_load(initial=True)

    def _configure_drm(self, drm_info: DrmInfo) -> None:
        key_pair = drm_info.key_pair if drm_info.is_clearkey else None
        if key_pair:
            key_id, key = key_pair
            self.engine.configure({"drm": {"clearKeys": {key_id: key}}})
        elif drm_info.scheme and drm_info.license:
            self.engine.configure({"drm": {"servers": {drm_info.scheme: drm_info.license}}})

        if drm_info.token:
            token = drm_info.token

            def add_bearer_token(request_type: str, request: dict) -> None:
                request.setdefault("headers", {})["Authorization"] = f"Bearer {token}"

            self.engine.register_request_filter(add_bearer_token)

    def _spawn_load(self, initial: bool = False) -> None:
        self._load_task = asyncio.ensure_future(self.engine.load(self._url))
        self._load_task.add_done_callback(lambda task: self._on_load_done(task, initial))

    def _on_load_done(self, task: asyncio.Task, initial: bool) -> None:
        if task.cancelled() or self.destroyed:
            return
        exc = task.exception()
        if exc is None:
            self._audio_languages = tuple(self.engine.get_audio_languages())
            self._resolve()
            return
        if isinstance(exc, ManifestEngineError):
            error = map_manifest_error(exc)
        elif isinstance(exc, StreamRelayError):
            error = exc
        else:
            error = StreamRelayError(f"Failed to initialize player: {exc}")
        if initial:
            self._reject(error)
        else:
            self._emit_error(error)

    def _on_error(self, error: ManifestEngineError) -> None:
        self._emit_error(map_manifest_error(error))

    def current_variant_tracks(self) -> Tuple[QualityTrack, ...]:
        return tuple(
            QualityTrack(id=track.id, height=track.height or 0, bitrate_kbps=round(track.bandwidth / 1000))
            for track in self.engine.get_variant_tracks()
        )

    def current_audio_tracks(self) -> Tuple[AudioTrack, ...]:
        if not self._audio_languages:
            return DEFAULT_AUDIO_TRACKS
        return tuple(
            AudioTrack(id=index, label=language or f"Audio {index + 1}", language=language or "unknown")
            for index, language in enumerate(self._audio_languages)
        )

    def current_text_tracks(self) -> Tuple[SubtitleTrack, ...]:
        return tuple(
            SubtitleTrack(id=str(track.id), label=track.label or track.language or "Unknown", language=track.language or "unknown")
            for track in self.engine.get_text_tracks()
        )

    def select_variant(self, track_id: int) -> None:
        if track_id == AUTO_QUALITY:
            self.engine.configure({"abr": {"enabled": True}})
            return
        self.engine.configure({"abr": {"enabled": False}})
        for track in self.engine.get_variant_tracks():
            if track.id == track_id:
                self.engine.select_variant_track(track, clear_buffer=True)
                return
        logger.warning(f"Variant track {track_id} not found")

    def select_audio(self, track_id: int) -> None:
        if 0 <= track_id < len(self._audio_languages):
            self.engine.select_audio_language(self._audio_languages[track_id])

    def select_text(self, track_id: str) -> None:
        if track_id == NO_SUBTITLE:
            self.engine.set_text_track_visibility(False)
            return
        for track in self.engine.get_text_tracks():
            if str(track.id) == track_id:
                self.engine.select_text_track(track)
                self.engine.set_text_track_visibility(True)
                return
        logger.warning(f"Text track {track_id} not found")

    def seek_range(self) -> Optional[SeekRange]:
        bounds = self.engine.seek_range()
        if bounds is None:
            return None
        start, end = bounds
        return SeekRange(start=start, end=end)

    def active_quality_height(self) -> Optional[int]:
        for track in self.engine.get_variant_tracks():
            if track.active:
                return track.height or None
        return None

    def restart_load(self) -> None:
        if self._url and not self.destroyed:
            self._spawn_load()

    def recover_media_error(self) -> None:
        # The engine has no decoder reset; reloading the manifest rebuilds its buffers.
        self.restart_load()

    def _teardown(self) -> None:
        if self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()
        self.engine.destroy()


class ProgressiveBackend(BackendAdapter):
    """Plain file (and natively supported HLS) playback on the media element itself."""

    family = ProtocolFamily.PROGRESSIVE

    def _start_load(self, url: str, drm_info: Optional[DrmInfo]) -> None:
        self.scope.register(
            self.media.add_event_listener, self.media.remove_event_listener, "loadedmetadata", self._on_loaded_metadata
        )
        self.scope.register(self.media.add_event_listener, self.media.remove_event_listener, "error", self._on_error)
        self.media.src = url

    def _on_loaded_metadata(self) -> None:
        self._resolve()

    def _on_error(self) -> None:
        self._emit_error(map_media_element_error(self.media.error_code))

    def current_variant_tracks(self) -> Tuple[QualityTrack, ...]:
        return ()

    def select_variant(self, track_id: int) -> None:
        pass

    def restart_load(self) -> None:
        self.media.load()

    def recover_media_error(self) -> None:
        position = self.media.current_time
        self.media.load()
        self.media.current_time = position

    def _teardown(self) -> None:
        pass


def create_backend(
    family: ProtocolFamily,
    media: MediaElement,
    listener: BackendListener,
    engines: EngineRegistry,
) -> BackendAdapter:
    """
    Build the adapter for a protocol family. This is the only place engines are chosen.

    Args:
        family (ProtocolFamily): The family assigned by the classifier.
        media (MediaElement): The element playback renders into.
        listener (BackendListener): Receiver of errors and quality switches.
        engines (EngineRegistry): Available engine factories.

    Returns:
        BackendAdapter: A fresh, not yet loaded adapter.

    Raises:
        UnsupportedFormatError: If neither an engine nor the media element can play the family.
    """
    if family == ProtocolFamily.SEGMENTED:
        if engines.segmented is not None:
            return SegmentedBackend(media, listener, engines.segmented(SEGMENTED_ENGINE_CONFIG))
        if media.can_play_type(NATIVE_HLS_MIME_TYPE):
            logger.info("No segmented engine available, using native HLS playback")
            return ProgressiveBackend(media, listener)
        raise UnsupportedFormatError("HLS is not supported in this environment")

    if family == ProtocolFamily.MANIFEST:
        if engines.manifest is None:
            raise UnsupportedFormatError("DASH is not supported in this environment")
        return ManifestBackend(media, listener, engines.manifest(media))

    return ProgressiveBackend(media, listener)
