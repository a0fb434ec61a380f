"""Contracts of the media engines the backend adapters wrap.

The engines themselves are opaque: a segmented (HLS) engine, a manifest (DASH) engine and the
native media element. Concrete implementations are supplied through :class:`EngineRegistry`;
only :mod:`streamrelay.player.backends` talks to them.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Literal, Optional, Protocol

SegmentedErrorType = Literal["network", "media", "other"]

# Native media element error codes
MEDIA_ERR_ABORTED = 1
MEDIA_ERR_NETWORK = 2
MEDIA_ERR_DECODE = 3
MEDIA_ERR_SRC_NOT_SUPPORTED = 4


@dataclass(frozen=True)
class SegmentedEngineError:
    """Error payload emitted by a segmented engine."""

    type: SegmentedErrorType
    fatal: bool
    details: str = ""


class ManifestEngineError(Exception):
    """Error raised or emitted by a manifest engine; ``code`` follows the engine's category ranges."""

    def __init__(self, code: int, message: str = ""):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}" if message else str(code))


@dataclass(frozen=True)
class VariantLevel:
    height: int
    bitrate: int


@dataclass(frozen=True)
class EngineAudioTrack:
    name: str = ""
    lang: str = ""


@dataclass(frozen=True)
class VariantTrackInfo:
    id: int
    height: int
    bandwidth: int
    active: bool = False


@dataclass(frozen=True)
class TextTrackInfo:
    id: int
    label: str = ""
    language: str = ""


class MediaElement(Protocol):
    """The native playback surface every backend renders into."""

    src: str
    current_time: float
    duration: float
    paused: bool
    muted: bool
    volume: float
    playback_rate: float
    error_code: Optional[int]

    def play(self) -> None: ...

    def pause(self) -> None: ...

    def load(self) -> None: ...

    def can_play_type(self, mime_type: str) -> bool: ...

    def seekable_ranges(self) -> Sequence[tuple[float, float]]: ...

    def buffered_ranges(self) -> Sequence[tuple[float, float]]: ...

    def add_event_listener(self, event: str, handler: Callable[[], None]) -> None: ...

    def remove_event_listener(self, event: str, handler: Callable[[], None]) -> None: ...


class SegmentedEngine(Protocol):
    """An adaptive HLS engine (``manifest_parsed``, ``level_switched`` and ``error`` events)."""

    levels: Sequence[VariantLevel]
    current_level: int
    audio_tracks: Sequence[EngineAudioTrack]
    audio_track: int

    def on(self, event: str, handler: Callable[..., None]) -> None: ...

    def off(self, event: str, handler: Callable[..., None]) -> None: ...

    def load_source(self, url: str) -> None: ...

    def attach_media(self, media: MediaElement) -> None: ...

    def start_load(self) -> None: ...

    def recover_media_error(self) -> None: ...

    def destroy(self) -> None: ...


class ManifestEngine(Protocol):
    """A DASH engine with its own seek range, track model and DRM configuration."""

    def configure(self, config: Mapping[str, Any]) -> None: ...

    def load(self, url: str) -> Awaitable[None]: ...

    def get_variant_tracks(self) -> Sequence[VariantTrackInfo]: ...

    def get_text_tracks(self) -> Sequence[TextTrackInfo]: ...

    def get_audio_languages(self) -> Sequence[str]: ...

    def select_variant_track(self, track: VariantTrackInfo, clear_buffer: bool = False) -> None: ...

    def select_text_track(self, track: TextTrackInfo) -> None: ...

    def set_text_track_visibility(self, visible: bool) -> None: ...

    def select_audio_language(self, language: str) -> None: ...

    def seek_range(self) -> Optional[tuple[float, float]]: ...

    def register_request_filter(self, request_filter: Callable[[str, dict], None]) -> None: ...

    def add_event_listener(self, event: str, handler: Callable[[ManifestEngineError], None]) -> None: ...

    def remove_event_listener(self, event: str, handler: Callable[[ManifestEngineError], None]) -> None: ...

    def destroy(self) -> None: ...


SegmentedEngineFactory = Callable[[Mapping[str, Any]], SegmentedEngine]
ManifestEngineFactory = Callable[[MediaElement], ManifestEngine]


@dataclass
class EngineRegistry:
    """Engine factories available to sessions; a missing factory means the engine is unsupported."""

    segmented: Optional[SegmentedEngineFactory] = None
    manifest: Optional[ManifestEngineFactory] = None
