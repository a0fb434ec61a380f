"""Value types shared by the playback core.

Everything here is immutable: sessions derive a new value on every event instead of
patching the old one.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

AUTO_QUALITY = -1
NO_SUBTITLE = ""


class ProtocolFamily(str, Enum):
    SEGMENTED = "hls"
    MANIFEST = "dash"
    PROGRESSIVE = "native"


class PlaybackStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    PLAYING = "playing"
    PAUSED = "paused"
    BUFFERING = "buffering"
    SEEKING = "seeking"
    ERROR_RECOVERABLE = "error_recoverable"
    ERROR_FATAL = "error_fatal"
    DESTROYED = "destroyed"


@dataclass(frozen=True)
class DrmInfo:
    """DRM parameters carried after the ``?|`` delimiter of a source URL."""

    scheme: Optional[str] = None
    license: Optional[str] = None
    token: Optional[str] = None

    @property
    def key_pair(self) -> Optional[Tuple[str, str]]:
        """The ``(key_id, key)`` split of a ``kid:key`` license. Only meaningful for the clearkey scheme."""
        if self.license and ":" in self.license:
            key_id, key = self.license.split(":", 1)
            return key_id, key
        return None

    @property
    def is_clearkey(self) -> bool:
        return (self.scheme or "").lower() == "clearkey"


@dataclass(frozen=True)
class StreamSource:
    raw_url: str
    label: Optional[str] = None


@dataclass(frozen=True)
class ClassifiedStream:
    protocol_family: ProtocolFamily
    clean_url: str
    drm_info: Optional[DrmInfo] = None


@dataclass(frozen=True)
class QualityTrack:
    id: int
    height: int
    bitrate_kbps: int


@dataclass(frozen=True)
class AudioTrack:
    id: int
    label: str
    language: str


@dataclass(frozen=True)
class SubtitleTrack:
    id: str
    label: str
    language: str


DEFAULT_AUDIO_TRACKS = (AudioTrack(id=0, label="Default", language="und"),)


@dataclass(frozen=True)
class TrackSet:
    qualities: Tuple[QualityTrack, ...] = ()
    audio: Tuple[AudioTrack, ...] = ()
    subtitles: Tuple[SubtitleTrack, ...] = ()


@dataclass(frozen=True)
class SeekRange:
    start: float
    end: float


@dataclass(frozen=True)
class TimelineWindow:
    start: float = 0.0
    duration: float = 0.0
    is_live: bool = False

    @property
    def relative_duration(self) -> float:
        return self.duration - self.start

    @property
    def seekable(self) -> bool:
        return not self.is_live and math.isfinite(self.duration) and self.duration > 0


@dataclass(frozen=True)
class TimelineSnapshot:
    current_time: float = 0.0
    duration: float = 0.0
    start: float = 0.0
    is_live: bool = False
    buffered: float = 0.0

    @property
    def window(self) -> TimelineWindow:
        return TimelineWindow(start=self.start, duration=self.duration, is_live=self.is_live)

    @property
    def relative_time(self) -> float:
        return self.current_time - self.start

    @property
    def relative_duration(self) -> float:
        return self.duration - self.start


@dataclass(frozen=True)
class SessionState:
    status: PlaybackStatus = PlaybackStatus.IDLE
    timeline: TimelineSnapshot = field(default_factory=TimelineSnapshot)
    tracks: TrackSet = field(default_factory=TrackSet)
    current_quality: int = AUTO_QUALITY
    current_quality_height: int = 720
    current_audio: int = -1
    current_subtitle: str = NO_SUBTITLE
    playback_rate: float = 1.0
    is_loading: bool = False
    is_playing: bool = False
    is_muted: bool = True
    volume: float = 1.0
    is_seeking: bool = False
    loaded: bool = False
    show_controls: bool = True
    is_fullscreen: bool = False
    is_landscape: bool = False
    retry_count: int = 0
    error: Optional[str] = None
