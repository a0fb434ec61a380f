from typing import Optional


class StreamRelayError(Exception):
    """Base exception for proxy and playback failures."""

    def __init__(self, message: str = "Stream error occurred"):
        self.message = message
        super().__init__(message)


class ConfigurationError(StreamRelayError):
    """No usable source was supplied. Never retried."""


class UpstreamFetchError(StreamRelayError):
    """Network failure, timeout or non-2xx answer from an upstream server.

    ``status_code`` carries the upstream status when one was received, so the
    proxy can mirror it; transport failures leave it as ``None``.
    """

    def __init__(self, status_code: Optional[int], message: str, details: Optional[str] = None):
        self.status_code = status_code
        self.details = details
        super().__init__(message)


class UnsupportedFormatError(StreamRelayError):
    """The selected engine cannot play the classified format."""


class ManifestParseError(StreamRelayError):
    """The manifest could not be parsed."""


class DrmError(StreamRelayError):
    """License or key acquisition failed."""


class MediaDecodeError(StreamRelayError):
    """Decoder failure; recovered in place once per occurrence."""


class LoadTimeoutError(StreamRelayError):
    """The source did not become ready before the load deadline."""
