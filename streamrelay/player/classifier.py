import logging
from typing import Optional
from urllib import parse

from streamrelay.const import PROXY_PATH
from streamrelay.player.models import ClassifiedStream, DrmInfo, ProtocolFamily
from streamrelay.utils.http_utils import decode_proxy_url, encode_proxy_url

logger = logging.getLogger(__name__)

DRM_DELIMITER = "?|"

SEGMENTED_MARKERS = (".m3u8", "/hls/", "hls", PROXY_PATH + "?url=")
MANIFEST_MARKERS = (".mpd", "/dash/", "dash")
PROGRESSIVE_MARKERS = (".mp4", ".webm", ".mov")
PROXY_WORTHY_MARKERS = (".m3u8", ".m3u", "/hls/", "m3u8", ".ts", "manifest")


def parse_drm_block(block: str) -> Optional[DrmInfo]:
    """
    Parse the query-string style DRM block that follows ``?|`` in a source URL.

    Args:
        block (str): The text after the delimiter, e.g. ``drmScheme=clearkey&drmLicense=kid:key``.

    Returns:
        DrmInfo | None: Scheme and license when both are present, a token-only descriptor when just
        ``token``/``authToken`` is given, otherwise None.
    """
    params = parse.parse_qs(block)

    def first(name: str) -> Optional[str]:
        values = params.get(name)
        return values[0] if values else None

    scheme = first("drmScheme")
    license_ = first("drmLicense")
    token = first("token") or first("authToken")

    if scheme and license_:
        return DrmInfo(scheme=scheme, license=license_, token=token)
    if token:
        return DrmInfo(token=token)
    return None


def classify_stream(raw_url: str) -> ClassifiedStream:
    """
    Decide which backend family plays a source URL. Purely lexical, no network I/O.

    Args:
        raw_url (str): The source URL, optionally followed by ``?|`` and a DRM parameter block.

    Returns:
        ClassifiedStream: The protocol family, the playable URL and the DRM descriptor if any.
    """
    clean_url = raw_url
    drm_info = None
    if DRM_DELIMITER in raw_url:
        # Only the first block after the delimiter carries DRM parameters; later pieces are dropped.
        pieces = raw_url.split(DRM_DELIMITER)
        clean_url, drm_block = pieces[0], pieces[1]
        if drm_block:
            drm_info = parse_drm_block(drm_block)

    url_lower = clean_url.lower()
    if any(marker in url_lower for marker in SEGMENTED_MARKERS):
        family = ProtocolFamily.SEGMENTED
    elif any(marker in url_lower for marker in MANIFEST_MARKERS):
        family = ProtocolFamily.MANIFEST
    elif any(marker in url_lower for marker in PROGRESSIVE_MARKERS):
        family = ProtocolFamily.PROGRESSIVE
    elif "manifest" in url_lower or drm_info:
        family = ProtocolFamily.MANIFEST
    else:
        family = ProtocolFamily.SEGMENTED

    logger.debug(f"Classified {clean_url[:100]} as {family.value}")
    return ClassifiedStream(protocol_family=family, clean_url=clean_url, drm_info=drm_info)


def needs_proxying(url: str) -> bool:
    """Whether a playable URL has to be routed through the manifest proxy."""
    if not url:
        return False
    url_lower = url.lower()
    if decode_proxy_url(url) is not None:
        return False
    return any(marker in url_lower for marker in PROXY_WORTHY_MARKERS)


def proxy_source_url(url: str, proxy_base_url: Optional[str]) -> str:
    """
    Route a playable URL through the manifest proxy when it needs it.

    Args:
        url (str): The playable URL.
        proxy_base_url (str, optional): The proxy endpoint. Without one the URL is returned unchanged.

    Returns:
        str: The URL the backend should load.
    """
    if proxy_base_url and needs_proxying(url):
        return encode_proxy_url(proxy_base_url, url)
    return url


def original_url(proxied_url: str) -> Optional[str]:
    """Recover the upstream URL from a proxied one, or None if it is not proxied."""
    return decode_proxy_url(proxied_url)
