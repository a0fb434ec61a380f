PROXY_PATH = "/proxy"

SUPPORTED_RESPONSE_HEADERS = [
    "content-type",
    "content-length",
    "content-range",
    "accept-ranges",
    "content-encoding",
]

SUPPORTED_REQUEST_HEADERS = [
    "range",
]

DEFAULT_UPSTREAM_HEADERS = {
    "accept": "*/*",
    "accept-language": "en-US,en;q=0.9",
    "accept-encoding": "gzip, deflate",
    "connection": "keep-alive",
}

PLAYLIST_CONTENT_MARKERS = ("mpegurl", "m3u8", "m3u")
PLAYLIST_EXTENSIONS = (".m3u8", ".m3u")
HLS_PLAYLIST_MEDIA_TYPE = "application/vnd.apple.mpegurl"

PLAYLIST_CACHE_HEADERS = {
    "cache-control": "no-cache, no-store, must-revalidate",
    "pragma": "no-cache",
    "expires": "0",
}
SEGMENT_CACHE_CONTROL = "public, max-age=31536000, immutable"
DEFAULT_CACHE_CONTROL = "public, max-age=60"

CORS_ALLOW_METHODS = "GET, OPTIONS"
CORS_ALLOW_HEADERS = "Content-Type, Range, Authorization"
CORS_MAX_AGE = "86400"
CORS_EXPOSE_HEADERS = "Content-Length, Content-Type, Content-Range, Accept-Ranges"
