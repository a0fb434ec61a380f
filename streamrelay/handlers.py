import logging
from urllib.parse import urlparse

import httpx
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.background import BackgroundTask

from .const import (
    DEFAULT_CACHE_CONTROL,
    HLS_PLAYLIST_MEDIA_TYPE,
    PLAYLIST_CACHE_HEADERS,
    PLAYLIST_CONTENT_MARKERS,
    PLAYLIST_EXTENSIONS,
    SEGMENT_CACHE_CONTROL,
    SUPPORTED_RESPONSE_HEADERS,
)
from .errors import UpstreamFetchError
from .utils.http_utils import (
    EnhancedStreamingResponse,
    ProxyRequestHeaders,
    Streamer,
    create_httpx_client,
    get_original_scheme,
)
from .utils.m3u8_processor import M3U8Processor

logger = logging.getLogger(__name__)


async def setup_client_and_streamer() -> tuple[httpx.AsyncClient, Streamer]:
    """
    Set up an HTTP client and a streamer.

    Returns:
        tuple: An httpx.AsyncClient instance and a Streamer instance.
    """
    client = create_httpx_client()
    return client, Streamer(client)


def error_response(status_code: int, error: str, details: str | None = None) -> JSONResponse:
    """Build the machine-readable error payload every failure is reported with."""
    payload = {"error": error}
    if details is not None:
        payload["details"] = details
    return JSONResponse(status_code=status_code, content=payload)


def handle_exceptions(exception: Exception) -> Response:
    """
    Handle exceptions and return appropriate HTTP responses.

    Upstream error statuses are mirrored; every other failure becomes a 500.

    Args:
        exception (Exception): The exception that was raised.

    Returns:
        Response: An HTTP response corresponding to the exception type.
    """
    if isinstance(exception, UpstreamFetchError) and exception.status_code is not None:
        return error_response(exception.status_code, exception.message, exception.details)
    logger.exception(f"Proxy error while handling request: {exception}")
    return error_response(500, "Proxy failed to fetch stream", str(exception))


def is_playlist(content_type: str, url: str) -> bool:
    """
    Decide whether an upstream response is an HLS playlist.

    Args:
        content_type (str): The upstream content type.
        url (str): The requested URL.

    Returns:
        bool: True if the content type carries an HLS marker or the URL path has a playlist extension.
    """
    content_type = content_type.lower()
    if any(marker in content_type for marker in PLAYLIST_CONTENT_MARKERS):
        return True
    return urlparse(url).path.lower().endswith(PLAYLIST_EXTENSIONS)


def segment_cache_control(content_type: str) -> str:
    content_type = content_type.lower()
    if "video" in content_type or "octet-stream" in content_type:
        return SEGMENT_CACHE_CONTROL
    return DEFAULT_CACHE_CONTROL


def prepare_response_headers(original_headers: httpx.Headers, proxy_response_headers: dict) -> dict:
    """
    Prepare response headers for a relayed segment.

    Args:
        original_headers (httpx.Headers): The original headers from the upstream response.
        proxy_response_headers (dict): Additional headers to be included in the proxy response.

    Returns:
        dict: The prepared headers for the proxy response.
    """
    response_headers = {k: v for k, v in original_headers.items() if k in SUPPORTED_RESPONSE_HEADERS}
    response_headers["cache-control"] = segment_cache_control(original_headers.get("content-type", ""))
    response_headers.update(proxy_response_headers)
    return response_headers


async def handle_manifest_proxy(request: Request, destination: str, proxy_headers: ProxyRequestHeaders) -> Response:
    """
    Fetch a remote playlist or segment and relay it.

    Playlists are rewritten so that every reference comes back through the proxy; anything
    else is streamed through unchanged.

    Args:
        request (Request): The incoming FastAPI request object.
        destination (str): The upstream URL.
        proxy_headers (ProxyRequestHeaders): Headers to be used in the proxy request.

    Returns:
        Union[Response, EnhancedStreamingResponse]: Either a rewritten playlist or a streaming response.
    """
    _, streamer = await setup_client_and_streamer()
    try:
        await streamer.create_streaming_response(destination, proxy_headers.request)
        content_type = streamer.response.headers.get("content-type", "")

        if is_playlist(content_type, destination):
            return await fetch_and_process_m3u8(streamer, request, proxy_headers)

        logger.info(f"Relaying segment from {destination}")
        return EnhancedStreamingResponse(
            streamer.stream_content(),
            status_code=streamer.response.status_code,
            headers=prepare_response_headers(streamer.response.headers, proxy_headers.response),
            background=BackgroundTask(streamer.close),
        )
    except Exception as e:
        await streamer.close()
        return handle_exceptions(e)


async def fetch_and_process_m3u8(streamer: Streamer, request: Request, proxy_headers: ProxyRequestHeaders) -> Response:
    """
    Reads the playlist from an open upstream response and rewrites it.

    The effective base is the final response URL, since playlists are often served after a
    redirect to another origin.

    Args:
        streamer (Streamer): Streamer holding the open upstream response.
        request (Request): The incoming HTTP request.
        proxy_headers (ProxyRequestHeaders): The headers used for the upstream request.

    Returns:
        Response: The HTTP response with the processed m3u8 playlist.
    """
    try:
        content = await streamer.read_text()
        base_url = streamer.final_url
    finally:
        await streamer.close()

    proxy_url = str(request.url_for("manifest_proxy").replace(scheme=get_original_scheme(request), query=""))
    processor = M3U8Processor(proxy_url)
    rewritten = processor.process_m3u8(content, base_url)
    logger.info(f"Rewrote playlist from {base_url}")

    response_headers = dict(PLAYLIST_CACHE_HEADERS)
    response_headers.update(proxy_headers.response)
    return Response(content=rewritten, media_type=HLS_PLAYLIST_MEDIA_TYPE, headers=response_headers)
