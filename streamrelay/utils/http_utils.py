import logging
import ssl
import typing
from dataclasses import dataclass
from functools import partial
from urllib import parse

import anyio
import h11
import httpx
from fastapi import Response
from starlette.background import BackgroundTask
from starlette.concurrency import iterate_in_threadpool
from starlette.requests import Request
from starlette.types import Receive, Send, Scope
from tqdm.asyncio import tqdm as tqdm_asyncio

from streamrelay.configs import settings
from streamrelay.const import DEFAULT_UPSTREAM_HEADERS, PROXY_PATH, SUPPORTED_REQUEST_HEADERS
from streamrelay.errors import UpstreamFetchError

logger = logging.getLogger(__name__)


DEFAULT_SSL_CONTEXT = ssl.create_default_context()


def create_httpx_client(
    follow_redirects: bool = True,
    ssl_context: ssl.SSLContext | None = None,
    **kwargs,
) -> httpx.AsyncClient:
    """
    Create an HTTPX AsyncClient with the configured transport mounts and TLS verification.

    Args:
        follow_redirects (bool): Whether to follow 3xx redirects automatically.
        ssl_context (ssl.SSLContext | None): Explicit SSLContext to use. Defaults to the system trust store.
        **kwargs: Additional AsyncClient keyword arguments.

    Returns:
        httpx.AsyncClient: Configured client.
    """
    mounts = settings.transport_config.get_mounts()
    kwargs.setdefault("timeout", settings.transport_config.timeout)

    return httpx.AsyncClient(
        mounts=mounts,
        follow_redirects=follow_redirects,
        verify=ssl_context or DEFAULT_SSL_CONTEXT,
        **kwargs,
    )


class Streamer:
    def __init__(self, client: httpx.AsyncClient, deadline: float | None = None):
        """
        Initialize a Streamer with a configured HTTP client.

        Args:
            client (httpx.AsyncClient): The HTTP client to use for streaming.
            deadline (float, optional): Seconds allowed for the upstream to answer. Defaults to the transport timeout.
        """
        self.client = client
        self.deadline = deadline if deadline is not None else settings.transport_config.timeout
        self.response: httpx.Response | None = None
        self.progress_bar = None
        self.bytes_transferred = 0
        self.start_byte = 0
        self.end_byte = 0
        self.total_size = 0

    async def create_streaming_response(self, url: str, headers: dict):
        """
        Send a streaming GET request and keep the response open for relaying.

        Upstream failures are never retried: a non-2xx answer is raised with its status so it
        can be mirrored, anything else is raised without one.

        Args:
            url (str): Source URL for the streaming content.
            headers (dict): Request headers.

        Raises:
            UpstreamFetchError: If the upstream cannot be reached in time or answers with an error status.
        """
        try:
            request = self.client.build_request("GET", url, headers=headers)
            with anyio.fail_after(self.deadline):
                self.response = await self.client.send(request, stream=True, follow_redirects=True)
            self.response.raise_for_status()
        except TimeoutError:
            logger.warning(f"Upstream did not answer within {self.deadline}s: {url}")
            raise UpstreamFetchError(None, f"Upstream fetch timed out after {self.deadline}s")
        except httpx.TimeoutException as e:
            logger.warning(f"Timeout while creating streaming response: {e}")
            raise UpstreamFetchError(None, f"Upstream fetch timed out: {e}")
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            logger.error(f"Stream fetch failed with HTTP {status_code}: {url}")
            raise UpstreamFetchError(status_code, f"Stream unavailable: {status_code}", e.response.reason_phrase)
        except httpx.RequestError as e:
            logger.error(f"Error creating streaming response: {e}")
            raise UpstreamFetchError(None, f"Error creating streaming response: {e}")

    async def read_text(self) -> str:
        """
        Read the whole upstream body and decode it as text.

        Returns:
            str: The decoded response body.
        """
        if not self.response:
            raise RuntimeError("No response available for reading")
        try:
            with anyio.fail_after(self.deadline):
                await self.response.aread()
        except TimeoutError:
            raise UpstreamFetchError(None, f"Upstream body not received within {self.deadline}s")
        except httpx.HTTPError as e:
            raise UpstreamFetchError(None, f"Error reading upstream body: {e}")
        return self.response.text

    @property
    def final_url(self) -> str:
        """URL of the upstream response after redirects."""
        if not self.response:
            raise RuntimeError("No response available")
        return str(self.response.url)

    async def stream_content(self) -> typing.AsyncGenerator[bytes, None]:
        """
        Relay the upstream body exactly as received.

        Raw bytes are forwarded so a ``content-encoding`` passed through to the client still
        matches the payload.
        """
        if not self.response:
            raise RuntimeError("No response available for streaming")

        self.parse_content_range()
        if settings.enable_streaming_progress:
            self.progress_bar = tqdm_asyncio(
                total=self.total_size or None,
                initial=self.start_byte,
                unit="B",
                unit_scale=True,
                unit_divisor=1024,
                desc=f"Relaying {parse.urlparse(self.final_url).path[-40:]}",
                mininterval=1,
            )

        try:
            async for chunk in self.response.aiter_raw():
                yield chunk
                self.bytes_transferred += len(chunk)
                if self.progress_bar is not None:
                    self.progress_bar.update(len(chunk))
        except httpx.TimeoutException:
            logger.warning(f"Upstream stalled after {self.bytes_transferred} bytes")
            raise UpstreamFetchError(None, "Timeout while streaming")
        except httpx.RemoteProtocolError as e:
            if self.bytes_transferred == 0:
                raise UpstreamFetchError(None, f"Upstream closed the connection before sending data: {e}")
            logger.warning(f"Upstream closed the connection after {self.bytes_transferred} bytes: {e}")
        except GeneratorExit:
            logger.info("Client stopped reading the relayed body")

    def parse_content_range(self):
        """
        Work out the byte window of the relayed body from Content-Range or Content-Length.
        """
        content_range = self.response.headers.get("content-range", "")
        try:
            if content_range:
                span, _, total = content_range.split()[-1].partition("/")
                start, _, end = span.partition("-")
                self.start_byte, self.end_byte, self.total_size = int(start), int(end), int(total)
            else:
                self.total_size = int(self.response.headers.get("content-length", 0))
                self.start_byte = 0
                self.end_byte = max(self.total_size - 1, 0)
        except ValueError:
            # "bytes */1234" and unknown totals
            self.start_byte = self.end_byte = self.total_size = 0

    async def close(self):
        """
        Close HTTP response and client resources.
        """
        if self.response:
            await self.response.aclose()
        if self.progress_bar:
            self.progress_bar.close()
        await self.client.aclose()


def encode_proxy_url(proxy_url: str, destination_url: str) -> str:
    """
    Build the proxied form of a destination URL.

    Args:
        proxy_url (str): The proxy endpoint, e.g. ``https://relay.example.com/proxy``.
        destination_url (str): The absolute URL to route through the proxy.

    Returns:
        str: ``<proxy_url>?url=<percent-encoded destination>``.
    """
    return f"{proxy_url.rstrip('/')}?url={parse.quote(destination_url, safe='')}"


def decode_proxy_url(proxied_url: str) -> str | None:
    """
    Extract the destination from a proxied URL, or None if the URL is not proxied.
    """
    parsed = parse.urlparse(proxied_url)
    if not parsed.path.endswith(PROXY_PATH):
        return None
    values = parse.parse_qs(parsed.query).get("url")
    return values[0] if values else None


def get_original_scheme(request: Request) -> str:
    """
    Determine the original scheme (http or https) of the incoming request.

    Args:
        request (Request): Incoming HTTP request.

    Returns:
        str: 'http' or 'https'
    """
    forwarded_proto = request.headers.get("X-Forwarded-Proto")
    if forwarded_proto:
        return forwarded_proto

    if (
        request.url.scheme == "https"
        or request.headers.get("X-Forwarded-Ssl") == "on"
        or request.headers.get("X-Forwarded-Protocol") == "https"
        or request.headers.get("X-Url-Scheme") == "https"
    ):
        return "https"

    return "http"


@dataclass
class ProxyRequestHeaders:
    request: dict
    response: dict


def get_proxy_headers(request: Request, destination: str) -> ProxyRequestHeaders:
    """
    Build the outbound headers for an upstream fetch.

    Browser-like defaults are sent, ``Range`` is forwarded verbatim and ``Referer``/``Origin``
    are set to the destination's own origin so referer-locked CDNs accept the request.

    Args:
        request (Request): Incoming HTTP request.
        destination (str): The upstream URL about to be fetched.

    Returns:
        ProxyRequestHeaders: Request headers for the upstream and extra response headers.
    """
    request_headers = {"user-agent": settings.user_agent, **DEFAULT_UPSTREAM_HEADERS}
    request_headers.update({k: v for k, v in request.headers.items() if k in SUPPORTED_REQUEST_HEADERS})

    parsed = parse.urlparse(destination)
    if parsed.scheme and parsed.netloc:
        target_origin = f"{parsed.scheme}://{parsed.netloc}"
        request_headers["referer"] = f"{target_origin}/"
        request_headers["origin"] = target_origin
    else:
        logger.warning(f"Could not set referer/origin headers for {destination}")

    return ProxyRequestHeaders(request_headers, {})


class EnhancedStreamingResponse(Response):
    """
    Streaming response that stops relaying as soon as either side goes away.

    Client disconnects end the relay quietly; an upstream failure after the headers were sent
    terminates the body early, since the status can no longer be changed.
    """

    body_iterator: typing.AsyncIterable[bytes]

    def __init__(
        self,
        content: typing.Union[typing.AsyncIterable[bytes], typing.Iterable[bytes]],
        status_code: int = 200,
        headers: typing.Optional[typing.Mapping[str, str]] = None,
        media_type: typing.Optional[str] = None,
        background: typing.Optional[BackgroundTask] = None,
    ) -> None:
        self.body_iterator = content if isinstance(content, typing.AsyncIterable) else iterate_in_threadpool(content)
        self.status_code = status_code
        self.media_type = media_type or self.media_type
        self.background = background
        self.init_headers(headers)
        self.bytes_sent = 0

    async def _wait_for_disconnect(self, receive: Receive) -> None:
        while (await receive())["type"] != "http.disconnect":
            pass
        logger.debug(f"Client disconnected after {self.bytes_sent} bytes")

    async def _send_body(self, send: Send) -> None:
        await send({"type": "http.response.start", "status": self.status_code, "headers": self.raw_headers})
        try:
            async for chunk in self.body_iterator:
                try:
                    await send({"type": "http.response.body", "body": chunk, "more_body": True})
                except (ConnectionResetError, anyio.BrokenResourceError):
                    logger.info(f"Client went away after {self.bytes_sent} bytes")
                    return
                self.bytes_sent += len(chunk)
        except (httpx.RemoteProtocolError, h11.LocalProtocolError, UpstreamFetchError) as e:
            logger.warning(f"Relay cut short after {self.bytes_sent} bytes: {e}")
        await send({"type": "http.response.body", "body": b"", "more_body": False})

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        async with anyio.create_task_group() as task_group:

            async def run_then_cancel(func: typing.Callable[[], typing.Awaitable[None]]) -> None:
                await func()
                task_group.cancel_scope.cancel()

            task_group.start_soon(run_then_cancel, partial(self._send_body, send))
            await run_then_cancel(partial(self._wait_for_disconnect, receive))

        if self.background is not None:
            await self.background()
