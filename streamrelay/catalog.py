"""Client for the catalog extraction service.

The service turns a category's M3U playlist into channel records; this module only posts the
request and validates the answer. The channels double as failover candidates for playback.
"""

import logging
from typing import Iterable, Optional

import httpx
import tenacity
from pydantic import ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from streamrelay.errors import StreamRelayError, UpstreamFetchError
from streamrelay.player.models import StreamSource
from streamrelay.schemas import CatalogChannel, CatalogRequest, CatalogResponse
from streamrelay.utils.http_utils import create_httpx_client

logger = logging.getLogger(__name__)


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=4, max=10),
    retry=retry_if_exception_type(httpx.TransportError),
)
async def _post_catalog(client: httpx.AsyncClient, endpoint: str, payload: dict) -> httpx.Response:
    return await client.post(endpoint, json=payload)


async def fetch_channels(
    endpoint: str, request: CatalogRequest, client: Optional[httpx.AsyncClient] = None
) -> list[CatalogChannel]:
    """
    Ask the catalog service for the channels of one category.

    Transport failures are retried with exponential backoff; HTTP error answers are not.

    Args:
        endpoint (str): URL of the extraction endpoint.
        request (CatalogRequest): Category and playlist to extract.
        client (httpx.AsyncClient, optional): Client to use. A client is created and closed when omitted.

    Returns:
        list[CatalogChannel]: The extracted channels, in playlist order.

    Raises:
        UpstreamFetchError: If the service cannot be reached or answers with an error status.
        StreamRelayError: If the answer does not match the expected shape.
    """
    owns_client = client is None
    if client is None:
        client = create_httpx_client()

    try:
        response = await _post_catalog(client, endpoint, request.model_dump(by_alias=True))
    except tenacity.RetryError as e:
        cause = e.last_attempt.exception()
        logger.error(f"Catalog service unreachable at {endpoint}: {cause}")
        raise UpstreamFetchError(None, "Catalog service unreachable", str(cause)) from cause
    finally:
        if owns_client:
            await client.aclose()

    if response.is_error:
        logger.error(f"Catalog service answered {response.status_code} for {request.category_id}")
        raise UpstreamFetchError(response.status_code, f"Catalog request failed: {response.status_code}", response.text)

    try:
        catalog = CatalogResponse.model_validate(response.json())
    except (ValueError, ValidationError) as e:
        raise StreamRelayError(f"Invalid catalog response: {e}") from e

    logger.info(f"Fetched {len(catalog.channels)} channels for category {request.category_name}")
    return catalog.channels


def channels_to_sources(channels: Iterable[CatalogChannel]) -> list[StreamSource]:
    """Turn catalog channels into playback candidates, keeping their order."""
    return [StreamSource(raw_url=channel.stream_url, label=channel.name) for channel in channels if channel.stream_url]
