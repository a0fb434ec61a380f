import logging
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import Response

from streamrelay.const import PROXY_PATH
from streamrelay.handlers import error_response, handle_manifest_proxy
from streamrelay.utils.http_utils import get_proxy_headers

logger = logging.getLogger(__name__)

proxy_router = APIRouter()


@proxy_router.get(PROXY_PATH, name="manifest_proxy")
async def manifest_proxy(request: Request, url: Optional[str] = None) -> Response:
    """
    Proxify a playlist or segment request.

    Playlists come back with every reference rewritten to this endpoint; segments and other
    content are relayed unchanged, honouring ``Range``.

    Args:
        request (Request): The incoming HTTP request.
        url (str): The percent-encoded upstream URL.

    Returns:
        Response: The rewritten playlist, the relayed content or a JSON error payload.
    """
    if not url or not url.strip():
        logger.error("Missing url parameter")
        return error_response(400, "Missing url parameter")

    destination = url.strip()
    logger.debug(f"Proxying request for {destination[:100]}")
    return await handle_manifest_proxy(request, destination, get_proxy_headers(request, destination))
