import logging

from fastapi import Request
from fastapi.responses import JSONResponse, Response
from starlette.middleware.base import BaseHTTPMiddleware

from streamrelay.configs import settings
from streamrelay.const import (
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_EXPOSE_HEADERS,
    CORS_MAX_AGE,
)

logger = logging.getLogger(__name__)


def get_cors_headers(origin: str | None, allowed_origins: list[str]) -> dict:
    """
    Build the CORS headers for a response.

    The request origin is echoed back when it is on the allow-list, otherwise the first
    allowed origin is advertised.
    """
    if origin and origin in allowed_origins:
        allowed_origin = origin
    else:
        allowed_origin = allowed_origins[0] if allowed_origins else ""
    return {
        "access-control-allow-origin": allowed_origin,
        "access-control-allow-methods": CORS_ALLOW_METHODS,
        "access-control-allow-headers": CORS_ALLOW_HEADERS,
        "access-control-max-age": CORS_MAX_AGE,
        "access-control-expose-headers": CORS_EXPOSE_HEADERS,
        "access-control-allow-credentials": "true",
    }


class CORSAllowListMiddleware(BaseHTTPMiddleware):
    """Middleware that enforces the origin allow-list and stamps CORS headers on every response."""

    def __init__(self, app, allowed_origins: list[str] | None = None):
        super().__init__(app)
        self._allowed_origins = allowed_origins

    @property
    def allowed_origins(self) -> list[str]:
        if self._allowed_origins is not None:
            return self._allowed_origins
        return settings.allowed_origins

    async def dispatch(self, request: Request, call_next):
        origin = request.headers.get("origin")
        cors_headers = get_cors_headers(origin, self.allowed_origins)

        if request.method == "OPTIONS":
            return Response(status_code=204, headers=cors_headers)

        if origin and origin not in self.allowed_origins:
            logger.error(f"Unauthorized origin: {origin}")
            return JSONResponse(
                status_code=403,
                content={"error": "Unauthorized origin", "allowedOrigins": self.allowed_origins},
                headers=cors_headers,
            )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.exception(f"Unhandled error while processing {request.url.path}")
            return JSONResponse(
                status_code=500,
                content={"error": "Proxy failed to fetch stream", "details": str(e)},
                headers=cors_headers,
            )

        response.headers.update(cors_headers)
        return response


class DocsAccessControlMiddleware(BaseHTTPMiddleware):
    """Middleware that hides the API documentation when it is disabled in settings."""

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if settings.disable_docs and (path == "/docs" or path == "/redoc" or path.startswith("/openapi")):
            return JSONResponse(status_code=404, content={"error": "Not Found"})

        return await call_next(request)
